import pytest
from sqlalchemy import inspect

from dslorm.core.errors import ConnectionError, ReconciliationError
from dslorm.core.parser import parse_schema_text
from dslorm.core.reconcile.apply import DdlApplier, apply_action
from dslorm.core.reconcile.pipeline import ReconcileStatus
from dslorm.core.reconcile.plan import AddColumn, AddUniqueConstraint
from dslorm.main import ORM, init_orm, open_orm

CREATED_AT = "    createdAt DateTime @default(now())\n"


async def table_names(orm):
    async with orm.db.engine.connect() as conn:
        return await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names())


@pytest.mark.asyncio
async def test_first_run_creates_tables(schema, test_settings):
    async with ORM(schema, settings=test_settings) as orm:
        report = await orm.reconcile()

        assert report.status == ReconcileStatus.COMPLETED
        assert report.total_actions == 2
        assert [plan.table for plan in report.plans] == ["users", "posts"]
        assert sorted(await table_names(orm)) == ["posts", "users"]


@pytest.mark.asyncio
async def test_second_run_is_a_no_op(orm):
    report = await orm.reconcile()

    assert report.total_actions == 0
    assert all(plan.is_empty for plan in report.plans)


@pytest.mark.asyncio
async def test_report_logs_each_step(orm):
    report = await orm.reconcile()

    steps = {entry["step"] for entry in report.logs}
    assert {"lock", "probe", "done"} <= steps
    assert all("elapsed_seconds" in entry for entry in report.logs)


@pytest.mark.asyncio
async def test_new_optional_columns_are_added(orm, schema_source, test_settings):
    extended = schema_source.replace(
        CREATED_AT, CREATED_AT + "    nickname String?\n    code String? @unique\n"
    )

    async with ORM(parse_schema_text(extended, env={}), settings=test_settings) as grown:
        report = await grown.reconcile()
        again = await grown.reconcile()

        users_plan = report.plans[0]
        assert [action.kind for action in users_plan.actions] == [
            "add_column",
            "add_column",
            "add_unique",
        ]
        assert again.total_actions == 0

        created = await grown.model("user").create(
            {"email": "new@example.com", "nickname": "newbie", "code": "A1"}
        )
        assert created["nickname"] == "newbie"


@pytest.mark.asyncio
async def test_unsupported_changes_are_skipped(orm, schema_source, test_settings):
    changed = schema_source.replace('@default("user")', '@default("guest")')

    async with ORM(parse_schema_text(changed, env={}), settings=test_settings) as other:
        report = await other.reconcile()

    assert report.total_actions == 0
    assert report.plans[0].skipped == ["set default of users.role"]
    assert any(entry["level"] == "warning" for entry in report.logs)


@pytest.mark.asyncio
async def test_required_column_on_sqlite_is_skipped_not_failed(orm, schema_source, test_settings):
    changed = schema_source.replace("    title     String\n", "    title     String\n    slug      String\n")

    async with ORM(parse_schema_text(changed, env={}), settings=test_settings) as other:
        report = await other.reconcile()

    assert report.status == ReconcileStatus.COMPLETED
    assert report.total_actions == 0
    assert report.plans[1].skipped == ["add column posts.slug"]
    assert any(
        entry["level"] == "warning" and "posts.slug" in entry["message"] for entry in report.logs
    )


@pytest.mark.asyncio
async def test_duplicate_unique_index_is_absorbed(orm):
    applier = DdlApplier(orm.schema, orm.db.traits)
    action = AddUniqueConstraint(table="posts", field="title", name="posts_title_unique")

    first = await apply_action(orm.db.engine, applier, "Post", action, attempts=1, delay=0)
    second = await apply_action(orm.db.engine, applier, "Post", action, attempts=1, delay=0)

    assert first is True
    assert second is False


@pytest.mark.asyncio
async def test_failed_action_raises_reconciliation_error(orm):
    applier = DdlApplier(orm.schema, orm.db.traits)
    action = AddColumn(table="posts", field="title")

    with pytest.raises(ReconciliationError) as error:
        await apply_action(orm.db.engine, applier, "Post", action, attempts=1, delay=0)

    assert error.value.entity == "Post"
    assert error.value.action == "add column posts.title"
    assert error.value.cause is not None
    assert error.value.to_dict()["code"] == "L810"


@pytest.mark.asyncio
async def test_model_before_connect_fails(schema, test_settings):
    orm = ORM(schema, settings=test_settings)

    with pytest.raises(ConnectionError):
        orm.model("user")
    with pytest.raises(ConnectionError):
        await orm.reconcile()


@pytest.mark.asyncio
async def test_init_and_open_from_file(tmp_path, schema_source, test_settings):
    path = tmp_path / "schema.orm"
    path.write_text(schema_source)

    orm = await init_orm(path, settings=test_settings)
    try:
        await orm.model("user").create({"email": "a@example.com"})
    finally:
        await orm.close()
    assert not orm.is_connected

    async with open_orm(path, settings=test_settings) as reopened:
        assert await reopened.model("user").count() == 1


@pytest.mark.asyncio
async def test_failed_run_attaches_failed_report(schema, test_settings, monkeypatch):
    async def failing_apply(engine, applier, entity, action, attempts, delay):
        if entity == "Post":
            raise ReconciliationError("cannot create posts", entity=entity, action=action.describe())
        return await apply_action(engine, applier, entity, action, attempts=attempts, delay=delay)

    monkeypatch.setattr("dslorm.core.reconcile.pipeline.apply_action", failing_apply)

    async with ORM(schema, settings=test_settings) as orm:
        with pytest.raises(ReconciliationError) as error:
            await orm.reconcile()

    report = error.value.report
    assert report.status == ReconcileStatus.FAILED
    assert [plan.entity for plan in report.plans] == ["User"]
    assert report.plans[0].actions[0].kind == "create_table"
    assert any(entry["level"] == "error" for entry in report.logs)
