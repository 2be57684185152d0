import pytest

from dslorm.core.database import traits_for
from dslorm.core.reconcile.introspect import (
    ColumnInfo,
    ForeignKeyInfo,
    TableState,
    normalize_default,
)
from dslorm.core.reconcile.plan import plan_entity

MYSQL = traits_for("mysql")
SQLITE = traits_for("sqlite")


def live_users(**overrides):
    columns = {
        "id": ColumnInfo(name="id", type="int unsigned", extra="auto_increment", nullable=False),
        "email": ColumnInfo(name="email", type="varchar(255)", nullable=False),
        "name": ColumnInfo(name="name", type="varchar(255)"),
        "role": ColumnInfo(name="role", type="varchar(255)", default="user", nullable=False),
        "age": ColumnInfo(name="age", type="int unsigned"),
        "bio": ColumnInfo(name="bio", type="text"),
        "createdAt": ColumnInfo(
            name="createdAt", type="timestamp", default="CURRENT_TIMESTAMP", nullable=False
        ),
    }
    columns.update(overrides)
    return TableState(
        name="users",
        exists=True,
        columns={name: column for name, column in columns.items() if column is not None},
        unique_sets=[("users_email_unique", ("email",))],
    )


def live_posts(author_type="int unsigned", foreign_keys=None, updated_extra=""):
    return TableState(
        name="posts",
        exists=True,
        columns={
            "id": ColumnInfo(name="id", type="int unsigned", nullable=False),
            "title": ColumnInfo(name="title", type="varchar(255)", nullable=False),
            "authorId": ColumnInfo(name="authorId", type=author_type),
            "updatedAt": ColumnInfo(
                name="updatedAt",
                type="timestamp",
                default="CURRENT_TIMESTAMP",
                extra=updated_extra,
                nullable=False,
            ),
        },
        foreign_keys=foreign_keys or [],
    )


def kinds(plan):
    return [action.kind for action in plan.actions]


def test_missing_table_is_created(schema):
    plan = plan_entity(schema.entity("User"), schema, TableState(name="users"), MYSQL)

    assert kinds(plan) == ["create_table"]
    assert plan.actions[0].table == "users"


def test_matching_table_needs_nothing(schema):
    plan = plan_entity(schema.entity("User"), schema, live_users(), MYSQL)

    assert plan.is_empty
    assert plan.skipped == []


def test_missing_column_and_unique(schema):
    live = live_users(email=None)
    live.unique_sets.clear()

    plan = plan_entity(schema.entity("User"), schema, live, MYSQL)

    assert kinds(plan) == ["add_column", "add_unique"]
    assert plan.actions[1].name == "users_email_unique"


def test_string_default_drift(schema):
    live = live_users(role=ColumnInfo(name="role", type="varchar(255)", default="'guest'"))

    plan = plan_entity(schema.entity("User"), schema, live, MYSQL)

    assert kinds(plan) == ["set_default"]
    assert plan.actions[0].field == "role"


def test_text_upgrade_never_downgrades(schema):
    upgrade = plan_entity(
        schema.entity("User"),
        schema,
        live_users(bio=ColumnInfo(name="bio", type="varchar(255)")),
        MYSQL,
    )
    # A plain String column that is already text in the database stays text
    stays = plan_entity(
        schema.entity("User"),
        schema,
        live_users(name=ColumnInfo(name="name", type="text")),
        MYSQL,
    )

    assert [(action.kind, action.target) for action in upgrade.actions] == [
        ("alter_column_type", "text")
    ]
    assert stays.is_empty


def test_missing_now_default(schema):
    live = live_users(createdAt=ColumnInfo(name="createdAt", type="timestamp", nullable=False))

    plan = plan_entity(schema.entity("User"), schema, live, MYSQL)

    assert kinds(plan) == ["set_default"]


def test_reference_drift_in_order(schema):
    plan = plan_entity(schema.entity("Post"), schema, live_posts(author_type="int"), MYSQL)

    assert kinds(plan) == ["alter_column_type", "add_foreign_key", "set_default"]
    foreign_key = plan.actions[1]
    assert foreign_key.name == "posts_authorId_foreign"
    assert foreign_key.target_table == "users"
    assert foreign_key.on_delete == "SET NULL"


def test_existing_foreign_key_and_on_update(schema):
    live = live_posts(
        foreign_keys=[
            ForeignKeyInfo(
                name="posts_authorId_foreign",
                columns=("authorId",),
                referred_table="users",
                referred_columns=("id",),
            )
        ],
        updated_extra="DEFAULT_GENERATED on update CURRENT_TIMESTAMP",
    )

    plan = plan_entity(schema.entity("Post"), schema, live, MYSQL)

    assert plan.is_empty


def test_unnamed_foreign_key_matches_by_column(schema):
    live = live_posts(
        foreign_keys=[ForeignKeyInfo(columns=("authorId",), referred_table="users")],
        updated_extra="on update CURRENT_TIMESTAMP",
    )

    plan = plan_entity(schema.entity("Post"), schema, live, MYSQL)

    assert plan.is_empty


def test_backend_without_alter_skips_changes(schema):
    plan = plan_entity(schema.entity("Post"), schema, live_posts(author_type="integer"), SQLITE)

    assert plan.is_empty
    assert plan.skipped == [
        "add foreign key posts_authorId_foreign (posts.authorId → users.id)"
    ]


def test_backend_without_alter_still_adds_columns(schema):
    live = live_users(age=None, role=ColumnInfo(name="role", type="varchar(255)", default="'guest'"))

    plan = plan_entity(schema.entity("User"), schema, live, SQLITE)

    assert kinds(plan) == ["add_column"]
    assert plan.skipped == ["set default of users.role"]


def test_required_column_without_constant_default_is_skipped_on_sqlite(schema):
    live = live_users(email=None, createdAt=None)
    live.unique_sets.clear()

    plan = plan_entity(schema.entity("User"), schema, live, SQLITE)

    assert plan.is_empty
    assert plan.skipped == ["add column users.email", "add column users.createdAt"]


def test_required_column_with_constant_default_is_added_on_sqlite(schema):
    plan = plan_entity(schema.entity("User"), schema, live_users(role=None), SQLITE)

    assert kinds(plan) == ["add_column"]
    assert plan.skipped == []


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("'user'", "user"),
        ("('user')", "user"),
        ("user", "user"),
        ("'it''s'", "it's"),
        (None, None),
    ],
)
def test_normalize_default(raw, expected):
    assert normalize_default(raw) == expected
