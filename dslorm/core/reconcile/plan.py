"""
PLAN MODULE - Diff a declared entity against its live table

Purpose:
    Build the ordered list of DDL actions that converges one live table to
    its EntityDefinition. Pure: no I/O, the live side arrives as a TableState.

Order (per declared field, on an existing table):
    a. add the column if missing
    b. reconcile a plain string default
    c. upgrade a text field to the large-text type (never downgrades)
    d. add the missing now / on-update default of a timestamp
    e. make a referencing column unsigned, then add its foreign key
    f. add the unique constraint of a non-id unique field
"""

import logging
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, Field

from dslorm.core.database import BackendTraits
from dslorm.core.models import foreign_key_name, server_default, unique_name
from dslorm.core.reconcile.introspect import ColumnInfo, TableState
from dslorm.core.schemas import EntityDefinition, FieldDefinition, ScalarType, SchemaModel

logger = logging.getLogger(__name__)


# =========================
# Actions
# =========================
class CreateTable(BaseModel):
    kind: Literal["create_table"] = "create_table"
    table: str

    def describe(self) -> str:
        return f"create table {self.table}"


class AddColumn(BaseModel):
    kind: Literal["add_column"] = "add_column"
    table: str
    field: str

    def describe(self) -> str:
        return f"add column {self.table}.{self.field}"


class AlterColumnType(BaseModel):
    kind: Literal["alter_column_type"] = "alter_column_type"
    table: str
    field: str
    target: Literal["text", "unsigned"]

    def describe(self) -> str:
        return f"alter {self.table}.{self.field} type to {self.target}"


class SetDefault(BaseModel):
    kind: Literal["set_default"] = "set_default"
    table: str
    field: str

    def describe(self) -> str:
        return f"set default of {self.table}.{self.field}"


class AddForeignKey(BaseModel):
    kind: Literal["add_foreign_key"] = "add_foreign_key"
    table: str
    field: str
    name: str
    target_table: str
    target_field: str
    on_delete: Optional[str] = None

    def describe(self) -> str:
        return (
            f"add foreign key {self.name} "
            f"({self.table}.{self.field} → {self.target_table}.{self.target_field})"
        )


class AddUniqueConstraint(BaseModel):
    kind: Literal["add_unique"] = "add_unique"
    table: str
    field: str
    name: str

    def describe(self) -> str:
        return f"add unique constraint {self.name}"


DdlAction = Annotated[
    Union[
        CreateTable, AddColumn, AlterColumnType, SetDefault, AddForeignKey, AddUniqueConstraint
    ],
    Field(discriminator="kind"),
]


class ReconciliationPlan(BaseModel):
    entity: str
    table: str
    actions: List[DdlAction] = Field(default_factory=list)
    # Changes the backend cannot make in place
    skipped: List[str] = Field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.actions


# =========================
# Planning
# =========================
def plan_entity(
    entity: EntityDefinition,
    schema: SchemaModel,
    live: TableState,
    traits: BackendTraits,
) -> ReconciliationPlan:
    """
    Compute the actions converging one table.

    Args:
        entity: Declared entity.
        schema: Whole schema (resolves @references targets).
        live: Snapshot of the live table.
        traits: What the backend can alter in place.

    Returns:
        ReconciliationPlan; empty when the table already matches.

    Example:
        plan = plan_entity(user, schema, TableState(name="users"), traits)
        plan.actions → [CreateTable(table="users")]
    """
    table = entity.table_name
    plan = ReconciliationPlan(entity=entity.name, table=table)

    if not live.exists:
        plan.actions.append(CreateTable(table=table))
        return plan

    for name, field in entity.fields.items():
        column = live.columns.get(name)

        # a. missing column
        if column is None:
            action = AddColumn(table=table, field=name)
            if not _can_add_column(field, traits):
                plan.skipped.append(action.describe())
                logger.warning(
                    f"{traits.name} cannot {action.describe()} without a constant default; skipped"
                )
                continue
            plan.actions.append(action)
        else:
            _plan_column_changes(plan, name, field, column, traits)

        # e. foreign key
        if field.references is not None:
            _plan_foreign_key(plan, name, field, schema, live, traits)

        # f. unique constraint
        if field.is_unique and not field.is_id and not live.has_unique(name):
            plan.actions.append(
                AddUniqueConstraint(table=table, field=name, name=unique_name(table, name))
            )

    return plan


def _can_add_column(field: FieldDefinition, traits: BackendTraits) -> bool:
    # SQLite only adds a NOT NULL column when it carries a constant default
    if traits.supports_add_required_column or field.is_optional:
        return True
    return server_default(field, traits) is not None and not field.needs_now_default


def _plan_column_changes(
    plan: ReconciliationPlan,
    name: str,
    field: FieldDefinition,
    column: ColumnInfo,
    traits: BackendTraits,
) -> None:
    table = plan.table
    changes = []

    # b. plain string default (text columns cannot carry one)
    if (
        field.type == ScalarType.STRING
        and not field.is_text
        and field.default is not None
        and column.normalized_default != field.default
    ):
        changes.append(SetDefault(table=table, field=name))

    # c. one-way upgrade to large text
    if field.is_text and not column.is_text:
        changes.append(AlterColumnType(table=table, field=name, target="text"))

    # d. timestamp defaults
    if field.type == ScalarType.DATETIME:
        missing_now = field.needs_now_default and not column.has_now_default
        missing_on_update = (
            field.is_updated_at and traits.supports_on_update and not column.has_on_update
        )
        if missing_now or missing_on_update:
            changes.append(SetDefault(table=table, field=name))

    # e. (first half) referencing columns are unsigned
    if field.references is not None and traits.supports_unsigned and not column.is_unsigned:
        changes.append(AlterColumnType(table=table, field=name, target="unsigned"))

    if not changes:
        return
    if traits.supports_alter_column:
        plan.actions.extend(changes)
        return

    for change in changes:
        plan.skipped.append(change.describe())
        logger.warning(f"{traits.name} cannot {change.describe()} in place; skipped")


def _plan_foreign_key(
    plan: ReconciliationPlan,
    name: str,
    field: FieldDefinition,
    schema: SchemaModel,
    live: TableState,
    traits: BackendTraits,
) -> None:
    constraint = foreign_key_name(plan.table, name)
    if live.has_foreign_key(constraint, name):
        logger.info(f"Foreign key {constraint} already exists on {plan.table}")
        return

    target = schema.entity(field.references.entity)
    action = AddForeignKey(
        table=plan.table,
        field=name,
        name=constraint,
        target_table=target.table_name,
        target_field=field.references.field,
        on_delete=field.on_delete.value if field.on_delete else None,
    )

    if not traits.supports_add_constraint:
        plan.skipped.append(action.describe())
        logger.warning(f"{traits.name} cannot {action.describe()} on an existing table; skipped")
        return
    plan.actions.append(action)
