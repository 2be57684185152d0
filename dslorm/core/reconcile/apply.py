"""
APPLY MODULE - Execute planned DDL actions against the live database

Purpose:
    Turn each DdlAction into alembic Operations calls on a live connection.
    No migration scripts and no version table are involved: alembic is used
    only as the dialect-aware DDL emitter.

Failure handling:
    - transient connection failures: retried with a fixed delay
    - duplicate constraint / foreign key names: already satisfied, logged
    - anything else: ReconciliationError, aborting the run
"""

import logging
from typing import Callable, Dict

from alembic.migration import MigrationContext
from alembic.operations import Operations
from sqlalchemy.engine import Connection
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from dslorm.core.database import BackendTraits, retry_transient
from dslorm.core.errors import ReconciliationError, classify, is_duplicate_constraint
from dslorm.core.models import build_column, column_type, server_default, table_items
from dslorm.core.reconcile.plan import (
    AddColumn,
    AddForeignKey,
    AddUniqueConstraint,
    AlterColumnType,
    CreateTable,
    DdlAction,
    SetDefault,
)
from dslorm.core.schemas import EntityDefinition, ScalarType, SchemaModel

logger = logging.getLogger(__name__)

# Backend refusals that mean "this constraint is already there"
ABSORBABLE = ("add_unique", "add_foreign_key")


class DdlApplier:
    """Renders actions through alembic Operations on a sync connection."""

    def __init__(self, schema: SchemaModel, traits: BackendTraits):
        self.schema = schema
        self.traits = traits
        self._handlers: Dict[str, Callable[[Operations, DdlAction], None]] = {
            "create_table": self._create_table,
            "add_column": self._add_column,
            "alter_column_type": self._alter_column_type,
            "set_default": self._set_default,
            "add_foreign_key": self._add_foreign_key,
            "add_unique": self._add_unique,
        }

    def apply(self, conn: Connection, action: DdlAction) -> None:
        operations = Operations(MigrationContext.configure(connection=conn))
        self._handlers[action.kind](operations, action)

    def _entity(self, table: str) -> EntityDefinition:
        for entity in self.schema.entities:
            if entity.table_name == table:
                return entity
        raise ReconciliationError(f"No model maps to table {table}")

    # -------------------------------------------------------------------------
    # Handlers
    # -------------------------------------------------------------------------

    def _create_table(self, op: Operations, action: CreateTable) -> None:
        entity = self._entity(action.table)
        op.create_table(action.table, *table_items(entity, self.schema, self.traits))

    def _add_column(self, op: Operations, action: AddColumn) -> None:
        # Foreign key and unique constraint follow as their own named actions
        entity = self._entity(action.table)
        column = build_column(
            entity, action.field, self.schema, self.traits, with_foreign_key=False
        )
        op.add_column(action.table, column)

    def _alter_column_type(self, op: Operations, action: AlterColumnType) -> None:
        field = self._entity(action.table).fields[action.field]
        op.alter_column(
            action.table,
            action.field,
            type_=column_type(field),
            existing_nullable=field.is_optional,
            existing_server_default=server_default(field, self.traits),
        )

    def _set_default(self, op: Operations, action: SetDefault) -> None:
        field = self._entity(action.table).fields[action.field]
        if field.type == ScalarType.DATETIME:
            # ON UPDATE is part of the column definition, so restate the whole column
            op.alter_column(
                action.table,
                action.field,
                type_=column_type(field),
                server_default=server_default(field, self.traits),
                existing_nullable=field.is_optional,
            )
            return

        op.alter_column(
            action.table,
            action.field,
            server_default=server_default(field, self.traits),
            existing_type=column_type(field),
            existing_nullable=field.is_optional,
        )

    def _add_foreign_key(self, op: Operations, action: AddForeignKey) -> None:
        op.create_foreign_key(
            action.name,
            action.table,
            action.target_table,
            [action.field],
            [action.target_field],
            ondelete=action.on_delete,
        )

    def _add_unique(self, op: Operations, action: AddUniqueConstraint) -> None:
        op.create_index(action.name, action.table, [action.field], unique=True)


async def apply_action(
    engine: AsyncEngine,
    applier: DdlApplier,
    entity: str,
    action: DdlAction,
    attempts: int,
    delay: float,
) -> bool:
    """
    Apply one action in its own transaction.

    Returns:
        True when DDL ran, False when the backend reported the constraint
        as already present.

    Raises:
        ReconciliationError: For any other failure, after retries.
    """

    async def run() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(applier.apply, action)

    try:
        await retry_transient(run, attempts, delay, description=action.describe())
    except (SQLAlchemyError, NotImplementedError) as error:
        if action.kind in ABSORBABLE and is_duplicate_constraint(error):
            logger.info(f"{action.describe()}: already exists, skipping")
            return False

        cause = classify(error)
        logger.error(f"Failed to {action.describe()} for {entity}: {error}")
        raise ReconciliationError(
            f"Failed to {action.describe()}: {cause.message}",
            entity=entity,
            action=action.describe(),
            cause=cause,
        ) from error

    logger.info(f"Applied: {action.describe()}")
    return True
