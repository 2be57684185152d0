import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Optional

from pydantic import BaseModel, Field
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from dslorm.core.config import Settings, settings as default_settings
from dslorm.core.database import Database, retry_transient
from dslorm.core.errors import ReconciliationError, classify
from dslorm.core.reconcile.apply import DdlApplier, apply_action
from dslorm.core.reconcile.introspect import TableState, introspector_for
from dslorm.core.reconcile.plan import ReconciliationPlan, plan_entity
from dslorm.core.schemas import EntityDefinition, SchemaModel


# -----------------------------------------------------------------------------
# RECONCILIATION PIPELINE - Orchestration
# Purpose: converge every declared table in declaration order, one entity at
# a time, behind a lock, and keep a step-by-step log of what happened
# -----------------------------------------------------------------------------


class ReconcileStatus(Enum):
    """Reconciliation run status."""

    COMPLETED = "completed"
    FAILED = "failed"


class ReconcileStep(Enum):
    """Steps of one entity's state machine."""

    LOCK = "lock"
    PROBE = "probe"
    CREATE = "create"
    UPDATE = "update"
    DONE = "done"


# Configure logging for reconciliation
logging.basicConfig(level=default_settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


class ReconcileLogger:
    """Collects structured log entries for one reconciliation run."""

    def __init__(self):
        self.start_time = datetime.now()
        self.logs: List[Dict[str, Any]] = []

    def log(
        self,
        entity: Optional[str],
        step: ReconcileStep,
        message: str,
        level: str = "info",
    ):
        """
        Record a message and mirror it to the module logger.

        Args:
            entity: Entity being reconciled, None for run-level messages.
            step: State-machine step the message belongs to.
            message: Human-readable text.
            level: "info", "warning" or "error".
        """
        log_entry = {
            "timestamp": datetime.now().isoformat(),
            "entity": entity,
            "step": step.value,
            "message": message,
            "level": level,
            "elapsed_seconds": (datetime.now() - self.start_time).total_seconds(),
        }
        self.logs.append(log_entry)

        prefix = f"[{entity}] " if entity else ""
        if level == "error":
            logger.error(f"{prefix}{step.value}: {message}")
        elif level == "warning":
            logger.warning(f"{prefix}{step.value}: {message}")
        else:
            logger.info(f"{prefix}{step.value}: {message}")

    def get_logs(self) -> List[Dict[str, Any]]:
        return self.logs


class ReconciliationReport(BaseModel):
    status: ReconcileStatus
    plans: List[ReconciliationPlan] = Field(default_factory=list)
    logs: List[Dict[str, Any]] = Field(default_factory=list)
    duration_seconds: float = 0.0

    @property
    def total_actions(self) -> int:
        return sum(len(plan.actions) for plan in self.plans)


class Reconciler:
    """
    Runs reconciliation for a whole schema against one database.

    Entities are processed strictly in declaration order: later foreign keys
    need the earlier tables. Runs are serialized by an in-process lock and,
    where the backend has one, a named advisory lock.
    """

    def __init__(
        self,
        db: Database,
        schema: SchemaModel,
        config: Optional[Settings] = None,
        lock: Optional[asyncio.Lock] = None,
    ):
        self.db = db
        self.schema = schema
        self.config = config or default_settings
        self.lock = lock or asyncio.Lock()

    async def run(self) -> ReconciliationReport:
        run_logger = ReconcileLogger()
        traits = self.db.traits
        applier = DdlApplier(self.schema, traits)
        plans: List[ReconciliationPlan] = []

        try:
            async with self.lock, self._advisory_lock(run_logger):
                run_logger.log(
                    None,
                    ReconcileStep.LOCK,
                    f"Reconciling {len(self.schema.entities)} models on {traits.name}",
                )
                for entity in self.schema.entities:
                    plans.append(await self._reconcile_entity(entity, applier, run_logger))
        except ReconciliationError as error:
            # The partial report shows what converged before the failure
            error.report = self._report(ReconcileStatus.FAILED, plans, run_logger)
            logger.error(f"Reconciliation failed after {len(plans)} models: {error}")
            raise

        report = self._report(ReconcileStatus.COMPLETED, plans, run_logger)
        duration = report.duration_seconds
        logger.info(
            f"Reconciliation completed: {report.total_actions} actions in {duration:.2f}s"
        )
        return report

    def _report(
        self,
        status: ReconcileStatus,
        plans: List[ReconciliationPlan],
        run_logger: ReconcileLogger,
    ) -> ReconciliationReport:
        return ReconciliationReport(
            status=status,
            plans=plans,
            logs=run_logger.get_logs(),
            duration_seconds=(datetime.now() - run_logger.start_time).total_seconds(),
        )

    async def _reconcile_entity(
        self,
        entity: EntityDefinition,
        applier: DdlApplier,
        run_logger: ReconcileLogger,
    ) -> ReconciliationPlan:
        live = await self._snapshot(entity, run_logger)
        run_logger.log(
            entity.name,
            ReconcileStep.PROBE,
            f"table {entity.table_name} {'exists' if live.exists else 'is missing'}",
        )

        plan = plan_entity(entity, self.schema, live, self.db.traits)
        step = ReconcileStep.UPDATE if live.exists else ReconcileStep.CREATE

        for skipped in plan.skipped:
            run_logger.log(entity.name, step, f"cannot {skipped} in place", "warning")

        for action in plan.actions:
            try:
                applied = await apply_action(
                    self.db.engine,
                    applier,
                    entity.name,
                    action,
                    attempts=self.config.RECONCILE_MAX_ATTEMPTS,
                    delay=self.config.RECONCILE_RETRY_DELAY,
                )
            except ReconciliationError as error:
                run_logger.log(entity.name, step, str(error), "error")
                raise

            message = action.describe() if applied else f"{action.describe()} (already present)"
            run_logger.log(entity.name, step, message)

        run_logger.log(
            entity.name,
            ReconcileStep.DONE,
            f"table {entity.table_name} reconciled ({len(plan.actions)} actions)",
        )
        return plan

    async def _snapshot(
        self, entity: EntityDefinition, run_logger: ReconcileLogger
    ) -> TableState:
        introspector = introspector_for(self.db.engine.dialect.name)

        async def probe() -> TableState:
            async with self.db.engine.connect() as conn:
                return await conn.run_sync(introspector.snapshot, entity.table_name)

        try:
            return await retry_transient(
                probe,
                self.config.RECONCILE_MAX_ATTEMPTS,
                self.config.RECONCILE_RETRY_DELAY,
                description=f"probe {entity.table_name}",
            )
        except SQLAlchemyError as error:
            cause = classify(error)
            run_logger.log(entity.name, ReconcileStep.PROBE, str(error), "error")
            raise ReconciliationError(
                f"Failed to inspect table {entity.table_name}: {cause.message}",
                entity=entity.name,
                action="probe",
                cause=cause,
            ) from error

    @asynccontextmanager
    async def _advisory_lock(self, run_logger: ReconcileLogger) -> AsyncIterator[None]:
        if not self.db.traits.supports_advisory_lock:
            yield
            return

        name = self.config.RECONCILE_LOCK_NAME
        async with self.db.engine.connect() as conn:
            result = await conn.execute(
                text("SELECT GET_LOCK(:name, :timeout)"),
                {"name": name, "timeout": self.config.RECONCILE_LOCK_TIMEOUT},
            )
            if result.scalar() != 1:
                run_logger.log(None, ReconcileStep.LOCK, f"lock {name} is held elsewhere", "error")
                raise ReconciliationError(
                    f"Another reconciliation holds the lock {name}", action="lock"
                )
            try:
                yield
            finally:
                await conn.execute(text("SELECT RELEASE_LOCK(:name)"), {"name": name})
