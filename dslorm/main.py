import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Mapping, Optional

from sqlalchemy import Table
from sqlalchemy.ext.asyncio import AsyncEngine

from dslorm.core.config import Settings, settings as default_settings
from dslorm.core.database import Database, create_engine_for
from dslorm.core.errors import ConnectionError
from dslorm.core.models import build_tables
from dslorm.core.parser import parse_schema
from dslorm.core.reconcile.pipeline import Reconciler, ReconciliationReport
from dslorm.core.schemas import SchemaModel
from dslorm.query.model import ModelHandle

logger = logging.getLogger(__name__)


class ORM:
    """
    One schema bound to one database.

    Example:
        async with ORM(parse_schema("schema.orm")) as orm:
            await orm.reconcile()
            user = await orm.model("user").create({"name": "Ann"})
    """

    def __init__(
        self,
        schema: SchemaModel,
        settings: Optional[Settings] = None,
        engine: Optional[AsyncEngine] = None,
    ):
        self.schema = schema
        self.settings = settings or default_settings
        self._engine = engine
        self.db: Optional[Database] = None
        self._tables: Dict[str, Table] = {}
        self._models: Dict[str, ModelHandle] = {}
        # Serializes reconcile() calls made through this instance
        self._reconcile_lock = asyncio.Lock()

    @classmethod
    def from_schema_file(
        cls,
        path,
        settings: Optional[Settings] = None,
        env: Optional[Mapping[str, str]] = None,
    ) -> "ORM":
        return cls(parse_schema(path, env=env), settings=settings)

    @property
    def is_connected(self) -> bool:
        return self.db is not None

    async def connect(self) -> "ORM":
        if self.db is not None:
            return self

        engine = self._engine or create_engine_for(self.schema.datasource, self.settings)
        db = Database(engine)
        try:
            await db.ping()
        except Exception:
            await db.dispose()
            raise

        self.db = db
        self._tables = build_tables(self.schema, db.traits)
        self._models = {
            entity.name.lower(): ModelHandle(
                db, self.schema, entity, self._tables, self.settings
            )
            for entity in self.schema.entities
        }
        return self

    async def close(self) -> None:
        if self.db is None:
            return
        await self.db.dispose()
        self.db = None
        self._models = {}
        logger.info("Database connection closed")

    async def reconcile(self) -> ReconciliationReport:
        reconciler = Reconciler(
            self._require_db(), self.schema, self.settings, lock=self._reconcile_lock
        )
        return await reconciler.run()

    def model(self, name: str) -> ModelHandle:
        self._require_db()
        # Raises SchemaError for names the schema does not declare
        entity = self.schema.entity(name)
        return self._models[entity.name.lower()]

    def _require_db(self) -> Database:
        if self.db is None:
            raise ConnectionError("Database not initialized. Call connect() first")
        return self.db

    async def __aenter__(self) -> "ORM":
        return await self.connect()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()


async def init_orm(path=None, settings: Optional[Settings] = None) -> ORM:
    """Parse the schema file, connect and bring the database in line with it."""
    settings = settings or default_settings
    orm = ORM.from_schema_file(path or settings.SCHEMA_PATH, settings=settings)
    await orm.connect()
    try:
        await orm.reconcile()
    except Exception:
        await orm.close()
        raise
    return orm


# Close the engine once everything is done and close all the sessions
@asynccontextmanager
async def open_orm(path=None, settings: Optional[Settings] = None) -> AsyncIterator[ORM]:
    orm = await init_orm(path, settings)
    try:
        yield orm
    finally:
        await orm.close()
