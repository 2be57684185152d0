import asyncio
import logging
import ssl
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional, TypeVar

from pydantic import BaseModel, ConfigDict
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from dslorm.core.config import Settings, settings as default_settings
from dslorm.core.errors import is_transient, to_orm_error
from dslorm.core.schemas import DataSourceDescriptor, Provider

logger = logging.getLogger(__name__)

T = TypeVar("T")


# =========================
# Backend traits
# =========================
class BackendTraits(BaseModel):
    """What the live backend can do in place, used by DDL generation and planning."""

    name: str
    supports_unsigned: bool = False
    supports_alter_column: bool = False
    supports_on_update: bool = False
    supports_add_constraint: bool = False
    # ADD COLUMN of a NOT NULL column without a constant default
    supports_add_required_column: bool = False
    supports_advisory_lock: bool = False

    model_config = ConfigDict(frozen=True)


BACKEND_TRAITS: Dict[str, BackendTraits] = {
    "mysql": BackendTraits(
        name="mysql",
        supports_unsigned=True,
        supports_alter_column=True,
        supports_on_update=True,
        supports_add_constraint=True,
        supports_add_required_column=True,
        supports_advisory_lock=True,
    ),
    # SQLite can neither ALTER a column nor add constraints to an existing table
    "sqlite": BackendTraits(name="sqlite"),
}


def traits_for(dialect_name: str) -> BackendTraits:
    return BACKEND_TRAITS.get(
        dialect_name,
        BackendTraits(
            name=dialect_name,
            supports_alter_column=True,
            supports_add_constraint=True,
            supports_add_required_column=True,
        ),
    )


# =========================
# Engine
# =========================
def build_connect_args(datasource: DataSourceDescriptor) -> Dict[str, Any]:
    if datasource.provider != Provider.MYSQL or not datasource.ssl:
        return {}

    # Trust the declared CA bundle without enforcing hostname/chain checks
    context = ssl.create_default_context(cafile=datasource.ssl)
    context.check_hostname = False
    context.verify_mode = ssl.CERT_NONE
    return {"ssl": context}


def create_engine_for(
    datasource: DataSourceDescriptor, config: Optional[Settings] = None
) -> AsyncEngine:
    config = config or default_settings

    if config.DATABASE_URL:
        datasource = DataSourceDescriptor(
            provider=datasource.provider, url=config.DATABASE_URL, ssl=datasource.ssl
        )

    options: Dict[str, Any] = {
        "echo": config.ECHO_SQL,
        "pool_pre_ping": True,
        "connect_args": build_connect_args(datasource),
    }
    if datasource.provider != Provider.SQLITE:
        options.update(
            pool_size=config.POOL_SIZE,
            max_overflow=config.POOL_MAX_OVERFLOW,
            pool_timeout=config.POOL_TIMEOUT,
            pool_recycle=config.POOL_RECYCLE,
        )

    return create_async_engine(datasource.connection_url(), **options)


class Database:
    """
    Explicit database handle: one engine (and its pool) plus a session factory.

    Created by the ORM and passed down to model handles and the reconciler,
    so several isolated instances can live side by side (tests do this).
    """

    def __init__(self, engine: AsyncEngine):
        self.engine = engine
        # Talk to the DB through async sessions without refreshes after commit
        self.session_factory = async_sessionmaker(
            bind=engine, class_=AsyncSession, expire_on_commit=False
        )

    @property
    def traits(self) -> BackendTraits:
        return traits_for(self.engine.dialect.name)

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        async with self.session_factory() as session:
            yield session

    async def ping(self) -> None:
        try:
            async with self.engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
        except SQLAlchemyError as error:
            logger.error(f"Connection failed: {error}")
            raise to_orm_error(error) from error
        logger.info(f"Database connected ({self.engine.dialect.name})")

    async def dispose(self) -> None:
        await self.engine.dispose()


# =========================
# Retries
# =========================
async def retry_transient(
    operation: Callable[[], Awaitable[T]],
    attempts: int,
    delay: float,
    description: str = "operation",
) -> T:
    """
    Run an async operation, retrying transient connection failures.

    Only errors that is_transient() recognises are retried, with a fixed
    delay between attempts; everything else propagates at once.

    Example:
        rows = await retry_transient(lambda: fetch(), attempts=3, delay=1.0)
    """
    attempt = 1
    while True:
        try:
            return await operation()
        except SQLAlchemyError as error:
            if attempt >= max(attempts, 1) or not is_transient(error):
                raise
            logger.warning(
                f"{description} aborted (attempt {attempt}/{attempts}): {error}. "
                f"Retrying in {delay}s"
            )
            await asyncio.sleep(delay)
            attempt += 1
