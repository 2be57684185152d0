import logging
from collections.abc import Mapping
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

from sqlalchemy import Select, Table, delete, func, insert, select, update
from sqlalchemy.exc import SQLAlchemyError

from dslorm.core.config import Settings
from dslorm.core.database import Database, retry_transient
from dslorm.core.errors import SchemaError, ValidationError, to_orm_error
from dslorm.core.schemas import (
    DeleteResult,
    EntityDefinition,
    Page,
    SchemaModel,
    UpdateResult,
    UpsertResult,
    page_request,
)
from dslorm.query.builder import QueryBuilder
from dslorm.query.compiler import apply_filter


Row = Dict[str, Any]
# (nested key, label prefix, id field of the joined entity)
Include = Tuple[str, str, str]


def include_key(field: str, target: EntityDefinition) -> str:
    """authorId → author, owner_id → owner, otherwise the target's lowercase name."""
    if field.endswith("Id") and len(field) > 2:
        return field[:-2]
    if field.endswith("_id") and len(field) > 3:
        return field[:-3]
    return target.name.lower()


class ModelHandle:
    """
    Read/write operations for one entity.

    Every call opens its own session from the shared pool, so handles can be
    used concurrently. Backend failures are rolled back, logged and re-raised
    as the classified OrmError subclass.
    """

    def __init__(
        self,
        db: Database,
        schema: SchemaModel,
        entity: EntityDefinition,
        tables: Dict[str, Table],
        config: Settings,
    ):
        self.db = db
        self.schema = schema
        self.entity = entity
        self.tables = tables
        self.table = tables[entity.name.lower()]
        self.config = config

    @property
    def id_field(self) -> str:
        return self.entity.id_field

    def column(self, field: str):
        if field in self.table.c:
            return self.table.c[field]
        raise ValidationError(f"Unknown field '{field}' on {self.entity.name}")

    # ============================================================================
    # Chainable queries
    # ============================================================================

    def find_all(self) -> QueryBuilder:
        return QueryBuilder(self, select(self.table))

    def find(self, where: Mapping) -> QueryBuilder:
        return self.find_all().where(where)

    def except_(self, where: Mapping) -> QueryBuilder:
        return self.find_all().where_not(where)

    # ============================================================================
    # Reads
    # ============================================================================

    async def find_one(
        self,
        where: Optional[Mapping],
        select: Optional[Sequence[str]] = None,
        includes: Optional[Mapping[str, str]] = None,
    ) -> Optional[Row]:
        """
        First row matching `where`, or None.

        Raises:
            ValidationError: If `where` is empty; a single-row lookup must say
                which row it wants.
        """
        if not where:
            raise ValidationError(f"find_one on {self.entity.name} needs a non-empty filter")
        rows = await self.find_many(where, select=select, includes=includes, take=1)
        return rows[0] if rows else None

    async def find_by_id(
        self,
        id: Any = None,
        select: Optional[Sequence[str]] = None,
        includes: Optional[Mapping[str, str]] = None,
    ) -> Optional[Row]:
        if id is None:
            raise ValidationError(f"find_by_id on {self.entity.name} needs an id")
        return await self.find_one({self.id_field: id}, select=select, includes=includes)

    async def find_many(
        self,
        where: Optional[Mapping] = None,
        select: Optional[Sequence[str]] = None,
        includes: Optional[Mapping[str, str]] = None,
        order_by: Optional[str] = None,
        direction: str = "asc",
        skip: Optional[int] = None,
        take: Optional[int] = None,
        cursor: Any = None,
        distinct: Union[bool, Sequence[str]] = False,
    ) -> List[Row]:
        """
        Rows matching `where`.

        Args:
            where: Filter mapping (see query.compiler).
            select: Base columns to return; all when omitted.
            includes: field → target model, left-joined on the target's id.
            order_by: Ordering field (defaults to the id when a cursor is given).
            direction: "asc" or "desc".
            skip / take: Offset pagination.
            cursor: Cursor pagination; rows strictly after this ordering value.
                Only correct when the ordering field is unique and monotonic.
            distinct: True for SELECT DISTINCT, or field names to project distinctly.
        """
        page = page_request(
            order_by=order_by or self.id_field,
            direction=direction,
            skip=skip,
            take=take,
            cursor=cursor,
        )

        if distinct and not isinstance(distinct, bool):
            select = list(distinct)

        statement, joined = self._select(select, includes)
        statement = apply_filter(statement, self.table, where or {})

        ordering = self.column(page.order_by)
        if page.cursor is not None:
            boundary = ordering > page.cursor if page.direction == "asc" else ordering < page.cursor
            statement = statement.where(boundary)
        if order_by is not None or page.cursor is not None:
            statement = statement.order_by(
                ordering.asc() if page.direction == "asc" else ordering.desc()
            )

        if distinct:
            statement = statement.distinct()
        if page.take is not None:
            statement = statement.limit(page.take)
        if page.skip:
            statement = statement.offset(page.skip)

        return await self.fetch(statement, joined)

    async def paginate(
        self,
        where: Optional[Mapping] = None,
        order_by: Optional[str] = None,
        take: int = 10,
        cursor: Any = None,
    ) -> Page:
        """
        Inclusive cursor pagination in ascending order.

        Fetches take + 1 rows: the extra row only tells whether another page
        exists, and its ordering value becomes next_cursor.

        Example:
            page = await users.paginate(take=3)
            page = await users.paginate(take=3, cursor=page.next_cursor)
        """
        if take is None or take < 1:
            raise ValidationError("paginate needs take >= 1")

        field = order_by or self.id_field
        ordering = self.column(field)

        statement = apply_filter(select(self.table), self.table, where or {})
        if cursor is not None:
            statement = statement.where(ordering >= cursor)
        statement = statement.order_by(ordering.asc()).limit(take + 1)

        rows = await self.fetch(statement)
        has_next_page = len(rows) > take
        return Page(
            items=rows[:take],
            next_cursor=rows[take][field] if has_next_page else None,
            prev_cursor=cursor,
            has_next_page=has_next_page,
            has_prev_page=cursor is not None,
            page_size=take,
        )

    async def count(self, where: Optional[Mapping] = None) -> int:
        statement = select(func.count()).select_from(self.table)
        return await self.scalar(apply_filter(statement, self.table, where or {}))

    # ============================================================================
    # Writes
    # ============================================================================

    async def create(self, data: Mapping) -> Optional[Row]:
        values = self._values(data)
        primary_key = await self._write(
            insert(self.table).values(**values),
            lambda result: result.inserted_primary_key[0],
            f"Failed to create {self.entity.name}",
        )
        return await self.find_by_id(values.get(self.id_field, primary_key))

    insert = create

    async def update_one(self, where: Mapping, data: Mapping) -> UpdateResult:
        values = self._values(data, required=True)
        existing = await self.find_one(where)
        if existing is None:
            return UpdateResult(status=True, updated=0, data=None)

        identifier = existing[self.id_field]
        updated = await self._write(
            update(self.table).where(self.column(self.id_field) == identifier).values(**values),
            lambda result: result.rowcount,
            f"Failed to update {self.entity.name} {identifier}",
        )
        data = await self.find_by_id(values.get(self.id_field, identifier))
        return UpdateResult(status=True, updated=updated, data=data)

    async def update_many(self, where: Optional[Mapping], data: Mapping) -> UpdateResult:
        values = self._values(data, required=True)
        if self.id_field in values:
            raise ValidationError(f"update_many cannot change {self.id_field}")

        ids = await self._matching_ids(where)
        if not ids:
            return UpdateResult(status=True, updated=0, data=[])

        updated = await self._write(
            update(self.table).where(self.column(self.id_field).in_(ids)).values(**values),
            lambda result: result.rowcount,
            f"Failed to update {self.entity.name} rows",
        )
        data = await self.find_many({self.id_field: ids}, order_by=self.id_field)
        return UpdateResult(status=True, updated=updated, data=data)

    async def delete(self, where: Mapping) -> DeleteResult:
        """Delete matching rows; returns the removed rows as they were."""
        if not where:
            raise ValidationError(f"delete on {self.entity.name} needs a non-empty filter")

        rows = await self.find_many(where, order_by=self.id_field)
        if not rows:
            return DeleteResult(status=True, deleted=0, data=[])

        ids = [row[self.id_field] for row in rows]
        deleted = await self._write(
            delete(self.table).where(self.column(self.id_field).in_(ids)),
            lambda result: result.rowcount,
            f"Failed to delete {self.entity.name} rows",
        )
        return DeleteResult(status=True, deleted=deleted, data=rows)

    async def upsert(self, where: Mapping, data: Mapping) -> UpsertResult:
        existing = await self.find_one(where)
        if existing is None:
            return UpsertResult(status=True, created=True, data=await self.create(data))

        result = await self.update_one({self.id_field: existing[self.id_field]}, data)
        return UpsertResult(status=True, created=False, data=result.data)

    # ============================================================================
    # Execution
    # ============================================================================

    async def fetch(self, statement: Select, joined: Sequence[Include] = ()) -> List[Row]:
        async def run() -> List[Row]:
            async with self.db.session() as session:
                result = await session.execute(statement)
                return [self._shape(row, joined) for row in result.mappings().all()]

        return await self._read(run)

    async def scalar(self, statement: Select) -> Any:
        async def run() -> Any:
            async with self.db.session() as session:
                result = await session.execute(statement)
                return result.scalar_one()

        return await self._read(run)

    async def _read(self, run: Callable):
        try:
            return await retry_transient(
                run,
                self.config.READ_RETRY_ATTEMPTS,
                self.config.READ_RETRY_DELAY,
                description=f"read {self.table.name}",
            )
        except SQLAlchemyError as error:
            logging.error(f"Query on {self.table.name} failed: {error}")
            raise to_orm_error(error) from error

    async def _write(self, statement, extract: Callable, failure: str):
        async with self.db.session() as session:
            try:
                result = await session.execute(statement)
                value = extract(result)
                await session.commit()  # Commit to the DB
                return value
            except SQLAlchemyError as error:
                await session.rollback()  # Undo changes if something went wrong
                logging.error(f"{failure}: {error}")
                raise to_orm_error(error) from error

    # ============================================================================
    # Helpers
    # ============================================================================

    async def _matching_ids(self, where: Optional[Mapping]) -> List[Any]:
        statement = apply_filter(
            select(self.column(self.id_field)), self.table, where or {}
        )
        rows = await self.fetch(statement)
        return [row[self.id_field] for row in rows]

    def _values(self, data: Mapping, required: bool = False) -> Dict[str, Any]:
        if not isinstance(data, Mapping):
            raise ValidationError(f"data must be a mapping, got {type(data).__name__}")
        if required and not data:
            raise ValidationError(f"No data given for {self.entity.name}")
        for key in data:
            self.column(key)
        return dict(data)

    def _select(
        self,
        fields: Optional[Sequence[str]],
        includes: Optional[Mapping[str, str]],
    ) -> Tuple[Select, List[Include]]:
        columns = [self.column(field) for field in fields] if fields else list(self.table.c)
        statement = select(*columns)
        if not includes:
            return statement, []

        source = self.table
        joined: List[Include] = []
        for field, target_name in includes.items():
            local = self.column(field)
            try:
                target = self.schema.entity(target_name)
            except SchemaError:
                raise ValidationError(f"Cannot include unknown model '{target_name}'")

            key = include_key(field, target)
            alias = self.tables[target.name.lower()].alias(f"{key}_include")
            source = source.outerjoin(alias, local == alias.c[target.id_field])

            prefix = f"{key}__"
            statement = statement.add_columns(
                *[column.label(f"{prefix}{column.name}") for column in alias.c]
            )
            joined.append((key, prefix, target.id_field))

        return statement.select_from(source), joined

    @staticmethod
    def _shape(row, joined: Sequence[Include]) -> Row:
        data = dict(row)
        for key, prefix, id_field in joined:
            nested = {
                name[len(prefix):]: data.pop(name)
                for name in list(data)
                if name.startswith(prefix)
            }
            # A LEFT JOIN without a match yields all-NULL columns
            data[key] = nested if nested.get(id_field) is not None else None
        return data
