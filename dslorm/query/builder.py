from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Optional

from sqlalchemy import Select, func, select

from dslorm.core.errors import ValidationError
from dslorm.query.compiler import NOT, apply_filter, compile_filter

if TYPE_CHECKING:
    from dslorm.query.model import ModelHandle

DIRECTIONS = ("asc", "desc")


class QueryBuilder:
    """
    Immutable chainable query over one model.

    Every chain method returns a new builder; the terminal coroutines
    (all, first, count) execute it.

    Example:
        users = await orm.model("user").find({"role": "admin"}).order_by("name").limit(5).all()
    """

    def __init__(self, model: "ModelHandle", statement: Select):
        self._model = model
        self._statement = statement

    @property
    def statement(self) -> Select:
        return self._statement

    def _with(self, statement: Select) -> "QueryBuilder":
        return QueryBuilder(self._model, statement)

    # -------------------------------------------------------------------------
    # Chain methods
    # -------------------------------------------------------------------------

    def where(self, where: Mapping) -> "QueryBuilder":
        return self._with(apply_filter(self._statement, self._model.table, where))

    def where_not(self, where: Mapping) -> "QueryBuilder":
        if not where:
            return self
        clause = compile_filter(self._model.table, {NOT: where})
        return self._with(self._statement.where(clause))

    def limit(self, amount: int) -> "QueryBuilder":
        if amount < 0:
            raise ValidationError("limit must not be negative")
        return self._with(self._statement.limit(amount))

    def offset(self, amount: int) -> "QueryBuilder":
        if amount < 0:
            raise ValidationError("offset must not be negative")
        return self._with(self._statement.offset(amount))

    def order_by(self, field: str, direction: str = "asc") -> "QueryBuilder":
        direction = direction.lower()
        if direction not in DIRECTIONS:
            raise ValidationError(f"Unknown order direction '{direction}'")
        column = self._model.column(field)
        ordering = column.asc() if direction == "asc" else column.desc()
        return self._with(self._statement.order_by(ordering))

    def distinct(self) -> "QueryBuilder":
        return self._with(self._statement.distinct())

    # -------------------------------------------------------------------------
    # Terminal operations
    # -------------------------------------------------------------------------

    async def all(self) -> List[Dict[str, Any]]:
        return await self._model.fetch(self._statement)

    async def first(self) -> Optional[Dict[str, Any]]:
        rows = await self._model.fetch(self._statement.limit(1))
        return rows[0] if rows else None

    async def count(self) -> int:
        statement = select(func.count()).select_from(self._statement.subquery())
        return await self._model.scalar(statement)
