"""
INTROSPECT MODULE - Read the live structure of one table

Purpose:
    Produce a TableState snapshot (columns with type/default/extra, foreign
    keys, unique column sets) that the planner diffs against the declared
    entity.

Backends:
    - ReflectionIntrospector: SQLAlchemy's Inspector, works everywhere
    - MySQLIntrospector: same, but column metadata comes from
      information_schema so the EXTRA flags (ON UPDATE) are visible
"""

from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, Field
from sqlalchemy import inspect, text
from sqlalchemy.engine import Connection


class ColumnInfo(BaseModel):
    name: str
    type: str  # normalised lowercase, e.g. "varchar(255)", "int unsigned", "text"
    default: Optional[str] = None
    extra: str = ""
    nullable: bool = True

    @property
    def is_text(self) -> bool:
        return "text" in self.type

    @property
    def is_unsigned(self) -> bool:
        return "unsigned" in self.type

    @property
    def normalized_default(self) -> Optional[str]:
        return normalize_default(self.default)

    @property
    def has_now_default(self) -> bool:
        default = (self.default or "").lower()
        return "current_timestamp" in default or "now()" in default

    @property
    def has_on_update(self) -> bool:
        return "on update" in self.extra.lower() or "on update" in (self.default or "").lower()


class ForeignKeyInfo(BaseModel):
    name: Optional[str] = None
    columns: Tuple[str, ...]
    referred_table: str
    referred_columns: Tuple[str, ...] = ()


class TableState(BaseModel):
    """Live snapshot of one table; exists=False means nothing else is filled."""

    name: str
    exists: bool = False
    columns: Dict[str, ColumnInfo] = Field(default_factory=dict)
    foreign_keys: List[ForeignKeyInfo] = Field(default_factory=list)
    unique_sets: List[Tuple[Optional[str], Tuple[str, ...]]] = Field(default_factory=list)

    def has_column(self, name: str) -> bool:
        return name in self.columns

    def has_foreign_key(self, name: str, column: str) -> bool:
        # Match by name; backends that report unnamed keys are matched by column
        for foreign_key in self.foreign_keys:
            if foreign_key.name == name:
                return True
            if foreign_key.columns == (column,):
                return True
        return False

    def has_unique(self, column: str) -> bool:
        return any(columns == (column,) for _, columns in self.unique_sets)


def normalize_default(value: Optional[str]) -> Optional[str]:
    """
    Strip the quoting backends add around literal defaults.

    Example:
        "'user'" → "user", "user" → "user", None → None
    """
    if value is None:
        return None
    value = value.strip()
    # SQLite reports "('x')" for parenthesised defaults
    while len(value) >= 2 and value[0] == "(" and value[-1] == ")":
        value = value[1:-1].strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in "'\"":
        value = value[1:-1].replace("''", "'")
    return value


# ============================================================================
# Introspectors
# ============================================================================


class ReflectionIntrospector:
    """Introspection through SQLAlchemy's Inspector (sync connection)."""

    def snapshot(self, conn: Connection, table_name: str) -> TableState:
        inspector = inspect(conn)
        if not inspector.has_table(table_name):
            return TableState(name=table_name, exists=False)

        return TableState(
            name=table_name,
            exists=True,
            columns={column.name: column for column in self.columns(conn, table_name)},
            foreign_keys=[
                ForeignKeyInfo(
                    name=foreign_key.get("name"),
                    columns=tuple(foreign_key.get("constrained_columns") or ()),
                    referred_table=foreign_key.get("referred_table") or "",
                    referred_columns=tuple(foreign_key.get("referred_columns") or ()),
                )
                for foreign_key in inspector.get_foreign_keys(table_name)
            ],
            unique_sets=self._unique_sets(inspector, table_name),
        )

    def columns(self, conn: Connection, table_name: str) -> List[ColumnInfo]:
        inspector = inspect(conn)
        result = []
        for column in inspector.get_columns(table_name):
            result.append(
                ColumnInfo(
                    name=column["name"],
                    type=str(column["type"]).lower(),
                    default=_default_text(column.get("default")),
                    nullable=bool(column.get("nullable", True)),
                )
            )
        return result

    @staticmethod
    def _unique_sets(inspector, table_name: str) -> List[Tuple[Optional[str], Tuple[str, ...]]]:
        unique_sets = [
            (constraint.get("name"), tuple(constraint.get("column_names") or ()))
            for constraint in inspector.get_unique_constraints(table_name)
        ]
        unique_sets.extend(
            (index.get("name"), tuple(index.get("column_names") or ()))
            for index in inspector.get_indexes(table_name)
            if index.get("unique")
        )
        return unique_sets


class MySQLIntrospector(ReflectionIntrospector):
    """Reads column metadata from information_schema to see EXTRA flags."""

    COLUMNS_QUERY = text(
        "SELECT COLUMN_NAME, COLUMN_TYPE, COLUMN_DEFAULT, EXTRA, IS_NULLABLE "
        "FROM information_schema.COLUMNS "
        "WHERE TABLE_SCHEMA = DATABASE() AND TABLE_NAME = :table "
        "ORDER BY ORDINAL_POSITION"
    )

    def columns(self, conn: Connection, table_name: str) -> List[ColumnInfo]:
        rows = conn.execute(self.COLUMNS_QUERY, {"table": table_name}).all()
        return [
            ColumnInfo(
                name=row[0],
                type=str(row[1]).lower(),
                default=row[2],
                extra=row[3] or "",
                nullable=row[4] == "YES",
            )
            for row in rows
        ]


def introspector_for(dialect_name: str) -> ReflectionIntrospector:
    if dialect_name == "mysql":
        return MySQLIntrospector()
    return ReflectionIntrospector()


def _default_text(value) -> Optional[str]:
    if value is None:
        return None
    return str(value)
