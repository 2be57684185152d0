from typing import Callable, Dict, List, Optional, Union

from sqlalchemy import (
    TIMESTAMP,
    Column,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects import mysql
from sqlalchemy.sql import func, text
from sqlalchemy.sql.elements import TextClause
from sqlalchemy.types import TypeEngine

from dslorm.core.database import BackendTraits
from dslorm.core.schemas import (
    EntityDefinition,
    FieldDefinition,
    ScalarType,
    SchemaModel,
)

STRING_LENGTH = 255

CURRENT_TIMESTAMP = "CURRENT_TIMESTAMP"
ON_UPDATE_CURRENT_TIMESTAMP = "CURRENT_TIMESTAMP ON UPDATE CURRENT_TIMESTAMP"


# =========================
# Names
# =========================
def unique_name(table_name: str, field_name: str) -> str:
    return f"{table_name}_{field_name}_unique"


def foreign_key_name(table_name: str, field_name: str) -> str:
    return f"{table_name}_{field_name}_foreign"


# =========================
# Column types
# =========================
def unsigned_integer() -> TypeEngine:
    return Integer().with_variant(mysql.INTEGER(unsigned=True), "mysql")


def _string_type(field: FieldDefinition) -> TypeEngine:
    # Large text variant, no inline default allowed on the backend
    return Text() if field.is_text else String(STRING_LENGTH)


def _int_type(field: FieldDefinition) -> TypeEngine:
    return unsigned_integer()


def _datetime_type(field: FieldDefinition) -> TypeEngine:
    return TIMESTAMP()


# One entry per ScalarType; adding a type means adding a builder here
COLUMN_TYPES: Dict[ScalarType, Callable[[FieldDefinition], TypeEngine]] = {
    ScalarType.STRING: _string_type,
    ScalarType.INT: _int_type,
    ScalarType.DATETIME: _datetime_type,
}


def column_type(field: FieldDefinition) -> TypeEngine:
    if field.is_id:
        return unsigned_integer()
    return COLUMN_TYPES[field.type](field)


# =========================
# Defaults
# =========================
def server_default(
    field: FieldDefinition, traits: BackendTraits
) -> Optional[Union[str, TextClause]]:
    """
    Server-side default for a field, or None.

    Why: the same rendering is used to create columns and to decide
    whether a live column's default still needs reconciling.
    """
    if field.is_id:
        return None

    if field.type == ScalarType.DATETIME:
        if field.is_updated_at and traits.supports_on_update:
            return text(ON_UPDATE_CURRENT_TIMESTAMP)
        if field.needs_now_default:
            return text(CURRENT_TIMESTAMP)
        return field.default

    if field.type == ScalarType.INT and field.default is not None:
        return text(str(int(field.default)))

    if field.is_text:
        return None
    return field.default


# =========================
# Columns / tables
# =========================
def build_column(
    entity: EntityDefinition,
    name: str,
    schema: SchemaModel,
    traits: BackendTraits,
    with_foreign_key: bool = True,
) -> Column:
    """
    Build a fresh SQLAlchemy Column for a declared field.

    Args:
        entity: Entity declaring the field (names the foreign key).
        name: Field (and column) name.
        schema: Whole schema, needed to resolve @references targets.
        traits: Live backend traits (on-update support).
        with_foreign_key: Attach the declared foreign key inline.
    """
    field = entity.fields[name]
    if field.is_id:
        return Column(name, column_type(field), primary_key=True, autoincrement=True)

    args = [name, column_type(field)]
    if with_foreign_key and field.references is not None:
        target = schema.entity(field.references.entity)
        args.append(
            ForeignKey(
                f"{target.table_name}.{field.references.field}",
                name=foreign_key_name(entity.table_name, name),
                ondelete=field.on_delete.value if field.on_delete else None,
            )
        )

    return Column(
        *args,
        nullable=field.is_optional,
        server_default=server_default(field, traits),
        # Keeps updatedAt fresh on Core updates where the backend has no ON UPDATE
        onupdate=func.now() if field.is_updated_at else None,
    )


def table_items(
    entity: EntityDefinition, schema: SchemaModel, traits: BackendTraits
) -> List[Union[Column, UniqueConstraint]]:
    """All columns plus named unique constraints for a CREATE TABLE."""
    table_name = entity.table_name
    items: List[Union[Column, UniqueConstraint]] = []

    for name in entity.fields:
        items.append(build_column(entity, name, schema, traits))

    for name, field in entity.fields.items():
        if field.is_unique and not field.is_id:
            items.append(UniqueConstraint(name, name=unique_name(table_name, name)))

    return items


def build_tables(schema: SchemaModel, traits: BackendTraits) -> Dict[str, Table]:
    """
    Build one Table per entity in a shared MetaData.

    Returns:
        Tables keyed by lowercase entity name.
    """
    metadata = MetaData()
    return {
        entity.name.lower(): Table(
            entity.table_name, metadata, *table_items(entity, schema, traits)
        )
        for entity in schema.entities
    }
