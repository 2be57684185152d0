from typing import Any, Dict, List, Literal, Optional, Tuple
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.engine import URL, make_url
from sqlalchemy.exc import ArgumentError

from dslorm.core.errors import SchemaError, ValidationError


# =========================
# Enums
# =========================
class Provider(str, Enum):
    MYSQL = "mysql"
    SQLITE = "sqlite"


class ScalarType(str, Enum):
    STRING = "String"
    INT = "Int"
    DATETIME = "DateTime"


class OnDelete(str, Enum):
    CASCADE = "CASCADE"
    SET_NULL = "SET NULL"
    SET_DEFAULT = "SET DEFAULT"
    RESTRICT = "RESTRICT"
    NO_ACTION = "NO ACTION"


# Async driver used for each provider
DRIVERS = {
    Provider.MYSQL: "mysql+aiomysql",
    Provider.SQLITE: "sqlite+aiosqlite",
}

DEFAULT_PORTS = {
    Provider.MYSQL: 3306,
}

NOW_DEFAULT = "now()"


# =========================
# DATASOURCE
# =========================
class DataSourceDescriptor(BaseModel):
    provider: Provider
    url: str
    ssl: Optional[str] = None

    model_config = ConfigDict(frozen=True)

    @model_validator(mode="after")
    def check_url(self):
        # Raises SchemaError when host/user/password/database/port are missing
        self.connection_url()
        return self

    def connection_url(self) -> URL:
        """
        Build the driver-qualified async URL from the declared url.

        Example:
            mysql://root:secret@db:3306/app → mysql+aiomysql://root:***@db:3306/app
            file:./dev.db                   → sqlite+aiosqlite:///./dev.db
        """
        if self.provider == Provider.SQLITE:
            return self._sqlite_url()

        try:
            url = make_url(self.url)
        except ArgumentError as error:
            raise SchemaError(f"Invalid datasource url: {error}")

        missing = [
            name
            for name, value in (
                ("host", url.host),
                ("user", url.username),
                ("password", url.password),
                ("database", url.database),
            )
            if not value
        ]
        if missing:
            raise SchemaError(
                f"Datasource url is missing: {', '.join(missing)}"
            )

        return url.set(
            drivername=DRIVERS[self.provider],
            port=url.port or DEFAULT_PORTS[self.provider],
        )

    def _sqlite_url(self) -> URL:
        raw = self.url
        if raw.startswith("file:"):
            path = raw[len("file:"):]
        elif raw.startswith("sqlite"):
            try:
                path = make_url(raw).database
            except ArgumentError as error:
                raise SchemaError(f"Invalid datasource url: {error}")
        else:
            path = raw

        if not path:
            raise SchemaError("Datasource url is missing: database")
        return URL.create(DRIVERS[Provider.SQLITE], database=path)


# =========================
# FIELDS / ENTITIES
# =========================
class Reference(BaseModel):
    entity: str
    field: str

    model_config = ConfigDict(frozen=True)


class FieldDefinition(BaseModel):
    type: ScalarType
    is_id: bool = False
    is_unique: bool = False
    is_optional: bool = False
    is_text: bool = False
    is_updated_at: bool = False
    default: Optional[str] = None
    references: Optional[Reference] = None
    on_delete: Optional[OnDelete] = None

    model_config = ConfigDict(frozen=True)

    @model_validator(mode="after")
    def check_flags(self):
        if self.references is not None and self.type != ScalarType.INT:
            raise ValueError("@references requires an Int field")
        if self.on_delete is not None and self.references is None:
            raise ValueError("@onDelete requires @references")
        if self.is_updated_at and self.type != ScalarType.DATETIME:
            raise ValueError("@updatedAt is only valid on DateTime fields")
        if self.is_text and self.type != ScalarType.STRING:
            raise ValueError("@text is only valid on String fields")
        if self.default == NOW_DEFAULT and self.type != ScalarType.DATETIME:
            raise ValueError("@default(now()) is only valid on DateTime fields")
        if self.is_id and self.type != ScalarType.INT:
            raise ValueError("@id must be an Int field")
        return self

    @property
    def needs_now_default(self) -> bool:
        return self.type == ScalarType.DATETIME and (
            self.default == NOW_DEFAULT or self.is_updated_at
        )


class EntityDefinition(BaseModel):
    name: str
    fields: Dict[str, FieldDefinition]

    model_config = ConfigDict(frozen=True)

    @model_validator(mode="after")
    def check_single_id(self):
        ids = [name for name, field in self.fields.items() if field.is_id]
        if len(ids) != 1:
            raise ValueError(
                f"model {self.name} must declare exactly one @id field, found {len(ids)}"
            )
        return self

    @property
    def table_name(self) -> str:
        return f"{self.name.lower()}s"

    @property
    def id_field(self) -> str:
        return next(name for name, field in self.fields.items() if field.is_id)


class SchemaModel(BaseModel):
    datasource: DataSourceDescriptor
    entities: Tuple[EntityDefinition, ...]

    model_config = ConfigDict(frozen=True)

    @model_validator(mode="after")
    def check_references(self):
        seen: Dict[str, EntityDefinition] = {}
        for entity in self.entities:
            key = entity.name.lower()
            if key in seen:
                raise ValueError(f"model {entity.name} is declared twice")
            seen[key] = entity

            for field_name, field in entity.fields.items():
                if field.references is None:
                    continue
                # Reconciliation runs in declaration order, so targets come first
                target = seen.get(field.references.entity.lower())
                if target is None:
                    raise ValueError(
                        f"{entity.name}.{field_name} references "
                        f"{field.references.entity}, which is not declared before it"
                    )
                if field.references.field not in target.fields:
                    raise ValueError(
                        f"{entity.name}.{field_name} references unknown field "
                        f"{target.name}.{field.references.field}"
                    )
        return self

    def entity(self, name: str) -> EntityDefinition:
        for entity in self.entities:
            if entity.name.lower() == name.lower():
                return entity
        raise SchemaError(f"Unknown model: {name}")


# =========================
# QUERIES
# =========================
class PageRequest(BaseModel):
    order_by: str = "id"
    direction: Literal["asc", "desc"] = "asc"
    skip: Optional[int] = Field(default=None, ge=0)
    take: Optional[int] = Field(default=None, ge=0)
    cursor: Any = None

    @field_validator("direction", mode="before")
    @classmethod
    def lower_direction(cls, value):
        return value.lower() if isinstance(value, str) else value

    @model_validator(mode="after")
    def one_strategy(self):
        if self.cursor is not None and self.skip is not None:
            raise ValueError("skip and cursor pagination are mutually exclusive")
        return self


class Page(BaseModel):
    items: List[Dict[str, Any]]
    next_cursor: Any = None
    prev_cursor: Any = None
    has_next_page: bool
    has_prev_page: bool
    page_size: int


class UpdateResult(BaseModel):
    status: bool = True
    updated: int = 0
    data: Any = None


class DeleteResult(BaseModel):
    status: bool = True
    deleted: int = 0
    data: Any = None


class UpsertResult(BaseModel):
    status: bool = True
    created: bool
    data: Optional[Dict[str, Any]] = None


def page_request(**kwargs) -> PageRequest:
    """Build a PageRequest, reporting bad input as a ValidationError."""
    try:
        return PageRequest(**kwargs)
    except PydanticValidationError as error:
        raise ValidationError(validation_message(error))


def validation_message(error) -> str:
    details = error.errors()
    if not details:
        return str(error)
    message = details[0].get("msg", str(error))
    # "Value error, ..." is pydantic's prefix for ValueError raised in validators
    return message.removeprefix("Value error, ")
