"""
PARSER MODULE - Turn a schema.orm file into a SchemaModel

Purpose:
    1. Walk the schema text once, line by line
    2. Collect the datasource block (provider / url / ssl, env("NAME") values)
    3. Collect model blocks and their field declarations
    4. Validate the result into an immutable SchemaModel

Example schema:
    datasource db {
        provider = "mysql"
        url      = env("DATABASE_URL")
    }

    model User {
        id        Int      @id
        email     String   @unique
        bio       String?  @text
        createdAt DateTime @default(now())
    }
"""

import logging
import os
import re
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Tuple

from pydantic import ValidationError as PydanticValidationError

from dslorm.core.errors import SchemaError
from dslorm.core.schemas import (
    DataSourceDescriptor,
    EntityDefinition,
    FieldDefinition,
    OnDelete,
    Reference,
    ScalarType,
    SchemaModel,
    validation_message,
)

logger = logging.getLogger(__name__)

IDENTIFIER = r"[A-Za-z_][A-Za-z0-9_]*"

BLOCK_START = re.compile(rf"^(?P<kind>{IDENTIFIER})(?:\s+(?P<name>{IDENTIFIER}))?\s*\{{$")
ASSIGNMENT = re.compile(rf"^(?P<key>{IDENTIFIER})\s*=\s*(?P<value>.+)$")
ENV_CALL = re.compile(r'^env\(\s*"(?P<name>[^"]+)"\s*\)$')
# @name or @name(...) allowing one level of nested parentheses, e.g. @default(now())
TOKEN = re.compile(r"@[\w.]+(?:\((?:[^()]|\([^()]*\))*\))?|\S+")
ATTRIBUTE = re.compile(r"^@(?P<name>[\w.]+)(?:\((?P<argument>.*)\))?$")
REFERENCE = re.compile(rf"^(?P<entity>{IDENTIFIER})\.(?P<field>{IDENTIFIER})$")

DATASOURCE_KEYS = ("provider", "url", "ssl")
TEXT_ATTRIBUTES = ("text", "db.Text")


# ============================================================================
# PUBLIC API
# ============================================================================


def parse_schema(path, env: Optional[Mapping[str, str]] = None) -> SchemaModel:
    """
    Parse a schema file into a SchemaModel.

    Args:
        path: Path to the schema.orm file.
        env: Variables for env("NAME") values; defaults to os.environ.

    Raises:
        SchemaError: On unreadable files, malformed blocks, unknown types or
            attributes, unresolved environment variables, or invalid models.
    """
    try:
        content = Path(path).read_text(encoding="utf-8")
    except OSError as error:
        raise SchemaError(f"Cannot read schema {path}: {error}")
    return parse_schema_text(content, env=env, source=str(path))


def parse_schema_text(
    content: str,
    env: Optional[Mapping[str, str]] = None,
    source: str = "<string>",
) -> SchemaModel:
    """Parse schema text; see parse_schema()."""
    logger.info(f"Parsing {source}...")
    parser = _SchemaParser(content, os.environ if env is None else env, source)
    schema = parser.parse()
    logger.info(
        f"Schema parsed: provider={schema.datasource.provider.value}, "
        f"models={[entity.name for entity in schema.entities]}"
    )
    return schema


# ============================================================================
# PARSER
# ============================================================================


class _SchemaParser:
    def __init__(self, content: str, env: Mapping[str, str], source: str):
        self.lines = content.splitlines()
        self.env = env
        self.source = source
        self.index = 0

    def error(self, message: str, line_number: Optional[int] = None) -> SchemaError:
        line_number = line_number or self.index + 1
        return SchemaError(f"{self.source}:{line_number}: {message}")

    def parse(self) -> SchemaModel:
        datasource: Optional[DataSourceDescriptor] = None
        entities: List[EntityDefinition] = []

        while self.index < len(self.lines):
            line = _strip_comment(self.lines[self.index]).strip()
            if self._is_blank(line):
                self.index += 1
                continue

            match = BLOCK_START.match(line)
            if not match:
                raise self.error(f"Expected a block declaration, got '{line}'")

            kind, name = match.group("kind"), match.group("name")
            start = self.index + 1
            body = self._block_body()

            if kind == "datasource":
                if datasource is not None:
                    raise self.error("Only one datasource block is allowed", start)
                datasource = self._datasource(body, start)
            elif kind == "model":
                if not name:
                    raise self.error("model block needs a name", start)
                entities.append(self._model(name, body, start))
            else:
                raise self.error(f"Unknown block '{kind}'", start)

        if datasource is None:
            raise SchemaError(f"{self.source}: missing datasource block")

        try:
            return SchemaModel(datasource=datasource, entities=tuple(entities))
        except PydanticValidationError as error:
            raise SchemaError(f"{self.source}: {validation_message(error)}")

    # -------------------------------------------------------------------------
    # Blocks
    # -------------------------------------------------------------------------

    @staticmethod
    def _is_blank(line: str) -> bool:
        return not line or line.startswith("//")

    def _block_body(self) -> List[Tuple[int, str]]:
        """Consume lines up to the closing brace; returns (line number, text)."""
        opening = self.index + 1
        self.index += 1
        body: List[Tuple[int, str]] = []

        while self.index < len(self.lines):
            line = _strip_comment(self.lines[self.index]).strip()
            line_number = self.index + 1
            self.index += 1

            if self._is_blank(line):
                continue
            if line == "}":
                return body
            if line.endswith("{"):
                raise self.error("Nested blocks are not supported", line_number)
            if "}" in line:
                raise self.error("Closing brace must be on its own line", line_number)
            body.append((line_number, line))

        raise self.error("Block is never closed", opening)

    def _datasource(
        self, body: List[Tuple[int, str]], start: int
    ) -> DataSourceDescriptor:
        values: Dict[str, str] = {}
        for line_number, line in body:
            match = ASSIGNMENT.match(line)
            if not match:
                raise self.error(f"Expected 'key = value', got '{line}'", line_number)

            key = match.group("key")
            if key not in DATASOURCE_KEYS:
                logger.warning(f"Ignoring unknown datasource key '{key}'")
                continue
            values[key] = self._value(match.group("value").strip(), line_number)

        for required in ("provider", "url"):
            if required not in values:
                raise self.error(f"datasource is missing '{required}'", start)

        try:
            return DataSourceDescriptor(**values)
        except PydanticValidationError as error:
            raise self.error(validation_message(error), start)

    def _value(self, raw: str, line_number: int) -> str:
        env_match = ENV_CALL.match(raw)
        if env_match:
            name = env_match.group("name")
            value = self.env.get(name)
            if value is None:
                raise self.error(f"Environment variable {name} is not set", line_number)
            return value
        return _unquote(raw)

    def _model(
        self, name: str, body: List[Tuple[int, str]], start: int
    ) -> EntityDefinition:
        fields: Dict[str, FieldDefinition] = {}
        for line_number, line in body:
            field_name, definition = self._field(line, line_number)
            if field_name in fields:
                raise self.error(
                    f"Field '{field_name}' is declared twice in model {name}",
                    line_number,
                )
            fields[field_name] = definition

        try:
            return EntityDefinition(name=name, fields=fields)
        except PydanticValidationError as error:
            raise self.error(validation_message(error), start)

    # -------------------------------------------------------------------------
    # Fields
    # -------------------------------------------------------------------------

    def _field(self, line: str, line_number: int) -> Tuple[str, FieldDefinition]:
        tokens = TOKEN.findall(line)
        if len(tokens) < 2:
            raise self.error(f"Expected 'name Type', got '{line}'", line_number)

        name, type_token, attributes = tokens[0], tokens[1], tokens[2:]
        if not re.fullmatch(IDENTIFIER, name):
            raise self.error(f"Invalid field name '{name}'", line_number)

        options: Dict[str, object] = {}
        if type_token.endswith("?"):
            options["is_optional"] = True
            type_token = type_token[:-1]

        try:
            options["type"] = ScalarType(type_token)
        except ValueError:
            raise self.error(f"Unknown type '{type_token}'", line_number)

        for token in attributes:
            self._attribute(token, options, line_number)

        try:
            return name, FieldDefinition(**options)
        except PydanticValidationError as error:
            raise self.error(f"{name}: {validation_message(error)}", line_number)

    def _attribute(self, token: str, options: Dict[str, object], line_number: int):
        if token == "?":
            options["is_optional"] = True
            return

        match = ATTRIBUTE.match(token)
        if not match:
            raise self.error(f"Unknown attribute '{token}'", line_number)

        name, argument = match.group("name"), match.group("argument")

        if name == "id":
            options["is_id"] = True
        elif name == "unique":
            options["is_unique"] = True
        elif name in TEXT_ATTRIBUTES:
            options["is_text"] = True
        elif name == "updatedAt":
            options["is_updated_at"] = True
        elif name == "default":
            default = _unquote((argument or "").strip())
            # ids are always auto-incrementing
            if default != "autoincrement()":
                options["default"] = default
        elif name == "references":
            reference = REFERENCE.match((argument or "").strip())
            if not reference:
                raise self.error(
                    f"Expected @references(Entity.field), got '{token}'", line_number
                )
            options["references"] = Reference(
                entity=reference.group("entity"), field=reference.group("field")
            )
        elif name == "onDelete":
            policy = (argument or "").strip().upper().replace("_", " ")
            try:
                options["on_delete"] = OnDelete(policy)
            except ValueError:
                raise self.error(f"Unknown onDelete policy '{argument}'", line_number)
        else:
            raise self.error(f"Unknown attribute '@{name}'", line_number)

        if options.get("type") == ScalarType.INT and name == "default":
            default = options.get("default")
            if default is not None and not re.fullmatch(r"-?\d+", str(default)):
                raise self.error(f"Int default must be an integer, got '{default}'", line_number)


def _unquote(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
        return value[1:-1]
    return value


def _strip_comment(line: str) -> str:
    """Drop a trailing // comment; // inside a quoted value is kept."""
    quote = None
    for position, char in enumerate(line):
        if quote:
            if char == quote:
                quote = None
        elif char in "\"'":
            quote = char
        elif line.startswith("//", position):
            return line[:position]
    return line
