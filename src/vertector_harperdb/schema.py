"""
GraphQL SDL table definitions.

HarperDB describes tables with GraphQL type definitions carrying a @table
directive, for example:

    type Dog @table(database: "dev") {
        id: ID! @primaryKey
        name: String! @indexed
        age: Int
    }

Only types with @table(database: ...) and a primary key (explicit, or a
field named `id`) are treated as tables.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

from vertector_harperdb.errors import SchemaFileError

logger = logging.getLogger(__name__)

SCHEMA_FILE_EXTENSIONS = (".graphql", ".gql")

_TYPE_PATTERN = re.compile(r"type\s+(\w+)\s+([^{]*)\{([\s\S]*?)\}")
_TABLE_DIRECTIVE = re.compile(r"@table\s*\(([^)]+)\)")
_DATABASE_ARG = re.compile(r'database\s*:\s*"([^"]+)"')
_REPLICATE_ARG = re.compile(r"replicate\s*:\s*(false|true)")
_FIELD_PATTERN = re.compile(r"^(\w+)\s*:\s*([\w\[\]!]+)(.*)$")


@dataclass
class SchemaField:
    name: str
    type: str
    is_primary_key: bool = False
    is_indexed: bool = False
    is_required: bool = False


@dataclass
class SchemaType:
    """One table definition parsed from SDL."""

    name: str
    schema: str
    hash_attribute: str
    fields: list[SchemaField] = field(default_factory=list)
    replicate: bool = True

    @property
    def qualified_name(self) -> str:
        return f"{self.schema}.{self.name}"

    def indexed_fields(self) -> list[SchemaField]:
        """Indexed fields other than the primary key."""
        return [f for f in self.fields if f.is_indexed and f.name != self.hash_attribute]


def _parse_field(line: str) -> SchemaField | None:
    match = _FIELD_PATTERN.match(line)
    if not match:
        return None
    name, raw_type, directives = match.group(1), match.group(2), match.group(3).strip()
    return SchemaField(
        name=name,
        type=re.sub(r"[!\[\]]", "", raw_type),
        is_primary_key=re.search(r"@primaryKey\b", directives) is not None,
        is_indexed=re.search(r"@indexed\b", directives) is not None,
        is_required=raw_type.endswith("!"),
    )


def parse_graphql_schema(sdl: str) -> list[SchemaType]:
    """
    Parse table types out of GraphQL SDL.

    Args:
        sdl: Schema definition text

    Returns:
        Table definitions in declaration order
    """
    types: list[SchemaType] = []
    normalized = sdl.replace("\r\n", "\n").replace("\r", "\n")

    for match in _TYPE_PATTERN.finditer(normalized):
        type_name, header, body = match.group(1), match.group(2) or "", match.group(3) or ""

        table_match = _TABLE_DIRECTIVE.search(header)
        if not table_match:
            continue
        database_match = _DATABASE_ARG.search(table_match.group(1))
        if not database_match:
            logger.debug(f"Skipping type {type_name}: @table has no database argument")
            continue
        replicate_match = _REPLICATE_ARG.search(table_match.group(1))

        fields = []
        for line in body.split("\n"):
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            parsed = _parse_field(line)
            if parsed is not None:
                fields.append(parsed)

        primary_key = next((f.name for f in fields if f.is_primary_key), "")
        if not primary_key:
            id_field = next((f for f in fields if f.name == "id"), None)
            if id_field is not None:
                id_field.is_primary_key = True
                primary_key = "id"
        if not primary_key:
            logger.debug(f"Skipping type {type_name}: no primary key")
            continue

        types.append(SchemaType(
            name=type_name,
            schema=database_match.group(1),
            hash_attribute=primary_key,
            fields=fields,
            replicate=replicate_match.group(1) == "true" if replicate_match else True,
        ))

    return types


def validate_schema_file(path: str | Path) -> tuple[bool, str | None]:
    """
    Check that a file looks like a usable table schema.

    Returns:
        (True, None) when valid, otherwise (False, reason)
    """
    file_path = Path(path).resolve()
    if not file_path.exists():
        return False, f"Schema file not found: {file_path}"

    suffix = file_path.suffix.lower()
    if suffix not in SCHEMA_FILE_EXTENSIONS:
        return False, (
            f"Invalid file extension. Expected .graphql or .gql, got: {suffix or 'no extension'}"
        )
    if file_path.stat().st_size == 0:
        return False, f"Schema file is empty: {file_path}"

    try:
        content = file_path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        return False, f"Failed to read schema file: {e}"

    if "type " not in content:
        return False, "Invalid GraphQL schema file. File does not contain 'type' definitions."
    if "@table" not in content:
        return False, (
            "Invalid GraphQL schema file. File does not contain '@table' directive."
        )
    if not parse_graphql_schema(content):
        return False, (
            "Invalid GraphQL schema file. No valid table types found. "
            'Make sure your types have @table(database: "schema_name") and a primary key.'
        )
    return True, None


def load_schema_file(path: str | Path) -> list[SchemaType]:
    """
    Validate and parse a schema file.

    Raises:
        SchemaFileError: If the file is missing or invalid
    """
    valid, error = validate_schema_file(path)
    if not valid:
        raise SchemaFileError(error or "Invalid schema file")
    return parse_graphql_schema(Path(path).read_text(encoding="utf-8"))


def seed_record(schema_type: SchemaType) -> dict:
    """
    Placeholder record whose insertion materializes every attribute.

    HarperDB creates attributes on first write, so a table created from SDL
    is seeded with one record and then emptied.
    """
    record: dict = {}
    for f in schema_type.fields:
        if f.name == schema_type.hash_attribute:
            if f.type in ("ID", "String"):
                record[f.name] = "__temp_schema_init__"
            elif f.type in ("Int", "Long"):
                record[f.name] = 0
            else:
                record[f.name] = None
        elif f.is_required:
            record[f.name] = {
                "String": "",
                "Int": 0,
                "Long": 0,
                "Float": 0.0,
                "Boolean": False,
                "Date": datetime.now(timezone.utc).isoformat(),
            }.get(f.type)
        else:
            record[f.name] = None
    return record
