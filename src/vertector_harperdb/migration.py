"""
SQL migration helper.

Reads CREATE TABLE and INSERT INTO statements from a SQL script and replays
them against HarperDB: schemas and tables are created, columns become
attributes and single-row inserts become records. Also generates a typed
stub for an existing table.
"""

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

from vertector_harperdb.errors import HarperDBValidationError, QueryExecutionError

if TYPE_CHECKING:
    from vertector_harperdb.client import HarperDB

logger = logging.getLogger(__name__)

_CREATE_TABLE = re.compile(
    r"CREATE\s+TABLE\s+(?:IF\s+NOT\s+EXISTS\s+)?(?:`?(\w+)`?\.)?`?(\w+)`?\s*\((.+)\)",
    re.IGNORECASE | re.DOTALL,
)
_INSERT_INTO = re.compile(
    r"INSERT\s+INTO\s+(?:`?(\w+)`?\.)?`?(\w+)`?\s*\(([^)]+)\)\s*VALUES\s*(.+)",
    re.IGNORECASE | re.DOTALL,
)
_VALUES_GROUP = re.compile(r"\(([^)]+)\)")
_LINE_COMMENT = re.compile(r"--.*$", re.MULTILINE)
_BLOCK_COMMENT = re.compile(r"/\*[\s\S]*?\*/")
_TABLE_CONSTRAINT = re.compile(r"(PRIMARY\s+KEY|FOREIGN\s+KEY|UNIQUE|KEY|INDEX|CONSTRAINT|CHECK)\b", re.IGNORECASE)


@dataclass
class ColumnDefinition:
    name: str
    type: str
    is_primary_key: bool = False


@dataclass
class TableDefinition:
    schema: str
    table: str
    hash_attribute: str = "id"
    columns: list[ColumnDefinition] = field(default_factory=list)


@dataclass
class InsertStatement:
    schema: str
    table: str
    records: list[dict[str, Any]] = field(default_factory=list)


def split_sql_statements(sql: str) -> list[str]:
    """Strip -- and /* */ comments, then split on semicolons."""
    sql = _LINE_COMMENT.sub("", sql)
    sql = _BLOCK_COMMENT.sub("", sql)
    return [statement.strip() for statement in sql.split(";") if statement.strip()]


def _split_top_level(text: str) -> list[str]:
    """Split on commas that are not inside parentheses or quotes."""
    parts, depth, quote, current = [], 0, None, []
    for char in text:
        if quote:
            current.append(char)
            if char == quote:
                quote = None
            continue
        if char in ("'", '"'):
            quote = char
        elif char == "(":
            depth += 1
        elif char == ")":
            depth -= 1
        elif char == "," and depth == 0:
            parts.append("".join(current).strip())
            current = []
            continue
        current.append(char)
    if "".join(current).strip():
        parts.append("".join(current).strip())
    return parts


def _parse_value(raw: str) -> Any:
    value = raw.strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
        return value[1:-1]
    if value.upper() == "NULL":
        return None
    try:
        return int(value)
    except ValueError:
        pass
    try:
        return float(value)
    except ValueError:
        return value


def to_pascal_case(name: str) -> str:
    """dog_owner -> DogOwner."""
    return "".join(word[:1].upper() + word[1:].lower() for word in re.split(r"[-_\s]", name) if word)


class Migration:
    """
    Replays a SQL script against HarperDB.

    Example:
        migration = Migration(db)
        results = await migration.migrate_from_sql("schema.sql")
    """

    def __init__(self, db: "HarperDB"):
        self.db = db

    split_sql_statements = staticmethod(split_sql_statements)
    to_pascal_case = staticmethod(to_pascal_case)

    def parse_create_table(self, sql: str) -> TableDefinition:
        """
        Parse a CREATE TABLE statement.

        The hash attribute is the column declared PRIMARY KEY (inline or as
        a table constraint), else "id".

        Raises:
            HarperDBValidationError: If the statement is not CREATE TABLE
        """
        match = _CREATE_TABLE.search(sql)
        if not match:
            raise HarperDBValidationError("Invalid CREATE TABLE statement", field="sql", value=sql[:50])

        definition = TableDefinition(schema=match.group(1) or self.db.schema, table=match.group(2))
        for part in _split_top_level(match.group(3)):
            if _TABLE_CONSTRAINT.match(part):
                constraint = re.match(r"PRIMARY\s+KEY\s*\(\s*`?(\w+)`?", part, re.IGNORECASE)
                if constraint:
                    definition.hash_attribute = constraint.group(1)
                continue

            column = re.match(r"`?(\w+)`?\s+(\w+)", part)
            if not column:
                continue
            is_primary_key = re.search(r"PRIMARY\s+KEY", part, re.IGNORECASE) is not None
            if is_primary_key:
                definition.hash_attribute = column.group(1)
            definition.columns.append(ColumnDefinition(
                name=column.group(1),
                type=column.group(2).upper(),
                is_primary_key=is_primary_key,
            ))

        for column in definition.columns:
            column.is_primary_key = column.name == definition.hash_attribute
        return definition

    def parse_insert_statement(self, sql: str) -> InsertStatement | None:
        """Parse INSERT INTO t (cols) VALUES (...), (...). None if not an insert."""
        match = _INSERT_INTO.search(sql)
        if not match:
            return None

        columns = [c.strip().strip("`") for c in match.group(3).split(",")]
        records = []
        for values_match in _VALUES_GROUP.finditer(match.group(4)):
            values = [_parse_value(v) for v in _split_top_level(values_match.group(1))]
            records.append(dict(zip(columns, values)))
        if not records:
            return None
        return InsertStatement(schema=match.group(1) or self.db.schema, table=match.group(2), records=records)

    async def migrate_from_sql(self, path: str | Path, *, force: bool = False) -> list[dict[str, Any]]:
        """Run the statements of a SQL file. See migrate_from_sql_string."""
        return await self.migrate_from_sql_string(Path(path).read_text(encoding="utf-8"), force=force)

    async def migrate_from_sql_string(self, sql: str, *, force: bool = False) -> list[dict[str, Any]]:
        """
        Run CREATE TABLE and INSERT INTO statements.

        Args:
            sql: SQL script
            force: Drop and recreate tables that already exist

        Returns:
            One result dict per action (schema_created, table_created,
            table_dropped, table_skipped, data_inserted, error)
        """
        results: list[dict[str, Any]] = []
        for statement in split_sql_statements(sql):
            upper = statement.upper()
            if upper.startswith("CREATE TABLE"):
                results.extend(await self._create_table(statement, force))
            elif upper.startswith("INSERT INTO"):
                results.extend(await self._insert(statement))
            else:
                logger.debug(f"Skipping unsupported statement: {statement[:50]}")
        return results

    async def _create_table(self, statement: str, force: bool) -> list[dict[str, Any]]:
        results: list[dict[str, Any]] = []
        try:
            definition = self.parse_create_table(statement)
            if not await self.db.schema_exists(definition.schema):
                await self.db.create_schema(definition.schema)
                results.append({"type": "schema_created", "schema": definition.schema})

            if await self.db.table_exists(definition.table, schema=definition.schema):
                if not force:
                    results.append({
                        "type": "table_skipped",
                        "table": definition.table,
                        "reason": "Table already exists",
                    })
                    return results
                await self.db.drop_table(definition.table, schema=definition.schema)
                results.append({"type": "table_dropped", "table": definition.table})

            await self.db.create_table(definition.table, definition.hash_attribute, schema=definition.schema)
            results.append({
                "type": "table_created",
                "table": definition.table,
                "hash_attribute": definition.hash_attribute,
                "columns": len(definition.columns),
            })

            for column in definition.columns:
                if column.is_primary_key:
                    continue
                try:
                    await self.db.add_attribute(definition.table, column.name, schema=definition.schema)
                except QueryExecutionError as e:
                    logger.debug(f"Attribute {column.name} not added to {definition.table}: {e}")
        except (HarperDBValidationError, QueryExecutionError) as e:
            results.append({"type": "error", "statement": statement[:50], "error": str(e)})
        return results

    async def _insert(self, statement: str) -> list[dict[str, Any]]:
        parsed = self.parse_insert_statement(statement)
        if parsed is None:
            return [{"type": "error", "statement": "INSERT", "error": "Unparseable INSERT statement"}]

        result = await self.db.insert_many(parsed.table, parsed.records, schema=parsed.schema)
        if result.failed:
            first_error = result.errors[0].error if result.errors else "Unknown error"
            return [{"type": "error", "statement": "INSERT", "error": first_error}]
        return [{"type": "data_inserted", "table": parsed.table, "count": result.successful}]

    async def generate_types(
        self,
        table: str,
        schema: str | None = None,
        output_path: str | Path | None = None,
    ) -> dict[str, Any]:
        """
        Generate a TypedDict stub for a table's attributes.

        Args:
            table: Table name
            schema: Schema (default: the client's schema)
            output_path: Where to write the stub; when omitted the text is returned

        Returns:
            {"written": True, "path": ...} or {"written": False, "types": ...}
        """
        schema_name = schema or self.db.schema
        attributes = await self.db.list_attributes(table, schema=schema_name)
        type_name = to_pascal_case(table)

        lines = [
            f"# Auto-generated types for {schema_name}.{table}",
            "",
            "from typing import Any, TypedDict",
            "",
            "",
            f"class {type_name}(TypedDict, total=False):",
        ]
        names = [a for a in attributes.data if isinstance(a, str)] if isinstance(attributes.data, list) else []
        lines.extend(f"    {name}: Any" for name in names)
        if not names:
            lines.append("    pass")
        types = "\n".join(lines) + "\n"

        if output_path is not None:
            Path(output_path).write_text(types, encoding="utf-8")
            return {"written": True, "path": str(output_path)}
        return {"written": False, "types": types}
