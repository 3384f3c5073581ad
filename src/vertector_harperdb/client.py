"""
HarperDB client: data-operation formatters over the request executor.

Each method builds one HarperDB operation body, sends it through the shared
RequestExecutor and reshapes the Response into a QueryResult. Writes
invalidate cached reads of the table they touch; bulk writes go through the
batch controller and invalidate once per job.

Example:
    config = load_config_from_env()
    async with HarperDB(config) as db:
        await db.insert("dogs", {"id": "1", "name": "Harper"})
        result = await db.select("dogs", where={"name": "Harper"})
        print(result.data)
"""

import asyncio
import logging
import math
import re
import time
from dataclasses import dataclass, field
from functools import cmp_to_key
from pathlib import Path
from typing import Any, Awaitable, Callable, Mapping, Sequence

from vertector_harperdb.batch import (
    DEFAULT_BATCH_SIZE,
    BatchResult,
    ParallelItem,
    ParallelResult,
    run_batched,
    run_parallel,
)
from vertector_harperdb.config import HarperDBConfig
from vertector_harperdb.errors import HarperDBValidationError, QueryExecutionError
from vertector_harperdb.executor import QueryOptions, RequestContext, RequestExecutor
from vertector_harperdb.logging_utils import PerformanceLogger
from vertector_harperdb.observability import Tracer
from vertector_harperdb.query_builder import QueryBuilder
from vertector_harperdb.schema import (
    SchemaType,
    load_schema_file,
    parse_graphql_schema,
    seed_record,
)
from vertector_harperdb.transport import Transport

logger = logging.getLogger(__name__)

IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z0-9_]+$")

PARALLEL_OPERATION_TYPES = frozenset({"select", "insert", "update", "upsert", "delete", "sql"})
USER_ROLES = frozenset({"super_user", "cluster_admin", "user", "read_only"})


@dataclass
class QueryResult:
    """Data returned by a formatter plus timing."""

    data: Any
    execution_time_ms: float = 0.0
    records_affected: int | None = None


@dataclass(frozen=True)
class ParallelOperation:
    """
    Descriptor for one operation in HarperDB.parallel().

    `data` holds the record for insert/update/upsert, the hash value for
    delete, and select keyword arguments (where, limit, order_by...) for
    select.
    """

    type: str
    table: str | None = None
    data: Any = None
    sql: str | None = None
    options: QueryOptions | None = None

    @classmethod
    def coerce(cls, value: "ParallelOperation | Mapping[str, Any]") -> "ParallelOperation":
        if isinstance(value, ParallelOperation):
            return value
        return cls(**dict(value))


@dataclass(frozen=True)
class IndexInfo:
    attribute: str
    name: str | None = None
    unique: bool = False


@dataclass
class SchemaApplyResult:
    """What apply_schema created, and per-item failures."""

    schemas_created: list[str] = field(default_factory=list)
    tables_created: list[str] = field(default_factory=list)
    attributes_created: list[str] = field(default_factory=list)
    indexes_created: list[str] = field(default_factory=list)
    errors: list[dict[str, str]] = field(default_factory=list)


def sql_literal(value: Any) -> str:
    """Render a Python value as a SQL literal."""
    if value is None:
        return "NULL"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return repr(value)
    return "'" + str(value).replace("'", "''") + "'"


def _compare_values(a: Any, b: Any) -> int:
    if a is None or b is None:
        return (a is None) - (b is None)
    try:
        return (a > b) - (a < b)
    except TypeError:
        # Mixed types (e.g. int and str) fall back to their text form
        a, b = str(a), str(b)
        return (a > b) - (a < b)


def sort_records(records: list[dict], order_by: str, direction: str = "asc") -> list[dict]:
    """Sort records by one attribute; missing values sort last ascending."""
    return sorted(
        records,
        key=cmp_to_key(lambda x, y: _compare_values(x.get(order_by), y.get(order_by))),
        reverse=direction.lower() == "desc",
    )


def _elapsed_ms(start_time: float) -> float:
    return (time.perf_counter() - start_time) * 1000


def _as_list(data: Any) -> list:
    return data if isinstance(data, list) else []


def _attribute_names(table_description: Any) -> list[str]:
    if not isinstance(table_description, dict):
        return []
    attributes = table_description.get("attributes")
    if isinstance(attributes, list):
        names = []
        for attr in attributes:
            if isinstance(attr, dict):
                name = attr.get("attribute") or attr.get("name")
                if name:
                    names.append(name)
            else:
                names.append(str(attr))
        return names
    if table_description.get("hash_attribute"):
        return [table_description["hash_attribute"]]
    return []


class HarperDB:
    """
    Async HarperDB client.

    The default schema lives in a RequestContext; every method also accepts
    an explicit `schema`. with_schema() returns a view bound to another
    schema that shares the executor, cache and connections.
    """

    def __init__(
        self,
        config: HarperDBConfig,
        *,
        transport: Transport | None = None,
        context: RequestContext | None = None,
        executor: RequestExecutor | None = None,
        tracer: Tracer | None = None,
    ):
        """
        Initialize the client.

        Args:
            config: Client configuration
            transport: Transport override (default: pooled httpx transport)
            context: Default request context (default: config.schema_name)
            executor: Shared executor; the client does not close an executor it did not create
            tracer: Optional OpenTelemetry tracer for per-operation spans
        """
        if config.password is None and config.password_secret_name:
            config.resolve_secrets()

        self.config = config
        self._owns_executor = executor is None
        self._executor = executor or RequestExecutor(config, transport, tracer=tracer)
        self._context = context or RequestContext(config.schema_name)

    # ------------------------------------------------------------------
    # Lifecycle and context
    # ------------------------------------------------------------------

    async def __aenter__(self) -> "HarperDB":
        self._executor.cache.start_sweeper()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Stop background tasks and close connections owned by this client."""
        if self._owns_executor:
            await self._executor.aclose()

    @property
    def executor(self) -> RequestExecutor:
        return self._executor

    @property
    def schema(self) -> str:
        return self._context.schema

    def set_schema(self, schema: str) -> None:
        """Replace the default schema for subsequent calls on this client."""
        self._validate_identifier(schema, "schema")
        self._context = RequestContext(schema)

    def with_schema(self, schema: str) -> "HarperDB":
        """Return a view of this client whose default schema is `schema`."""
        self._validate_identifier(schema, "schema")
        return HarperDB(self.config, executor=self._executor, context=RequestContext(schema))

    def table(self, name: str) -> QueryBuilder:
        """Start a fluent select against a table."""
        return QueryBuilder(self, name)

    @staticmethod
    def _validate_identifier(value: str, field_name: str) -> str:
        if not isinstance(value, str) or not IDENTIFIER_PATTERN.match(value):
            raise HarperDBValidationError(
                "must contain only letters, digits and underscores",
                field=field_name,
                value=value,
            )
        return value

    def _resolve_schema(self, schema: str | None) -> str:
        return self._context.resolve(schema)

    async def _execute(self, operation: str, body: Mapping[str, Any], options: QueryOptions | None = None):
        return await self._executor.execute(operation, body, options)

    async def _simple(self, operation: str, body: Mapping[str, Any], options: QueryOptions | None = None) -> QueryResult:
        start_time = time.perf_counter()
        response = await self._execute(operation, body, options)
        return QueryResult(data=response.data, execution_time_ms=_elapsed_ms(start_time))

    async def _list(self, operation: str, body: Mapping[str, Any], options: QueryOptions | None = None) -> QueryResult:
        start_time = time.perf_counter()
        response = await self._execute(operation, body, options)
        data = response.data or []
        return QueryResult(
            data=data,
            execution_time_ms=_elapsed_ms(start_time),
            records_affected=len(data) if isinstance(data, list) else 0,
        )

    # ------------------------------------------------------------------
    # Single-record writes
    # ------------------------------------------------------------------

    async def _write(
        self,
        operation: str,
        table: str,
        payload: dict[str, Any],
        hash_attribute: str | None,
        schema: str | None,
        options: QueryOptions | None,
    ) -> tuple[Any, float]:
        start_time = time.perf_counter()
        schema_name = self._resolve_schema(schema)
        body = {"schema": schema_name, "table": table, **payload}
        if hash_attribute:
            body["hash_attribute"] = hash_attribute
        response = await self._execute(operation, body, options)
        self._executor.invalidate_table(table, schema_name)
        return response.data, _elapsed_ms(start_time)

    async def insert(
        self,
        table: str,
        record: Mapping[str, Any],
        *,
        hash_attribute: str | None = None,
        schema: str | None = None,
        options: QueryOptions | None = None,
    ) -> QueryResult:
        """Insert one record."""
        data, elapsed = await self._write("insert", table, {"records": [dict(record)]}, hash_attribute, schema, options)
        return QueryResult(data=data, execution_time_ms=elapsed, records_affected=1)

    async def update(
        self,
        table: str,
        record: Mapping[str, Any],
        *,
        hash_attribute: str | None = None,
        schema: str | None = None,
        options: QueryOptions | None = None,
    ) -> QueryResult:
        """Update one record, identified by its hash attribute."""
        data, elapsed = await self._write("update", table, {"records": [dict(record)]}, hash_attribute, schema, options)
        return QueryResult(data=data, execution_time_ms=elapsed, records_affected=1)

    async def upsert(
        self,
        table: str,
        record: Mapping[str, Any],
        *,
        hash_attribute: str | None = None,
        schema: str | None = None,
        options: QueryOptions | None = None,
    ) -> QueryResult:
        """Insert or update one record."""
        data, elapsed = await self._write("upsert", table, {"records": [dict(record)]}, hash_attribute, schema, options)
        return QueryResult(data=data, execution_time_ms=elapsed, records_affected=1)

    async def delete(
        self,
        table: str,
        hash_value: Any,
        *,
        hash_attribute: str | None = None,
        schema: str | None = None,
        options: QueryOptions | None = None,
    ) -> QueryResult:
        """Delete one record by hash value."""
        data, elapsed = await self._write("delete", table, {"hash_values": [hash_value]}, hash_attribute, schema, options)
        return QueryResult(
            data=data or {"deleted_hashes": [hash_value]},
            execution_time_ms=elapsed,
            records_affected=1,
        )

    # ------------------------------------------------------------------
    # Bulk writes
    # ------------------------------------------------------------------

    async def _bulk(
        self,
        operation: str,
        table: str,
        items: Sequence[Any],
        item_field: str,
        *,
        batch_size: int,
        concurrency: int | None,
        hash_attribute: str | None,
        schema: str | None,
        options: QueryOptions | None,
        cancel_event: asyncio.Event | None,
    ) -> BatchResult:
        schema_name = self._resolve_schema(schema)

        async def send_group(group: list[Any]) -> None:
            body = {"schema": schema_name, "table": table, item_field: group}
            if hash_attribute:
                body["hash_attribute"] = hash_attribute
            await self._execute(operation, body, options)

        async with PerformanceLogger(
            f"{operation}_many", logger=logger, table=table, schema=schema_name, items=len(items)
        ):
            result = await run_batched(
                items,
                send_group,
                batch_size=batch_size,
                concurrency=concurrency or self.config.pool.pool_size,
                cancel_event=cancel_event,
            )

        if result.successful:
            self._executor.invalidate_table(table, schema_name)
        self._executor.metrics.record_batch(
            result.successful, result.failed, result.execution_time_ms, batch_type=operation
        )
        return result

    async def insert_many(
        self,
        table: str,
        records: Sequence[Mapping[str, Any]],
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
        concurrency: int | None = None,
        hash_attribute: str | None = None,
        schema: str | None = None,
        options: QueryOptions | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> BatchResult:
        """
        Insert records in groups of batch_size, `concurrency` groups at a time.

        Args:
            table: Target table
            records: Records to insert
            batch_size: Records per request
            concurrency: Groups in flight per wave (default: pool size; 1 is sequential)
            hash_attribute: Forwarded as the operation's hash_attribute
            schema: Schema override
            options: Per-request overrides
            cancel_event: Stops dispatching further waves once set

        Returns:
            BatchResult; failed groups are reported per item, never raised
        """
        return await self._bulk(
            "insert", table, records, "records",
            batch_size=batch_size, concurrency=concurrency, hash_attribute=hash_attribute,
            schema=schema, options=options, cancel_event=cancel_event,
        )

    async def update_many(
        self,
        table: str,
        records: Sequence[Mapping[str, Any]],
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
        concurrency: int | None = None,
        hash_attribute: str | None = None,
        schema: str | None = None,
        options: QueryOptions | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> BatchResult:
        """Update records in batches. See insert_many."""
        return await self._bulk(
            "update", table, records, "records",
            batch_size=batch_size, concurrency=concurrency, hash_attribute=hash_attribute,
            schema=schema, options=options, cancel_event=cancel_event,
        )

    async def upsert_many(
        self,
        table: str,
        records: Sequence[Mapping[str, Any]],
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
        concurrency: int | None = None,
        hash_attribute: str | None = None,
        schema: str | None = None,
        options: QueryOptions | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> BatchResult:
        """Upsert records in batches. See insert_many."""
        return await self._bulk(
            "upsert", table, records, "records",
            batch_size=batch_size, concurrency=concurrency, hash_attribute=hash_attribute,
            schema=schema, options=options, cancel_event=cancel_event,
        )

    async def delete_many(
        self,
        table: str,
        hash_values: Sequence[Any],
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
        concurrency: int | None = None,
        hash_attribute: str | None = None,
        schema: str | None = None,
        options: QueryOptions | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> BatchResult:
        """Delete records by hash value in batches. See insert_many."""
        return await self._bulk(
            "delete", table, hash_values, "hash_values",
            batch_size=batch_size, concurrency=concurrency, hash_attribute=hash_attribute,
            schema=schema, options=options, cancel_event=cancel_event,
        )

    # ------------------------------------------------------------------
    # Conditional writes
    # ------------------------------------------------------------------

    async def update_by_value(
        self,
        table: str,
        search_attribute: str,
        search_value: Any,
        updates: Mapping[str, Any],
        *,
        schema: str | None = None,
        options: QueryOptions | None = None,
    ) -> QueryResult:
        """Update every record whose attribute equals a value, via SQL UPDATE."""
        start_time = time.perf_counter()
        schema_name = self._validate_identifier(self._resolve_schema(schema), "schema")
        self._validate_identifier(table, "table")
        self._validate_identifier(search_attribute, "search_attribute")
        if not updates:
            raise HarperDBValidationError("at least one attribute to update is required", field="updates")

        assignments = ", ".join(
            f"{self._validate_identifier(key, 'updates')} = {sql_literal(value)}"
            for key, value in updates.items()
        )
        statement = (
            f"UPDATE {schema_name}.{table} SET {assignments} "
            f"WHERE {search_attribute} = {sql_literal(search_value)}"
        )
        response = await self._execute("sql", {"sql": statement}, options)
        self._executor.invalidate_table(table, schema_name)
        return QueryResult(data=response.data, execution_time_ms=_elapsed_ms(start_time))

    async def delete_by_value(
        self,
        table: str,
        search_attribute: str,
        search_value: Any,
        *,
        hash_attribute: str = "id",
        schema: str | None = None,
        options: QueryOptions | None = None,
    ) -> QueryResult:
        """Find records by attribute value, then delete them by hash value."""
        start_time = time.perf_counter()
        schema_name = self._resolve_schema(schema)
        found = await self.search_by_value(
            table, search_attribute, search_value,
            get_attributes=[hash_attribute], schema=schema_name, options=options,
        )
        hash_values = [
            record[hash_attribute]
            for record in _as_list(found.data)
            if isinstance(record, dict) and record.get(hash_attribute) is not None
        ]
        if not hash_values:
            return QueryResult(
                data={"deleted_hashes": []},
                execution_time_ms=_elapsed_ms(start_time),
                records_affected=0,
            )

        result = await self.delete_many(table, hash_values, schema=schema_name, options=options)
        return QueryResult(
            data={"deleted_hashes": hash_values},
            execution_time_ms=_elapsed_ms(start_time),
            records_affected=result.successful,
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def build_select_sql(
        self,
        table: str,
        *,
        schema: str | None = None,
        limit: int | None = None,
        offset: int | None = None,
        order_by: str | None = None,
        order_direction: str = "asc",
    ) -> str:
        """Generate SELECT * with optional ORDER BY, LIMIT and OFFSET."""
        schema_name = self._validate_identifier(self._resolve_schema(schema), "schema")
        self._validate_identifier(table, "table")
        statement = f"SELECT * FROM {schema_name}.{table}"
        if order_by:
            self._validate_identifier(order_by, "order_by")
            direction = "DESC" if order_direction.lower() == "desc" else "ASC"
            statement += f" ORDER BY {order_by} {direction}"
        if limit:
            statement += f" LIMIT {int(limit)}"
        if offset:
            statement += f" OFFSET {int(offset)}"
        return statement

    async def select(
        self,
        table: str,
        *,
        where: Mapping[str, Any] | None = None,
        limit: int | None = None,
        offset: int | None = None,
        order_by: str | None = None,
        order_direction: str = "asc",
        sql: str | None = None,
        schema: str | None = None,
        options: QueryOptions | None = None,
    ) -> QueryResult:
        """
        Select records from a table.

        Args:
            table: Table name
            where: Single attribute/value condition (first item is used)
            limit: Maximum records to return
            offset: Records to skip
            order_by: Attribute to sort by
            order_direction: "asc" or "desc"
            sql: Raw SQL to run instead of a generated query
            schema: Schema override
            options: Per-request overrides

        Returns:
            QueryResult whose data is a list of records
        """
        if sql:
            return await self.sql(sql, options=options)

        start_time = time.perf_counter()
        schema_name = self._resolve_schema(schema)

        if where:
            search_attribute, search_value = next(iter(where.items()))
            body = {
                "schema": schema_name,
                "table": table,
                "search_attribute": search_attribute,
                "search_value": search_value,
                "get_attributes": ["*"],
            }
            # Ordering and offset are applied client-side, so the server
            # limit is only safe without them
            if limit and not order_by and not offset:
                body["limit"] = limit
            response = await self._execute("search_by_value", body, options)
            data = list(_as_list(response.data))
            if order_by:
                data = sort_records(data, order_by, order_direction)
            if offset:
                data = data[offset:]
            if limit:
                data = data[:limit]
            return QueryResult(data=data, execution_time_ms=_elapsed_ms(start_time), records_affected=len(data))

        statement = self.build_select_sql(
            table,
            schema=schema_name,
            limit=limit,
            offset=offset,
            order_by=order_by,
            order_direction=order_direction,
        )
        response = await self._execute("sql", {"sql": statement}, options)
        data = response.data or []
        return QueryResult(
            data=data,
            execution_time_ms=_elapsed_ms(start_time),
            records_affected=len(data) if isinstance(data, list) else 0,
        )

    async def sql(self, statement: str, *, options: QueryOptions | None = None) -> QueryResult:
        """Run a SQL statement."""
        return await self._list("sql", {"sql": statement}, options)

    async def query(self, statement: str, *, options: QueryOptions | None = None) -> QueryResult:
        """Alias of sql()."""
        return await self.sql(statement, options=options)

    async def get_by_hash(
        self,
        table: str,
        hash_value: Any,
        *,
        schema: str | None = None,
        options: QueryOptions | None = None,
    ) -> QueryResult:
        """Fetch one record by hash value; data is None when absent."""
        start_time = time.perf_counter()
        response = await self._execute("search_by_hash", {
            "schema": self._resolve_schema(schema),
            "table": table,
            "hash_values": [hash_value],
            "get_attributes": ["*"],
        }, options)
        records = _as_list(response.data)
        record = records[0] if records else None
        return QueryResult(
            data=record,
            execution_time_ms=_elapsed_ms(start_time),
            records_affected=1 if record else 0,
        )

    async def get_by_hashes(
        self,
        table: str,
        hash_values: Sequence[Any],
        *,
        schema: str | None = None,
        options: QueryOptions | None = None,
    ) -> QueryResult:
        """Fetch records by hash values. An empty input makes no request."""
        if not hash_values:
            return QueryResult(data=[], execution_time_ms=0.0, records_affected=0)
        return await self._list("search_by_hash", {
            "schema": self._resolve_schema(schema),
            "table": table,
            "hash_values": list(hash_values),
            "get_attributes": ["*"],
        }, options)

    async def search_by_value(
        self,
        table: str,
        search_attribute: str,
        search_value: Any,
        *,
        get_attributes: Sequence[str] = ("*",),
        schema: str | None = None,
        options: QueryOptions | None = None,
    ) -> QueryResult:
        """Records whose attribute equals (or wildcard-matches) a value."""
        return await self._list("search_by_value", {
            "schema": self._resolve_schema(schema),
            "table": table,
            "search_attribute": search_attribute,
            "search_value": search_value,
            "get_attributes": list(get_attributes),
        }, options)

    async def search(
        self,
        table: str,
        condition: Mapping[str, Any],
        *,
        schema: str | None = None,
        options: QueryOptions | None = None,
    ) -> QueryResult:
        """search_by_value using the first attribute/value of a condition."""
        if not condition:
            raise HarperDBValidationError("condition must name one attribute", field="condition")
        search_attribute, search_value = next(iter(condition.items()))
        return await self.search_by_value(table, search_attribute, search_value, schema=schema, options=options)

    async def find_one(
        self,
        table: str,
        condition: Mapping[str, Any],
        *,
        schema: str | None = None,
        options: QueryOptions | None = None,
    ) -> QueryResult:
        """First record matching a condition, or None."""
        start_time = time.perf_counter()
        result = await self.select(table, where=condition, limit=1, schema=schema, options=options)
        record = result.data[0] if result.data else None
        return QueryResult(
            data=record,
            execution_time_ms=_elapsed_ms(start_time),
            records_affected=1 if record else 0,
        )

    async def find_many(
        self,
        table: str,
        condition: Mapping[str, Any],
        *,
        limit: int | None = None,
        offset: int | None = None,
        order_by: str | None = None,
        order_direction: str = "asc",
        schema: str | None = None,
        options: QueryOptions | None = None,
    ) -> QueryResult:
        return await self.select(
            table, where=condition, limit=limit, offset=offset,
            order_by=order_by, order_direction=order_direction, schema=schema, options=options,
        )

    async def count(
        self,
        table: str,
        condition: Mapping[str, Any] | None = None,
        *,
        schema: str | None = None,
        options: QueryOptions | None = None,
    ) -> QueryResult:
        """
        Count records, optionally matching a condition.

        Without a condition the table's record_count is used; if the table
        cannot be described the records are selected and counted.
        """
        start_time = time.perf_counter()
        schema_name = self._resolve_schema(schema)

        if condition:
            result = await self.search(table, condition, schema=schema_name, options=options)
            return QueryResult(data=len(_as_list(result.data)), execution_time_ms=_elapsed_ms(start_time))

        try:
            description = await self.describe_table(table, schema=schema_name, options=options)
            total = (description.data or {}).get("record_count", 0) if isinstance(description.data, dict) else 0
        except QueryExecutionError as e:
            logger.debug(f"describe_table failed for {schema_name}.{table}, counting by select: {e}")
            result = await self.select(table, schema=schema_name, options=options)
            total = len(_as_list(result.data))
        return QueryResult(data=total or 0, execution_time_ms=_elapsed_ms(start_time))

    async def exists(
        self,
        table: str,
        hash_value: Any,
        *,
        schema: str | None = None,
        options: QueryOptions | None = None,
    ) -> bool:
        """Whether a record with this hash value exists. Failures read as False."""
        try:
            result = await self.get_by_hash(table, hash_value, schema=schema, options=options)
        except QueryExecutionError as e:
            logger.debug(f"exists check failed for {table}/{hash_value}: {e}")
            return False
        return result.data is not None

    async def paginate(
        self,
        table: str,
        *,
        page: int = 1,
        page_size: int = 10,
        where: Mapping[str, Any] | None = None,
        order_by: str | None = None,
        order_direction: str = "asc",
        schema: str | None = None,
        options: QueryOptions | None = None,
    ) -> QueryResult:
        """
        One page of records plus totals.

        Returns:
            QueryResult whose data is {"data", "page", "page_size", "total", "total_pages"}
        """
        if page < 1 or page_size < 1:
            raise HarperDBValidationError("page and page_size must be at least 1", field="page")

        start_time = time.perf_counter()
        total_result = await self.count(table, where, schema=schema, options=options)
        total = total_result.data or 0
        page_result = await self.select(
            table,
            where=where,
            limit=page_size,
            offset=(page - 1) * page_size,
            order_by=order_by,
            order_direction=order_direction,
            schema=schema,
            options=options,
        )
        records = _as_list(page_result.data)
        return QueryResult(
            data={
                "data": records,
                "page": page,
                "page_size": page_size,
                "total": total,
                "total_pages": math.ceil(total / page_size),
            },
            execution_time_ms=_elapsed_ms(start_time),
            records_affected=len(records),
        )

    # ------------------------------------------------------------------
    # Schemas and tables
    # ------------------------------------------------------------------

    async def create_schema(self, schema: str, *, options: QueryOptions | None = None) -> QueryResult:
        return await self._simple("create_schema", {"schema": schema}, options)

    async def drop_schema(self, schema: str, *, options: QueryOptions | None = None) -> QueryResult:
        result = await self._simple("drop_schema", {"schema": schema}, options)
        self._executor.clear_cache()
        return result

    async def list_schemas(self, *, options: QueryOptions | None = None) -> QueryResult:
        """Schema names. describe_all mappings are reduced to their keys."""
        result = await self._simple("list_schemas", {}, options)
        if isinstance(result.data, dict):
            result.data = list(result.data)
        elif result.data is None:
            result.data = []
        return result

    async def schema_exists(self, schema: str, *, options: QueryOptions | None = None) -> bool:
        try:
            result = await self.list_schemas(options=options)
        except QueryExecutionError as e:
            logger.debug(f"schema_exists check failed for {schema}: {e}")
            return False
        return schema in result.data

    async def create_table(
        self,
        table: str,
        hash_attribute: str = "id",
        *,
        schema: str | None = None,
        options: QueryOptions | None = None,
    ) -> QueryResult:
        schema_name = self._resolve_schema(schema)
        result = await self._simple(
            "create_table",
            {"schema": schema_name, "table": table, "hash_attribute": hash_attribute},
            options,
        )
        self._executor.invalidate_table(table, schema_name)
        return result

    async def drop_table(
        self,
        table: str,
        *,
        schema: str | None = None,
        options: QueryOptions | None = None,
    ) -> QueryResult:
        schema_name = self._resolve_schema(schema)
        result = await self._simple("drop_table", {"schema": schema_name, "table": table}, options)
        self._executor.invalidate_table(table, schema_name)
        return result

    async def describe_table(
        self,
        table: str,
        *,
        schema: str | None = None,
        options: QueryOptions | None = None,
    ) -> QueryResult:
        return await self._simple(
            "describe_table",
            {"schema": self._resolve_schema(schema), "table": table},
            options,
        )

    async def get_table_schema(
        self,
        table: str,
        *,
        schema: str | None = None,
        options: QueryOptions | None = None,
    ) -> QueryResult:
        """Alias of describe_table()."""
        return await self.describe_table(table, schema=schema, options=options)

    async def list_tables(self, schema: str | None = None, *, options: QueryOptions | None = None) -> QueryResult:
        return await self._list("list_tables", {"schema": self._resolve_schema(schema)}, options)

    async def table_exists(
        self,
        table: str,
        *,
        schema: str | None = None,
        options: QueryOptions | None = None,
    ) -> bool:
        try:
            await self.describe_table(table, schema=schema, options=options)
        except QueryExecutionError as e:
            logger.debug(f"table_exists check failed for {table}: {e}")
            return False
        return True

    async def list_attributes(
        self,
        table: str,
        *,
        schema: str | None = None,
        options: QueryOptions | None = None,
    ) -> QueryResult:
        """Attribute names of a table, read from describe_table if list_attributes is unsupported."""
        start_time = time.perf_counter()
        schema_name = self._resolve_schema(schema)
        try:
            return await self._list("list_attributes", {"schema": schema_name, "table": table}, options)
        except QueryExecutionError as e:
            logger.debug(f"list_attributes unavailable ({e}); falling back to describe_table")

        description = await self.describe_table(table, schema=schema_name, options=options)
        return QueryResult(data=_attribute_names(description.data), execution_time_ms=_elapsed_ms(start_time))

    async def add_attribute(
        self,
        table: str,
        attribute: str,
        *,
        schema: str | None = None,
        options: QueryOptions | None = None,
    ) -> QueryResult:
        schema_name = self._resolve_schema(schema)
        result = await self._simple(
            "add_attribute",
            {"schema": schema_name, "table": table, "attribute": attribute},
            options,
        )
        self._executor.invalidate_table(table, schema_name)
        return result

    async def drop_attribute(
        self,
        table: str,
        attribute: str,
        *,
        schema: str | None = None,
        options: QueryOptions | None = None,
    ) -> QueryResult:
        schema_name = self._resolve_schema(schema)
        result = await self._simple(
            "drop_attribute",
            {"schema": schema_name, "table": table, "attribute": attribute},
            options,
        )
        self._executor.invalidate_table(table, schema_name)
        return result

    async def list_indexes(
        self,
        table: str,
        *,
        schema: str | None = None,
        options: QueryOptions | None = None,
    ) -> QueryResult:
        """
        Indexed attributes of a table.

        Read from describe_table's `indexes`, else its indexed attributes,
        else SHOW INDEXES. Failures yield an empty list.
        """
        start_time = time.perf_counter()
        schema_name = self._resolve_schema(schema)
        try:
            description = (await self.describe_table(table, schema=schema_name, options=options)).data
        except QueryExecutionError as e:
            logger.debug(f"list_indexes could not describe {schema_name}.{table}: {e}")
            return QueryResult(data=[], execution_time_ms=_elapsed_ms(start_time))

        indexes: list[IndexInfo] = []
        if isinstance(description, dict):
            if isinstance(description.get("indexes"), list):
                indexes = [
                    IndexInfo(
                        attribute=idx.get("attribute") or idx.get("name"),
                        name=idx.get("name"),
                        unique=bool(idx.get("unique", False)),
                    )
                    for idx in description["indexes"]
                    if isinstance(idx, dict)
                ]
            elif isinstance(description.get("attributes"), list):
                hash_attribute = description.get("hash_attribute")
                indexes = [
                    IndexInfo(
                        attribute=attr.get("attribute") or attr.get("name"),
                        name=attr.get("name"),
                        unique=bool(attr.get("unique", False)),
                    )
                    for attr in description["attributes"]
                    if isinstance(attr, dict) and (
                        attr.get("indexed")
                        or (attr.get("hash_attribute") is False and attr.get("attribute") != hash_attribute)
                    )
                ]
            else:
                indexes = await self._show_indexes(table, schema_name, options)

        return QueryResult(data=indexes, execution_time_ms=_elapsed_ms(start_time))

    async def _show_indexes(self, table: str, schema_name: str, options: QueryOptions | None) -> list[IndexInfo]:
        self._validate_identifier(schema_name, "schema")
        self._validate_identifier(table, "table")
        try:
            result = await self.sql(f"SHOW INDEXES FROM `{schema_name}`.`{table}`", options=options)
        except QueryExecutionError as e:
            logger.debug(f"SHOW INDEXES failed for {schema_name}.{table}: {e}")
            return []
        return [
            IndexInfo(
                attribute=row.get("Column_name") or row.get("column_name"),
                name=row.get("Key_name") or row.get("key_name"),
                unique=row.get("Non_unique") == 0 or row.get("non_unique") is False,
            )
            for row in _as_list(result.data)
            if isinstance(row, dict)
        ]

    async def index_exists(
        self,
        table: str,
        attribute: str,
        *,
        schema: str | None = None,
        options: QueryOptions | None = None,
    ) -> bool:
        result = await self.list_indexes(table, schema=schema, options=options)
        return any(idx.attribute == attribute or idx.name == attribute for idx in result.data)

    async def create_index(
        self,
        table: str,
        attribute: str,
        *,
        unique: bool = False,
        index_name: str | None = None,
        schema: str | None = None,
        options: QueryOptions | None = None,
    ) -> QueryResult:
        """Index an attribute; a no-op when the index already exists."""
        start_time = time.perf_counter()
        schema_name = self._resolve_schema(schema)
        if await self.index_exists(table, attribute, schema=schema_name, options=options):
            return QueryResult(
                data={"message": f"Index on attribute '{attribute}' already exists"},
                execution_time_ms=_elapsed_ms(start_time),
            )

        body: dict[str, Any] = {
            "schema": schema_name,
            "table": table,
            "attribute": attribute,
            "hash_attribute": False,
        }
        if unique:
            body["unique"] = True
        if index_name:
            body["name"] = index_name
        response = await self._execute("add_attribute", body, options)
        self._executor.invalidate_table(table, schema_name)
        return QueryResult(data=response.data, execution_time_ms=_elapsed_ms(start_time))

    async def drop_index(
        self,
        table: str,
        attribute: str,
        *,
        schema: str | None = None,
        options: QueryOptions | None = None,
    ) -> QueryResult:
        start_time = time.perf_counter()
        schema_name = self._resolve_schema(schema)
        if not await self.index_exists(table, attribute, schema=schema_name, options=options):
            return QueryResult(
                data={"message": f"Index on attribute '{attribute}' does not exist"},
                execution_time_ms=_elapsed_ms(start_time),
            )
        return await self.drop_attribute(table, attribute, schema=schema_name, options=options)

    async def clear_table(
        self,
        table: str,
        *,
        hash_attribute: str = "id",
        schema: str | None = None,
        options: QueryOptions | None = None,
    ) -> QueryResult:
        """Delete every record of a table."""
        start_time = time.perf_counter()
        schema_name = self._resolve_schema(schema)
        records = await self.select(table, schema=schema_name, options=options)
        hash_values = [
            record[hash_attribute]
            for record in _as_list(records.data)
            if isinstance(record, dict) and record.get(hash_attribute) is not None
        ]
        deleted = 0
        if hash_values:
            result = await self.delete_many(table, hash_values, schema=schema_name, options=options)
            deleted = result.successful
        return QueryResult(
            data={"deleted_count": deleted},
            execution_time_ms=_elapsed_ms(start_time),
            records_affected=deleted,
        )

    async def copy_table(
        self,
        source_table: str,
        target_table: str,
        *,
        source_schema: str | None = None,
        target_schema: str | None = None,
        options: QueryOptions | None = None,
    ) -> QueryResult:
        """Create target_table with the source's hash attribute and copy every record."""
        start_time = time.perf_counter()
        source_schema_name = self._resolve_schema(source_schema)
        target_schema_name = self._resolve_schema(target_schema)

        description = await self.describe_table(source_table, schema=source_schema_name, options=options)
        hash_attribute = "id"
        if isinstance(description.data, dict):
            hash_attribute = description.data.get("hash_attribute") or "id"

        await self.create_table(target_table, hash_attribute, schema=target_schema_name, options=options)
        records = _as_list((await self.select(source_table, schema=source_schema_name, options=options)).data)
        if records:
            await self.insert_many(target_table, records, schema=target_schema_name, options=options)

        return QueryResult(
            data={
                "source_table": source_table,
                "target_table": target_table,
                "records_copied": len(records),
            },
            execution_time_ms=_elapsed_ms(start_time),
            records_affected=len(records),
        )

    async def get_table_stats(
        self,
        table: str,
        *,
        schema: str | None = None,
        options: QueryOptions | None = None,
    ) -> QueryResult:
        """Record count and attribute names, fetched concurrently."""
        start_time = time.perf_counter()
        schema_name = self._resolve_schema(schema)
        count_result, attributes_result = await asyncio.gather(
            self.count(table, schema=schema_name, options=options),
            self.list_attributes(table, schema=schema_name, options=options),
        )
        return QueryResult(
            data={
                "record_count": count_result.data or 0,
                "attributes": _as_list(attributes_result.data),
            },
            execution_time_ms=_elapsed_ms(start_time),
        )

    # ------------------------------------------------------------------
    # Users and system
    # ------------------------------------------------------------------

    async def add_user(
        self,
        username: str,
        password: str,
        role: str = "user",
        active: bool = True,
        *,
        options: QueryOptions | None = None,
    ) -> QueryResult:
        if role not in USER_ROLES:
            raise HarperDBValidationError(f"unknown role, expected one of {sorted(USER_ROLES)}", field="role", value=role)
        return await self._simple(
            "add_user",
            {"username": username, "password": password, "role": role, "active": active},
            options,
        )

    async def alter_user(
        self,
        username: str,
        *,
        password: str | None = None,
        role: str | None = None,
        active: bool | None = None,
        options: QueryOptions | None = None,
    ) -> QueryResult:
        """Change a user's password, role or active flag. Unset fields are left alone."""
        if role is not None and role not in USER_ROLES:
            raise HarperDBValidationError(f"unknown role, expected one of {sorted(USER_ROLES)}", field="role", value=role)
        body: dict[str, Any] = {"username": username}
        if password is not None:
            body["password"] = password
        if role is not None:
            body["role"] = role
        if active is not None:
            body["active"] = active
        return await self._simple("alter_user", body, options)

    async def drop_user(self, username: str, *, options: QueryOptions | None = None) -> QueryResult:
        return await self._simple("drop_user", {"username": username}, options)

    async def list_users(self, *, options: QueryOptions | None = None) -> QueryResult:
        return await self._list("list_users", {}, options)

    async def system_information(self, *, options: QueryOptions | None = None) -> QueryResult:
        return await self._simple("system_information", {}, options)

    async def cluster_status(self, *, options: QueryOptions | None = None) -> QueryResult:
        return await self._simple("cluster_status", {}, options)

    async def node_status(self, *, options: QueryOptions | None = None) -> QueryResult:
        return await self._simple("node_status", {}, options)

    async def read_log(
        self,
        limit: int = 100,
        start: int | None = None,
        *,
        options: QueryOptions | None = None,
    ) -> QueryResult:
        body: dict[str, Any] = {"limit": limit}
        if start is not None:
            body["start"] = start
        return await self._list("read_log", body, options)

    async def health_check(self, *, options: QueryOptions | None = None) -> QueryResult:
        """
        Probe the server with system_information.

        Returns:
            QueryResult whose data is {"status": "healthy" | "unhealthy", "timestamp"}
        """
        start_time = time.perf_counter()
        status = "healthy"
        try:
            await self.system_information(options=options)
        except QueryExecutionError as e:
            logger.warning(f"Health check failed: {e}")
            status = "unhealthy"
        return QueryResult(
            data={"status": status, "timestamp": time.time()},
            execution_time_ms=_elapsed_ms(start_time),
        )

    async def test_connection(self, *, options: QueryOptions | None = None) -> bool:
        result = await self.health_check(options=options)
        return result.data["status"] == "healthy"

    def get_metrics(self) -> dict[str, Any]:
        """Operation, error, cache and batch statistics."""
        return self._executor.metrics.get_stats()

    def get_cache_stats(self) -> dict[str, Any]:
        return self._executor.cache.get_stats()

    def invalidate_table_cache(self, table: str, schema: str | None = None) -> int:
        """Drop cached reads of a table. Returns the number of entries removed."""
        return self._executor.invalidate_table(table, self._resolve_schema(schema))

    def clear_cache(self) -> None:
        self._executor.clear_cache()

    # ------------------------------------------------------------------
    # Concurrency helpers
    # ------------------------------------------------------------------

    def _parallel_call(self, descriptor: ParallelOperation | Mapping[str, Any]) -> Callable[[], Awaitable[Any]]:
        async def call() -> Any:
            try:
                operation = ParallelOperation.coerce(descriptor)
            except (TypeError, ValueError) as e:
                raise HarperDBValidationError(f"Invalid operation descriptor: {e}", field="operation") from e
            kind = operation.type
            if kind not in PARALLEL_OPERATION_TYPES:
                raise HarperDBValidationError(f"Unknown query type: {kind}", field="type", value=kind)
            if kind == "sql":
                if not operation.sql:
                    raise HarperDBValidationError("sql operations need a statement", field="sql")
                result = await self.sql(operation.sql, options=operation.options)
                return result.data
            if not operation.table:
                raise HarperDBValidationError(f"{kind} operations need a table", field="table")
            if kind == "select":
                result = await self.select(operation.table, options=operation.options, **(operation.data or {}))
            elif kind == "delete":
                result = await self.delete(operation.table, operation.data, options=operation.options)
            else:
                write = getattr(self, kind)
                result = await write(operation.table, operation.data, options=operation.options)
            return result.data

        return call

    async def parallel(
        self,
        operations: Sequence[ParallelOperation | Mapping[str, Any]],
        *,
        concurrency: int | None = None,
        fail_fast: bool = False,
    ) -> ParallelResult:
        """
        Run independent operations concurrently.

        Args:
            operations: Descriptors (type select/insert/update/upsert/delete/sql)
            concurrency: Operations in flight (default: pool size)
            fail_fast: Raise the first failure instead of recording it

        Returns:
            ParallelResult; each failed item carries its error message

        Raises:
            The first operation error, when fail_fast is set
        """
        calls = [self._parallel_call(op) for op in operations]
        async with PerformanceLogger("parallel", logger=logger, operations=len(calls)):
            outcome = await run_parallel(
                calls,
                concurrency=concurrency or self.config.pool.pool_size,
                fail_fast=fail_fast,
            )
        return outcome.unwrap()

    async def batch(
        self,
        operations: Sequence[Callable[[], Awaitable[Any]]],
        *,
        concurrency: int | None = None,
        fail_fast: bool = False,
    ) -> list[ParallelItem]:
        """Run arbitrary async callables with bounded concurrency."""
        outcome = await run_parallel(
            operations,
            concurrency=concurrency or self.config.pool.pool_size,
            fail_fast=fail_fast,
        )
        return outcome.unwrap().results

    async def transaction(self, operations: Sequence[Callable[[], Awaitable[Any]]]) -> QueryResult:
        """
        Run callables one after another, stopping at the first failure.

        Nothing is rolled back; the result reports what completed.

        Returns:
            QueryResult whose data is {"success", "results"[, "error"]}
        """
        start_time = time.perf_counter()
        results: list[Any] = []
        for operation in operations:
            try:
                results.append(await operation())
            except Exception as e:
                logger.warning(f"Transaction stopped after {len(results)} operations: {e}")
                return QueryResult(
                    data={"success": False, "results": results, "error": str(e) or "Unknown error"},
                    execution_time_ms=_elapsed_ms(start_time),
                )
        return QueryResult(data={"success": True, "results": results}, execution_time_ms=_elapsed_ms(start_time))

    # ------------------------------------------------------------------
    # Schema definitions
    # ------------------------------------------------------------------

    async def _ensure_schema(self, schema_name: str, options: QueryOptions | None) -> bool:
        """Create a schema if missing. Returns True when it was created."""
        if await self.schema_exists(schema_name, options=options):
            return False
        try:
            await self.create_schema(schema_name, options=options)
        except QueryExecutionError as e:
            if "already exists" not in str(e):
                raise
            return False
        return True

    async def _seed_table(self, schema_type: SchemaType, options: QueryOptions | None) -> bool:
        if not schema_type.fields:
            return False
        record = seed_record(schema_type)
        try:
            await self.insert(
                schema_type.name, record,
                hash_attribute=schema_type.hash_attribute, schema=schema_type.schema, options=options,
            )
        except QueryExecutionError as e:
            logger.warning(f"Could not seed attributes for {schema_type.qualified_name}: {e}")
            return False
        try:
            await self.delete(
                schema_type.name, record[schema_type.hash_attribute],
                schema=schema_type.schema, options=options,
            )
        except QueryExecutionError as e:
            logger.warning(f"Seed record left in {schema_type.qualified_name}: {e}")
        return True

    async def apply_schema(
        self,
        definition: str | Sequence[SchemaType],
        *,
        force: bool = False,
        skip_existing: bool = False,
        options: QueryOptions | None = None,
    ) -> QueryResult:
        """
        Create the schemas, tables, attributes and indexes an SDL definition describes.

        Args:
            definition: SDL text or already-parsed types
            force: Drop and recreate tables that exist
            skip_existing: Leave existing tables (and their indexes) untouched
            options: Per-request overrides

        Returns:
            QueryResult whose data is a SchemaApplyResult; per-type failures
            are recorded in its errors
        """
        start_time = time.perf_counter()
        types = parse_graphql_schema(definition) if isinstance(definition, str) else list(definition)
        outcome = SchemaApplyResult()
        ensured_schemas: set[str] = set()

        for schema_type in types:
            try:
                if schema_type.schema not in ensured_schemas:
                    if await self._ensure_schema(schema_type.schema, options):
                        outcome.schemas_created.append(schema_type.schema)
                    ensured_schemas.add(schema_type.schema)

                exists = await self.table_exists(schema_type.name, schema=schema_type.schema, options=options)
                if exists and skip_existing and not force:
                    logger.debug(f"Skipping existing table {schema_type.qualified_name}")
                    continue
                if exists and force:
                    await self.drop_table(schema_type.name, schema=schema_type.schema, options=options)

                if not exists or force:
                    await self.create_table(
                        schema_type.name, schema_type.hash_attribute,
                        schema=schema_type.schema, options=options,
                    )
                    outcome.tables_created.append(schema_type.qualified_name)
                    if await self._seed_table(schema_type, options):
                        outcome.attributes_created.extend(
                            f"{schema_type.qualified_name}.{f.name}" for f in schema_type.fields
                        )
            except QueryExecutionError as e:
                outcome.errors.append({"type": "table", "name": schema_type.qualified_name, "error": str(e)})
                continue

            for schema_field in schema_type.indexed_fields():
                index_name = f"{schema_type.qualified_name}.{schema_field.name}"
                try:
                    result = await self.create_index(
                        schema_type.name, schema_field.name, schema=schema_type.schema, options=options,
                    )
                except QueryExecutionError as e:
                    outcome.errors.append({"type": "index", "name": index_name, "error": str(e)})
                    continue
                message = result.data.get("message", "") if isinstance(result.data, dict) else ""
                if "already exists" not in message:
                    outcome.indexes_created.append(index_name)

        logger.info(
            f"Applied schema: {len(outcome.tables_created)} tables, "
            f"{len(outcome.indexes_created)} indexes, {len(outcome.errors)} errors"
        )
        return QueryResult(data=outcome, execution_time_ms=_elapsed_ms(start_time))

    async def apply_schema_from_file(
        self,
        path: str | Path,
        *,
        force: bool = False,
        skip_existing: bool = False,
        options: QueryOptions | None = None,
    ) -> QueryResult:
        """
        Validate, parse and apply a .graphql/.gql schema file.

        Raises:
            SchemaFileError: If the file is missing or invalid
        """
        types = load_schema_file(path)
        return await self.apply_schema(types, force=force, skip_existing=skip_existing, options=options)
