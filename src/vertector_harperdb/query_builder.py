"""Fluent select builder: db.table("dogs").where({"breed": "lab"}).limit(10).execute()."""

from typing import TYPE_CHECKING, Any, Mapping

if TYPE_CHECKING:
    from vertector_harperdb.client import HarperDB, QueryResult
    from vertector_harperdb.executor import QueryOptions


class QueryBuilder:
    """Accumulates select arguments for one table; execute() runs HarperDB.select."""

    def __init__(self, db: "HarperDB", table: str):
        self._db = db
        self._table = table
        self._where: Mapping[str, Any] | None = None
        self._limit: int | None = None
        self._offset: int | None = None
        self._order_by: str | None = None
        self._order_direction = "asc"
        self._schema: str | None = None
        self._options: "QueryOptions | None" = None

    def where(self, condition: Mapping[str, Any]) -> "QueryBuilder":
        self._where = dict(condition)
        return self

    def limit(self, count: int) -> "QueryBuilder":
        if count < 0:
            raise ValueError("limit cannot be negative")
        self._limit = count
        return self

    def offset(self, count: int) -> "QueryBuilder":
        if count < 0:
            raise ValueError("offset cannot be negative")
        self._offset = count
        return self

    def order_by(self, field: str, direction: str = "asc") -> "QueryBuilder":
        if direction.lower() not in ("asc", "desc"):
            raise ValueError(f"order direction must be 'asc' or 'desc', got {direction!r}")
        self._order_by = field
        self._order_direction = direction.lower()
        return self

    def in_schema(self, schema: str) -> "QueryBuilder":
        self._schema = schema
        return self

    def with_options(self, options: "QueryOptions") -> "QueryBuilder":
        self._options = options
        return self

    def to_select_kwargs(self) -> dict[str, Any]:
        """Arguments that execute() passes to HarperDB.select."""
        return {
            "where": self._where,
            "limit": self._limit,
            "offset": self._offset,
            "order_by": self._order_by,
            "order_direction": self._order_direction,
            "schema": self._schema,
            "options": self._options,
        }

    async def execute(self) -> "QueryResult":
        return await self._db.select(self._table, **self.to_select_kwargs())
