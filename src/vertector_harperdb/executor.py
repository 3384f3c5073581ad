"""
Request executor: the single path every HarperDB operation goes through.

execute() answers one logical operation by consulting the response cache,
sending through the retry policy over the transport, normalizing the
payload into a Response envelope and storing eligible reads.
"""

import copy
import logging
import time
from dataclasses import dataclass, field, replace
from typing import Any, Mapping

from vertector_harperdb.cache import QueryCache
from vertector_harperdb.config import HarperDBConfig
from vertector_harperdb.errors import QueryExecutionError, TransportError
from vertector_harperdb.logging_utils import new_request_id, operation_var, request_id_var, schema_var
from vertector_harperdb.observability import EnhancedMetrics, Tracer
from vertector_harperdb.retry import RetryPolicy
from vertector_harperdb.transport import HttpTransport, Transport

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class QueryOptions:
    """Per-call overrides of the configured defaults."""

    timeout: float | None = None
    use_cache: bool | None = None
    cache_ttl: float | None = None


@dataclass(frozen=True)
class RequestContext:
    """
    Values scoped to one call rather than to the client instance.

    Threading the schema through each call lets concurrent operations target
    different schemas without mutating shared state.
    """

    schema: str

    def resolve(self, schema: str | None) -> str:
        return schema or self.schema


@dataclass(frozen=True)
class ResponseMetadata:
    execution_time_ms: float = 0.0
    cached: bool = False


@dataclass(frozen=True)
class Response:
    """Normalized envelope returned for every executed operation."""

    message: str
    data: Any
    metadata: ResponseMetadata = field(default_factory=ResponseMetadata)


def normalize_payload(payload: Any) -> tuple[str, Any]:
    """
    Split a raw server payload into (message, data).

    Lists are the data; mappings with a `data` field are unwrapped; anything
    else passes through unchanged.
    """
    if isinstance(payload, list):
        return "Success", payload
    if isinstance(payload, dict):
        message = payload.get("message") or "Success"
        data = payload["data"] if "data" in payload else payload
        return str(message), data
    return "Success", payload


def failure_detail(error: BaseException) -> str:
    """Most specific message available for a failed request."""
    if isinstance(error, TransportError):
        server_message = error.server_message
        if server_message:
            return server_message
        if error.message:
            return error.message
    message = str(error)
    return message or "Unknown error"


class RequestExecutor:
    """
    Executes operations against the HarperDB operations endpoint.

    Combines the response cache, the retry policy and the transport. Cache
    invalidation after writes is left to the caller (see invalidate_table).

    Example:
        executor = RequestExecutor(config)
        response = await executor.execute("sql", {"sql": "SELECT * FROM dev.dog"})
        print(response.data, response.metadata.cached)
    """

    def __init__(
        self,
        config: HarperDBConfig,
        transport: Transport | None = None,
        *,
        cache: QueryCache | None = None,
        retry: RetryPolicy | None = None,
        metrics: EnhancedMetrics | None = None,
        tracer: Tracer | None = None,
    ):
        """
        Initialize executor.

        Args:
            config: Client configuration
            transport: Transport to send through (default: HttpTransport)
            cache: Response cache (default: built from config.cache)
            retry: Retry policy (default: built from config.retry)
            metrics: Metrics sink (default: new EnhancedMetrics)
            tracer: Optional OpenTelemetry tracer
        """
        self.config = config
        self.transport = transport or HttpTransport(config)
        self.cache = cache or QueryCache.from_config(config.cache)
        self.metrics = metrics or EnhancedMetrics()
        self.retry = retry or RetryPolicy.from_config(config.retry)
        self.tracer = tracer

    def _record_retry(self, _retry_state) -> None:
        self.metrics.record_retry()

    def _use_cache(self, options: QueryOptions | None) -> bool:
        if options is not None and options.use_cache is not None:
            return options.use_cache
        return self.config.cache.enabled

    def _ensure_sweeper(self) -> None:
        if self.cache.enabled and not self.cache.sweeper_running:
            self.cache.start_sweeper()

    async def execute(
        self,
        operation: str,
        body: Mapping[str, Any] | None = None,
        options: QueryOptions | None = None,
    ) -> Response:
        """
        Execute one logical operation.

        Args:
            operation: Operation name (e.g. "insert", "search_by_value")
            body: Operation body, without the operation field
            options: Per-call timeout/cache overrides

        Returns:
            Response envelope; metadata.cached is True when served from cache

        Raises:
            QueryExecutionError: When the request fails after retries
        """
        body = dict(body or {})
        start_time = time.perf_counter()
        token = operation_var.set(operation)
        schema_token = schema_var.set(str(body.get("schema") or ""))
        # Retries of this call share the id; nested calls keep the outer one
        request_token = request_id_var.set(request_id_var.get() or new_request_id())

        try:
            use_cache = self._use_cache(options)
            cache_key = self.cache.compute_fingerprint(operation, body) if use_cache else ""

            if cache_key:
                self._ensure_sweeper()
                entry = self.cache.get(cache_key)
                if entry is not None:
                    self.metrics.record_cache_hit()
                    logger.debug(f"Cache hit for {operation}")
                    # Callers own their data; the cached copy stays untouched
                    return replace(
                        entry.payload,
                        data=copy.deepcopy(entry.payload.data),
                        metadata=replace(entry.payload.metadata, cached=True),
                    )
                self.metrics.record_cache_miss()

            timeout = options.timeout if options is not None and options.timeout else self.config.timeout
            request_body = {"operation": operation, **body}

            try:
                if self.tracer is not None:
                    async with self.tracer.span(
                        f"harperdb.{operation}",
                        {
                            "harperdb.operation": operation,
                            "harperdb.schema": body.get("schema"),
                            "harperdb.table": body.get("table"),
                            "harperdb.request_id": request_id_var.get(),
                        },
                    ):
                        raw = await self.retry.call(
                            self.transport.send, "POST", self.config.endpoint, request_body, timeout,
                            on_retry=self._record_retry,
                        )
                else:
                    raw = await self.retry.call(
                        self.transport.send, "POST", self.config.endpoint, request_body, timeout,
                        on_retry=self._record_retry,
                    )
            except Exception as e:
                latency_ms = (time.perf_counter() - start_time) * 1000
                self.metrics.record_query(operation, latency_ms, success=False, error_type=type(e).__name__)
                detail = failure_detail(e)
                logger.error(
                    f"Operation {operation} failed: {detail}",
                    extra={"latency_ms": round(latency_ms, 2), "status": getattr(e, "status", None)}
                )
                raise QueryExecutionError(detail, operation=operation, original_error=e) from e

            execution_time_ms = (time.perf_counter() - start_time) * 1000
            self.metrics.record_query(operation, execution_time_ms, success=True)

            message, data = normalize_payload(raw.body)
            response = Response(
                message=message,
                data=data,
                metadata=ResponseMetadata(execution_time_ms=execution_time_ms, cached=False),
            )

            if cache_key:
                ttl = options.cache_ttl if options is not None and options.cache_ttl else None
                self.cache.put(cache_key, replace(response, data=copy.deepcopy(data)), ttl)

            return response
        finally:
            operation_var.reset(token)
            schema_var.reset(schema_token)
            request_id_var.reset(request_token)

    def invalidate_table(self, table: str, schema: str | None = None) -> int:
        """Drop cached reads of a table (schema None: the configured default)."""
        return self.cache.invalidate(table, schema or self.config.schema_name)

    def clear_cache(self) -> None:
        self.cache.clear()

    async def aclose(self) -> None:
        """Stop the cache sweeper and release transport connections."""
        await self.cache.stop_sweeper()
        await self.transport.aclose()
