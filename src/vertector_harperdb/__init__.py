"""
Vertector HarperDB - async HarperDB client with response caching and retries.

This package provides an async client for the HarperDB operations API with a
TTL response cache, linear-backoff retries on transient failures and bounded
batch/parallel execution.
"""

from vertector_harperdb.client import (
    HarperDB,
    QueryResult,
    ParallelOperation,
    IndexInfo,
    SchemaApplyResult,
)

from vertector_harperdb.executor import (
    RequestExecutor,
    RequestContext,
    QueryOptions,
    Response,
    ResponseMetadata,
)

from vertector_harperdb.cache import QueryCache, CacheEntry, compute_fingerprint

from vertector_harperdb.retry import RetryPolicy, is_transient

from vertector_harperdb.transport import HttpTransport, Transport, TransportResponse

from vertector_harperdb.batch import (
    BatchResult,
    BatchItemError,
    BatchState,
    ParallelItem,
    ParallelResult,
    Settled,
    Aborted,
    run_batched,
    run_parallel,
)

from vertector_harperdb.errors import (
    HarperDBError,
    TransportError,
    TransientTransportError,
    PermanentTransportError,
    QueryExecutionError,
    HarperDBValidationError,
    SchemaFileError,
)

from vertector_harperdb.config import (
    HarperDBConfig,
    RetryConfig,
    CacheConfig,
    PoolConfig,
    SecretsManager,
    SecretsProvider,
    load_config_from_env,
)

from vertector_harperdb.observability import Tracer, EnhancedMetrics

from vertector_harperdb.query_builder import QueryBuilder
from vertector_harperdb.schema import SchemaType, SchemaField, parse_graphql_schema
from vertector_harperdb.migration import Migration

__version__ = "1.0.0"

__all__ = [
    # Client
    "HarperDB",
    "QueryResult",
    "ParallelOperation",
    "IndexInfo",
    "SchemaApplyResult",
    "QueryBuilder",
    "Migration",
    # Execution
    "RequestExecutor",
    "RequestContext",
    "QueryOptions",
    "Response",
    "ResponseMetadata",
    "QueryCache",
    "CacheEntry",
    "compute_fingerprint",
    "RetryPolicy",
    "is_transient",
    "HttpTransport",
    "Transport",
    "TransportResponse",
    # Batch
    "BatchResult",
    "BatchItemError",
    "BatchState",
    "ParallelItem",
    "ParallelResult",
    "Settled",
    "Aborted",
    "run_batched",
    "run_parallel",
    # Errors
    "HarperDBError",
    "TransportError",
    "TransientTransportError",
    "PermanentTransportError",
    "QueryExecutionError",
    "HarperDBValidationError",
    "SchemaFileError",
    # Configuration
    "HarperDBConfig",
    "RetryConfig",
    "CacheConfig",
    "PoolConfig",
    "SecretsManager",
    "SecretsProvider",
    "load_config_from_env",
    # Observability
    "Tracer",
    "EnhancedMetrics",
    # Schema definitions
    "SchemaType",
    "SchemaField",
    "parse_graphql_schema",
]
