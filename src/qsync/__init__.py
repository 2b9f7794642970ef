"""qsync - Server-state synchronization for async Python clients."""

# Client context
from qsync.client import QueryClient, create_query_client

# Configuration
from qsync.config import QueryDefaults

# Duration parsing
from qsync.duration import parse_duration

# Errors
from qsync.errors import (
    HttpError,
    NetworkError,
    QsyncError,
    QueryRemovedError,
    ValidationError,
)

# Invalidation API
from qsync.invalidation import (
    InvalidationRouter,
    InvalidationTarget,
    exact,
    matching,
    prefix,
)

# Keys
from qsync.keys import QueryKey, is_key_prefix, key_to_request, serialize_key

# Mutations
from qsync.mutation import MutationInvocation, MutationRunner

# Polling
from qsync.polling import PollingScheduler

# QueryCache API
from qsync.query_cache import QueryCache, Subscription

# Transport
from qsync.transport import HttpExecutor

# Core types
from qsync.types import (
    Duration,
    MutationResult,
    MutationStatus,
    QueryOptions,
    QueryState,
    QueryStatus,
)

__version__ = "0.1.0"

__all__ = [
    "Duration",
    "HttpError",
    "HttpExecutor",
    "InvalidationRouter",
    "InvalidationTarget",
    "MutationInvocation",
    "MutationResult",
    "MutationRunner",
    "MutationStatus",
    "NetworkError",
    "PollingScheduler",
    "QsyncError",
    "QueryCache",
    "QueryClient",
    "QueryDefaults",
    "QueryKey",
    "QueryOptions",
    "QueryRemovedError",
    "QueryState",
    "QueryStatus",
    "Subscription",
    "ValidationError",
    "create_query_client",
    "exact",
    "is_key_prefix",
    "key_to_request",
    "matching",
    "parse_duration",
    "prefix",
    "serialize_key",
]
