"""Core types for the qsync server-state cache."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Generic, TypeVar

if TYPE_CHECKING:
    from qsync.keys import QueryKey

T = TypeVar("T")

# Duration type alias
Duration = str | int  # "30s", "5m", "2h", "1d" or milliseconds

QueryFn = Callable[["QueryKey"], Awaitable[Any]]


class QueryStatus(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    SUCCESS = "success"
    ERROR = "error"


class MutationStatus(str, Enum):
    IDLE = "idle"
    PENDING = "pending"
    SUCCESS = "success"
    ERROR = "error"


@dataclass(frozen=True, slots=True)
class QueryState(Generic[T]):
    """Snapshot of one cache entry, as handed to subscribers."""

    key: QueryKey
    status: QueryStatus
    data: T | None = None
    error: BaseException | None = None
    last_fetched_at: int | None = None  # Unix timestamp ms
    subscriber_count: int = 0
    is_fetching: bool = False
    is_invalidated: bool = False
    failure_count: int = 0

    @property
    def is_loading(self) -> bool:
        return self.status is QueryStatus.LOADING

    @property
    def is_success(self) -> bool:
        return self.status is QueryStatus.SUCCESS

    @property
    def is_error(self) -> bool:
        return self.status is QueryStatus.ERROR

    @property
    def has_data(self) -> bool:
        return self.last_fetched_at is not None


@dataclass(frozen=True, slots=True)
class QueryOptions:
    """Per-subscription options; None falls back to the client defaults."""

    fn: QueryFn | None = None
    stale_time: Duration | None = None
    retry: int | None = None
    refetch_interval: Duration | None = None


@dataclass(frozen=True, slots=True)
class MutationResult(Generic[T]):
    """Result of a mutation with keys to invalidate, decided by the mutation."""

    result: T
    invalidates: list[Any] = field(default_factory=list)
