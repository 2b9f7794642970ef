"""QueryCache - keyed server-state cache with subscriptions.

Provides:
- subscribe()/unsubscribe(): consumer registration with stale-while-revalidate
- invalidate(): mark entries stale and refetch the ones in use
- fetch_query(): awaitable read with request de-duplication
- get_query_data()/set_query_data(): raw escape hatches
- Subscription: scoped handle released on every exit path

All methods except the awaitables are synchronous and must be called from
inside the running event loop. Fetches run as tasks; each is tagged with a
per-key sequence number and only the latest-issued one may write the entry.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import replace
from functools import partial
from types import TracebackType
from typing import Any, Union

from qsync.config import QueryDefaults
from qsync.duration import parse_duration, parse_optional_duration, to_seconds
from qsync.errors import QueryRemovedError
from qsync.keys import KeyLike, QueryKey, matches_key
from qsync.polling import PollingScheduler
from qsync.types import Duration, QueryFn, QueryOptions, QueryState, QueryStatus

logger = logging.getLogger(__name__)

Listener = Callable[[QueryState[Any]], None]
Predicate = Callable[[QueryState[Any]], bool]
KeyFilter = Union[KeyLike, Predicate, None]


def _now_ms() -> int:
    return int(time.time() * 1000)


class _Entry:
    """Mutable cache slot; consumers only ever see QueryState snapshots."""

    __slots__ = (
        "data",
        "error",
        "failure_count",
        "fn",
        "gc_handle",
        "invalidated_seq",
        "is_invalidated",
        "key",
        "last_fetched_at",
        "retry",
        "seq",
        "status",
        "subscriptions",
        "task",
    )

    def __init__(self, key: QueryKey, fn: QueryFn | None, retry: int) -> None:
        self.key = key
        self.fn = fn
        self.retry = retry
        self.data: Any = None
        self.error: BaseException | None = None
        self.status = QueryStatus.IDLE
        self.last_fetched_at: int | None = None
        self.failure_count = 0
        self.is_invalidated = False
        self.invalidated_seq = 0
        self.seq = 0
        self.task: asyncio.Task[None] | None = None
        self.subscriptions: list[Subscription] = []
        self.gc_handle: asyncio.TimerHandle | None = None

    @property
    def is_fetching(self) -> bool:
        return self.task is not None and not self.task.done()

    @property
    def fetch_predates_invalidation(self) -> bool:
        """True while the latest-issued fetch started before the last invalidate()."""
        return self.is_invalidated and self.seq <= self.invalidated_seq


class Subscription:
    """One consumer's hold on a cache entry.

    Usage:
        async with cache.subscribe(["/api/templates"]) as sub:
            state = await sub.wait()
            render(state.data)
    """

    __slots__ = ("_cache", "_closed", "_key", "_listener", "_refetch_interval_ms")

    def __init__(
        self,
        cache: QueryCache,
        key: QueryKey,
        *,
        refetch_interval_ms: int | None,
        listener: Listener | None,
    ) -> None:
        self._cache = cache
        self._key = key
        self._refetch_interval_ms = refetch_interval_ms
        self._listener = listener
        self._closed = False

    @property
    def key(self) -> QueryKey:
        return self._key

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def state(self) -> QueryState[Any]:
        """Current snapshot of the entry (idle if it has been removed)."""
        state = self._cache.get_state(self._key)
        if state is None:
            return QueryState(key=self._key, status=QueryStatus.IDLE)
        return state

    @property
    def data(self) -> Any:
        return self.state.data

    @property
    def error(self) -> BaseException | None:
        return self.state.error

    @property
    def status(self) -> QueryStatus:
        return self.state.status

    async def wait(self) -> QueryState[Any]:
        """Wait until the entry's current fetch has settled."""
        await self._cache.wait_settled(self._key)
        return self.state

    def close(self) -> None:
        """Release the subscription. Safe to call more than once."""
        self._cache.unsubscribe(self)

    def __enter__(self) -> Subscription:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()

    async def __aenter__(self) -> Subscription:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"Subscription({self._key!r}, closed={self._closed})"


class QueryCache:
    """In-memory cache mapping QueryKeys to server state.

    Usage:
        cache = QueryCache(default_fn=executor.query_fn())
        sub = cache.subscribe(["/api/templates", {"category": "welcome"}])
        state = await sub.wait()
        cache.invalidate(["/api/templates"])  # prefix match, refetches sub
        sub.close()
    """

    def __init__(
        self,
        *,
        defaults: QueryDefaults | None = None,
        default_fn: QueryFn | None = None,
        scheduler: PollingScheduler | None = None,
    ) -> None:
        self._defaults = defaults or QueryDefaults()
        self._default_fn = default_fn
        self._scheduler = scheduler or PollingScheduler(
            jitter=self._defaults.polling_jitter
        )
        self._entries: dict[str, _Entry] = {}
        self._background_tasks: set[asyncio.Task[None]] = set()

    @property
    def defaults(self) -> QueryDefaults:
        return self._defaults

    @property
    def scheduler(self) -> PollingScheduler:
        return self._scheduler

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        if not isinstance(key, (QueryKey, str, list, tuple)):
            return False
        return QueryKey.of(key).hash in self._entries

    # -------------------------------------------------------------------------
    # Subscriptions
    # -------------------------------------------------------------------------

    def subscribe(
        self,
        key: KeyLike,
        options: QueryOptions | None = None,
        *,
        fn: QueryFn | None = None,
        stale_time: Duration | None = None,
        retry: int | None = None,
        refetch_interval: Duration | None = None,
        listener: Listener | None = None,
    ) -> Subscription:
        """Register a consumer of key.

        Creates the entry and fetches on first use. An existing entry that
        is stale (older than stale_time, invalidated or failed) is refetched
        in the background while its cached data stays readable. A fetch
        already in flight is shared, never duplicated.
        """
        opts = self._resolve_options(
            options,
            fn=fn,
            stale_time=stale_time,
            retry=retry,
            refetch_interval=refetch_interval,
        )
        query_key = QueryKey.of(key)
        entry = self._ensure_entry(query_key, opts.fn, opts.retry)

        stale_ms = (
            parse_duration(opts.stale_time)
            if opts.stale_time is not None
            else self._defaults.stale_time_ms
        )
        interval_ms = (
            parse_optional_duration(opts.refetch_interval)
            if opts.refetch_interval is not None
            else self._defaults.refetch_interval_ms
        )
        stale = self._is_stale(entry, stale_ms)
        if stale:
            self._require_fn(entry)

        subscription = Subscription(
            self,
            query_key,
            refetch_interval_ms=interval_ms or None,
            listener=listener,
        )
        entry.subscriptions.append(subscription)
        self._cancel_gc(entry)

        if stale:
            self._fetch(entry)
        self._update_polling(entry)
        return subscription

    def unsubscribe(self, target: Subscription | KeyLike) -> bool:
        """Release a subscription (or the oldest open one on a key).

        At zero subscribers polling stops and the entry becomes eligible
        for eviction after gc_time. The in-flight request, if any, is left
        running.
        """
        if isinstance(target, Subscription):
            subscription = target
            entry = self._entries.get(subscription.key.hash)
        else:
            entry = self._entries.get(QueryKey.of(target).hash)
            if entry is None or not entry.subscriptions:
                return False
            subscription = entry.subscriptions[0]

        if subscription._closed:
            return False
        subscription._closed = True
        if entry is None or subscription not in entry.subscriptions:
            return False

        entry.subscriptions.remove(subscription)
        self._update_polling(entry)
        if not entry.subscriptions:
            self._schedule_gc(entry)
        self._notify(entry)
        return True

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def fetch_query(
        self,
        key: KeyLike,
        fn: QueryFn | None = None,
        *,
        stale_time: Duration | None = None,
        retry: int | None = None,
    ) -> Any:
        """Return fresh cached data, or fetch it and raise on failure.

        Raises QueryRemovedError if the entry is removed before it settles.
        """
        query_key = QueryKey.of(key)
        entry = self._ensure_entry(query_key, fn, retry)
        stale_ms = (
            parse_duration(stale_time)
            if stale_time is not None
            else self._defaults.stale_time_ms
        )
        if self._is_stale(entry, stale_ms):
            self._require_fn(entry)
            self._fetch(entry)
        await self._wait_entry(entry)

        if self._entries.get(query_key.hash) is not entry:
            raise QueryRemovedError(query_key)
        if entry.status is QueryStatus.ERROR and entry.error is not None:
            raise entry.error
        return entry.data

    async def wait_settled(self, key: KeyLike) -> QueryState[Any] | None:
        """Wait for the current fetch of key, following any supersedes.

        Returns None if the entry does not exist or was removed meanwhile.
        """
        query_key = QueryKey.of(key)
        entry = self._entries.get(query_key.hash)
        if entry is None:
            return None
        await self._wait_entry(entry)
        if self._entries.get(query_key.hash) is not entry:
            return None
        return self._snapshot(entry)

    def get_state(self, key: KeyLike) -> QueryState[Any] | None:
        entry = self._entries.get(QueryKey.of(key).hash)
        if entry is None:
            return None
        return self._snapshot(entry)

    def get_query_data(self, key: KeyLike) -> Any | None:
        """Raw get - cached data regardless of staleness."""
        entry = self._entries.get(QueryKey.of(key).hash)
        if entry is None:
            return None
        return entry.data

    def find_all(self, target: KeyFilter = None, *, exact: bool = False) -> list[QueryState[Any]]:
        return [self._snapshot(e) for e in self._match(target, exact)]

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def set_query_data(self, key: KeyLike, value: Any) -> Any:
        """Raw set - write data as if a fetch had just succeeded.

        value may be a callable receiving the previous data. Does not fence
        an in-flight fetch: its response still lands afterwards.
        """
        query_key = QueryKey.of(key)
        entry = self._ensure_entry(query_key, None, None)
        data = value(entry.data) if callable(value) else value
        entry.data = data
        entry.error = None
        entry.status = QueryStatus.SUCCESS
        entry.last_fetched_at = _now_ms()
        entry.is_invalidated = False
        entry.failure_count = 0
        if not entry.subscriptions:
            self._schedule_gc(entry)
        self._notify(entry)
        return data

    def invalidate(
        self,
        target: KeyFilter = None,
        *,
        exact: bool = False,
        refetch: bool = True,
    ) -> list[QueryKey]:
        """Mark matching entries stale; refetch those with subscribers.

        By default (exact=False), a key invalidates every key it prefixes,
        with object segments matched partially: ["/api/templates"] matches
        ["/api/templates", {"category": "welcome"}]. A callable target is a
        predicate over each entry's QueryState. None matches everything.
        """
        matched = self._match(target, exact)
        for entry in matched:
            entry.is_invalidated = True
            entry.invalidated_seq = entry.seq
            # A fetch already in flight was issued before the write; never let it land as fresh
            if refetch and (entry.subscriptions or entry.is_fetching):
                self._fetch(entry, supersede=True)
            else:
                self._notify(entry)
        logger.debug("Invalidated %d entries for %r", len(matched), target)
        return [entry.key for entry in matched]

    def refetch(self, target: KeyFilter = None, *, exact: bool = False) -> list[QueryKey]:
        """Refetch matching entries now, superseding fetches in flight."""
        matched = self._match(target, exact)
        for entry in matched:
            self._fetch(entry, supersede=True)
        return [entry.key for entry in matched]

    def remove_queries(self, target: KeyFilter = None, *, exact: bool = False) -> list[QueryKey]:
        """Drop matching entries immediately; late responses are discarded."""
        matched = self._match(target, exact)
        for entry in matched:
            self._remove(entry)
        return [entry.key for entry in matched]

    def clear(self) -> None:
        """Drop every entry."""
        for entry in list(self._entries.values()):
            self._remove(entry)

    async def close(self) -> None:
        """Stop polling, cancel gc timers and in-flight fetches."""
        self._scheduler.close()
        self.clear()
        tasks = list(self._background_tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # -------------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------------

    def _resolve_options(self, options: QueryOptions | None, **overrides: Any) -> QueryOptions:
        base = options or QueryOptions()
        return replace(base, **{k: v for k, v in overrides.items() if v is not None})

    def _ensure_entry(self, key: QueryKey, fn: QueryFn | None, retry: int | None) -> _Entry:
        entry = self._entries.get(key.hash)
        if entry is None:
            entry = _Entry(key, fn, retry if retry is not None else self._defaults.retry)
            self._entries[key.hash] = entry
            return entry
        if fn is not None:
            entry.fn = fn
        if retry is not None:
            entry.retry = retry
        return entry

    def _is_stale(self, entry: _Entry, stale_ms: int) -> bool:
        if entry.status in (QueryStatus.IDLE, QueryStatus.ERROR):
            return True
        if entry.is_invalidated or entry.last_fetched_at is None:
            return True
        return _now_ms() - entry.last_fetched_at >= stale_ms

    def _resolve_fn(self, entry: _Entry) -> QueryFn:
        fn = entry.fn or self._default_fn
        if fn is None:
            raise ValueError(f"No query function for {entry.key!r} and no default configured")
        return fn

    def _require_fn(self, entry: _Entry) -> None:
        """Fail before registering anything if entry can never be fetched."""
        try:
            self._resolve_fn(entry)
        except ValueError:
            if not entry.subscriptions and entry.status is QueryStatus.IDLE:
                self._remove(entry)
            raise

    def _fetch(self, entry: _Entry, *, supersede: bool = False) -> asyncio.Task[None]:
        """Start a fetch, or join the one in flight unless superseding it."""
        if entry.is_fetching and not supersede and not entry.fetch_predates_invalidation:
            return entry.task  # type: ignore[return-value]

        fn = self._resolve_fn(entry)
        entry.seq += 1
        entry.status = QueryStatus.LOADING
        logger.debug("Fetching %r (seq %d)", entry.key, entry.seq)

        task = asyncio.create_task(self._run_fetch(entry, entry.seq, fn))
        entry.task = task
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        self._notify(entry)
        return task

    def _is_current(self, entry: _Entry, seq: int) -> bool:
        return self._entries.get(entry.key.hash) is entry and entry.seq == seq

    def _retry_delay_ms(self, attempt: int) -> int:
        return min(
            self._defaults.retry_delay_ms * 2**attempt,
            self._defaults.max_retry_delay_ms,
        )

    async def _run_fetch(self, entry: _Entry, seq: int, fn: QueryFn) -> None:
        attempt = 0
        while True:
            try:
                data = await fn(entry.key)
            except Exception as e:
                if not self._is_current(entry, seq):
                    logger.debug("Discarding superseded failure for %r (seq %d)", entry.key, seq)
                    return
                if attempt < entry.retry:
                    delay = self._retry_delay_ms(attempt)
                    attempt += 1
                    entry.failure_count = attempt
                    logger.warning(
                        "Fetch for %r failed (%s); retry %d/%d in %dms",
                        entry.key,
                        e,
                        attempt,
                        entry.retry,
                        delay,
                    )
                    await asyncio.sleep(to_seconds(delay))
                    if not self._is_current(entry, seq):
                        return
                    continue
                logger.warning("Fetch for %r failed: %s", entry.key, e)
                self._settle(entry, error=e, failures=attempt + 1)
                return

            if not self._is_current(entry, seq):
                logger.debug(
                    "Discarding superseded response for %r (seq %d, current %d)",
                    entry.key,
                    seq,
                    entry.seq,
                )
                return
            self._settle(entry, data=data)
            return

    def _settle(
        self,
        entry: _Entry,
        *,
        data: Any = None,
        error: BaseException | None = None,
        failures: int = 0,
    ) -> None:
        entry.task = None
        if error is None:
            entry.data = data
            entry.error = None
            entry.status = QueryStatus.SUCCESS
            entry.last_fetched_at = _now_ms()
            entry.is_invalidated = entry.fetch_predates_invalidation
            entry.failure_count = 0
        else:
            # Previous data stays readable next to the error
            entry.error = error
            entry.status = QueryStatus.ERROR
            entry.failure_count = failures
        if not entry.subscriptions:
            self._schedule_gc(entry)
        self._notify(entry)

    async def _wait_entry(self, entry: _Entry) -> None:
        while (task := entry.task) is not None and not task.done():
            await asyncio.shield(task)

    def _update_polling(self, entry: _Entry) -> None:
        intervals = [
            s._refetch_interval_ms for s in entry.subscriptions if s._refetch_interval_ms
        ]
        if intervals:
            self._scheduler.start(
                entry.key.hash, min(intervals), partial(self._poll, entry.key.hash)
            )
        else:
            self._scheduler.stop(entry.key.hash)

    def _poll(self, key_hash: str) -> None:
        entry = self._entries.get(key_hash)
        if entry is None or not entry.subscriptions:
            self._scheduler.stop(key_hash)
            return
        self._fetch(entry)

    def _schedule_gc(self, entry: _Entry) -> None:
        self._cancel_gc(entry)
        loop = asyncio.get_running_loop()
        entry.gc_handle = loop.call_later(
            to_seconds(self._defaults.gc_time_ms), self._evict, entry
        )

    def _cancel_gc(self, entry: _Entry) -> None:
        if entry.gc_handle is not None:
            entry.gc_handle.cancel()
            entry.gc_handle = None

    def _evict(self, entry: _Entry) -> None:
        entry.gc_handle = None
        if entry.subscriptions:
            return
        logger.debug("Evicting %r", entry.key)
        self._remove(entry)

    def _remove(self, entry: _Entry) -> None:
        self._cancel_gc(entry)
        self._scheduler.stop(entry.key.hash)
        if self._entries.get(entry.key.hash) is entry:
            del self._entries[entry.key.hash]
        # Fence off any response still in flight
        entry.seq += 1
        entry.task = None

    def _match(self, target: KeyFilter, exact: bool) -> list[_Entry]:
        entries = list(self._entries.values())
        if target is None:
            return entries
        if callable(target):
            return [e for e in entries if target(self._snapshot(e))]
        filter_key = QueryKey.of(target)
        return [e for e in entries if matches_key(filter_key, e.key, exact=exact)]

    def _snapshot(self, entry: _Entry) -> QueryState[Any]:
        return QueryState(
            key=entry.key,
            status=entry.status,
            data=entry.data,
            error=entry.error,
            last_fetched_at=entry.last_fetched_at,
            subscriber_count=len(entry.subscriptions),
            is_fetching=entry.is_fetching,
            is_invalidated=entry.is_invalidated,
            failure_count=entry.failure_count,
        )

    def _notify(self, entry: _Entry) -> None:
        listeners = [s._listener for s in entry.subscriptions if s._listener is not None]
        if not listeners:
            return
        state = self._snapshot(entry)
        for listener in listeners:
            try:
                listener(state)
            except Exception:
                logger.exception("Listener for %r raised", entry.key)


__all__ = ["KeyFilter", "QueryCache", "Subscription"]
