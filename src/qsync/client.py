"""QueryClient - one server-state context per application root."""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Iterable
from functools import wraps
from types import TracebackType
from typing import Any, TypeVar

import httpx

from qsync.config import QueryDefaults
from qsync.invalidation import InvalidationRouter, Target
from qsync.keys import KeyLike, QueryKey
from qsync.mutation import MutationFn, MutationInvocation, MutationRunner, Schema
from qsync.polling import PollingScheduler
from qsync.query_cache import KeyFilter, Listener, QueryCache, Subscription
from qsync.transport import HttpExecutor, UnauthorizedBehavior
from qsync.types import Duration, QueryFn, QueryOptions

R = TypeVar("R")


class QueryClient:
    """Owns the executor, cache, polling scheduler, router and runner.

    Construct one per application root and pass it to whatever needs it;
    tests build their own isolated instances.

        async with QueryClient(base_url="https://api.example.test") as client:
            sub = client.subscribe(["/api/templates", {"category": "welcome"}])
            templates = (await sub.wait()).data
    """

    def __init__(
        self,
        executor: HttpExecutor | None = None,
        *,
        base_url: str = "",
        headers: dict[str, str] | None = None,
        cookies: dict[str, str] | None = None,
        timeout: Duration = "30s",
        http_client: httpx.AsyncClient | None = None,
        defaults: QueryDefaults | None = None,
        default_fn: QueryFn | None = None,
        unauthorized: UnauthorizedBehavior = "raise",
    ) -> None:
        self._defaults = defaults or QueryDefaults()
        self._executor = executor or HttpExecutor(
            base_url,
            headers=headers,
            cookies=cookies,
            timeout=timeout,
            client=http_client,
        )
        self._scheduler = PollingScheduler(jitter=self._defaults.polling_jitter)
        self._cache = QueryCache(
            defaults=self._defaults,
            default_fn=default_fn or self._executor.query_fn(unauthorized=unauthorized),
            scheduler=self._scheduler,
        )
        self._router = InvalidationRouter(self._cache)
        self._runner = MutationRunner(self._router)
        self._closed = False

    @property
    def executor(self) -> HttpExecutor:
        return self._executor

    @property
    def cache(self) -> QueryCache:
        return self._cache

    @property
    def router(self) -> InvalidationRouter:
        return self._router

    @property
    def runner(self) -> MutationRunner:
        return self._runner

    @property
    def scheduler(self) -> PollingScheduler:
        return self._scheduler

    @property
    def defaults(self) -> QueryDefaults:
        return self._defaults

    # -------------------------------------------------------------------------
    # Queries
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
        return self._cache.subscribe(
            key,
            options,
            fn=fn,
            stale_time=stale_time,
            retry=retry,
            refetch_interval=refetch_interval,
            listener=listener,
        )

    def unsubscribe(self, target: Subscription | KeyLike) -> bool:
        return self._cache.unsubscribe(target)

    async def fetch_query(
        self,
        key: KeyLike,
        fn: QueryFn | None = None,
        *,
        stale_time: Duration | None = None,
        retry: int | None = None,
    ) -> Any:
        return await self._cache.fetch_query(key, fn, stale_time=stale_time, retry=retry)

    def invalidate(
        self,
        target: KeyFilter = None,
        *,
        exact: bool = False,
        refetch: bool = True,
    ) -> list[QueryKey]:
        return self._cache.invalidate(target, exact=exact, refetch=refetch)

    def get_query_data(self, key: KeyLike) -> Any | None:
        return self._cache.get_query_data(key)

    def set_query_data(self, key: KeyLike, value: Any) -> Any:
        return self._cache.set_query_data(key, value)

    # -------------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------------

    def mutate(
        self,
        fn: MutationFn,
        input: Any = None,
        *,
        invalidates: Iterable[Target] = (),
        mutation_key: str | None = None,
        schema: Schema | None = None,
        on_mutate: Callable[..., Any] | None = None,
        on_success: Callable[..., Any] | None = None,
        on_error: Callable[..., Any] | None = None,
        on_settled: Callable[..., Any] | None = None,
    ) -> MutationInvocation[Any]:
        return self._runner.run(
            fn,
            input,
            invalidates=invalidates,
            mutation_key=mutation_key,
            schema=schema,
            on_mutate=on_mutate,
            on_success=on_success,
            on_error=on_error,
            on_settled=on_settled,
        )

    def mutation(
        self,
        *,
        invalidates: Iterable[Target] = (),
        mutation_key: str | None = None,
        schema: Schema | None = None,
    ) -> Callable[[Callable[[Any], Awaitable[R]]], Callable[[Any], MutationInvocation[R]]]:
        """Decorator that turns an async write function into a mutation trigger.

        Usage:
            @client.mutation(invalidates=[prefix(["/api/templates"])])
            async def create_template(body: dict) -> dict:
                return await client.executor.post("/api/templates", body)

            invocation = create_template({"name": "Welcome"})
            template = await invocation
        """
        declared = list(invalidates)

        def decorator(
            fn: Callable[[Any], Awaitable[R]],
        ) -> Callable[[Any], MutationInvocation[R]]:
            @wraps(fn)
            def trigger(input: Any = None, **callbacks: Any) -> MutationInvocation[R]:
                return self._runner.run(
                    fn,
                    input,
                    invalidates=declared,
                    mutation_key=mutation_key or fn.__name__,
                    schema=schema,
                    **callbacks,
                )

            return trigger

        return decorator

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def close(self) -> None:
        """Let running mutations settle, then tear everything down."""
        if self._closed:
            return
        self._closed = True
        await self._runner.wait_idle()
        await self._cache.close()
        await self._executor.aclose()

    async def __aenter__(self) -> QueryClient:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()


def create_query_client(
    *,
    base_url: str = "",
    headers: dict[str, str] | None = None,
    cookies: dict[str, str] | None = None,
    timeout: Duration = "30s",
    defaults: QueryDefaults | None = None,
    unauthorized: UnauthorizedBehavior = "raise",
) -> QueryClient:
    """Create a query client.

    Args:
        base_url: Backend origin prefixed to every request path
        headers: Static headers sent with every request (e.g. bearer token)
        cookies: Initial session cookies
        timeout: Per-request timeout
        defaults: Query defaults (stale time, gc time, retry, polling)
        unauthorized: What the default query function does on HTTP 401

    Returns:
        QueryClient with subscribe, invalidate, fetch_query, mutate, close
    """
    return QueryClient(
        base_url=base_url,
        headers=headers,
        cookies=cookies,
        timeout=timeout,
        defaults=defaults,
        unauthorized=unauthorized,
    )


__all__ = ["QueryClient", "create_query_client"]
