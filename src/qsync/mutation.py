"""Mutation runner - write operations with lifecycle tracking."""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable, Generator, Iterable
from typing import Any, Generic, TypeVar, Union

import pydantic

from qsync.errors import ValidationError
from qsync.invalidation import InvalidationRouter, Target
from qsync.keys import QueryKey
from qsync.types import MutationResult, MutationStatus

logger = logging.getLogger(__name__)

T = TypeVar("T")

MutationFn = Callable[[Any], Awaitable[Any]]
Schema = Union[type[pydantic.BaseModel], Callable[[Any], Any]]


class MutationInvocation(Generic[T]):
    """State of one mutation call; awaitable for its result.

    Usage:
        invocation = runner.run(create_template, {"name": "Welcome"})
        invocation.status            # MutationStatus.PENDING, right away
        template = await invocation  # result, or raises the failure
        await invocation.settled()   # the invocation, never raises
    """

    __slots__ = (
        "_callback_error",
        "_done",
        "_error",
        "_input",
        "_invalidated",
        "_result",
        "_status",
        "mutation_key",
    )

    def __init__(self, input: Any, *, mutation_key: str | None = None) -> None:
        self._input = input
        self._status = MutationStatus.IDLE
        self._result: T | None = None
        self._error: BaseException | None = None
        self._callback_error: BaseException | None = None
        self._invalidated: list[QueryKey] = []
        self._done = asyncio.Event()
        self.mutation_key = mutation_key

    @property
    def input(self) -> Any:
        return self._input

    @property
    def status(self) -> MutationStatus:
        return self._status

    @property
    def result(self) -> T | None:
        return self._result

    @property
    def error(self) -> BaseException | None:
        return self._error

    @property
    def invalidated(self) -> list[QueryKey]:
        """Keys the router invalidated when this mutation succeeded."""
        return list(self._invalidated)

    @property
    def is_pending(self) -> bool:
        return self._status is MutationStatus.PENDING

    @property
    def is_success(self) -> bool:
        return self._status is MutationStatus.SUCCESS

    @property
    def is_error(self) -> bool:
        return self._status is MutationStatus.ERROR

    @property
    def is_settled(self) -> bool:
        return self._done.is_set()

    async def settled(self) -> MutationInvocation[T]:
        """Wait until every callback has run."""
        await self._done.wait()
        return self

    async def _value(self) -> T:
        await self._done.wait()
        if self._error is not None:
            raise self._error
        if self._callback_error is not None:
            raise self._callback_error
        return self._result  # type: ignore[return-value]

    def __await__(self) -> Generator[Any, None, T]:
        return self._value().__await__()

    def __repr__(self) -> str:
        return f"MutationInvocation({self.mutation_key or 'anonymous'}, {self._status.value})"


async def _call(callback: Callable[..., Any], *args: Any) -> None:
    result = callback(*args)
    if inspect.isawaitable(result):
        await result


def _validate(schema: Schema | None, input: Any) -> Any:
    """Return the payload handed to the mutation function."""
    if schema is None:
        return input
    if isinstance(schema, type) and issubclass(schema, pydantic.BaseModel):
        try:
            return schema.model_validate(input)
        except pydantic.ValidationError as e:
            raise ValidationError(e.errors(include_url=False)) from e
    return schema(input)


class MutationRunner:
    """Executes write operations and routes their invalidations.

    On success: status -> router invalidations -> on_success -> on_settled.
    On failure: status -> on_error -> on_settled. on_settled always runs
    last, so controls disabled while pending are reliably re-enabled.
    """

    def __init__(self, router: InvalidationRouter) -> None:
        self._router = router
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def router(self) -> InvalidationRouter:
        return self._router

    @property
    def pending_count(self) -> int:
        return len(self._tasks)

    def run(
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
        """Start a mutation; the returned invocation is already pending."""
        invocation: MutationInvocation[Any] = MutationInvocation(input, mutation_key=mutation_key)
        invocation._status = MutationStatus.PENDING

        task = asyncio.create_task(
            self._execute(
                invocation,
                fn,
                list(invalidates),
                schema,
                on_mutate=on_mutate,
                on_success=on_success,
                on_error=on_error,
                on_settled=on_settled,
            )
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return invocation

    async def wait_idle(self) -> None:
        """Wait for every started mutation to settle; they are never cancelled."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _execute(
        self,
        invocation: MutationInvocation[Any],
        fn: MutationFn,
        targets: list[Target],
        schema: Schema | None,
        *,
        on_mutate: Callable[..., Any] | None,
        on_success: Callable[..., Any] | None,
        on_error: Callable[..., Any] | None,
        on_settled: Callable[..., Any] | None,
    ) -> None:
        name = invocation.mutation_key or getattr(fn, "__name__", "mutation")
        try:
            try:
                payload = _validate(schema, invocation.input)
                if on_mutate is not None:
                    await _call(on_mutate, invocation.input)
                outcome = await fn(payload)
            except Exception as e:
                invocation._error = e
                invocation._status = MutationStatus.ERROR
                logger.warning("Mutation %s failed: %s", name, e)
                if on_error is not None:
                    await self._guard(invocation, name, on_error, e, invocation.input)
                return

            result = outcome
            extra: list[Any] = []
            if isinstance(outcome, MutationResult):
                result = outcome.result
                extra = list(outcome.invalidates)
            invocation._result = result
            invocation._status = MutationStatus.SUCCESS

            try:
                invocation._invalidated = self._router.route(
                    [*targets, *extra], mutation_key=invocation.mutation_key
                )
            except Exception as e:
                logger.exception("Invalidation after %s failed", name)
                invocation._callback_error = e

            if on_success is not None:
                await self._guard(invocation, name, on_success, result, invocation.input)
        finally:
            if on_settled is not None:
                await self._guard(
                    invocation,
                    name,
                    on_settled,
                    invocation.result,
                    invocation.error,
                    invocation.input,
                )
            invocation._done.set()

    async def _guard(
        self,
        invocation: MutationInvocation[Any],
        name: str,
        callback: Callable[..., Any],
        *args: Any,
    ) -> None:
        """Run a callback; its failure is logged and re-raised to awaiters."""
        try:
            await _call(callback, *args)
        except Exception as e:
            logger.exception(
                "Callback %s of mutation %s raised",
                getattr(callback, "__name__", callback),
                name,
            )
            if invocation._callback_error is None:
                invocation._callback_error = e
