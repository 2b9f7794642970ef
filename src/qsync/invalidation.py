"""Invalidation router: maps a completed mutation to the queries it affects."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Union

from qsync.keys import KeyLike, QueryKey
from qsync.query_cache import Predicate, QueryCache

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class InvalidationTarget:
    """One declared effect of a mutation: a key (exact or prefix) or a predicate."""

    key: QueryKey | None = None
    predicate: Predicate | None = None
    exact: bool = True

    def __post_init__(self) -> None:
        if (self.key is None) == (self.predicate is None):
            raise ValueError("InvalidationTarget needs exactly one of key or predicate")

    def __repr__(self) -> str:
        if self.predicate is not None:
            return f"Invalidate(predicate={self.predicate!r})"
        mode = "exact" if self.exact else "prefix"
        return f"Invalidate({mode} {self.key!r})"


Target = Union[InvalidationTarget, KeyLike, Predicate]


def exact(key: KeyLike) -> InvalidationTarget:
    """Invalidate only the identical key."""
    return InvalidationTarget(key=QueryKey.of(key), exact=True)


def prefix(key: KeyLike) -> InvalidationTarget:
    """Invalidate key and every key it prefixes.

    Broad on purpose: use it where a write can change any filtered view
    of a collection, e.g. prefix(["/api/templates"]) after creating a
    template.
    """
    return InvalidationTarget(key=QueryKey.of(key), exact=False)


def matching(predicate: Predicate) -> InvalidationTarget:
    """Invalidate every entry whose QueryState satisfies predicate."""
    return InvalidationTarget(predicate=predicate)


def as_target(target: Target) -> InvalidationTarget:
    """Coerce a declared target. A bare key means an exact match."""
    if isinstance(target, InvalidationTarget):
        return target
    if callable(target):
        return matching(target)
    return exact(target)


class InvalidationRouter:
    """Routes mutation successes to QueryCache.invalidate.

    Targets are declared per call, or registered once per mutation key:

        router.register("create-template", prefix(["/api/templates"]))
        router.route([], mutation_key="create-template")
    """

    def __init__(self, cache: QueryCache) -> None:
        self._cache = cache
        self._registry: dict[str, list[InvalidationTarget]] = {}

    def register(self, mutation_key: str, *targets: Target) -> None:
        """Declare default targets for every run of a named mutation."""
        self._registry.setdefault(mutation_key, []).extend(as_target(t) for t in targets)

    def unregister(self, mutation_key: str) -> None:
        self._registry.pop(mutation_key, None)

    def targets_for(
        self,
        targets: Iterable[Target] = (),
        *,
        mutation_key: str | None = None,
    ) -> list[InvalidationTarget]:
        resolved = list(self._registry.get(mutation_key, ())) if mutation_key else []
        resolved.extend(as_target(t) for t in targets)
        return resolved

    def route(
        self,
        targets: Iterable[Target] = (),
        *,
        mutation_key: str | None = None,
    ) -> list[QueryKey]:
        """Invalidate every target now; returns the keys that matched.

        Runs synchronously so refetches are already issued when the
        caller's own success handling starts.
        """
        matched: dict[QueryKey, None] = {}
        for target in self.targets_for(targets, mutation_key=mutation_key):
            keys: list[QueryKey]
            if target.predicate is not None:
                keys = self._cache.invalidate(target.predicate)
            else:
                keys = self._cache.invalidate(target.key, exact=target.exact)
            matched.update(dict.fromkeys(keys))
        if matched:
            logger.debug(
                "Mutation %s invalidated %d queries",
                mutation_key or "<anonymous>",
                len(matched),
            )
        return list(matched)
