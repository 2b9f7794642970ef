"""QueryKey definition and utilities."""

from __future__ import annotations

import json
from collections.abc import Iterable, Iterator
from typing import Any, Union

KeyLike = Union["QueryKey", str, list[Any], tuple[Any, ...]]


class QueryKey:
    """Immutable identifier of one logical server-state request.

    Two keys are equal iff their canonical serializations match. Segments
    must be JSON-serializable; object members whose value is None are
    dropped, so ``{"status": None}`` and ``{}`` name the same request.

    Example:
        QueryKey("/api/templates", {"category": "welcome"})
        QueryKey.of(["/api/templates"])
    """

    __slots__ = ("_hash", "_segments")

    def __init__(self, *segments: Any) -> None:
        canonical = serialize_key(segments)
        self._hash = canonical
        # Round-trip so the key never aliases caller-owned dicts
        self._segments: tuple[Any, ...] = tuple(json.loads(canonical))

    @classmethod
    def of(cls, key: KeyLike) -> QueryKey:
        """Coerce a key-like value (key, string or sequence) to a QueryKey."""
        if isinstance(key, QueryKey):
            return key
        if isinstance(key, str):
            return cls(key)
        if isinstance(key, (list, tuple)):
            return cls(*key)
        raise TypeError(f"Expected QueryKey, str, list or tuple, got {type(key).__name__}")

    @property
    def segments(self) -> tuple[Any, ...]:
        return self._segments

    @property
    def hash(self) -> str:
        """Canonical serialization; the cache's lookup key."""
        return self._hash

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, QueryKey):
            return NotImplemented
        return self._hash == other._hash

    def __hash__(self) -> int:
        return hash(self._hash)

    def __len__(self) -> int:
        return len(self._segments)

    def __iter__(self) -> Iterator[Any]:
        return iter(self._segments)

    def __repr__(self) -> str:
        return f"QueryKey({self._hash})"


def _strip_none(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: _strip_none(v) for k, v in value.items() if v is not None}
    if isinstance(value, (list, tuple)):
        return [_strip_none(v) for v in value]
    return value


def serialize_key(segments: Iterable[Any]) -> str:
    """Serialize key segments to their canonical JSON form."""
    try:
        return json.dumps(
            _strip_none(list(segments)),
            sort_keys=True,
            separators=(",", ":"),
            allow_nan=False,
        )
    except ValueError as e:
        raise TypeError(f"QueryKey segments must be JSON-serializable: {e}") from e


def _partial_match(expected: Any, actual: Any) -> bool:
    """Objects match when every expected member matches; others by canonical JSON.

    Comparing serialized forms keeps 1, 1.0 and True distinct, as key
    equality does.
    """
    if isinstance(expected, dict) and isinstance(actual, dict):
        return all(
            name in actual and _partial_match(value, actual[name])
            for name, value in expected.items()
        )
    return _canonical(expected) == _canonical(actual)


def _canonical(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"))


def is_key_prefix(parent: QueryKey, child: QueryKey) -> bool:
    """Check if parent is a prefix of child (for invalidation)."""
    if len(parent) > len(child):
        return False
    return all(
        _partial_match(p, c)
        for p, c in zip(parent.segments, child.segments, strict=False)
    )


def matches_key(filter_key: QueryKey, key: QueryKey, *, exact: bool = False) -> bool:
    """Match a key against a filter, exactly or by prefix."""
    if exact:
        return filter_key == key
    return is_key_prefix(filter_key, key)


def _path_part(segment: Any) -> str:
    if isinstance(segment, bool):
        return "true" if segment else "false"
    return str(segment)


def _param_value(value: Any) -> Any:
    if isinstance(value, dict):
        return _canonical(value)
    return value


def key_to_request(key: QueryKey) -> tuple[str, dict[str, Any]]:
    """Derive the GET path and query parameters a key stands for.

    Scalar segments are joined into the path, object segments are merged
    into the query string:

        QueryKey("/api/k9000/inventory", {"city": "Haifa"})
        -> ("/api/k9000/inventory", {"city": "Haifa"})
        QueryKey("/api/admin/stations", 42)
        -> ("/api/admin/stations/42", {})
    """
    parts: list[str] = []
    params: dict[str, Any] = {}
    for segment in key.segments:
        if isinstance(segment, dict):
            params.update({k: _param_value(v) for k, v in segment.items()})
        elif isinstance(segment, list):
            parts.extend(_path_part(s) for s in segment if s is not None)
        elif segment is not None:
            parts.append(_path_part(segment))

    if not parts:
        raise ValueError(f"{key!r} has no path segment to request")

    path = "/".join(stripped for p in parts if (stripped := p.strip("/")))
    if parts[0].startswith("/"):
        path = "/" + path
    return path, params
