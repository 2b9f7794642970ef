"""Error taxonomy for qsync.

Query errors are stored on the cache entry and exposed to subscribers;
mutation errors are stored on the invocation. Nothing here is raised into
listener callbacks.
"""

from __future__ import annotations

from typing import Any


class QsyncError(Exception):
    """Base exception for all qsync failures."""


class NetworkError(QsyncError):
    """The request never reached the server or the response never arrived."""

    def __init__(self, method: str, url: str, reason: str) -> None:
        super().__init__(f"{method} {url} failed: {reason}")
        self.method = method
        self.url = url
        self.reason = reason


class HttpError(QsyncError):
    """The server answered with a non-2xx status."""

    def __init__(self, status: int, body: Any, *, method: str = "", url: str = "") -> None:
        detail = body if isinstance(body, str) else _error_message(body)
        super().__init__(f"{status}: {detail}" if detail else f"HTTP {status}")
        self.status = status
        self.body = body
        self.method = method
        self.url = url

    @property
    def is_unauthorized(self) -> bool:
        return self.status == 401

    @property
    def is_client_error(self) -> bool:
        return 400 <= self.status < 500

    @property
    def is_server_error(self) -> bool:
        return self.status >= 500


class QueryRemovedError(QsyncError):
    """The entry was removed from the cache while a caller awaited its fetch."""

    def __init__(self, key: Any) -> None:
        super().__init__(f"{key!r} was removed before its fetch settled")
        self.key = key


class ValidationError(QsyncError):
    """Client-side input validation failed before any request was made."""

    def __init__(self, errors: list[dict[str, Any]], message: str | None = None) -> None:
        super().__init__(message or _summarize(errors))
        self.errors = errors


def _error_message(body: Any) -> str:
    """Pull a human-readable message out of a JSON error body."""
    if isinstance(body, dict):
        for field in ("error", "message", "detail"):
            value = body.get(field)
            if isinstance(value, str):
                return value
    return "" if body is None else str(body)


def _summarize(errors: list[dict[str, Any]]) -> str:
    if not errors:
        return "Validation failed"
    parts = []
    for error in errors:
        loc = ".".join(str(p) for p in error.get("loc", ()))
        msg = error.get("msg", "invalid")
        parts.append(f"{loc}: {msg}" if loc else msg)
    return "; ".join(parts)
