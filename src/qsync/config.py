"""Client-wide defaults for queries and polling."""

from __future__ import annotations

import os
from dataclasses import dataclass, replace
from typing import Any

from qsync.duration import parse_duration, parse_optional_duration
from qsync.types import Duration

_ENV_FIELDS = (
    "stale_time",
    "gc_time",
    "retry",
    "retry_delay",
    "max_retry_delay",
    "refetch_interval",
    "polling_jitter",
)


@dataclass(frozen=True, slots=True)
class QueryDefaults:
    """Defaults applied to every query that does not override them.

    Durations accept "30s"/"5m"/"100ms" strings or integer milliseconds.
    """

    stale_time: Duration = 0
    gc_time: Duration = "5m"
    retry: int = 0
    retry_delay: Duration = "1s"
    max_retry_delay: Duration = "30s"
    refetch_interval: Duration | None = None
    polling_jitter: float = 0.0

    def __post_init__(self) -> None:
        # Fail at construction rather than on the first fetch
        parse_duration(self.stale_time)
        parse_duration(self.gc_time)
        parse_duration(self.retry_delay)
        parse_duration(self.max_retry_delay)
        parse_optional_duration(self.refetch_interval)
        if self.retry < 0:
            raise ValueError("retry must be >= 0")
        if not 0 <= self.polling_jitter <= 1:
            raise ValueError("polling_jitter must be between 0 and 1")

    @property
    def stale_time_ms(self) -> int:
        return parse_duration(self.stale_time)

    @property
    def gc_time_ms(self) -> int:
        return parse_duration(self.gc_time)

    @property
    def retry_delay_ms(self) -> int:
        return parse_duration(self.retry_delay)

    @property
    def max_retry_delay_ms(self) -> int:
        return parse_duration(self.max_retry_delay)

    @property
    def refetch_interval_ms(self) -> int | None:
        return parse_optional_duration(self.refetch_interval)

    def merge(self, **overrides: Any) -> QueryDefaults:
        """Return a copy with the given non-None fields replaced."""
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})

    @classmethod
    def from_env(cls, prefix: str = "QSYNC_") -> QueryDefaults:
        """Build defaults from environment variables.

        Example: QSYNC_STALE_TIME=30s QSYNC_RETRY=3 QSYNC_POLLING_JITTER=0.1
        """
        values: dict[str, Any] = {}
        for name in _ENV_FIELDS:
            raw = os.getenv(f"{prefix}{name.upper()}")
            if raw is None or raw == "":
                continue
            if name == "retry":
                values[name] = int(raw)
            elif name == "polling_jitter":
                values[name] = float(raw)
            else:
                values[name] = int(raw) if raw.isdigit() else raw
        return cls(**values)
