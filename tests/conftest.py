"""Shared pytest fixtures."""

import pytest

from qsync import QueryCache, QueryDefaults


@pytest.fixture
def defaults() -> QueryDefaults:
    """Fast timers so retry and gc tests finish quickly."""
    return QueryDefaults(retry_delay="1ms", max_retry_delay="5ms")


@pytest.fixture
async def cache(defaults: QueryDefaults):
    """Create a fresh QueryCache for each test, closed afterwards."""
    query_cache = QueryCache(defaults=defaults)
    yield query_cache
    await query_cache.close()
