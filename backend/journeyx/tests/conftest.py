"""Pytest configuration for journeyx service and HTTP tests

WHAT: Provides an in-memory async Redis double, a KVClient over it, seeding
      helpers and a TestClient wired to the same store
WHY: Index builds, batch slices and endpoints all need a store whose SCAN
     behaves like Redis (stable cursors while keys are added) without a server
REFERENCES:
    - journeyx/services/kv_client.py: the five primitives used here
    - journeyx/state.py: shared client swapped in for HTTP tests
"""

import json
import os
from fnmatch import fnmatchcase
from typing import Any, Dict, List, Optional, Tuple

import pytest
from fastapi.testclient import TestClient
from redis.exceptions import ConnectionError as RedisConnectionError

# Set test environment
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/15")
os.environ.setdefault("BACKEND_CORS_ORIGINS", "http://localhost:3000")

from journeyx.deps import Settings
from journeyx.services.kv_client import KVClient


# ============================================================================
# In-memory store
# ============================================================================

class FakeAsyncRedis:
    """Async stand-in for redis.asyncio.Redis (decode_responses=True).

    SCAN walks keys in insertion order. The cursor is a position in an
    append-only key log, so keys present for the whole iteration are
    returned exactly once even when new keys are written mid-scan.
    """

    def __init__(self):
        self.data: Dict[str, str] = {}
        self.ttls: Dict[str, int] = {}
        self._log: List[str] = []
        self.fail_reads: set = set()
        self.drop_writes: set = set()
        self.calls: List[Tuple[str, Optional[str]]] = []

    def _track(self, key: str) -> None:
        if key not in self.data:
            self._log.append(key)

    async def get(self, key):
        self.calls.append(("get", key))
        if key in self.fail_reads:
            raise RedisConnectionError(f"simulated read failure for {key}")
        return self.data.get(key)

    async def set(self, key, value):
        self.calls.append(("set", key))
        if key in self.drop_writes:
            return True
        self._track(key)
        self.data[key] = value
        self.ttls.pop(key, None)
        return True

    async def setex(self, key, ttl, value):
        self.calls.append(("setex", key))
        self._track(key)
        self.data[key] = value
        self.ttls[key] = ttl
        return True

    async def delete(self, *keys):
        removed = 0
        for key in keys:
            if self.data.pop(key, None) is not None:
                removed += 1
            self.ttls.pop(key, None)
        return removed

    async def scan(self, cursor=0, match=None, count=10):
        self.calls.append(("scan", match))
        start = int(cursor)
        window = self._log[start:start + count]
        keys = [k for k in window if k in self.data and (match is None or fnmatchcase(k, match))]
        next_cursor = start + count
        if next_cursor >= len(self._log):
            next_cursor = 0
        return next_cursor, keys

    async def ping(self):
        return True

    async def aclose(self):
        return None

    # Test helpers

    def seed(self, key: str, payload: Any) -> None:
        self._track(key)
        self.data[key] = payload if isinstance(payload, str) else json.dumps(payload)

    def load(self, key: str) -> Any:
        raw = self.data.get(key)
        return json.loads(raw) if raw is not None else None

    def keys(self, pattern: str = "*") -> List[str]:
        return sorted(k for k in self.data if fnmatchcase(k, pattern))


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def fake_redis() -> FakeAsyncRedis:
    return FakeAsyncRedis()


@pytest.fixture
def kv(fake_redis) -> KVClient:
    return KVClient(fake_redis, default_timeout=1.0)


@pytest.fixture
def settings() -> Settings:
    """Small pages and chunks so multi-slice behaviour shows up in tiny datasets."""
    return Settings(
        REDIS_URL="redis://localhost:6379/15",
        SCAN_COUNT=3,
        SCAN_MAX_PAGES=200,
        FETCH_CONCURRENCY=5,
        WRITE_CONCURRENCY=5,
        INDEX_CHECKPOINT_EVERY_CHUNKS=2,
        SLICE_BUDGET_SECONDS=30.0,
    )


@pytest.fixture
def client(kv, settings) -> TestClient:
    """TestClient whose shared KV client is the in-memory store."""
    from journeyx import state
    from journeyx.deps import get_settings
    from journeyx.main import create_app

    previous = state.kv_client
    state.kv_client = kv
    test_app = create_app()
    test_app.dependency_overrides[get_settings] = lambda: settings
    try:
        yield TestClient(test_app)
    finally:
        state.kv_client = previous


