"""Key-value store client.

WHAT:
    Thin async wrapper over redis-py's asyncio client exposing the five
    primitives the engine needs (get/set/setex/delete/scan), each bounded
    by a per-call timeout, plus JSON helpers.

WHY:
    - Every external call must carry a timeout chosen by the caller, not a
      connection-level default
    - Stored values were written by several generations of producers: some
      as raw JSON, some percent-encoded. Decoding happens here, once
    - Permanent writes must be verified by read-back

HOW:
    - asyncio.wait_for around each redis coroutine; timeouts surface as
      KVTimeoutError so callers can decide whether they are fatal
    - scan normalizes cursors to strings ("0" is terminal)

REFERENCES:
    - journeyx/state.py: shared connection pool
    - journeyx/services/event_scanner.py: cursor iteration
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, List, Optional, Tuple
from urllib.parse import unquote

from redis.asyncio import Redis

from journeyx.exceptions import KVTimeoutError, RecordParseError, StorageVerificationError

logger = logging.getLogger(__name__)

TERMINAL_CURSOR = "0"


def _to_str(value: Any) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8")
    return str(value)


def decode_json_value(raw: Any, key: Optional[str] = None) -> Any:
    """Decode a stored value that may be raw or percent-encoded JSON.

    Raises:
        RecordParseError: if neither form parses
    """
    if raw is None:
        raise RecordParseError("Empty value", key=key)
    text = _to_str(raw)
    try:
        return json.loads(text)
    except ValueError:
        pass
    try:
        return json.loads(unquote(text))
    except ValueError as e:
        raise RecordParseError(f"Malformed JSON value: {e}", key=key) from e


def encode_json_value(payload: Any) -> str:
    """Serialize a payload for storage."""
    return json.dumps(payload, separators=(",", ":"), default=str)


class KVClient:
    """Async key-value client with per-call timeouts.

    Usage:
        ```python
        client = KVClient(Redis.from_url(url), default_timeout=3.0)
        record = await client.get_json("attribution_index_v1_session:abc", timeout=1.5)
        cursor, keys = await client.scan("0", "attribution_*", count=100)
        ```
    """

    def __init__(self, redis: Redis, default_timeout: float = 3.0):
        self.redis = redis
        self.default_timeout = default_timeout

    async def _call(self, operation: str, key: Optional[str], awaitable, timeout: Optional[float]):
        limit = timeout if timeout is not None else self.default_timeout
        try:
            return await asyncio.wait_for(awaitable, timeout=limit)
        except asyncio.TimeoutError as e:
            logger.warning("[KV] %s timed out after %.2fs (key=%s)", operation, limit, key)
            raise KVTimeoutError(operation, key, limit) from e

    # -------------------------------------------------------------------------
    # Primitives
    # -------------------------------------------------------------------------

    async def get(self, key: str, timeout: Optional[float] = None) -> Optional[str]:
        value = await self._call("get", key, self.redis.get(key), timeout)
        if value is None:
            return None
        return _to_str(value)

    async def set(self, key: str, value: str, timeout: Optional[float] = None) -> bool:
        result = await self._call("set", key, self.redis.set(key, value), timeout)
        return bool(result)

    async def setex(self, key: str, ttl_seconds: int, value: str, timeout: Optional[float] = None) -> bool:
        result = await self._call("setex", key, self.redis.setex(key, ttl_seconds, value), timeout)
        return bool(result)

    async def delete(self, key: str, timeout: Optional[float] = None) -> int:
        return int(await self._call("delete", key, self.redis.delete(key), timeout) or 0)

    async def scan(
        self,
        cursor: str,
        match: str,
        count: int = 100,
        timeout: Optional[float] = None,
    ) -> Tuple[str, List[str]]:
        """Run one SCAN step.

        Returns:
            (next_cursor, keys) where next_cursor == "0" means the iteration
            for this pattern is finished.
        """
        next_cursor, keys = await self._call(
            "scan", match, self.redis.scan(cursor=int(cursor or 0), match=match, count=count), timeout
        )
        return _to_str(next_cursor), [_to_str(k) for k in keys or []]

    async def ping(self, timeout: Optional[float] = None) -> bool:
        return bool(await self._call("ping", None, self.redis.ping(), timeout))

    # -------------------------------------------------------------------------
    # JSON helpers
    # -------------------------------------------------------------------------

    async def get_json(self, key: str, timeout: Optional[float] = None) -> Optional[Any]:
        """Fetch and decode a JSON value. None when absent.

        Raises:
            RecordParseError: value exists but is not JSON
            KVTimeoutError: call exceeded timeout
        """
        raw = await self.get(key, timeout=timeout)
        if raw is None:
            return None
        return decode_json_value(raw, key=key)

    async def setex_json(self, key: str, ttl_seconds: int, payload: Any, timeout: Optional[float] = None) -> bool:
        return await self.setex(key, ttl_seconds, encode_json_value(payload), timeout=timeout)

    async def set_json_verified(self, key: str, payload: Any, timeout: Optional[float] = None) -> bool:
        """Permanently store a JSON payload and verify it by reading it back.

        Raises:
            StorageVerificationError: read-back returned nothing
        """
        await self.set(key, encode_json_value(payload), timeout=timeout)
        stored = await self.get(key, timeout=timeout)
        if stored is None:
            logger.error("[KV] Verification read-back failed for %s", key)
            raise StorageVerificationError(key)
        return True
