"""Asynchronous key-value store used for all durable countermeasure state.

Two backends share one interface:

    - MemoryStore : lock-guarded in-process store with per-key expiry,
                    used for local development and tests
    - RedisStore  : redis.asyncio client, used whenever REDIS_URL is set

Only the primitives the countermeasures rely on are exposed (get/set with
expiry, atomic incrby, list push/trim/range). Backend failures surface as
StoreError so callers can fall back to the non-deceptive path.
"""

import json
import logging
import os
import threading
import time
from typing import Any, Dict, List, Optional, Tuple

import redis.asyncio as redis
from redis.exceptions import RedisError
from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

REDIS_URL: str = os.getenv("REDIS_URL", "")

# Expired keys are swept at most this often (seconds)
CLEANUP_INTERVAL: float = 600.0


class StoreError(Exception):
    """Raised when the backing store cannot complete an operation."""


class KVStore:
    """Interface shared by the store backends."""

    async def get(self, key: str) -> Optional[str]:
        raise NotImplementedError

    async def set(self, key: str, value: str, ex: Optional[int] = None) -> None:
        raise NotImplementedError

    async def delete(self, key: str) -> None:
        raise NotImplementedError

    async def exists(self, key: str) -> bool:
        raise NotImplementedError

    async def incrby(self, key: str, amount: int) -> int:
        raise NotImplementedError

    async def expire(self, key: str, seconds: int) -> None:
        raise NotImplementedError

    async def ttl(self, key: str) -> int:
        raise NotImplementedError

    async def lpush(self, key: str, value: str) -> int:
        raise NotImplementedError

    async def ltrim(self, key: str, start: int, stop: int) -> None:
        raise NotImplementedError

    async def lrange(self, key: str, start: int, stop: int) -> List[str]:
        raise NotImplementedError

    async def close(self) -> None:
        return None

    # ==================== JSON helpers ====================

    async def get_json(self, key: str) -> Any:
        raw = await self.get(key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except (json.JSONDecodeError, TypeError) as exc:
            raise StoreError(f"Corrupt JSON under {key}: {exc}") from exc

    async def set_json(self, key: str, value: Any, ex: Optional[int] = None) -> None:
        await self.set(key, json.dumps(value, default=str), ex=ex)


class MemoryStore(KVStore):
    """Thread-safe in-memory store with Redis-like expiry semantics.

    Keys carry an optional absolute deadline; reads treat expired keys as
    missing and a periodic sweep drops them.
    """

    def __init__(self) -> None:
        self._data: Dict[str, Tuple[Any, Optional[float]]] = {}
        self._lock = threading.Lock()
        self._last_cleanup: float = time.monotonic()

    def _live(self, key: str) -> Optional[Any]:
        """Return the raw value for key, dropping it if expired. Caller holds lock."""
        entry = self._data.get(key)
        if entry is None:
            return None
        value, deadline = entry
        if deadline is not None and deadline <= time.monotonic():
            del self._data[key]
            return None
        return value

    def _deadline(self, key: str) -> Optional[float]:
        entry = self._data.get(key)
        return entry[1] if entry else None

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            self._maybe_cleanup()
            value = self._live(key)
            if isinstance(value, list):
                raise StoreError(f"WRONGTYPE {key} holds a list")
            return value

    async def set(self, key: str, value: str, ex: Optional[int] = None) -> None:
        deadline = time.monotonic() + ex if ex else None
        with self._lock:
            self._data[key] = (str(value), deadline)

    async def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    async def exists(self, key: str) -> bool:
        with self._lock:
            return self._live(key) is not None

    async def incrby(self, key: str, amount: int) -> int:
        with self._lock:
            current = self._live(key)
            try:
                number = int(current) if current is not None else 0
            except (TypeError, ValueError) as exc:
                raise StoreError(f"Value under {key} is not an integer") from exc
            number += int(amount)
            self._data[key] = (str(number), self._deadline(key))
            return number

    async def expire(self, key: str, seconds: int) -> None:
        with self._lock:
            value = self._live(key)
            if value is not None:
                self._data[key] = (value, time.monotonic() + seconds)

    async def ttl(self, key: str) -> int:
        with self._lock:
            if self._live(key) is None:
                return -2
            deadline = self._deadline(key)
            if deadline is None:
                return -1
            return max(int(deadline - time.monotonic()), 0)

    async def lpush(self, key: str, value: str) -> int:
        with self._lock:
            items = self._live(key)
            if items is None:
                items = []
            elif not isinstance(items, list):
                raise StoreError(f"WRONGTYPE {key} does not hold a list")
            items.insert(0, str(value))
            self._data[key] = (items, self._deadline(key))
            return len(items)

    async def ltrim(self, key: str, start: int, stop: int) -> None:
        with self._lock:
            items = self._live(key)
            if not isinstance(items, list):
                return
            self._data[key] = (items[_slice(start, stop, len(items))], self._deadline(key))

    async def lrange(self, key: str, start: int, stop: int) -> List[str]:
        with self._lock:
            items = self._live(key)
            if not isinstance(items, list):
                return []
            return list(items[_slice(start, stop, len(items))])

    def _maybe_cleanup(self) -> None:
        """Sweep expired keys. Called under lock, at most every CLEANUP_INTERVAL."""
        now = time.monotonic()
        if now - self._last_cleanup < CLEANUP_INTERVAL:
            return
        self._last_cleanup = now
        expired = [
            key for key, (_, deadline) in self._data.items()
            if deadline is not None and deadline <= now
        ]
        for key in expired:
            del self._data[key]


def _slice(start: int, stop: int, length: int) -> slice:
    """Translate inclusive Redis list indexes into a Python slice."""
    if stop < 0:
        stop = length + stop
    return slice(start, stop + 1)


class RedisStore(KVStore):
    """redis.asyncio-backed store. Connects lazily on first use."""

    def __init__(self, redis_url: str) -> None:
        self.redis_url = redis_url
        self._redis = None

    async def connect(self):
        if self._redis is None:
            try:
                self._redis = redis.from_url(
                    self.redis_url,
                    encoding="utf-8",
                    decode_responses=True,
                    max_connections=20,
                )
                logger.info("Connected to Redis.")
            except RedisError as exc:
                logger.error(f"Failed to connect to Redis: {exc}")
                raise StoreError(str(exc)) from exc
        return self._redis

    async def _call(self, method: str, *args, **kwargs):
        client = await self.connect()
        try:
            return await getattr(client, method)(*args, **kwargs)
        except RedisError as exc:
            raise StoreError(f"{method} failed: {exc}") from exc

    async def get(self, key: str) -> Optional[str]:
        return await self._call("get", key)

    async def set(self, key: str, value: str, ex: Optional[int] = None) -> None:
        await self._call("set", key, value, ex=ex)

    async def delete(self, key: str) -> None:
        await self._call("delete", key)

    async def exists(self, key: str) -> bool:
        return (await self._call("exists", key)) > 0

    async def incrby(self, key: str, amount: int) -> int:
        return int(await self._call("incrby", key, amount))

    async def expire(self, key: str, seconds: int) -> None:
        await self._call("expire", key, seconds)

    async def ttl(self, key: str) -> int:
        return int(await self._call("ttl", key))

    async def lpush(self, key: str, value: str) -> int:
        return int(await self._call("lpush", key, value))

    async def ltrim(self, key: str, start: int, stop: int) -> None:
        await self._call("ltrim", key, start, stop)

    async def lrange(self, key: str, start: int, stop: int) -> List[str]:
        return list(await self._call("lrange", key, start, stop))

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None


def create_store(redis_url: Optional[str] = None) -> KVStore:
    """Pick the backend: Redis when a URL is configured, memory otherwise."""
    url = REDIS_URL if redis_url is None else redis_url
    if url:
        return RedisStore(url)
    logger.warning("REDIS_URL not set, using in-memory store (state is per-process)")
    return MemoryStore()
