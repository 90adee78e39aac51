"""Fixed-capacity append log kept in the store, newest entry first."""

import json
import logging
from typing import Any, List

from tripwire.store import KVStore

logger = logging.getLogger(__name__)

DEFAULT_CAPACITY: int = 500


class BoundedLog:
    """Push-then-trim list of JSON entries.

    Every append is followed by a trim to ``capacity`` so the list never
    grows past it; the oldest entries fall off the tail. Concurrent appends
    rely only on the store's atomic list push.
    """

    def __init__(self, store: KVStore, key: str, capacity: int = DEFAULT_CAPACITY) -> None:
        if capacity < 1:
            raise ValueError("capacity must be positive")
        self.store = store
        self.key = key
        self.capacity = capacity

    async def append(self, entry: Any) -> None:
        await self.store.lpush(self.key, json.dumps(entry, default=str))
        await self.store.ltrim(self.key, 0, self.capacity - 1)

    async def entries(self, limit: int = None) -> List[Any]:
        """Return stored entries, newest first. Unparsable items are returned raw."""
        count = self.capacity if limit is None else min(limit, self.capacity)
        raw = await self.store.lrange(self.key, 0, count - 1)
        decoded = []
        for item in raw:
            try:
                decoded.append(json.loads(item))
            except (json.JSONDecodeError, TypeError):
                decoded.append(item)
        return decoded

    async def size(self) -> int:
        return len(await self.store.lrange(self.key, 0, -1))
