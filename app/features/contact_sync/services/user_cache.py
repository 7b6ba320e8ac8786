"""
Bounded per-user cache.

Holds per-user working state (identity maps, platform directories, self
ids) with an explicit size bound, a TTL, and explicit eviction. Values are
never shared between users.
"""

import time
from collections import OrderedDict
from collections.abc import Callable
from typing import Generic, TypeVar

T = TypeVar("T")


class UserCache(Generic[T]):
    def __init__(
        self,
        max_users: int = 256,
        ttl_seconds: float = 900.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_users < 1:
            raise ValueError("max_users must be at least 1")
        self.max_users = max_users
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: OrderedDict[str, tuple[float, T]] = OrderedDict()

    def get(self, user_id: str) -> T | None:
        entry = self._entries.get(user_id)
        if entry is None:
            return None
        stored_at, value = entry
        if self._clock() - stored_at > self.ttl_seconds:
            del self._entries[user_id]
            return None
        self._entries.move_to_end(user_id)
        return value

    def set(self, user_id: str, value: T) -> None:
        self._entries[user_id] = (self._clock(), value)
        self._entries.move_to_end(user_id)
        while len(self._entries) > self.max_users:
            self._entries.popitem(last=False)

    def get_or_create(self, user_id: str, factory: Callable[[], T]) -> T:
        value = self.get(user_id)
        if value is None:
            value = factory()
            self.set(user_id, value)
        return value

    def evict(self, user_id: str) -> None:
        self._entries.pop(user_id, None)

    def clear(self) -> None:
        self._entries.clear()

    def __contains__(self, user_id: str) -> bool:
        return self.get(user_id) is not None

    def __len__(self) -> int:
        return len(self._entries)
