"""Cooldown stores for rate-limited notifications.

A cooldown store is a key-value store with per-key expiry. ``try_acquire`` is
the only mutation: it claims a key for ``ttl`` seconds unless the key is
already held.
"""

import asyncio
import time
from typing import Callable, Protocol


class CooldownStore(Protocol):
    async def try_acquire(self, key: str, ttl: float) -> bool:
        """Claim ``key`` for ``ttl`` seconds. False if it is still held."""
        ...

    async def release(self, key: str) -> None:
        """Drop a claim early (e.g. when the guarded action failed)."""
        ...


class InMemoryCooldownStore:
    """Process-local cooldown store.

    Args:
        clock: Returns the current time in seconds (tests inject a fake clock)
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self.clock = clock
        self._expires_at: dict[str, float] = {}
        self._lock = asyncio.Lock()

    async def try_acquire(self, key: str, ttl: float) -> bool:
        async with self._lock:
            now = self.clock()
            expires_at = self._expires_at.get(key)
            if expires_at is not None and expires_at > now:
                return False
            self._expires_at[key] = now + ttl
            return True

    async def release(self, key: str) -> None:
        async with self._lock:
            self._expires_at.pop(key, None)

