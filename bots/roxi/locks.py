"""Per-channel advisory locks. A busy channel drops the attempt, it never queues."""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict


class ChannelLocks:
    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}

    @asynccontextmanager
    async def hold(self, channel_id: str) -> AsyncIterator[bool]:
        """
        Yield True with the channel lock held, or False if someone else has it.

            async with locks.hold(channel_id) as acquired:
                if not acquired:
                    return
        """
        # setdefault runs without a suspension point, so two racing
        # callers always end up with the same lock object
        lock = self._locks.setdefault(channel_id, asyncio.Lock())
        if lock.locked():
            yield False
            return

        await lock.acquire()
        try:
            yield True
        finally:
            lock.release()

    def is_held(self, channel_id: str) -> bool:
        lock = self._locks.get(channel_id)
        return lock is not None and lock.locked()

    def discard(self, channel_id: str):
        """Forget an idle channel's lock (used on store eviction)."""
        lock = self._locks.get(channel_id)
        if lock is not None and not lock.locked():
            del self._locks[channel_id]
