"""
Proactive Scheduler - lets Roxi speak without being prompted.

Every `interval` seconds, for each guild where at least one privileged
participant is online, each known channel gets the organic eligibility
checks plus a (low) proactive dice roll. Channels already replying are
skipped by the channel lock inside the engine.
"""

import asyncio
from typing import Dict, FrozenSet, Iterable, Mapping, Optional

from common.logger import fields, get_logger

from .engine import EngagementEngine

logger = get_logger("roxi.scheduler")

PRESENT_STATUSES = frozenset({"online", "idle", "dnd"})


class PresenceRegistry:
    """
    Privileged participants currently online, per guild.

    Each update swaps in a brand new frozenset, so readers never see a
    half-built set and need no lock.
    """

    def __init__(self, privileged_ids: Iterable[str]):
        self.privileged_ids = frozenset(privileged_ids)
        self._online: Dict[str, FrozenSet[str]] = {}

    def replace(self, guild_id: str, statuses: Mapping[str, Optional[str]]):
        """Rebuild a guild's set from a full snapshot of participant -> status."""
        self._online[guild_id] = frozenset(
            pid for pid, status in statuses.items()
            if pid in self.privileged_ids and _is_present(status)
        )

    def update(self, guild_id: str, participant_id: str, status: Optional[str]):
        """Rebuild a guild's set from a single presence change."""
        if participant_id not in self.privileged_ids:
            return
        current = self._online.get(guild_id, frozenset())
        if _is_present(status):
            self._online[guild_id] = current | {participant_id}
        else:
            self._online[guild_id] = current - {participant_id}

    def online(self, guild_id: str) -> FrozenSet[str]:
        return self._online.get(guild_id, frozenset())

    def any_online(self, guild_id: str) -> bool:
        return bool(self.online(guild_id))


def _is_present(status: Optional[str]) -> bool:
    # None, and interactions.py MISSING before the first PresenceUpdate
    if not status:
        return False
    # interactions.py hands us Status enums, snapshots may be plain strings
    value = getattr(status, "value", status)
    return str(value).lower() in PRESENT_STATUSES


class ProactiveScheduler:
    def __init__(self, engine: EngagementEngine, presence: PresenceRegistry, interval: float):
        self.engine = engine
        self.presence = presence
        self.interval = interval
        self._task: Optional[asyncio.Task] = None

    async def tick(self) -> int:
        """Run one scan. Returns the number of proactive messages sent."""
        attempts = []
        for guild_id, channels in self.engine.store.guild_channels().items():
            if not self.presence.any_online(guild_id):
                continue
            for channel in channels:
                attempts.append(self.engine.try_proactive(channel.channel_id))

        if not attempts:
            return 0

        results = await asyncio.gather(*attempts, return_exceptions=True)
        sent = 0
        for result in results:
            if isinstance(result, Exception):
                logger.error(f"Proactive attempt crashed: {result!r}")
            elif result is not None:
                sent += 1
        logger.debug(f"Proactive tick | {fields(channels=len(attempts), sent=sent)}")
        return sent

    async def run(self):
        logger.info(f"Proactive scheduler started (every {self.interval:.0f}s)")
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self.tick()
            except Exception as e:
                logger.error(f"Proactive scheduler error: {e}", exc_info=True)

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run())
        return self._task

    def stop(self):
        if self._task is not None:
            self._task.cancel()
            self._task = None
