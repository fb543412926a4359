"""
Per-channel state for the engagement engine.

Every piece of channel state (activity window, dormancy, cooldown,
engagement session) hangs off one ChannelState record, keyed by channel
id. Records are created on first touch. With a size bound the store
evicts the least recently active channel.
"""

import time
from collections import OrderedDict, deque
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterator, List, Optional, Protocol

from common.logger import get_logger

logger = get_logger("roxi.store")


class Clock(Protocol):
    def now(self) -> float: ...


class SystemClock:
    """Wall clock in POSIX seconds."""

    def now(self) -> float:
        return time.time()


@dataclass
class ChannelState:
    channel_id: str
    guild_id: Optional[str] = None
    channel_name: str = ""
    is_thread: bool = False

    # Activity window (ActivityEvent, oldest first)
    window: deque = field(default_factory=deque)

    # Dormancy
    last_human_activity: Optional[float] = None
    woke_at: Optional[float] = None
    # woke_at of the last wake Roxi has spoken since
    announced_wake: Optional[float] = None

    # Cooldown
    last_reply_at: Optional[float] = None

    # Engagement session
    last_engaged_at: Optional[float] = None
    last_own_message_id: Optional[str] = None

    last_touched: float = 0.0


class ChannelStore:
    """
    Mapping of channel id -> ChannelState with an optional LRU bound.

    max_channels <= 0 means unbounded. Reads through get() never create or
    reorder records; touch() does both.
    """

    def __init__(self, clock: Clock = None, max_channels: int = 0):
        self.clock = clock or SystemClock()
        self.max_channels = max_channels
        self._channels: "OrderedDict[str, ChannelState]" = OrderedDict()
        self._evict_hooks: List[Callable[[str], None]] = []

    def now(self) -> float:
        return self.clock.now()

    def get(self, channel_id: str) -> Optional[ChannelState]:
        return self._channels.get(channel_id)

    def touch(self, channel_id: str) -> ChannelState:
        """Return the record for a channel, creating it and marking it recently active."""
        state = self._channels.get(channel_id)
        if state is None:
            state = ChannelState(channel_id=channel_id)
            self._channels[channel_id] = state
        else:
            self._channels.move_to_end(channel_id)
        state.last_touched = self.clock.now()
        self._evict()
        return state

    def on_evict(self, hook: Callable[[str], None]):
        self._evict_hooks.append(hook)

    def _evict(self):
        if self.max_channels <= 0:
            return
        while len(self._channels) > self.max_channels:
            channel_id, _ = self._channels.popitem(last=False)
            logger.debug(f"Evicted idle channel {channel_id}")
            for hook in self._evict_hooks:
                hook(channel_id)

    def channels(self) -> List[ChannelState]:
        return list(self._channels.values())

    def guild_channels(self) -> Dict[str, List[ChannelState]]:
        """Known channels grouped by guild id (channels without a guild are skipped)."""
        grouped: Dict[str, List[ChannelState]] = {}
        for state in self._channels.values():
            if state.guild_id is not None:
                grouped.setdefault(state.guild_id, []).append(state)
        return grouped

    def __contains__(self, channel_id: str) -> bool:
        return channel_id in self._channels

    def __len__(self) -> int:
        return len(self._channels)

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._channels))
