"""
Dormancy Monitor - tracks the last human message per channel.

A channel moves through three states:

    ASLEEP  - no human activity for at least sleep_threshold seconds
    WAKING  - first human message after sleeping arrived less than
              wake_window seconds ago
    AWAKE   - everything else

The only transition that reports a wake is ASLEEP -> (anything), decided
inside observe() before the activity timestamp is overwritten. A second
message inside the wake window sees WAKING and does not wake it again.

While a channel is WAKING the wake stays pending until Roxi has spoken
since it (mark_announced). An announcement that never got delivered can
be tried again on a later message, but only inside the window.
"""

from enum import Enum
from typing import Optional

from common.logger import get_logger

from .store import ChannelStore

logger = get_logger("roxi.dormancy")


class DormancyState(Enum):
    ASLEEP = "asleep"
    WAKING = "waking"
    AWAKE = "awake"


class DormancyMonitor:
    def __init__(self, store: ChannelStore, sleep_threshold: float, wake_window: float):
        self.store = store
        self.sleep_threshold = sleep_threshold
        self.wake_window = wake_window

    def last_human_activity(self, channel_id: str) -> Optional[float]:
        state = self.store.get(channel_id)
        return state.last_human_activity if state else None

    def note_human_activity(self, channel_id: str, timestamp: float):
        """Overwrite the last activity time. Last write wins, even if it goes backwards."""
        self.store.touch(channel_id).last_human_activity = timestamp

    def is_sleeping(self, channel_id: str, sleep_threshold: float = None, now: float = None) -> bool:
        threshold = self.sleep_threshold if sleep_threshold is None else sleep_threshold
        now = self.store.now() if now is None else now
        last = self.last_human_activity(channel_id)
        if last is None:
            return True
        return now - last >= threshold

    def state(self, channel_id: str, now: float = None) -> DormancyState:
        now = self.store.now() if now is None else now
        if self.is_sleeping(channel_id, now=now):
            return DormancyState.ASLEEP
        channel = self.store.get(channel_id)
        if channel.woke_at is not None and now - channel.woke_at < self.wake_window:
            return DormancyState.WAKING
        return DormancyState.AWAKE

    def observe(self, channel_id: str, timestamp: float) -> bool:
        """
        Fold a human message into the monitor.

        Returns True when this message woke the channel up.
        """
        woke = self.state(channel_id, now=timestamp) is DormancyState.ASLEEP
        state = self.store.touch(channel_id)
        if woke:
            state.woke_at = timestamp
            logger.info(f"Channel {channel_id} woke up")
        state.last_human_activity = timestamp
        return woke

    def wake_pending(self, channel_id: str, now: float = None) -> bool:
        """True while the channel is WAKING and Roxi hasn't spoken since it woke."""
        if self.state(channel_id, now=now) is not DormancyState.WAKING:
            return False
        channel = self.store.get(channel_id)
        return channel.announced_wake != channel.woke_at

    def mark_announced(self, channel_id: str):
        state = self.store.get(channel_id)
        if state is not None and state.woke_at is not None:
            state.announced_wake = state.woke_at
