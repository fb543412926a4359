"""
Activity Tracker - sliding window of recent human messages per channel.

Pruning happens on write only. window_stats() reads whatever the last
write left behind, so a quiet channel keeps reporting its old momentum
until the next message arrives.
"""

from typing import Tuple

from common.models import ActivityEvent, MomentumStats

from .store import ChannelStore


class ActivityTracker:
    def __init__(self, store: ChannelStore):
        self.store = store

    def record_activity(self, channel_id: str, participant_id: str, timestamp: float,
                        lookback: float) -> Tuple[ActivityEvent, ...]:
        """Append an event and drop everything at least `lookback` seconds older than it."""
        state = self.store.touch(channel_id)
        state.window.append(ActivityEvent(channel_id, participant_id, timestamp))

        kept = [e for e in state.window if timestamp - e.timestamp < lookback]
        if len(kept) != len(state.window):
            state.window.clear()
            state.window.extend(kept)

        return tuple(state.window)

    def window_stats(self, channel_id: str) -> MomentumStats:
        state = self.store.get(channel_id)
        if state is None:
            return MomentumStats()
        return MomentumStats(
            count=len(state.window),
            distinct_participants=len({e.participant_id for e in state.window}),
        )
