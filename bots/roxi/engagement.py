"""
Engagement Session - remembers that Roxi is "in" a conversation.

After every delivered reply the channel lingers for a while; messages in
that window and replies to Roxi's last message count as directed at her.
"""

from typing import Optional

from .store import ChannelStore


class EngagementSessions:
    def __init__(self, store: ChannelStore):
        self.store = store

    def mark_engaged(self, channel_id: str, timestamp: float, own_message_id: Optional[str]):
        state = self.store.touch(channel_id)
        state.last_engaged_at = timestamp
        state.last_own_message_id = own_message_id

    def is_lingering(self, channel_id: str, now: float, linger: float) -> bool:
        state = self.store.get(channel_id)
        if state is None or state.last_engaged_at is None:
            return False
        return now - state.last_engaged_at < linger

    def is_reply_to_self(self, channel_id: str, referenced_message_id: Optional[str]) -> bool:
        if referenced_message_id is None:
            return False
        state = self.store.get(channel_id)
        return state is not None and state.last_own_message_id == referenced_message_id
