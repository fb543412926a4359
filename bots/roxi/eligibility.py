"""
Eligibility Policy - the speak / don't-speak decision.

Two checks, always in this order:

1. Base eligibility (every path): mute, allow-list, sleep, reply cooldown,
   user gap. Pure reads, first failing gate wins.
2. Conversation eligibility (organic and proactive paths only): enough
   distinct speakers and enough momentum in the lookback window.

Messages directed at Roxi (mention, trigger keyword, reply to her last
message, or inside the linger window) skip check 2 and the dice roll.
"""

import random
import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from common.config import Settings
from common.models import IncomingMessage

from .activity import ActivityTracker
from .dormancy import DormancyMonitor
from .engagement import EngagementSessions
from .store import ChannelStore


class SpeakPath(Enum):
    DIRECTED = "directed"
    ORGANIC = "organic"
    PROACTIVE = "proactive"
    WAKE = "wake"


@dataclass(frozen=True)
class Decision:
    speak: bool
    path: SpeakPath
    reason: str


class EligibilityPolicy:
    def __init__(
        self,
        settings: Settings,
        store: ChannelStore,
        tracker: ActivityTracker,
        dormancy: DormancyMonitor,
        sessions: EngagementSessions,
        rng: random.Random = None,
    ):
        self.settings = settings
        self.store = store
        self.tracker = tracker
        self.dormancy = dormancy
        self.sessions = sessions
        self.rng = rng or random.Random()
        self.muted = False

        keywords = [re.escape(k) for k in settings.trigger_keywords if k]
        self._keyword_re = (
            re.compile(r"\b(?:" + "|".join(keywords) + r")\b", re.IGNORECASE) if keywords else None
        )

    # ---------- Gates ----------

    def channel_allowed(self, channel_id: str) -> bool:
        if channel_id in self.settings.blocked_channel_ids:
            return False
        allowed = self.settings.allowed_channel_ids
        return not allowed or channel_id in allowed

    def cooldown_elapsed(self, channel_id: str, now: float = None) -> bool:
        now = self.store.now() if now is None else now
        state = self.store.get(channel_id)
        if state is None or state.last_reply_at is None:
            return True
        return now - state.last_reply_at >= self.settings.min_reply_gap

    def gate_failure(self, channel_id: str, last_human_ts: Optional[float]) -> Optional[str]:
        """Name of the first base gate that fails, or None when all pass."""
        now = self.store.now()
        if self.muted:
            return "muted"
        if not self.channel_allowed(channel_id):
            return "not_allowed"
        if self.dormancy.is_sleeping(channel_id, now=now):
            return "sleeping"
        if not self.cooldown_elapsed(channel_id, now):
            return "cooldown"
        if last_human_ts is not None and now - last_human_ts < self.settings.min_user_gap:
            return "user_gap"
        return None

    def can_consider_speaking(self, channel_id: str, last_human_ts: Optional[float]) -> bool:
        return self.gate_failure(channel_id, last_human_ts) is None

    def is_conversation_eligible(self, channel_id: str, is_thread: bool = None) -> bool:
        if is_thread is None:
            state = self.store.get(channel_id)
            is_thread = bool(state and state.is_thread)

        stats = self.tracker.window_stats(channel_id)
        min_speakers = (
            self.settings.min_distinct_speakers_thread if is_thread
            else self.settings.min_distinct_speakers
        )
        if stats.distinct_participants < min_speakers:
            return False

        # Momentum: a busy room, not a two-person exchange or a dead one
        return (
            stats.count >= self.settings.momentum_min_msgs
            and stats.distinct_participants >= self.settings.momentum_min_speakers
        )

    def roll(self, probability: float) -> bool:
        return self.rng.random() < probability

    # ---------- Directed address ----------

    def directed_reason(self, message: IncomingMessage) -> Optional[str]:
        if message.mentions_self:
            return "mention"
        if self._keyword_re and self._keyword_re.search(message.content or ""):
            return "keyword"
        if self.sessions.is_reply_to_self(message.channel_id, message.referenced_message_id):
            return "reply_to_self"
        if self.sessions.is_lingering(message.channel_id, message.timestamp, self.settings.engagement_linger):
            return "lingering"
        return None

    # ---------- Decisions ----------

    def decide_for_message(self, message: IncomingMessage, last_human_ts: Optional[float]) -> Decision:
        """
        Decide whether to answer an incoming message.

        last_human_ts is the channel's previous human activity, from before
        this message was folded in.
        """
        directed = self.directed_reason(message)
        path = SpeakPath.DIRECTED if directed else SpeakPath.ORGANIC

        gate = self.gate_failure(message.channel_id, last_human_ts)
        if gate:
            return Decision(False, path, gate)

        if directed:
            return Decision(True, path, directed)

        if not self.is_conversation_eligible(message.channel_id, message.is_thread):
            return Decision(False, path, "quiet_room")
        if not self.roll(self.settings.reply_probability):
            return Decision(False, path, "dice")
        return Decision(True, path, "momentum")

    def decide_proactive(self, channel_id: str) -> Decision:
        last_human_ts = self.dormancy.last_human_activity(channel_id)
        gate = self.gate_failure(channel_id, last_human_ts)
        if gate:
            return Decision(False, SpeakPath.PROACTIVE, gate)
        if not self.is_conversation_eligible(channel_id):
            return Decision(False, SpeakPath.PROACTIVE, "quiet_room")
        if not self.roll(self.settings.proactive_probability):
            return Decision(False, SpeakPath.PROACTIVE, "dice")
        return Decision(True, SpeakPath.PROACTIVE, "presence")
