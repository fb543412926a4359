"""
Shared data models for the Roxi bot.

These dataclasses are the typed contracts passed between the Discord
transport, the engagement engine and the reply generator, so every
module agrees on field names.
"""

from dataclasses import dataclass, field
from typing import Optional, Tuple


@dataclass(frozen=True)
class ActivityEvent:
    """One human-authored message, as seen by the activity window."""
    channel_id: str
    participant_id: str
    timestamp: float


@dataclass(frozen=True)
class MomentumStats:
    """Recent-activity intensity for a channel (derived, never stored)."""
    count: int = 0
    distinct_participants: int = 0


@dataclass
class IncomingMessage:
    """
    A Discord message after the transport has flattened it.

    Usage:
        from common.models import IncomingMessage

        msg = IncomingMessage(
            message_id="1201",
            channel_id="42",
            participant_id="7",
            content="roxi you up?",
            timestamp=1712000000.0,
        )
        await engine.handle_message(msg)
    """
    message_id: str
    channel_id: str
    participant_id: str
    content: str
    timestamp: float
    guild_id: Optional[str] = None
    author_name: str = ""
    channel_name: str = ""
    is_automated_author: bool = False
    mentions_self: bool = False
    referenced_message_id: Optional[str] = None
    is_thread: bool = False
    is_privileged: bool = False  # Administrator or listed in PRIVILEGED_USER_IDS


@dataclass(frozen=True)
class TranscriptMessage:
    author: str
    content: str
    timestamp: float
    is_automated_author: bool = False


@dataclass
class GenerationRequest:
    """Everything the reply generator gets to see."""
    channel_name: str
    transcript: Tuple[TranscriptMessage, ...] = field(default_factory=tuple)
    momentum: MomentumStats = field(default_factory=MomentumStats)
