"""Transcript shaping before anything is sent to the reply generator."""

import re
from typing import Iterable, List

from common.models import TranscriptMessage

# Credential-looking words. A message that mentions any of them is blanked.
BANNED_RE = re.compile(r"(password|api[_\- ]?key|token|ssn|secret|private key|seed phrase)", re.IGNORECASE)


def sanitize_input(text: str, max_len: int = 800) -> str:
    """Cap a message's length and blank it if it looks like it carries a secret."""
    if not text:
        return ""
    capped = str(text)[:max_len]
    if BANNED_RE.search(capped):
        return ""
    return capped


def build_transcript(messages: Iterable[TranscriptMessage], limit: int = 6,
                     max_len: int = 800) -> List[TranscriptMessage]:
    """
    Keep the most recent `limit` messages, scrub each one, and drop bot
    messages that end up empty. Scrubbed human messages stay (as empty
    text) so the conversation shape is preserved.
    """
    recent = list(messages)[-limit:] if limit > 0 else []
    transcript = []
    for msg in recent:
        content = sanitize_input(msg.content, max_len)
        if msg.is_automated_author and not content:
            continue
        transcript.append(TranscriptMessage(
            author=msg.author,
            content=content,
            timestamp=msg.timestamp,
            is_automated_author=msg.is_automated_author,
        ))
    return transcript
