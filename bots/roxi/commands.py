"""
Admin controls.

Text commands (privileged authors only):
    roxi mute    -> global mute on
    roxi unmute  -> global mute off
    roxi warmup  -> warm the reply generator and report

The slash commands in roxi_bot.py call run_command() too, so both
surfaces behave the same.
"""

from enum import Enum
from typing import List, Optional, Tuple

from common.errors import TransportError
from common.logger import fields, get_logger
from common.models import IncomingMessage

from .engine import EngagementEngine
from .transport import Transport

logger = get_logger("roxi.commands")

COMMAND_PREFIX = "roxi"


class AdminCommand(Enum):
    MUTE = "mute"
    UNMUTE = "unmute"
    WARMUP = "warmup"


def parse_text_command(content: str) -> Optional[AdminCommand]:
    text = (content or "").strip().lower()
    prefix, _, verb = text.partition(" ")
    if prefix != COMMAND_PREFIX:
        return None
    try:
        return AdminCommand(verb.strip())
    except ValueError:
        return None


async def run_command(engine: EngagementEngine, command: AdminCommand, issued_by: str = "") -> str:
    """Apply a command and return the confirmation line."""
    if command is AdminCommand.MUTE:
        engine.set_muted(True)
        logger.info(f"Muted by {issued_by or 'admin'}")
        return "🔇 Roxi muted by admin."
    if command is AdminCommand.UNMUTE:
        engine.set_muted(False)
        logger.info(f"Unmuted by {issued_by or 'admin'}")
        return "🔊 Roxi unmuted by admin."

    ok = await engine.warmup()
    return "🔥 Warm-up done, Roxi's awake." if ok else "🧊 Warm-up failed, check the logs."


async def handle_text_command(message: IncomingMessage, engine: EngagementEngine,
                              transport: Transport) -> bool:
    """Returns True if the message was an admin command (handled or not sendable)."""
    if not message.is_privileged:
        return False
    command = parse_text_command(message.content)
    if command is None:
        return False

    reply = await run_command(engine, command, issued_by=message.author_name)
    try:
        await transport.send(message.channel_id, reply)
    except TransportError as e:
        logger.warning(f"Command confirmation not delivered | {fields(channel=message.channel_id, error=e)}")
    return True


def format_uptime(seconds: float) -> str:
    seconds = int(seconds)
    hours, rem = divmod(seconds, 3600)
    minutes, secs = divmod(rem, 60)
    if hours:
        return f"{hours}h {minutes}m"
    if minutes:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


def status_fields(status: dict) -> List[Tuple[str, str]]:
    """(name, value) pairs for the status embed."""
    t = status["thresholds"]
    healthy = status.get("generator_healthy")
    generator = "unchecked" if healthy is None else ("✔ reachable" if healthy else "✗ unreachable")
    return [
        ("System",
         f"Posting: {'✗ MUTED' if status['muted'] else '✔ ON'}\n"
         f"Uptime: {format_uptime(status['uptime_seconds'])}\n"
         f"Provider: {status['provider']}\n"
         f"Generator: {generator}\n"
         f"Channels tracked: {status['tracked_channels']}"),
        ("Momentum",
         f"Lookback: {t['lookback_min']:.0f} min\n"
         f"Min msgs: {t['momentum_min_msgs']} / speakers: {t['momentum_min_speakers']}\n"
         f"Distinct speakers: {t['min_distinct_speakers']} (threads {t['min_distinct_speakers_thread']})"),
        ("Pacing",
         f"Sleep after: {t['sleep_after_min']:.0f} min\n"
         f"Reply gap: {t['min_reply_gap_sec']:.0f}s, user gap: {t['min_user_gap_sec']:.0f}s\n"
         f"Linger: {t['linger_sec']:.0f}s\n"
         f"Reply chance: {t['reply_probability'] * 100:.0f}%, "
         f"proactive: {t['proactive_probability'] * 100:.0f}% every {t['proactive_interval_sec']:.0f}s"),
    ]
