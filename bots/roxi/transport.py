"""
Chat transport for the engine.

The engine only knows the Transport protocol. DiscordTransport implements
it over an interactions.py Client and turns library failures into
TransportError so nothing Discord-specific leaks past this module.
"""

import asyncio
from datetime import datetime
from typing import Iterable, List, Protocol

import aiohttp
from interactions import Client, Permissions, ThreadChannel
from interactions.client.errors import HTTPException

from common.errors import TransportError
from common.models import IncomingMessage, TranscriptMessage

TRANSPORT_ERRORS = (HTTPException, aiohttp.ClientError, asyncio.TimeoutError)


class Transport(Protocol):
    async def fetch_recent(self, channel_id: str, limit: int) -> List[TranscriptMessage]: ...

    async def can_send(self, channel_id: str) -> bool: ...

    async def send(self, channel_id: str, text: str) -> str: ...

    async def trigger_typing(self, channel_id: str): ...


def _timestamp(message) -> float:
    created = getattr(message, "created_at", None)
    return created.timestamp() if hasattr(created, "timestamp") else datetime.now().timestamp()


def mentions_user(content: str, user_id) -> bool:
    return f"<@{user_id}>" in (content or "") or f"<@!{user_id}>" in (content or "")


def is_privileged_author(author, privileged_ids: Iterable[str]) -> bool:
    if str(author.id) in privileged_ids:
        return True
    # Members carry guild permissions, plain users (DMs) do not
    has_permission = getattr(author, "has_permission", None)
    return bool(has_permission and has_permission(Permissions.ADMINISTRATOR))


def message_to_incoming(message, bot_id, privileged_ids: Iterable[str] = ()) -> IncomingMessage:
    """Flatten an interactions.py Message into the engine's record."""
    guild = getattr(message, "guild", None)
    channel = message.channel
    reference = getattr(message, "message_reference", None)
    return IncomingMessage(
        message_id=str(message.id),
        channel_id=str(channel.id),
        guild_id=str(guild.id) if guild else None,
        participant_id=str(message.author.id),
        author_name=getattr(message.author, "display_name", "") or "",
        channel_name=getattr(channel, "name", "") or "",
        content=message.content or "",
        timestamp=_timestamp(message),
        is_automated_author=bool(message.author.bot),
        mentions_self=mentions_user(message.content, bot_id),
        referenced_message_id=str(reference.message_id) if reference and reference.message_id else None,
        is_thread=isinstance(channel, ThreadChannel),
        is_privileged=is_privileged_author(message.author, privileged_ids),
    )


class DiscordTransport:
    def __init__(self, client: Client):
        self.client = client

    async def _channel(self, channel_id: str):
        try:
            channel = await self.client.fetch_channel(int(channel_id))
        except TRANSPORT_ERRORS as e:
            raise TransportError(f"could not fetch channel: {e}", channel_id) from e
        if channel is None:
            raise TransportError("channel not found", channel_id)
        return channel

    async def fetch_recent(self, channel_id: str, limit: int) -> List[TranscriptMessage]:
        channel = await self._channel(channel_id)
        try:
            messages = await channel.fetch_messages(limit=limit)
        except TRANSPORT_ERRORS as e:
            raise TransportError(f"could not fetch messages: {e}", channel_id) from e

        # Discord returns newest first
        return [
            TranscriptMessage(
                author=getattr(m.author, "display_name", "") or str(m.author.id),
                content=m.content or "",
                timestamp=_timestamp(m),
                is_automated_author=bool(m.author.bot),
            )
            for m in reversed(messages)
        ]

    async def can_send(self, channel_id: str) -> bool:
        channel = await self._channel(channel_id)
        guild = getattr(channel, "guild", None)
        if guild is None:
            return True
        return Permissions.SEND_MESSAGES in channel.permissions_for(guild.me)

    async def send(self, channel_id: str, text: str) -> str:
        channel = await self._channel(channel_id)
        try:
            sent = await channel.send(text)
        except TRANSPORT_ERRORS as e:
            raise TransportError(f"send failed: {e}", channel_id) from e
        if sent is None:
            raise TransportError("send returned no message", channel_id)
        return str(sent.id)

    async def trigger_typing(self, channel_id: str):
        channel = await self._channel(channel_id)
        try:
            await channel.trigger_typing()
        except TRANSPORT_ERRORS as e:
            raise TransportError(f"typing indicator failed: {e}", channel_id) from e
