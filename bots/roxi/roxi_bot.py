"""
Roxi - a Discord regular who knows when to talk.

Replies when addressed (mention, "roxi", reply to her, or right after
she spoke), chimes in on her own when a channel is busy enough, and
occasionally speaks up unprompted while an admin is around.

Setup:
    1. Create a Discord application and bot, enable the Message Content,
       Server Members and Presence intents
    2. Put ROXI_BOT_TOKEN and ANTHROPIC_API_KEY (or ROXI_AI_PROVIDER=ollama,
       or ROXI_AI_PROVIDER=openai with OPENAI_API_KEY) in .env, see
       common/config.py for every knob
    3. Optionally write the persona to system_prompt.txt
    4. Run: python -m bots.roxi.roxi_bot
"""

import asyncio
import sys
from typing import Optional

from interactions import (
    Client,
    Embed,
    Intents,
    SlashContext,
    listen,
    slash_command,
)
from interactions.api.events import MessageCreate, PresenceUpdate, Ready

from common.config import Settings
from common.errors import ConfigurationError
from common.logger import get_logger

from .ai import keepalive_loop, make_generator
from .commands import AdminCommand, handle_text_command, run_command, status_fields
from .engine import EngagementEngine
from .scheduler import PresenceRegistry, ProactiveScheduler
from .transport import DiscordTransport, is_privileged_author, message_to_incoming

logger = get_logger("roxi")

INTENTS = (
    Intents.GUILDS
    | Intents.GUILD_MESSAGES
    | Intents.MESSAGE_CONTENT
    | Intents.GUILD_MEMBERS
    | Intents.GUILD_PRESENCES
)


def snapshot_presence(client: Client, presence: PresenceRegistry):
    """
    Seed the presence registry from the member cache.

    Member.status stays MISSING until Discord sends a PresenceUpdate for
    that member, so right after login this usually records nobody as
    online. MISSING counts as absent; the PresenceUpdate listener fills the
    registry in as updates arrive.
    """
    for guild in client.guilds:
        statuses = {}
        for user_id in presence.privileged_ids:
            member = guild.get_member(int(user_id)) if user_id.isdigit() else None
            if member is not None:
                statuses[user_id] = getattr(member, "status", None)
        presence.replace(str(guild.id), statuses)
        logger.info(f"Presence snapshot for {guild.name}: {len(presence.online(str(guild.id)))} privileged online")


class RoxiBot:
    """The engine plus the background tasks that run beside the client."""

    def __init__(self, engine: EngagementEngine, scheduler: ProactiveScheduler, keepalive_interval: float):
        self.engine = engine
        self.scheduler = scheduler
        self.keepalive_interval = keepalive_interval
        self.keepalive: Optional[asyncio.Task] = None

    @property
    def started(self) -> bool:
        return self.keepalive is not None

    def start_background(self) -> bool:
        """Start the scheduler and keep-alive once. Returns False if already running."""
        if self.started:
            return False
        self.scheduler.start()
        self.keepalive = asyncio.create_task(keepalive_loop(self.engine.generator, self.keepalive_interval))
        return True

    async def shutdown(self):
        """Stop background work and release the generator's connections."""
        self.scheduler.stop()
        if self.keepalive is not None:
            self.keepalive.cancel()
            await asyncio.gather(self.keepalive, return_exceptions=True)
            self.keepalive = None
        await self.engine.close()
        logger.info("Roxi shut down")


def setup_roxi(client: Client, settings: Settings, generator=None) -> RoxiBot:
    """
    Wire the engagement engine into a client.

    Usage:
        client = Client(token=settings.bot_token, intents=INTENTS)
        roxi = setup_roxi(client, settings)
        try:
            await client.astart()
        finally:
            await roxi.shutdown()
    """
    transport = DiscordTransport(client)
    generator = generator or make_generator(settings)
    engine = EngagementEngine(settings, transport, generator)
    presence = PresenceRegistry(settings.privileged_user_ids)
    scheduler = ProactiveScheduler(engine, presence, settings.proactive_interval)
    roxi = RoxiBot(engine, scheduler, settings.keepalive_interval)

    @listen(Ready)
    async def on_roxi_ready(event: Ready):
        logger.info(f"Logged in as {client.user.display_name} (ID: {client.user.id})")
        snapshot_presence(client, presence)

        # Ready fires again on every reconnect
        if roxi.started:
            return
        logger.info(f"Provider: {settings.ai_provider} | muted: {engine.muted}")
        logger.info(f"Trigger keywords: {', '.join(settings.trigger_keywords) or '(none)'}")
        logger.info(f"Reply chance: {settings.reply_probability * 100:.0f}% | "
                    f"proactive: {settings.proactive_probability * 100:.0f}% every {settings.proactive_interval:.0f}s")
        roxi.start_background()
        await engine.check_health()

    @listen(MessageCreate)
    async def on_roxi_message(event: MessageCreate):
        message = event.message
        if message.author.id == client.user.id:
            return

        incoming = message_to_incoming(message, client.user.id, settings.privileged_user_ids)
        if incoming.is_automated_author:
            return
        if await handle_text_command(incoming, engine, transport):
            return
        await engine.handle_message(incoming)

    @listen(PresenceUpdate)
    async def on_roxi_presence(event: PresenceUpdate):
        if event.guild_id is None:
            return
        presence.update(str(event.guild_id), str(event.user.id), event.status)

    for listener in (on_roxi_ready, on_roxi_message, on_roxi_presence):
        client.add_listener(listener)

    # ============== SLASH COMMANDS ==============

    async def _admin_only(ctx: SlashContext) -> bool:
        if is_privileged_author(ctx.author, settings.privileged_user_ids):
            return True
        await ctx.send("You don't have permission to use this command.", ephemeral=True)
        return False

    @slash_command(name="roxi_status", description="Check Roxi's status")
    async def status_cmd(ctx: SlashContext):
        if not await _admin_only(ctx):
            return
        await ctx.defer(ephemeral=True)
        await engine.check_health()
        status = engine.status()
        embed = Embed(
            title=f"Roxi Status {'✗ MUTED' if status['muted'] else '✔ ON'}",
            color=0x9c92d1
        )
        for name, value in status_fields(status):
            embed.add_field(name=name, value=value, inline=True)
        await ctx.send(embed=embed, ephemeral=True)

    @slash_command(name="roxi_mute", description="Stop Roxi from posting")
    async def mute_cmd(ctx: SlashContext):
        if not await _admin_only(ctx):
            return
        await ctx.send(await run_command(engine, AdminCommand.MUTE, ctx.author.display_name), ephemeral=True)

    @slash_command(name="roxi_unmute", description="Let Roxi post again")
    async def unmute_cmd(ctx: SlashContext):
        if not await _admin_only(ctx):
            return
        await ctx.send(await run_command(engine, AdminCommand.UNMUTE, ctx.author.display_name), ephemeral=True)

    @slash_command(name="roxi_warmup", description="Warm up Roxi's reply model")
    async def warmup_cmd(ctx: SlashContext):
        if not await _admin_only(ctx):
            return
        await ctx.defer(ephemeral=True)
        await ctx.send(await run_command(engine, AdminCommand.WARMUP, ctx.author.display_name), ephemeral=True)

    for command in (status_cmd, mute_cmd, unmute_cmd, warmup_cmd):
        client.add_interaction(command)

    logger.info("Roxi engagement engine initialized")
    return roxi


async def run(settings: Settings):
    client = Client(token=settings.bot_token, intents=INTENTS)
    roxi = setup_roxi(client, settings)
    logger.info("Starting Roxi...")
    try:
        await client.astart()
    finally:
        await roxi.shutdown()


def main():
    try:
        settings = Settings.from_env()
    except ConfigurationError as e:
        logger.critical(f"Refusing to start: {e}")
        sys.exit(1)

    try:
        asyncio.run(run(settings))
    except KeyboardInterrupt:
        logger.info("Interrupted")


if __name__ == "__main__":
    main()
