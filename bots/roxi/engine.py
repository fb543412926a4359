"""
Engagement engine - the read-decide-request-update loop.

Every speaking opportunity (incoming message, proactive tick, wake
announcement) ends up in attempt_reply(), which:

    1. takes the channel lock (or drops the attempt if it's busy)
    2. re-checks mute and cooldown under the lock
    3. keeps a typing indicator alive while it works
    4. fetches a transcript and asks the generator (one retry, one overall timeout)
    5. sends, then commits cooldown + engagement bookkeeping

Bookkeeping only happens for messages that were actually delivered.
"""

import asyncio
import random
from typing import Optional

from common.config import Settings
from common.errors import GenerationError, TransportError
from common.logger import fields, get_logger
from common.models import GenerationRequest, IncomingMessage

from .activity import ActivityTracker
from .ai import ReplyGenerator
from .dormancy import DormancyMonitor
from .eligibility import Decision, EligibilityPolicy, SpeakPath
from .engagement import EngagementSessions
from .locks import ChannelLocks
from .store import ChannelStore, Clock
from .transcript import build_transcript
from .transport import Transport

logger = get_logger("roxi.engine")

# Discord shows "typing..." for ~10 seconds per trigger
TYPING_REFRESH_SECONDS = 8.0

# First try plus one immediate retry
GENERATION_ATTEMPTS = 2


class EngagementEngine:
    def __init__(
        self,
        settings: Settings,
        transport: Transport,
        generator: ReplyGenerator,
        clock: Clock = None,
        rng: random.Random = None,
    ):
        self.settings = settings
        self.transport = transport
        self.generator = generator

        self.store = ChannelStore(clock, settings.max_tracked_channels)
        self.tracker = ActivityTracker(self.store)
        self.dormancy = DormancyMonitor(self.store, settings.sleep_threshold, settings.wake_announce_window)
        self.sessions = EngagementSessions(self.store)
        self.policy = EligibilityPolicy(
            settings, self.store, self.tracker, self.dormancy, self.sessions, rng
        )
        self.locks = ChannelLocks()
        self.store.on_evict(self.locks.discard)

        self.started_at = self.store.now()
        # None until the first health check
        self.generator_healthy: Optional[bool] = None

    # ---------- Admin state ----------

    @property
    def muted(self) -> bool:
        return self.policy.muted

    def set_muted(self, muted: bool) -> bool:
        """Flip the global mute. Returns True if the state changed."""
        changed = self.policy.muted != muted
        self.policy.muted = muted
        logger.info(f"Roxi {'muted' if muted else 'unmuted'}")
        return changed

    async def warmup(self) -> bool:
        started = self.store.now()
        ok = await self.generator.warmup()
        logger.info(f"Warmup {'succeeded' if ok else 'failed'} | {fields(elapsed=self.store.now() - started)}")
        return ok

    async def check_health(self) -> bool:
        """Ask the generator whether its backend is reachable and remember the answer."""
        self.generator_healthy = await self.generator.health()
        if not self.generator_healthy:
            logger.warning(f"Generator health check failed | {fields(provider=self.settings.ai_provider)}")
        return self.generator_healthy

    async def close(self):
        await self.generator.close()

    def status(self) -> dict:
        """Read-only snapshot for operators."""
        return {
            "uptime_seconds": self.store.now() - self.started_at,
            "muted": self.muted,
            "tracked_channels": len(self.store),
            "provider": self.settings.ai_provider,
            "generator_healthy": self.generator_healthy,
            "thresholds": self.settings.thresholds(),
        }

    # ---------- Event path ----------

    async def handle_message(self, message: IncomingMessage) -> Optional[str]:
        """
        Fold a human message into channel state and maybe answer it.

        Returns the id of the message Roxi sent, if any.
        """
        if message.is_automated_author:
            return None

        channel_id = message.channel_id
        state = self.store.touch(channel_id)
        state.guild_id = message.guild_id or state.guild_id
        state.channel_name = message.channel_name or state.channel_name
        state.is_thread = message.is_thread

        previous_human_ts = self.dormancy.last_human_activity(channel_id)
        self.dormancy.observe(channel_id, message.timestamp)
        self.tracker.record_activity(
            channel_id, message.participant_id, message.timestamp, self.settings.momentum_lookback
        )

        decision = self.policy.decide_for_message(message, previous_human_ts)
        logger.debug(
            f"Decision {'SPEAK' if decision.speak else 'skip'} | "
            f"{fields(channel=channel_id, path=decision.path.value, reason=decision.reason)}"
        )
        if decision.speak:
            return await self.attempt_reply(channel_id, decision)

        # Any message inside the wake window can carry an undelivered announcement
        if self.settings.wake_announce and self.dormancy.wake_pending(channel_id, now=message.timestamp):
            gate = self.policy.gate_failure(channel_id, previous_human_ts)
            if gate is None:
                wake = Decision(True, SpeakPath.WAKE, "woke")
                return await self.attempt_reply(channel_id, wake, text=self.settings.wake_announce)
            logger.debug(f"Wake announcement skipped | {fields(channel=channel_id, reason=gate)}")
        return None

    # ---------- Proactive path ----------

    async def try_proactive(self, channel_id: str) -> Optional[str]:
        decision = self.policy.decide_proactive(channel_id)
        if not decision.speak:
            logger.debug(f"Proactive skip | {fields(channel=channel_id, reason=decision.reason)}")
            return None
        return await self.attempt_reply(channel_id, decision)

    # ---------- Shared reply sequence ----------

    async def attempt_reply(self, channel_id: str, decision: Decision, text: str = None) -> Optional[str]:
        started = self.store.now()
        context = dict(channel=channel_id, path=decision.path.value, trigger=decision.reason)

        async with self.locks.hold(channel_id) as acquired:
            if not acquired:
                logger.debug(f"Dropped: channel busy | {fields(**context)}")
                return None

            # Another path may have replied or an admin muted between decision and lock
            if self.policy.muted or not self.policy.cooldown_elapsed(channel_id):
                logger.debug(f"Dropped: gate closed under lock | {fields(**context)}")
                return None

            typing_task = None
            engaged = True
            try:
                if not await self.transport.can_send(channel_id):
                    logger.info(f"Dropped: no send permission | {fields(**context)}")
                    return None

                typing_task = asyncio.create_task(self._typing_loop(channel_id))

                if text is None:
                    try:
                        text = await self._compose(channel_id)
                    except GenerationError as e:
                        logger.warning(
                            f"Generation abandoned | "
                            f"{fields(**context, reason=e.reason, error=e, elapsed=self.store.now() - started)}"
                        )
                        if not self.settings.fallback_line:
                            return None
                        text = self.settings.fallback_line
                        engaged = False

                message_id = await self.transport.send(channel_id, text)
            except TransportError as e:
                logger.warning(
                    f"Reply abandoned | "
                    f"{fields(**context, reason='transport', error=e, elapsed=self.store.now() - started)}"
                )
                return None
            finally:
                if typing_task is not None:
                    typing_task.cancel()

            now = self.store.now()
            self.store.touch(channel_id).last_reply_at = now
            self.dormancy.mark_announced(channel_id)
            if engaged:
                self.sessions.mark_engaged(channel_id, now, message_id)

            logger.info(f"Sent | {fields(**context, chars=len(text), elapsed=now - started)}")
            logger.info(f"  └─ sent: {text[:80]}")
            return message_id

    async def _compose(self, channel_id: str) -> str:
        history = await self.transport.fetch_recent(channel_id, self.settings.transcript_limit)
        transcript = build_transcript(history, self.settings.transcript_limit, self.settings.max_input_chars)
        state = self.store.get(channel_id)
        request = GenerationRequest(
            channel_name=state.channel_name if state else "",
            transcript=tuple(transcript),
            momentum=self.tracker.window_stats(channel_id),
        )
        return await self._generate(request, channel_id)

    async def _generate(self, request: GenerationRequest, channel_id: str) -> str:
        """Ask the generator, retrying once. Both attempts share one deadline."""
        timeout = self.settings.generation_timeout
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        error = None
        for attempt in range(1, GENERATION_ATTEMPTS + 1):
            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            started = self.store.now()
            try:
                # wait_for cancels the in-flight call on expiry
                return await asyncio.wait_for(self.generator.generate(request), timeout=remaining)
            except asyncio.TimeoutError:
                error = GenerationError(f"no reply within {timeout}s", reason="timeout")
            except GenerationError as e:
                error = e
            logger.warning(
                f"Generation attempt {attempt}/{GENERATION_ATTEMPTS} failed | "
                f"{fields(channel=channel_id, reason=error.reason, elapsed=self.store.now() - started)}"
            )
        raise error or GenerationError(f"no reply within {timeout}s", reason="timeout")

    async def _typing_loop(self, channel_id: str):
        """Best-effort typing indicator, cancelled by attempt_reply on every exit."""
        while True:
            try:
                await self.transport.trigger_typing(channel_id)
            except TransportError as e:
                logger.debug(f"Typing indicator stopped | {fields(channel=channel_id, error=e)}")
                return
            await asyncio.sleep(TYPING_REFRESH_SECONDS)
