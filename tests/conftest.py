"""Pytest configuration and fixtures for the Roxi tests."""

import asyncio
import random
from contextlib import asynccontextmanager
from dataclasses import replace

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from common.config import Settings
from common.errors import TransportError
from common.models import IncomingMessage, TranscriptMessage

START = 1_700_000_000.0


class FakeClock:
    def __init__(self, start: float = START):
        self.value = start

    def now(self) -> float:
        return self.value

    def advance(self, seconds: float) -> float:
        self.value += seconds
        return self.value


class FixedRandom(random.Random):
    """random() always returns the same value."""

    def __init__(self, value: float):
        super().__init__(0)
        self.value = value

    def random(self) -> float:
        return self.value


class FakeTransport:
    def __init__(self, clock: FakeClock = None):
        self.clock = clock
        self.sent = []        # (channel_id, text, sent_at)
        self.history = {}     # channel_id -> [TranscriptMessage]
        self.typing = []
        self.permitted = True
        self.fail_send = False
        self.fail_fetch = False
        self._next_id = 9000

    async def fetch_recent(self, channel_id, limit):
        if self.fail_fetch:
            raise TransportError("fetch failed", channel_id)
        return list(self.history.get(channel_id, []))[-limit:]

    async def can_send(self, channel_id):
        return self.permitted

    async def send(self, channel_id, text):
        if self.fail_send:
            raise TransportError("send failed", channel_id)
        self._next_id += 1
        self.sent.append((channel_id, text, self.clock.now() if self.clock else None))
        return str(self._next_id)

    async def trigger_typing(self, channel_id):
        self.typing.append(channel_id)


class FakeGenerator:
    def __init__(self, replies=None, delay: float = 0.0):
        self.replies = list(replies or [])
        self.delay = delay
        self.calls = []
        self.warmups = 0
        self.warm_ok = True
        self.healthy = True
        self.closed = False

    async def generate(self, request):
        self.calls.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.replies:
            reply = self.replies.pop(0)
            if isinstance(reply, Exception):
                raise reply
            return reply
        return "lol same"

    async def warmup(self):
        self.warmups += 1
        return self.warm_ok

    async def health(self):
        return self.healthy

    async def close(self):
        self.closed = True


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return Settings(
        bot_token="test-token",
        anthropic_api_key="test-key",
        momentum_lookback=20 * 60.0,
        momentum_min_msgs=10,
        momentum_min_speakers=3,
        min_distinct_speakers=3,
        min_distinct_speakers_thread=3,
        sleep_threshold=60 * 60.0,
        wake_announce_window=120.0,
        min_reply_gap=45.0,
        min_user_gap=2.0,
        engagement_linger=90.0,
        reply_probability=1.0,
        proactive_probability=1.0,
        generation_timeout=1.0,
        trigger_keywords=("roxi",),
    )


@pytest.fixture
def transport(clock):
    return FakeTransport(clock)


@pytest.fixture
def generator():
    return FakeGenerator()


@pytest.fixture
def make_engine(clock, transport, generator):
    """Build an engine over the fake collaborators, optionally overriding settings."""
    from bots.roxi.engine import EngagementEngine

    def _make(settings: Settings, rng=None, **overrides):
        if overrides:
            settings = replace(settings, **overrides)
        return EngagementEngine(settings, transport, generator, clock=clock, rng=rng or FixedRandom(0.0))

    return _make


@pytest.fixture
def make_message(clock):
    counter = {"n": 0}

    def _make(participant="u1", channel="c1", content="hello there", **kwargs):
        counter["n"] += 1
        kwargs.setdefault("guild_id", "g1")
        kwargs.setdefault("channel_name", "general")
        return IncomingMessage(
            message_id=f"m{counter['n']}",
            channel_id=channel,
            participant_id=participant,
            author_name=participant,
            content=content,
            timestamp=clock.now(),
            **kwargs,
        )

    return _make


@pytest.fixture
def transcript_line():
    def _make(author, content, ts=START, bot=False):
        return TranscriptMessage(author=author, content=content, timestamp=ts, is_automated_author=bot)

    return _make


def seed_channel(engine, clock, speakers, count, spacing=60.0, channel="c1"):
    """Fold `count` human messages into the engine's state, round-robin over speakers."""
    for i in range(count):
        ts = clock.advance(spacing) if i else clock.now()
        engine.dormancy.observe(channel, ts)
        engine.tracker.record_activity(
            channel, speakers[i % len(speakers)], ts, engine.settings.momentum_lookback
        )


@asynccontextmanager
async def serve(*routes):
    """Run a local aiohttp app for (method, path, handler) routes and yield its base URL."""
    app = web.Application()
    for method, path, handler in routes:
        app.router.add_route(method, path, handler)
    server = TestServer(app)
    await server.start_server()
    try:
        yield f"http://{server.host}:{server.port}"
    finally:
        await server.close()
