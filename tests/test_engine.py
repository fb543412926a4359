"""Tests for the engagement engine's reply sequence."""

import asyncio
from dataclasses import replace

import pytest
from aiohttp import web

from bots.roxi.ai import OllamaGenerator
from bots.roxi.eligibility import Decision, SpeakPath
from bots.roxi.engine import EngagementEngine
from common.errors import GenerationError

from .conftest import seed_channel, serve

MENTION = Decision(True, SpeakPath.DIRECTED, "mention")


async def _settle():
    for _ in range(3):
        await asyncio.sleep(0)


def _pending_tasks():
    current = asyncio.current_task()
    return [t for t in asyncio.all_tasks() if t is not current and not t.done()]


class TestAttemptReply:
    @pytest.mark.asyncio
    async def test_sends_and_commits_bookkeeping(self, settings, make_engine, transport, clock):
        engine = make_engine(settings)
        message_id = await engine.attempt_reply("c1", MENTION)

        assert message_id is not None
        assert [text for _, text, _ in transport.sent] == ["lol same"]
        state = engine.store.get("c1")
        assert state.last_reply_at == clock.now()
        assert state.last_engaged_at == clock.now()
        assert state.last_own_message_id == message_id

    @pytest.mark.asyncio
    async def test_concurrent_attempts_send_once(self, settings, make_engine, transport, generator):
        generator.delay = 0.05
        engine = make_engine(settings)

        results = await asyncio.gather(*(engine.attempt_reply("c1", MENTION) for _ in range(5)))

        assert len(transport.sent) == 1
        assert sum(r is not None for r in results) == 1
        assert len(generator.calls) == 1
        assert engine.locks.is_held("c1") is False

    @pytest.mark.asyncio
    async def test_other_channels_are_not_blocked(self, settings, make_engine, transport, generator):
        generator.delay = 0.05
        engine = make_engine(settings)

        await asyncio.gather(engine.attempt_reply("c1", MENTION), engine.attempt_reply("c2", MENTION))

        assert sorted(ch for ch, _, _ in transport.sent) == ["c1", "c2"]

    @pytest.mark.asyncio
    async def test_cooldown_rechecked_under_lock(self, settings, make_engine, transport, generator, clock):
        """A decision made before someone else replied must not send."""
        engine = make_engine(settings)
        engine.store.touch("c1").last_reply_at = clock.now()

        assert await engine.attempt_reply("c1", MENTION) is None
        assert transport.sent == []
        assert generator.calls == []

    @pytest.mark.asyncio
    async def test_mute_rechecked_under_lock(self, settings, make_engine, transport):
        engine = make_engine(settings)
        engine.set_muted(True)
        assert await engine.attempt_reply("c1", MENTION) is None
        assert transport.sent == []

    @pytest.mark.asyncio
    async def test_missing_permission_skips_generation(self, settings, make_engine, transport, generator):
        transport.permitted = False
        engine = make_engine(settings)

        assert await engine.attempt_reply("c1", MENTION) is None
        assert generator.calls == []
        assert transport.typing == []

    @pytest.mark.asyncio
    async def test_send_failure_leaves_no_bookkeeping(self, settings, make_engine, transport, generator):
        generator.delay = 0.01
        transport.fail_send = True
        engine = make_engine(settings)

        assert await engine.attempt_reply("c1", MENTION) is None
        await _settle()

        state = engine.store.get("c1")
        assert state is None or state.last_reply_at is None
        assert state is None or state.last_engaged_at is None
        assert engine.locks.is_held("c1") is False
        assert transport.typing == ["c1"]
        assert _pending_tasks() == []

    @pytest.mark.asyncio
    async def test_fetch_failure_is_abandoned(self, settings, make_engine, transport, generator):
        transport.fail_fetch = True
        engine = make_engine(settings)

        assert await engine.attempt_reply("c1", MENTION) is None
        assert generator.calls == []
        assert engine.locks.is_held("c1") is False

    @pytest.mark.asyncio
    async def test_typing_stops_after_success(self, settings, make_engine, transport, generator):
        generator.delay = 0.01
        engine = make_engine(settings)

        await engine.attempt_reply("c1", MENTION)
        await _settle()

        assert transport.typing == ["c1"]
        assert _pending_tasks() == []

    @pytest.mark.asyncio
    async def test_explicit_text_skips_generation(self, settings, make_engine, transport, generator):
        engine = make_engine(settings)
        await engine.attempt_reply("c1", Decision(True, SpeakPath.WAKE, "woke"), text="mornin")
        assert generator.calls == []
        assert [text for _, text, _ in transport.sent] == ["mornin"]


class TestGeneration:
    @pytest.mark.asyncio
    async def test_retries_once_after_failure(self, settings, make_engine, transport, generator):
        generator.replies = [GenerationError("upstream hiccup"), "ok then"]
        engine = make_engine(settings)

        assert await engine.attempt_reply("c1", MENTION) is not None
        assert len(generator.calls) == 2
        assert [text for _, text, _ in transport.sent] == ["ok then"]

    @pytest.mark.asyncio
    async def test_timeout_spends_the_whole_budget(self, settings, make_engine, transport, generator):
        generator.delay = 1.0
        engine = make_engine(settings, generation_timeout=0.05)

        assert await engine.attempt_reply("c1", MENTION) is None
        # No time left for a retry
        assert len(generator.calls) == 1
        assert transport.sent == []
        assert engine.store.get("c1") is None or engine.store.get("c1").last_reply_at is None
        assert engine.locks.is_held("c1") is False

    @pytest.mark.asyncio
    async def test_retry_gets_only_the_remaining_budget(self, settings, make_engine, transport, generator):
        generator.delay = 0.15
        generator.replies = [GenerationError("upstream hiccup"), "too late"]
        engine = make_engine(settings, generation_timeout=0.2)

        assert await engine.attempt_reply("c1", MENTION) is None
        assert len(generator.calls) == 2
        assert transport.sent == []

    @pytest.mark.asyncio
    async def test_malformed_stream_falls_back(self, settings, clock, transport, tmp_path):
        """A provider sending the wrong shape still ends in a retry and then the fallback line."""
        requests = []

        async def chat(request):
            requests.append(request)
            return web.Response(text='{"message": {"content": null}}\n', content_type="application/x-ndjson")

        async with serve(("POST", "/api/chat", chat)) as base_url:
            settings = replace(
                settings,
                ai_provider="ollama",
                ollama_url=base_url,
                system_prompt_path=str(tmp_path / "missing.txt"),
                fallback_line="brb",
            )
            generator = OllamaGenerator(settings)
            engine = EngagementEngine(settings, transport, generator, clock=clock)
            try:
                assert await engine.attempt_reply("c1", MENTION) is not None
            finally:
                await engine.close()

        assert len(requests) == 2
        assert [text for _, text, _ in transport.sent] == ["brb"]
        assert engine.store.get("c1").last_engaged_at is None

    @pytest.mark.asyncio
    async def test_fallback_line_counts_for_cooldown_only(self, settings, make_engine, transport, generator, clock):
        generator.replies = [GenerationError("nope"), GenerationError("still nope", reason="empty")]
        engine = make_engine(settings, fallback_line="brb, brain buffering")

        assert await engine.attempt_reply("c1", MENTION) is not None
        assert [text for _, text, _ in transport.sent] == ["brb, brain buffering"]
        state = engine.store.get("c1")
        assert state.last_reply_at == clock.now()
        assert state.last_engaged_at is None

    @pytest.mark.asyncio
    async def test_request_carries_transcript_and_momentum(
        self, settings, make_engine, transport, generator, clock, transcript_line
    ):
        engine = make_engine(settings)
        seed_channel(engine, clock, ["a", "b", "c"], 10)
        engine.store.touch("c1").channel_name = "general"
        transport.history["c1"] = [
            transcript_line("a", "anyone seen the new trailer"),
            transcript_line("b", "my password is hunter2"),
            transcript_line("bot", "token: abc", bot=True),
        ]

        await engine.attempt_reply("c1", MENTION)

        request = generator.calls[0]
        assert request.channel_name == "general"
        assert [m.content for m in request.transcript] == ["anyone seen the new trailer", ""]
        assert request.momentum.count == 10
        assert request.momentum.distinct_participants == 3


class TestHandleMessage:
    @pytest.mark.asyncio
    async def test_automated_authors_are_ignored(self, settings, make_engine, make_message, transport):
        engine = make_engine(settings)
        result = await engine.handle_message(make_message("bot", mentions_self=True, is_automated_author=True))
        assert result is None
        assert "c1" not in engine.store
        assert transport.sent == []

    @pytest.mark.asyncio
    async def test_organic_reply_in_busy_room(self, settings, make_engine, make_message, clock, transport):
        engine = make_engine(settings, reply_probability=1.0)
        seed_channel(engine, clock, ["a", "b", "c", "d"], 12)
        clock.advance(5)

        assert await engine.handle_message(make_message("a", content="so what now")) is not None
        assert len(transport.sent) == 1

    @pytest.mark.asyncio
    async def test_user_gap_uses_previous_message(self, settings, make_engine, make_message, clock, transport):
        """A mention right after someone else spoke waits for the user gap."""
        engine = make_engine(settings)
        seed_channel(engine, clock, ["a", "b", "c"], 3)
        clock.advance(1)

        assert await engine.handle_message(make_message("a", mentions_self=True)) is None
        assert transport.sent == []

    @pytest.mark.asyncio
    async def test_cooldown_holds_across_triggers(self, settings, make_engine, make_message, clock, transport):
        engine = make_engine(settings)
        seed_channel(engine, clock, ["a", "b", "c", "d"], 12)

        clock.advance(5)
        assert await engine.handle_message(make_message("a", mentions_self=True)) is not None

        clock.advance(10)
        assert await engine.handle_message(make_message("b", mentions_self=True)) is None

        clock.advance(10)
        assert await engine.try_proactive("c1") is None

        clock.advance(30)
        assert await engine.handle_message(make_message("c", content="roxi?")) is not None

        times = [sent_at for _, _, sent_at in transport.sent]
        assert len(times) == 2
        assert times[1] - times[0] >= settings.min_reply_gap

    @pytest.mark.asyncio
    async def test_thread_flag_comes_from_message(self, settings, make_engine, make_message):
        engine = make_engine(settings, reply_probability=0.0)
        await engine.handle_message(make_message("a", is_thread=True))
        assert engine.store.get("c1").is_thread is True
        assert engine.store.get("c1").guild_id == "g1"


class TestWake:
    @pytest.mark.asyncio
    async def test_wake_announcement_sent_once(self, settings, make_engine, make_message, clock, transport, generator):
        engine = make_engine(settings, wake_announce="who woke me up", reply_probability=0.0)

        await engine.handle_message(make_message("a", content="morning"))
        clock.advance(20)
        await engine.handle_message(make_message("b", content="morning!"))

        assert [text for _, text, _ in transport.sent] == ["who woke me up"]
        assert generator.calls == []

    @pytest.mark.asyncio
    async def test_no_announcement_by_default(self, settings, make_engine, make_message, transport):
        engine = make_engine(settings, reply_probability=0.0)
        await engine.handle_message(make_message("a", content="morning"))
        assert transport.sent == []

    @pytest.mark.asyncio
    async def test_directed_wake_replies_instead_of_announcing(
        self, settings, make_engine, make_message, transport, generator
    ):
        engine = make_engine(settings, wake_announce="who woke me up")
        await engine.handle_message(make_message("a", content="roxi you up"))
        assert [text for _, text, _ in transport.sent] == ["lol same"]

    @pytest.mark.asyncio
    async def test_lost_announcement_retried_while_waking(
        self, settings, make_engine, make_message, clock, transport
    ):
        engine = make_engine(settings, wake_announce="who woke me up", reply_probability=0.0)
        transport.fail_send = True
        await engine.handle_message(make_message("a", content="morning"))

        transport.fail_send = False
        clock.advance(20)
        await engine.handle_message(make_message("b", content="morning!"))

        assert [text for _, text, _ in transport.sent] == ["who woke me up"]
        assert engine.dormancy.wake_pending("c1") is False

    @pytest.mark.asyncio
    async def test_lost_announcement_expires_with_window(
        self, settings, make_engine, make_message, clock, transport
    ):
        engine = make_engine(settings, wake_announce="who woke me up", reply_probability=0.0)
        transport.fail_send = True
        await engine.handle_message(make_message("a", content="morning"))

        transport.fail_send = False
        clock.advance(settings.wake_announce_window + 10)
        await engine.handle_message(make_message("b", content="morning!"))

        assert transport.sent == []

    @pytest.mark.asyncio
    async def test_directed_reply_settles_the_wake(
        self, settings, make_engine, make_message, clock, transport
    ):
        engine = make_engine(settings, wake_announce="who woke me up", reply_probability=0.0)
        await engine.handle_message(make_message("a", content="roxi you up"))

        # Past the linger window and the cooldown, still inside the wake window
        clock.advance(100)
        await engine.handle_message(make_message("b", content="morning"))

        assert [text for _, text, _ in transport.sent] == ["lol same"]

    @pytest.mark.asyncio
    async def test_muted_channel_stays_quiet_on_wake(self, settings, make_engine, make_message, transport):
        engine = make_engine(settings, wake_announce="who woke me up")
        engine.set_muted(True)
        await engine.handle_message(make_message("a", content="morning"))
        assert transport.sent == []


class TestAdminState:
    def test_set_muted_reports_change(self, settings, make_engine):
        engine = make_engine(settings)
        assert engine.set_muted(True) is True
        assert engine.set_muted(True) is False
        assert engine.muted is True

    def test_status_snapshot(self, settings, make_engine, clock):
        engine = make_engine(settings)
        engine.store.touch("c1")
        clock.advance(90)
        status = engine.status()
        assert status["uptime_seconds"] == 90
        assert status["muted"] is False
        assert status["tracked_channels"] == 1
        assert status["provider"] == "anthropic"
        assert status["generator_healthy"] is None
        assert status["thresholds"]["min_reply_gap_sec"] == settings.min_reply_gap

    @pytest.mark.asyncio
    async def test_health_check_lands_in_status(self, settings, make_engine, generator):
        engine = make_engine(settings)
        assert await engine.check_health() is True
        assert engine.status()["generator_healthy"] is True

        generator.healthy = False
        assert await engine.check_health() is False
        assert engine.status()["generator_healthy"] is False

    @pytest.mark.asyncio
    async def test_close_closes_generator(self, settings, make_engine, generator):
        engine = make_engine(settings)
        await engine.close()
        assert generator.closed is True

    @pytest.mark.asyncio
    async def test_warmup_delegates_to_generator(self, settings, make_engine, generator):
        engine = make_engine(settings)
        assert await engine.warmup() is True
        generator.warm_ok = False
        assert await engine.warmup() is False
        assert generator.warmups == 2

    def test_eviction_drops_lock(self, settings, make_engine):
        engine = make_engine(settings, max_tracked_channels=1)
        engine.locks._locks["c1"] = asyncio.Lock()
        engine.store.touch("c1")
        engine.store.touch("c2")
        assert "c1" not in engine.locks._locks
