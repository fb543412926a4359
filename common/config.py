"""
Shared configuration for the Roxi bot.

Every tunable is read from the environment (a local .env file is loaded
on import) so the same build runs locally and on the host without edits.

Locally:
    Copy the variables you need into .env next to the repo root.

Startup:
    Settings.from_env() raises ConfigurationError when a required
    credential is missing; the entry point refuses to start.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional

from dotenv import load_dotenv

from common.errors import ConfigurationError

load_dotenv()

# ---------------------------------------------------------------------------
# Directory layout
# ---------------------------------------------------------------------------

# Root of the repo (parent of common/)
PROJECT_ROOT = Path(__file__).resolve().parent.parent

# Default persona prompt location, override with ROXI_SYSTEM_PROMPT_PATH
DEFAULT_SYSTEM_PROMPT_PATH = PROJECT_ROOT / "system_prompt.txt"

PROVIDERS = ("anthropic", "ollama", "openai")


def parse_id_list(value: Optional[str]) -> frozenset:
    """Split a comma separated env value into a set of ids."""
    return frozenset(part.strip() for part in (value or "").split(",") if part.strip())


def _number(env: Mapping[str, str], name: str, default, cast=float):
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return cast(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}")


@dataclass(frozen=True)
class Settings:
    """Runtime settings. Durations are seconds unless the name says otherwise."""

    bot_token: str = ""

    # ---------- Reply generation ----------
    ai_provider: str = "anthropic"
    anthropic_api_key: str = ""
    anthropic_model: str = "claude-sonnet-4-20250514"
    ollama_url: str = "http://127.0.0.1:11434"
    ollama_model: str = "qwen2.5:3b-instruct"
    openai_base_url: str = "https://api.openai.com/v1"
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    max_output_tokens: int = 60
    temperature: float = 0.6
    system_prompt_path: str = str(DEFAULT_SYSTEM_PROMPT_PATH)
    generation_timeout: float = 26.0
    keepalive_interval: float = 1800.0

    # ---------- Channels and people ----------
    allowed_channel_ids: frozenset = field(default_factory=frozenset)
    blocked_channel_ids: frozenset = field(default_factory=frozenset)
    privileged_user_ids: frozenset = field(default_factory=frozenset)
    trigger_keywords: tuple = ("roxi",)

    # ---------- Momentum ----------
    momentum_lookback: float = 20 * 60.0
    momentum_min_msgs: int = 10
    momentum_min_speakers: int = 3
    min_distinct_speakers: int = 3
    min_distinct_speakers_thread: int = 3

    # ---------- Dormancy ----------
    sleep_threshold: float = 60 * 60.0
    wake_announce_window: float = 120.0
    wake_announce: str = ""

    # ---------- Pacing ----------
    min_reply_gap: float = 45.0
    min_user_gap: float = 2.0
    engagement_linger: float = 90.0
    reply_probability: float = 0.33
    proactive_probability: float = 0.05
    proactive_interval: float = 300.0

    # ---------- Transcript ----------
    transcript_limit: int = 6
    max_input_chars: int = 800
    fallback_line: str = ""

    # 0 keeps every channel for the process lifetime
    max_tracked_channels: int = 0

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if environ is None else environ

        bot_token = env.get("ROXI_BOT_TOKEN", "").strip()
        if not bot_token:
            raise ConfigurationError("ROXI_BOT_TOKEN is not set")

        provider = env.get("ROXI_AI_PROVIDER", "anthropic").strip().lower()
        if provider not in PROVIDERS:
            raise ConfigurationError(f"ROXI_AI_PROVIDER must be one of {PROVIDERS}, got {provider!r}")

        anthropic_api_key = env.get("ANTHROPIC_API_KEY", "").strip()
        if provider == "anthropic" and not anthropic_api_key:
            raise ConfigurationError("ANTHROPIC_API_KEY is required for the anthropic provider")

        ollama_url = env.get("OLLAMA_URL", "http://127.0.0.1:11434").strip().rstrip("/")
        if provider == "ollama" and not ollama_url:
            raise ConfigurationError("OLLAMA_URL is required for the ollama provider")

        openai_base_url = env.get("OPENAI_BASE_URL", cls.openai_base_url).strip().rstrip("/")
        openai_api_key = env.get("OPENAI_API_KEY", "").strip()
        if provider == "openai" and not openai_api_key:
            raise ConfigurationError("OPENAI_API_KEY is required for the openai provider")

        keywords = tuple(k.lower() for k in parse_id_list(env.get("ROXI_TRIGGER_KEYWORDS", "roxi")))
        min_speakers = _number(env, "MIN_DISTINCT_SPEAKERS", 3, int)

        return cls(
            bot_token=bot_token,
            ai_provider=provider,
            anthropic_api_key=anthropic_api_key,
            anthropic_model=env.get("ANTHROPIC_MODEL", cls.anthropic_model),
            ollama_url=ollama_url,
            ollama_model=env.get("OLLAMA_MODEL", cls.ollama_model),
            openai_base_url=openai_base_url or cls.openai_base_url,
            openai_api_key=openai_api_key,
            openai_model=env.get("OPENAI_MODEL", cls.openai_model),
            # Short single lines only
            max_output_tokens=min(_number(env, "ROXI_MAX_OUTPUT_TOKENS", 60, int), 80),
            temperature=_number(env, "ROXI_TEMPERATURE", 0.6),
            system_prompt_path=env.get("ROXI_SYSTEM_PROMPT_PATH", str(DEFAULT_SYSTEM_PROMPT_PATH)),
            generation_timeout=_number(env, "GENERATION_TIMEOUT_SEC", 26.0),
            keepalive_interval=_number(env, "KEEPALIVE_INTERVAL_SEC", 1800.0),
            allowed_channel_ids=parse_id_list(env.get("ALLOWED_CHANNEL_IDS")),
            blocked_channel_ids=parse_id_list(env.get("BLOCKED_CHANNEL_IDS")),
            privileged_user_ids=parse_id_list(env.get("PRIVILEGED_USER_IDS")),
            trigger_keywords=tuple(sorted(keywords)),
            momentum_lookback=_number(env, "MOMENTUM_LOOKBACK_MIN", 20.0) * 60.0,
            momentum_min_msgs=_number(env, "MOMENTUM_MIN_MSGS", 10, int),
            momentum_min_speakers=_number(env, "MOMENTUM_MIN_SPEAKERS", 3, int),
            min_distinct_speakers=min_speakers,
            min_distinct_speakers_thread=_number(env, "MIN_DISTINCT_SPEAKERS_THREAD", min_speakers, int),
            sleep_threshold=_number(env, "SLEEP_AFTER_MIN", 60.0) * 60.0,
            wake_announce_window=_number(env, "WAKE_ANNOUNCE_WINDOW_SEC", 120.0),
            wake_announce=env.get("ROXI_WAKE_ANNOUNCE", "").strip(),
            min_reply_gap=_number(env, "MIN_REPLY_GAP_SEC", 45.0),
            min_user_gap=_number(env, "MIN_USER_GAP_SEC", 2.0),
            engagement_linger=_number(env, "ENGAGEMENT_LINGER_SEC", 90.0),
            reply_probability=_number(env, "REPLY_PROBABILITY", 0.33),
            proactive_probability=_number(env, "PROACTIVE_PROBABILITY", 0.05),
            proactive_interval=_number(env, "PROACTIVE_INTERVAL_SEC", 300.0),
            transcript_limit=_number(env, "TRANSCRIPT_LIMIT", 6, int),
            max_input_chars=_number(env, "MAX_INPUT_CHARS", 800, int),
            fallback_line=env.get("ROXI_FALLBACK_LINE", "").strip(),
            max_tracked_channels=_number(env, "MAX_TRACKED_CHANNELS", 0, int),
        )

    def thresholds(self) -> dict:
        """Configured thresholds, as shown by the status command."""
        return {
            "lookback_min": self.momentum_lookback / 60,
            "momentum_min_msgs": self.momentum_min_msgs,
            "momentum_min_speakers": self.momentum_min_speakers,
            "min_distinct_speakers": self.min_distinct_speakers,
            "min_distinct_speakers_thread": self.min_distinct_speakers_thread,
            "sleep_after_min": self.sleep_threshold / 60,
            "min_reply_gap_sec": self.min_reply_gap,
            "min_user_gap_sec": self.min_user_gap,
            "linger_sec": self.engagement_linger,
            "reply_probability": self.reply_probability,
            "proactive_probability": self.proactive_probability,
            "proactive_interval_sec": self.proactive_interval,
        }
