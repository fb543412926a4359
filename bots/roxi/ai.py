"""
Reply generation for Roxi.

Three providers share the same prompt:
    anthropic - Claude via the messages API
    ollama    - local model, streamed, returns on the first full sentence
    openai    - any OpenAI-compatible /chat/completions endpoint

All raise GenerationError for anything that doesn't end in a usable line,
including responses that don't have the expected shape.
Timeouts and the single retry live in the engine.
"""

import asyncio
import json
import re
from pathlib import Path
from typing import Optional, Protocol

import aiohttp
import anthropic

from common.config import Settings
from common.errors import GenerationError
from common.logger import get_logger
from common.models import GenerationRequest

logger = get_logger("roxi.ai")

FALLBACK_PERSONA = "You are Roxi, a sassy friend hanging out in a Discord server."

# Prompt transcript budget (characters, newest kept)
TRANSCRIPT_CHAR_CAP = 480

# Longest line we'll ever post
MAX_REPLY_CHARS = 300

SENTENCE_END_RE = re.compile(r"[.!?]\s?$")


class ReplyGenerator(Protocol):
    async def generate(self, request: GenerationRequest) -> str: ...

    async def warmup(self) -> bool: ...

    async def health(self) -> bool: ...

    async def close(self): ...


def load_system_prompt(path: str) -> str:
    """Load the persona prompt from file."""
    if Path(path).exists():
        with open(path, 'r', encoding='utf-8') as f:
            prompt = f.read().strip()
            logger.info(f"Loaded system prompt: {len(prompt)} characters")
            return prompt or FALLBACK_PERSONA
    logger.warning(f"System prompt not found at {path}, using the built-in persona")
    return FALLBACK_PERSONA


def to_transcript(request: GenerationRequest) -> str:
    """Very compact transcript: one `author: text` line per non-empty message."""
    lines = [
        f"{m.author}: {' '.join(m.content.split())}"
        for m in request.transcript
        if m.content and m.content.strip()
    ]
    text = "\n".join(lines)
    if len(text) > TRANSCRIPT_CHAR_CAP:
        text = text[-TRANSCRIPT_CHAR_CAP:]
    return text


def user_instruction(request: GenerationRequest) -> str:
    channel = request.channel_name.lstrip("#") or "chat"
    momentum = request.momentum
    return (
        f"Channel: #{channel} ({momentum.count} recent messages from "
        f"{momentum.distinct_participants} people). "
        f"Reply with ONE short, relevant line in Roxi's voice."
    )


def clean_reply(text: Optional[str]) -> str:
    """First line only, capped. Empty output is an error."""
    stripped = (text or "").strip()
    if not stripped:
        raise GenerationError("generator returned no text", reason="empty")
    return stripped.split("\n")[0].strip()[:MAX_REPLY_CHARS]


WARMUP_REQUEST = GenerationRequest(channel_name="warmup")


class AnthropicGenerator:
    def __init__(self, settings: Settings, client: anthropic.AsyncAnthropic = None):
        self.settings = settings
        self.client = client or anthropic.AsyncAnthropic(api_key=settings.anthropic_api_key)
        self.system_prompt = load_system_prompt(settings.system_prompt_path)
        logger.info("Anthropic client initialized")

    async def generate(self, request: GenerationRequest) -> str:
        transcript = to_transcript(request) or "Say hi briefly."
        try:
            response = await self.client.messages.create(
                model=self.settings.anthropic_model,
                max_tokens=self.settings.max_output_tokens,
                temperature=self.settings.temperature,
                system=[
                    {
                        "type": "text",
                        "text": self.system_prompt,
                        "cache_control": {"type": "ephemeral"}
                    }
                ],
                messages=[{"role": "user", "content": f"{transcript}\n\n{user_instruction(request)}"}],
            )
        except anthropic.APIError as e:
            raise GenerationError(f"Claude API error: {e}") from e

        text = "".join(
            block.text for block in response.content if getattr(block, "type", "") == "text"
        )
        return clean_reply(text)

    async def warmup(self) -> bool:
        try:
            return bool(await self.generate(WARMUP_REQUEST))
        except GenerationError as e:
            logger.error(f"Warmup failed: {e}")
            return False

    async def health(self) -> bool:
        try:
            await self.client.models.list(limit=1)
            return True
        except anthropic.APIError as e:
            logger.warning(f"Anthropic health check failed: {e}")
            return False

    async def close(self):
        await self.client.close()


class HttpGenerator:
    """Shared session handling for the providers spoken to over plain HTTP."""

    name = "http"
    health_url = ""

    def __init__(self, settings: Settings, base_url: str, session: aiohttp.ClientSession = None):
        self.settings = settings
        self.base_url = base_url.rstrip("/")
        self.system_prompt = load_system_prompt(settings.system_prompt_path)
        self._session = session

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.settings.generation_timeout)
            )
        return self._session

    def _headers(self) -> dict:
        return {}

    def _messages(self, request: GenerationRequest) -> list:
        return [
            {"role": "system", "content": self.system_prompt},
            {"role": "user", "content": to_transcript(request) or "Say hi briefly."},
            {"role": "user", "content": user_instruction(request)},
        ]

    async def _error(self, resp: aiohttp.ClientResponse) -> GenerationError:
        text = await resp.text()
        return GenerationError(f"{self.name} HTTP {resp.status}: {text[:200]}")

    async def warmup(self) -> bool:
        try:
            return bool(await self.generate(WARMUP_REQUEST))
        except GenerationError as e:
            logger.error(f"Warmup failed: {e}")
            return False

    async def health(self) -> bool:
        try:
            async with self._get_session().get(self.health_url, headers=self._headers()) as resp:
                return resp.status == 200
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning(f"{self.name} health check failed: {e}")
            return False

    async def close(self):
        if self._session is not None and not self._session.closed:
            await self._session.close()


class OllamaGenerator(HttpGenerator):
    """Streams /api/chat and stops reading once a plausible first sentence is in."""

    name = "ollama"

    def __init__(self, settings: Settings, session: aiohttp.ClientSession = None):
        super().__init__(settings, settings.ollama_url, session)
        self.health_url = f"{self.base_url}/api/tags"

    def _body(self, request: GenerationRequest) -> dict:
        return {
            "model": self.settings.ollama_model,
            "messages": self._messages(request),
            "stream": True,
            "keep_alive": "2h",
            "options": {
                "temperature": self.settings.temperature,
                "num_predict": self.settings.max_output_tokens,
                "num_ctx": 768,  # smaller context => faster first token
                "stop": ["\n", "\n\n"],
            },
        }

    @staticmethod
    def _piece(data) -> str:
        """Text carried by one stream chunk."""
        if not isinstance(data, dict):
            raise GenerationError(f"ollama sent a non-object chunk: {data!r:.80}", reason="malformed")
        message = data.get("message")
        if message is None:
            return ""
        content = message.get("content", "") if isinstance(message, dict) else None
        if not isinstance(content, str):
            raise GenerationError(f"ollama sent a malformed message: {message!r:.80}", reason="malformed")
        return content

    async def generate(self, request: GenerationRequest) -> str:
        url = f"{self.base_url}/api/chat"
        out = ""
        try:
            async with self._get_session().post(url, json=self._body(request)) as resp:
                if resp.status != 200:
                    raise await self._error(resp)

                async for raw in resp.content:
                    line = raw.decode("utf-8", errors="ignore").strip()
                    if not line:
                        continue
                    try:
                        data = json.loads(line)
                    except json.JSONDecodeError:
                        continue

                    out += self._piece(data)
                    current = out.strip()
                    if len(current) >= 16 and SENTENCE_END_RE.search(current):
                        break
                    if data.get("done"):
                        break
        except aiohttp.ClientError as e:
            raise GenerationError(f"ollama request failed: {e}") from e

        return clean_reply(out)


class OpenAIGenerator(HttpGenerator):
    """Any OpenAI-compatible /chat/completions endpoint, non-streamed."""

    name = "openai"

    def __init__(self, settings: Settings, session: aiohttp.ClientSession = None):
        super().__init__(settings, settings.openai_base_url, session)
        self.health_url = f"{self.base_url}/models"

    def _headers(self) -> dict:
        return {"Authorization": f"Bearer {self.settings.openai_api_key}"}

    def _body(self, request: GenerationRequest) -> dict:
        return {
            "model": self.settings.openai_model,
            "temperature": self.settings.temperature,
            "max_tokens": self.settings.max_output_tokens,
            "messages": self._messages(request),
        }

    @staticmethod
    def _content(data) -> str:
        if not isinstance(data, dict):
            raise GenerationError("openai response is not an object", reason="malformed")
        choices = data.get("choices")
        if not choices:
            raise GenerationError("openai returned no choices", reason="empty")
        first = choices[0] if isinstance(choices, list) else None
        message = first.get("message") if isinstance(first, dict) else None
        content = message.get("content") if isinstance(message, dict) else None
        if content is None:
            raise GenerationError("openai returned no content", reason="empty")
        if not isinstance(content, str):
            raise GenerationError(f"openai content is not text: {content!r:.80}", reason="malformed")
        return content

    async def generate(self, request: GenerationRequest) -> str:
        url = f"{self.base_url}/chat/completions"
        try:
            async with self._get_session().post(url, json=self._body(request), headers=self._headers()) as resp:
                if resp.status != 200:
                    raise await self._error(resp)
                try:
                    data = await resp.json(content_type=None)
                except ValueError as e:
                    raise GenerationError(f"openai sent invalid JSON: {e}", reason="malformed") from e
        except aiohttp.ClientError as e:
            raise GenerationError(f"openai request failed: {e}") from e

        return clean_reply(self._content(data))


def make_generator(settings: Settings) -> ReplyGenerator:
    if settings.ai_provider == "ollama":
        return OllamaGenerator(settings)
    if settings.ai_provider == "openai":
        return OpenAIGenerator(settings)
    return AnthropicGenerator(settings)


async def keepalive_loop(generator: ReplyGenerator, interval: float):
    """Ping the generator on a fixed interval so the model stays loaded."""
    if interval <= 0:
        return
    while True:
        await asyncio.sleep(interval)
        try:
            ok = await generator.warmup()
            logger.debug(f"Keep-alive warmup: {'ok' if ok else 'failed'}")
        except Exception as e:
            logger.error(f"Keep-alive error: {e}", exc_info=True)
