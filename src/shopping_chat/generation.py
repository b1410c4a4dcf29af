"""Text generation engines: the streaming chat-completions client and an offline fallback."""

from __future__ import annotations

from abc import ABC, abstractmethod
import asyncio
from dataclasses import dataclass
import json
import logging
import os
import random
from typing import Any, AsyncIterator, Sequence

import httpx

from shopping_chat.settings import _env_float, _env_int, load_json_overrides


_LOGGER = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://ark.cn-beijing.volces.com/api/v3/chat/completions"
DEFAULT_MODEL = "doubao-lite-4k"
_RETRYABLE_STATUS = {408, 409, 429, 500, 502, 503, 504}


class GenerationError(RuntimeError):
    """The generation engine failed to produce a reply."""


class GenerationTimeout(GenerationError):
    """The generation engine did not answer within its time budget."""


@dataclass(frozen=True)
class GenerationOptions:
    temperature: float = 0.7
    max_tokens: int = 1000
    top_p: float = 0.9
    # Selects reply flavour for engines that honour it; never sent upstream.
    persona_id: str | None = None


ChatMessage = dict[str, str]


class GenerationEngine(ABC):
    """Produces a reply for an ordered list of ``{"role", "content"}`` messages."""

    name = "engine"

    @abstractmethod
    def stream(self, messages: Sequence[ChatMessage], options: GenerationOptions) -> AsyncIterator[str]:
        """Yield reply fragments; exhaustion means natural completion, raising means failure."""

    async def complete(self, messages: Sequence[ChatMessage], options: GenerationOptions) -> str:
        parts: list[str] = []
        async for fragment in self.stream(messages, options):
            parts.append(fragment)
        return "".join(parts)

    def health_check(self) -> dict[str, Any]:
        return {"status": "healthy", "engine": self.name}


@dataclass(frozen=True)
class GenerationConfig:
    api_key: str
    base_url: str
    model: str
    timeout_seconds: float
    max_retries: int

    @classmethod
    def from_env(cls) -> "GenerationConfig":
        overrides = load_json_overrides("SHOP_LLM_CONFIG_PATH")
        api_key = os.getenv("SHOP_LLM_API_KEY", "").strip() or str(overrides.get("api_key", "")).strip()
        base_url = os.getenv("SHOP_LLM_BASE_URL", "").strip() or str(
            overrides.get("base_url", DEFAULT_BASE_URL)
        ).strip()
        # Older deployments configured a websocket URL for the same endpoint.
        if base_url.startswith("wss://"):
            base_url = "https://" + base_url[len("wss://") :]
        return cls(
            api_key=api_key,
            base_url=base_url or DEFAULT_BASE_URL,
            model=os.getenv("SHOP_LLM_MODEL", "").strip() or str(overrides.get("model", DEFAULT_MODEL)),
            timeout_seconds=_env_float(
                "SHOP_LLM_TIMEOUT_SECONDS",
                float(overrides.get("timeout_seconds", 30.0) or 30.0),
            ),
            max_retries=_env_int("SHOP_LLM_MAX_RETRIES", int(overrides.get("max_retries", 1) or 1)),
        )

    @property
    def configured(self) -> bool:
        return bool(self.api_key) and self.api_key != "your_api_key_here"


class ArkChatEngine(GenerationEngine):
    """OpenAI-compatible chat-completions client with SSE streaming."""

    name = "ark-chat"

    def __init__(self, config: GenerationConfig, *, transport: httpx.AsyncBaseTransport | None = None) -> None:
        if not config.configured:
            raise RuntimeError("SHOP_LLM_API_KEY is not set.")
        self.config = config
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=httpx.Timeout(self.config.timeout_seconds),
            transport=self._transport,
        )

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.config.api_key}",
            "Content-Type": "application/json",
        }

    def _payload(self, messages: Sequence[ChatMessage], options: GenerationOptions, *, stream: bool) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": self.config.model,
            "messages": [dict(message) for message in messages],
            "stream": stream,
            "temperature": options.temperature,
            "max_tokens": options.max_tokens,
            "top_p": options.top_p,
        }
        return payload

    @staticmethod
    def parse_stream_line(line: str) -> tuple[bool, str | None]:
        """Parse one SSE line into ``(done, fragment)``."""
        if not line.startswith("data:"):
            return False, None
        data = line[len("data:") :].strip()
        if not data:
            return False, None
        if data == "[DONE]":
            return True, None
        try:
            parsed = json.loads(data)
        except json.JSONDecodeError:
            _LOGGER.warning("Skipping malformed stream line: %s", data[:200])
            return False, None
        choices = parsed.get("choices") if isinstance(parsed, dict) else None
        if not isinstance(choices, list) or not choices:
            return False, None
        delta = choices[0].get("delta") if isinstance(choices[0], dict) else None
        if not isinstance(delta, dict):
            return False, None
        content = delta.get("content")
        return False, (content if isinstance(content, str) and content else None)

    async def stream(self, messages: Sequence[ChatMessage], options: GenerationOptions) -> AsyncIterator[str]:
        payload = self._payload(messages, options, stream=True)
        async with self._client() as client:
            for attempt in range(self.config.max_retries + 1):
                yielded = False
                try:
                    async with client.stream(
                        "POST",
                        self.config.base_url,
                        headers=self._headers(),
                        json=payload,
                    ) as response:
                        if response.status_code != 200:
                            body = (await response.aread()).decode("utf-8", errors="ignore")
                            if response.status_code in _RETRYABLE_STATUS and attempt < self.config.max_retries:
                                await asyncio.sleep(0.4 * (2**attempt))
                                continue
                            raise GenerationError(
                                f"Generation request failed ({response.status_code}): {body[:200] or response.reason_phrase}"
                            )

                        async for line in response.aiter_lines():
                            done, fragment = self.parse_stream_line(line)
                            if done:
                                return
                            if fragment:
                                yielded = True
                                yield fragment
                        return
                except httpx.TimeoutException as exc:
                    raise GenerationTimeout("Generation request timed out.") from exc
                except httpx.TransportError as exc:
                    # A partially delivered reply cannot be replayed.
                    if yielded or attempt >= self.config.max_retries:
                        raise GenerationError(f"Generation transport failed: {exc}") from exc
                    _LOGGER.warning("Generation transport error (%s); retrying.", exc)
                    await asyncio.sleep(0.4 * (2**attempt))

    async def complete(self, messages: Sequence[ChatMessage], options: GenerationOptions) -> str:
        payload = self._payload(messages, options, stream=False)
        async with self._client() as client:
            for attempt in range(self.config.max_retries + 1):
                try:
                    response = await client.post(self.config.base_url, headers=self._headers(), json=payload)
                except httpx.TimeoutException as exc:
                    raise GenerationTimeout("Generation request timed out.") from exc
                except httpx.TransportError as exc:
                    if attempt >= self.config.max_retries:
                        raise GenerationError(f"Generation transport failed: {exc}") from exc
                    await asyncio.sleep(0.4 * (2**attempt))
                    continue
                if response.status_code in _RETRYABLE_STATUS and attempt < self.config.max_retries:
                    await asyncio.sleep(0.4 * (2**attempt))
                    continue
                if response.status_code != 200:
                    raise GenerationError(f"Generation request failed ({response.status_code}): {response.text[:200]}")
                data = response.json()
                try:
                    return str(data["choices"][0]["message"]["content"] or "")
                except (KeyError, IndexError, TypeError) as exc:
                    raise GenerationError("Generation response had no message content.") from exc
        raise GenerationError("Generation request failed after retries.")

    def health_check(self) -> dict[str, Any]:
        return {
            "status": "healthy",
            "engine": self.name,
            "model": self.config.model,
            "hasApiKey": True,
            "baseURL": self.config.base_url,
        }


_CANNED_REPLIES: dict[str, list[str]] = {
    "friendly": [
        "我为你推荐几款很棒的商品！",
        "让我帮你找到最合适的商品！",
        "这些商品都很不错，你可以看看！",
        "我精心为你挑选了这些商品！",
    ],
    "rational": [
        "基于你的需求，我分析了以下商品的性价比：",
        "让我为你分析最优质的商品选择：",
        "从实用性和价值角度，我推荐这些商品：",
        "经过理性分析，这些商品最适合你：",
    ],
    "luxury": [
        "我为你精选了这些高端商品：",
        "这些都是品质卓越的奢华选择：",
        "让我为你推荐最精致的高端商品：",
        "这些商品体现了最高的品质标准：",
    ],
}


class CannedReplyEngine(GenerationEngine):
    """Offline engine used when no model endpoint is configured.

    Streams a short persona-flavoured reply one character at a time.
    """

    name = "canned"

    def __init__(self, *, persona_id: str = "friendly", seed: int | None = None, delay_seconds: float = 0.0) -> None:
        self.persona_id = persona_id
        self.delay_seconds = max(0.0, float(delay_seconds))
        self._random = random.Random(seed)

    def pick_reply(self, persona_id: str | None = None) -> str:
        replies = _CANNED_REPLIES.get(persona_id or self.persona_id) or _CANNED_REPLIES["friendly"]
        return self._random.choice(replies)

    async def stream(self, messages: Sequence[ChatMessage], options: GenerationOptions) -> AsyncIterator[str]:
        for char in self.pick_reply(options.persona_id):
            if self.delay_seconds:
                await asyncio.sleep(self.delay_seconds)
            yield char

    def health_check(self) -> dict[str, Any]:
        return {"status": "degraded", "engine": self.name, "hasApiKey": False}


def make_engine(config: GenerationConfig | None = None) -> GenerationEngine:
    cfg = config or GenerationConfig.from_env()
    if not cfg.configured:
        _LOGGER.warning("SHOP_LLM_API_KEY is not configured; using canned replies.")
        return CannedReplyEngine()
    return ArkChatEngine(cfg)
