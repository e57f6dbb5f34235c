"""
Vision / generation model interface.

Request: instruction text plus an optional JPEG. Response: free text that is
expected to hold one JSON object, possibly wrapped in a ``` fence.
Swap the provider with `set_llm_provider` (tests install a scripted fake).
"""
from __future__ import annotations

import base64
import json
import logging
import re
from abc import ABC, abstractmethod
from typing import Any

import httpx

from reelforge.services.errors import PipelineError
from reelforge.settings import get_settings

logger = logging.getLogger(__name__)


class LLMResponseError(ValueError):
    """Model answered, but no JSON object could be recovered from the text."""


_FENCE = re.compile(r"```(?:json)?\s*\n?(.*?)\n?```", re.DOTALL)


def _first_object_span(text: str) -> str | None:
    """Return the first balanced top-level {...} span, honouring JSON strings."""
    start = text.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for i in range(start, len(text)):
            ch = text[i]
            if in_string:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == '"':
                    in_string = False
                continue
            if ch == '"':
                in_string = True
            elif ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    return text[start:i + 1]
        start = text.find("{", start + 1)
    return None


def extract_json_object(text: str) -> dict[str, Any]:
    """Pull the JSON object out of a model response."""
    text = (text or "").strip()

    try:
        parsed = json.loads(text)
        if isinstance(parsed, dict):
            return parsed
    except json.JSONDecodeError:
        pass

    fence = _FENCE.search(text)
    if fence:
        inner = fence.group(1).strip()
        try:
            parsed = json.loads(inner)
            if isinstance(parsed, dict):
                return parsed
        except json.JSONDecodeError:
            text = inner

    span = _first_object_span(text)
    if span is not None:
        try:
            return json.loads(span)
        except json.JSONDecodeError as exc:
            raise LLMResponseError(f"Malformed JSON object in response: {exc}") from exc

    raise LLMResponseError(f"Could not extract JSON from response: {text[:200]}...")


class LLMProvider(ABC):
    """Abstract model provider. Implement `complete` to plug in a real model."""

    model: str = "unknown"

    @abstractmethod
    async def complete(
        self,
        prompt: str,
        *,
        image_jpeg: bytes | None = None,
        temperature: float = 0.3,
        max_tokens: int = 1000,
    ) -> str:
        ...

    async def complete_json(self, prompt: str, **kwargs) -> dict[str, Any]:
        return extract_json_object(await self.complete(prompt, **kwargs))


class OpenAIChatProvider(LLMProvider):
    """OpenAI-compatible /chat/completions endpoint over httpx."""

    def __init__(
        self,
        *,
        api_key: str | None = None,
        base_url: str | None = None,
        model: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        settings = get_settings()
        self.api_key = api_key or settings.openai_api_key
        self.base_url = (base_url or settings.openai_base_url).rstrip("/")
        self.model = model or settings.openai_model
        self.timeout = timeout or settings.openai_timeout_sec
        self.transport = transport

    async def complete(
        self,
        prompt: str,
        *,
        image_jpeg: bytes | None = None,
        temperature: float = 0.3,
        max_tokens: int = 1000,
    ) -> str:
        if not self.api_key:
            raise PipelineError("UNAUTHORIZED", "OPENAI_API_KEY is not configured", retriable=False)

        content: Any = prompt
        if image_jpeg is not None:
            b64 = base64.b64encode(image_jpeg).decode("ascii")
            content = [
                {"type": "text", "text": prompt},
                {"type": "image_url", "image_url": {"url": f"data:image/jpeg;base64,{b64}"}},
            ]

        body = {
            "model": self.model,
            "messages": [{"role": "user", "content": content}],
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            resp = await client.post(
                f"{self.base_url}/chat/completions",
                json=body,
                headers={"Authorization": f"Bearer {self.api_key}"},
            )
            resp.raise_for_status()
            data = resp.json()

        choices = data.get("choices") or []
        text = (choices[0].get("message") or {}).get("content") if choices else None
        return text or "{}"


_provider: LLMProvider | None = None


def get_llm_provider() -> LLMProvider:
    global _provider
    if _provider is None:
        _provider = OpenAIChatProvider()
    return _provider


def set_llm_provider(provider: LLMProvider | None) -> None:
    global _provider
    _provider = provider
