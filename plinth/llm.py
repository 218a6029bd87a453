"""Async LLM client: one text-in, text-out call with bounded retries.

The client makes no promise about the returned text.  It may be prose, fenced
JSON or malformed JSON; :mod:`plinth.repair` owns parsing and validation.
"""
from __future__ import annotations

import asyncio
import logging
import os
import random
from dataclasses import dataclass
from typing import Any

import httpx

from plinth.config import get_settings

log = logging.getLogger(__name__)


class LLMCallError(Exception):
    """LLM call failed after retries or could not be attempted."""
    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable


@dataclass(frozen=True)
class LLMResponse:
    text: str
    model: str = ""


def _is_retryable(exc: BaseException) -> bool:
    """Timeouts, connection drops, HTTP 429 and 5xx are worth another attempt."""
    if isinstance(exc, (asyncio.TimeoutError, httpx.TimeoutException, httpx.TransportError)):
        return True
    status = getattr(exc, "status_code", None)
    if isinstance(status, int):
        return status == 429 or status >= 500
    return type(exc).__name__ in ("APITimeoutError", "APIConnectionError")


def _split_system(messages: list[dict[str, str]]) -> tuple[str, list[dict[str, str]]]:
    system = "\n\n".join(m["content"] for m in messages if m.get("role") == "system")
    rest = [{"role": m["role"], "content": m["content"]} for m in messages if m.get("role") != "system"]
    return system, rest


class LLMClient:
    """Unified async LLM client supporting Anthropic and OpenAI."""

    def __init__(
        self,
        provider: str | None = None,
        model: str | None = None,
        api_key: str | None = None,
        base_url: str | None = None,
    ):
        self.provider = provider or os.environ.get("LLM_PROVIDER", "anthropic")
        self.model = model or os.environ.get("LLM_MODEL", "")
        self._api_key = api_key
        self._base_url = base_url
        self._client: Any = None
        self._settings = get_settings()
        self._init_client()

    def _init_client(self) -> None:
        timeout = self._settings.llm_timeout_seconds
        if self.provider == "anthropic":
            import anthropic
            self.model = self.model or "claude-haiku-4-5-20251001"
            self._client = anthropic.AsyncAnthropic(
                api_key=self._api_key or os.environ.get("ANTHROPIC_API_KEY"),
                timeout=timeout,
                max_retries=0,
            )
        elif self.provider in ("openai", "openai_compatible"):
            import openai
            self.model = self.model or "gpt-4o-mini"
            kwargs: dict[str, Any] = {"timeout": timeout, "max_retries": 0}
            key = self._api_key or os.environ.get("OPENAI_API_KEY")
            if key:
                kwargs["api_key"] = key
            url = self._base_url or os.environ.get("OPENAI_BASE_URL")
            if url:
                kwargs["base_url"] = url
            self._client = openai.AsyncOpenAI(**kwargs)
        else:
            raise ValueError(f"Unknown LLM provider: {self.provider!r}")

    async def _complete(
        self, messages: list[dict[str, str]], json_mode: bool, temperature: float, max_tokens: int,
    ) -> str:
        if self.provider == "anthropic":
            system, rest = _split_system(messages)
            kwargs: dict[str, Any] = {}
            if system:
                kwargs["system"] = system
            response = await self._client.messages.create(
                model=self.model,
                max_tokens=max_tokens,
                temperature=temperature,
                messages=rest,
                **kwargs,
            )
            return "".join(getattr(block, "text", "") for block in response.content).strip()

        kwargs = {}
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}
        response = await self._client.chat.completions.create(
            model=self.model,
            max_tokens=max_tokens,
            temperature=temperature,
            messages=messages,
            **kwargs,
        )
        return response.choices[0].message.content or ""

    async def call_llm(
        self,
        messages: list[dict[str, str]],
        *,
        json_mode: bool = True,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        """Send chat messages and return the raw text, retrying transient failures."""
        s = self._settings
        temperature = s.llm_temperature if temperature is None else temperature
        max_tokens = max_tokens or s.llm_max_tokens

        last_exc: BaseException | None = None
        for attempt in range(1, s.llm_max_attempts + 1):
            try:
                text = await asyncio.wait_for(
                    self._complete(messages, json_mode, temperature, max_tokens),
                    timeout=s.llm_timeout_seconds,
                )
                return LLMResponse(text=text, model=self.model)
            except Exception as exc:
                last_exc = exc
                if not _is_retryable(exc):
                    raise LLMCallError(f"LLM API call failed: {exc}", retryable=False) from exc
                if attempt >= s.llm_max_attempts:
                    break
                base_ms = s.llm_backoff_ms[min(attempt - 1, len(s.llm_backoff_ms) - 1)]
                delay = base_ms * random.uniform(0.75, 1.25) / 1000
                log.warning("LLM call attempt %d/%d failed (%s); retrying in %.2fs",
                            attempt, s.llm_max_attempts, type(exc).__name__, delay)
                await asyncio.sleep(delay)

        raise LLMCallError(
            f"LLM API call failed after {s.llm_max_attempts} attempts: {last_exc}", retryable=True,
        ) from last_exc
