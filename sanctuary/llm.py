"""Async LLM client shared by the structurer and the scorer."""
from __future__ import annotations

import json
import logging
from typing import Any

from sanctuary.config import get_settings
from sanctuary.errors import ParseError, UpstreamUnavailableError
from sanctuary.utils import strip_code_fence

log = logging.getLogger(__name__)

DEFAULT_MODELS = {
    "anthropic": "claude-sonnet-4-20250514",
    "openai": "gpt-4o-mini",
    "openai_compatible": "gpt-4o-mini",
}


class LLMClient:
    """Unified async LLM client supporting Anthropic and OpenAI.

    ``call`` sends one system + user instruction pair and returns the reply
    parsed as JSON (an object or an array). Transport failures raise
    :class:`UpstreamUnavailableError`; replies that are not a text block of
    valid JSON raise :class:`ParseError`. Nothing is retried.

    The provider SDK client is built on the first ``call``; a missing key or
    an unknown provider surfaces there as :class:`UpstreamUnavailableError`.
    """

    def __init__(
        self,
        provider: str | None = None,
        model: str | None = None,
        api_key: str | None = None,
        base_url: str | None = None,
        timeout: float | None = None,
    ):
        settings = get_settings()
        self.provider = provider or settings.llm_provider
        self.model = model or settings.llm_model or DEFAULT_MODELS.get(self.provider, "")
        self.timeout = timeout if timeout is not None else settings.llm_timeout_seconds
        self._api_key = api_key
        self._base_url = base_url
        self._client: Any = None

    def _init_client(self) -> None:
        if self.provider == "anthropic":
            import anthropic
            self._client = anthropic.AsyncAnthropic(api_key=self._api_key, timeout=self.timeout)
        elif self.provider in ("openai", "openai_compatible"):
            import openai
            kwargs: dict[str, Any] = {"timeout": self.timeout}
            if self._api_key:
                kwargs["api_key"] = self._api_key
            if self._base_url:
                kwargs["base_url"] = self._base_url
            self._client = openai.AsyncOpenAI(**kwargs)
        else:
            raise ValueError(f"Unknown LLM provider: {self.provider!r}")

    def _ensure_client(self) -> None:
        if self._client is not None:
            return
        try:
            self._init_client()
        except Exception as exc:
            log.warning("Could not build %s client: %s", self.provider, exc)
            raise UpstreamUnavailableError(f"LLM client unavailable: {exc}") from exc

    async def _complete(self, system: str, user: str, max_tokens: int, json_array: bool) -> str:
        if self.provider == "anthropic":
            response = await self._client.messages.create(
                model=self.model,
                max_tokens=max_tokens,
                system=system,
                messages=[{"role": "user", "content": user}],
            )
            block = response.content[0] if response.content else None
            if block is None or getattr(block, "type", None) != "text":
                raise ParseError("Unexpected response type from LLM (expected a text block)")
            return block.text

        kwargs: dict[str, Any] = {}
        if not json_array:
            kwargs["response_format"] = {"type": "json_object"}
        response = await self._client.chat.completions.create(
            model=self.model,
            max_tokens=max_tokens,
            messages=[
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
            **kwargs,
        )
        text = response.choices[0].message.content
        if text is None:
            raise ParseError("Unexpected response type from LLM (no text content)")
        return text

    async def call(
        self, system: str, user: str, *, max_tokens: int = 4096, json_array: bool = False,
    ) -> Any:
        """Send system+user message to the LLM, return parsed JSON."""
        self._ensure_client()
        try:
            text = await self._complete(system, user, max_tokens, json_array)
        except ParseError:
            raise
        except Exception as exc:
            raise UpstreamUnavailableError(f"LLM API call failed: {exc}") from exc

        text = strip_code_fence(text)
        try:
            return json.loads(text)
        except json.JSONDecodeError as exc:
            raise ParseError(f"LLM returned invalid JSON: {text[:200]}") from exc
