"""LiteLLM-backed provider: one interface to Gemini, OpenAI, Anthropic and the rest."""

import asyncio
import logging
from typing import Any

import litellm

from studioflow.llm.provider import LLMProvider, LLMResponse

logger = logging.getLogger(__name__)

RATE_LIMIT_BACKOFF = 2.0


class LiteLLMProvider(LLMProvider):
    """
    Provider for any model string LiteLLM understands (``"gemini/gemini-2.5-flash"``,
    ``"gpt-4o-mini"``, ...).

    Rate-limit errors and empty responses are retried with exponential
    backoff; anything else propagates to the caller.
    """

    def __init__(
        self,
        model: str,
        api_key: str | None = None,
        api_base: str | None = None,
        max_retries: int = 2,
        **kwargs: Any,
    ):
        self.model = model
        self.api_key = api_key
        self.api_base = api_base
        self.max_retries = max_retries
        self.extra_kwargs = kwargs

    async def complete(
        self,
        messages: list[dict[str, Any]],
        system: str = "",
        max_tokens: int = 1024,
        json_mode: bool = False,
    ) -> LLMResponse:
        full_messages = [{"role": "system", "content": system}] if system else []
        full_messages.extend(messages)

        kwargs: dict[str, Any] = {
            "model": self.model,
            "messages": full_messages,
            "max_tokens": max_tokens,
            **self.extra_kwargs,
        }
        if self.api_key:
            kwargs["api_key"] = self.api_key
        if self.api_base:
            kwargs["api_base"] = self.api_base
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}

        attempt = 0
        while True:
            try:
                response = await litellm.acompletion(**kwargs)
            except litellm.RateLimitError as e:
                if attempt >= self.max_retries:
                    raise
                delay = RATE_LIMIT_BACKOFF * (2**attempt)
                logger.warning(f"Rate limited by {self.model}, retrying in {delay:.0f}s: {e}")
                attempt += 1
                await asyncio.sleep(delay)
                continue

            content = response.choices[0].message.content or ""
            if not content.strip() and attempt < self.max_retries:
                logger.warning(f"Empty response from {self.model}, retrying")
                attempt += 1
                continue

            usage = getattr(response, "usage", None)
            return LLMResponse(
                content=content,
                model=response.model or self.model,
                input_tokens=getattr(usage, "prompt_tokens", 0) if usage else 0,
                output_tokens=getattr(usage, "completion_tokens", 0) if usage else 0,
                stop_reason=response.choices[0].finish_reason or "",
                raw_response=response,
            )
