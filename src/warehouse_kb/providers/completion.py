"""
Chat completion provider backed by Google GenAI.
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass
from typing import Any, AsyncIterator, Literal

from google.genai import Client as GenAIClient
from google.genai.types import Content, Part

from ..errors import CompletionProviderError
from .remote import call_with_retries
from .usage import TokenUsage, UsageTracker, estimate_tokens


logger = logging.getLogger(__name__)

_DEFAULT_MODEL = "gemini-2.5-flash"


@dataclass(frozen=True)
class ChatMessage:
    role: Literal["system", "user", "assistant"]
    content: str


@dataclass(frozen=True)
class CompletionResult:
    text: str
    usage: TokenUsage
    finish_reason: str | None = None


def _enum_name(value: Any) -> str | None:
    if value is None:
        return None
    return str(getattr(value, "name", value))


class CompletionProvider:
    """Generate, stream and moderate text via Google GenAI."""

    def __init__(
        self,
        *,
        api_key: str | None = None,
        model: str | None = None,
        temperature: float = 0.7,
        max_output_tokens: int = 1000,
        timeout: float = 30.0,
        max_retries: int = 3,
        retry_base_delay: float = 1.0,
        usage: UsageTracker | None = None,
        client: Any | None = None,
    ) -> None:
        self.model = model or os.getenv("WAREHOUSE_KB_CHAT_MODEL", _DEFAULT_MODEL)
        self.temperature = temperature
        self.max_output_tokens = max_output_tokens
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_base_delay = retry_base_delay
        self.usage = usage or UsageTracker()

        if client is not None:
            self._client = client
        else:
            resolved_key = api_key or os.getenv("GOOGLE_API_KEY")
            if resolved_key is None:
                raise ValueError(
                    "GOOGLE_API_KEY not found. "
                    "Provide api_key or set the environment variable."
                )
            self._client = GenAIClient(api_key=resolved_key)

    def _request(
        self,
        messages: list[ChatMessage],
        temperature: float | None,
        max_output_tokens: int | None,
    ) -> tuple[list[Content], dict[str, Any]]:
        system = "\n\n".join(m.content for m in messages if m.role == "system")
        contents = [
            Content(
                role="model" if m.role == "assistant" else "user",
                parts=[Part.from_text(text=m.content)],
            )
            for m in messages
            if m.role != "system"
        ]
        config: dict[str, Any] = {
            "temperature": self.temperature if temperature is None else temperature,
            "max_output_tokens": max_output_tokens or self.max_output_tokens,
        }
        if system:
            config["system_instruction"] = system
        return contents, config

    async def complete(
        self,
        messages: list[ChatMessage],
        *,
        temperature: float | None = None,
        max_output_tokens: int | None = None,
    ) -> CompletionResult:
        """Single completion. Raises CompletionProviderError after bounded retries."""
        contents, config = self._request(messages, temperature, max_output_tokens)
        response = await call_with_retries(
            lambda: self._client.aio.models.generate_content(
                model=self.model,
                contents=contents,
                config=config,
            ),
            what="generate_content",
            timeout=self.timeout,
            attempts=self.max_retries,
            base_delay=self.retry_base_delay,
            error_cls=CompletionProviderError,
        )
        text = response.text or ""
        finish_reason = None
        if response.candidates:
            finish_reason = _enum_name(response.candidates[0].finish_reason)

        usage = self._usage_from(response, messages, text)
        self.usage.record(self.model, usage)
        return CompletionResult(text=text, usage=usage, finish_reason=finish_reason)

    async def stream(
        self,
        messages: list[ChatMessage],
        *,
        temperature: float | None = None,
        max_output_tokens: int | None = None,
    ) -> AsyncIterator[str]:
        """Yield text fragments as they arrive.

        Each fragment must arrive within ``timeout`` seconds. Closing the
        iterator (or cancelling its consumer) closes the provider stream.
        """
        contents, config = self._request(messages, temperature, max_output_tokens)
        response_stream = await call_with_retries(
            lambda: self._client.aio.models.generate_content_stream(
                model=self.model,
                contents=contents,
                config=config,
            ),
            what="generate_content_stream",
            timeout=self.timeout,
            attempts=self.max_retries,
            base_delay=self.retry_base_delay,
            error_cls=CompletionProviderError,
        )
        iterator = response_stream.__aiter__()
        produced: list[str] = []
        try:
            while True:
                try:
                    chunk = await asyncio.wait_for(iterator.__anext__(), timeout=self.timeout)
                except StopAsyncIteration:
                    break
                except asyncio.TimeoutError as exc:
                    raise CompletionProviderError(
                        f"Completion stream stalled for {self.timeout:.1f}s"
                    ) from exc
                text = getattr(chunk, "text", None)
                if text:
                    produced.append(text)
                    yield text
        finally:
            aclose = getattr(iterator, "aclose", None)
            if aclose is not None:
                await aclose()
            prompt_tokens = sum(estimate_tokens(m.content) for m in messages)
            self.usage.record(
                self.model,
                TokenUsage.for_model(self.model, prompt_tokens, estimate_tokens("".join(produced))),
            )

    async def moderate(self, text: str) -> bool:
        """Return True when the provider's safety filters block ``text``.

        Fails open: provider errors are logged and reported as not flagged.
        """
        try:
            response = await call_with_retries(
                lambda: self._client.aio.models.generate_content(
                    model=self.model,
                    contents=text,
                    config={"max_output_tokens": 1, "temperature": 0.0},
                ),
                what="moderation",
                timeout=self.timeout,
                attempts=1,
                base_delay=self.retry_base_delay,
                error_cls=CompletionProviderError,
            )
        except CompletionProviderError as exc:
            logger.error("Moderation check failed, allowing content: %s", exc)
            return False

        feedback = getattr(response, "prompt_feedback", None)
        if feedback is not None and getattr(feedback, "block_reason", None):
            return True
        for candidate in response.candidates or []:
            if _enum_name(candidate.finish_reason) == "SAFETY":
                return True
        return False

    def _usage_from(
        self, response: Any, messages: list[ChatMessage], text: str
    ) -> TokenUsage:
        metadata = getattr(response, "usage_metadata", None)
        prompt_tokens = getattr(metadata, "prompt_token_count", None)
        completion_tokens = getattr(metadata, "candidates_token_count", None)
        if prompt_tokens is None:
            prompt_tokens = sum(estimate_tokens(m.content) for m in messages)
        if completion_tokens is None:
            completion_tokens = estimate_tokens(text)
        return TokenUsage.for_model(self.model, int(prompt_tokens), int(completion_tokens))
