"""LLM backend abstraction for multi-model support.

Provides a unified interface for calling different LLM providers
(Google Gemini, Anthropic Claude) with a consistent response format.

Each backend handles provider-specific concerns:
- Client creation and timeout configuration
- JSON response mode where the provider supports it
- Response parsing and token counting

The engine_runner handles model-agnostic concerns:
- Transient vs permanent failure classification
- Retry with capped exponential backoff
"""

import logging
import os
import time
from dataclasses import dataclass
from typing import Any, Optional, Protocol, runtime_checkable

logger = logging.getLogger(__name__)


@dataclass
class LLMCallResult:
    """Normalized response from any LLM backend."""

    content: str
    model_id: str
    input_tokens: int
    output_tokens: int
    duration_ms: int


@runtime_checkable
class ModelBackend(Protocol):
    """Protocol for LLM backend implementations."""

    @property
    def model_id(self) -> str: ...

    @property
    def max_output_tokens(self) -> int: ...

    def execute_sync(
        self,
        system_prompt: str,
        user_message: str,
        *,
        max_tokens: int,
        json_mode: bool = False,
        label: str = "",
    ) -> LLMCallResult: ...


class GeminiBackend:
    """Google Gemini backend.

    Requires GEMINI_API_KEY environment variable.
    Requires google-genai package: pip install google-genai
    """

    def __init__(self, model_id: str = "gemini-2.5-pro"):
        self._model_id = model_id

    @property
    def model_id(self) -> str:
        return self._model_id

    @property
    def max_output_tokens(self) -> int:
        return 65_536

    def _get_client(self):
        """Get a Gemini client. Lazy import keeps google-genai off the import path of tests."""
        from google import genai

        api_key = os.environ.get("GEMINI_API_KEY")
        if not api_key:
            raise RuntimeError(
                "GEMINI_API_KEY not set. Set the environment variable to use Gemini."
            )
        return genai.Client(api_key=api_key)

    def execute_sync(
        self,
        system_prompt: str,
        user_message: str,
        *,
        max_tokens: int,
        json_mode: bool = False,
        label: str = "",
    ) -> LLMCallResult:
        """Execute a synchronous Gemini call.

        With json_mode the response MIME type is forced to application/json,
        so callers can parse the text without stripping prose around it.
        """
        from google import genai

        client = self._get_client()
        start_time = time.time()

        estimated_input_tokens = (len(system_prompt) + len(user_message)) // 4

        config_kwargs: dict[str, Any] = {
            "system_instruction": system_prompt or None,
            "max_output_tokens": min(max_tokens, self.max_output_tokens),
        }
        if json_mode:
            config_kwargs["response_mime_type"] = "application/json"

        logger.info(
            f"[{label}] Gemini sync: ~{estimated_input_tokens:,} input tokens, "
            f"max_tokens={max_tokens}, json={'yes' if json_mode else 'no'}"
        )

        response = client.models.generate_content(
            model=self._model_id,
            contents=user_message,
            config=genai.types.GenerateContentConfig(**config_kwargs),
        )

        duration_ms = int((time.time() - start_time) * 1000)

        raw_text = ""
        if response.candidates and response.candidates[0].content:
            for part in response.candidates[0].content.parts:
                if getattr(part, "thought", False):
                    continue
                raw_text += getattr(part, "text", "") or ""

        if not raw_text.strip():
            raise RuntimeError(f"[{label}] Empty response from {self._model_id}")

        usage = getattr(response, "usage_metadata", None)
        input_tokens = getattr(usage, "prompt_token_count", None) or estimated_input_tokens
        output_tokens = getattr(usage, "candidates_token_count", None) or len(raw_text) // 4

        logger.info(
            f"[{label}] Gemini sync completed: {input_tokens}+{output_tokens} tokens, "
            f"{duration_ms}ms, {len(raw_text):,} chars"
        )

        return LLMCallResult(
            content=raw_text.strip(),
            model_id=self._model_id,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            duration_ms=duration_ms,
        )


class AnthropicBackend:
    """Anthropic Claude backend.

    Requires ANTHROPIC_API_KEY environment variable.
    """

    def __init__(self, model_id: str = "claude-sonnet-4-5"):
        self._model_id = model_id

    @property
    def model_id(self) -> str:
        return self._model_id

    @property
    def max_output_tokens(self) -> int:
        return 64_000

    def execute_sync(
        self,
        system_prompt: str,
        user_message: str,
        *,
        max_tokens: int,
        json_mode: bool = False,
        label: str = "",
    ) -> LLMCallResult:
        """Execute a synchronous (non-streaming) Anthropic call.

        Claude has no JSON response mode; json_mode only adds an instruction
        to the system prompt and callers strip code fences afterwards.
        """
        import httpx
        from anthropic import Anthropic

        client = Anthropic(
            timeout=httpx.Timeout(
                connect=30.0,
                read=300.0,
                write=60.0,
                pool=30.0,
            ),
            # Retries are owned by the engine runner
            max_retries=0,
        )
        start_time = time.time()

        if json_mode:
            system_prompt = (
                f"{system_prompt}\n\nRespond with a single JSON object and nothing else."
            ).strip()

        kwargs: dict[str, Any] = {
            "model": self._model_id,
            "max_tokens": min(max_tokens, self.max_output_tokens),
            "messages": [{"role": "user", "content": user_message}],
        }
        if system_prompt:
            kwargs["system"] = system_prompt

        logger.info(
            f"[{label}] Anthropic sync: ~{(len(system_prompt) + len(user_message)) // 4:,} "
            f"input tokens, max_tokens={kwargs['max_tokens']}"
        )

        response = client.messages.create(**kwargs)
        duration_ms = int((time.time() - start_time) * 1000)

        raw_text = ""
        for block in response.content:
            if hasattr(block, "text"):
                raw_text += block.text

        if not raw_text.strip():
            raise RuntimeError(f"[{label}] Empty response from {self._model_id}")

        logger.info(
            f"[{label}] Sync completed: {response.usage.input_tokens}+"
            f"{response.usage.output_tokens} tokens, {duration_ms}ms, "
            f"{len(raw_text):,} chars"
        )

        return LLMCallResult(
            content=raw_text.strip(),
            model_id=self._model_id,
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
            duration_ms=duration_ms,
        )
