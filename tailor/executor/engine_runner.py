"""Single LLM call execution with retry and failure classification.

Every generation call in the engine flows through `TextGenerator.generate()`.

Key features:
- Model selection from the TAILOR_MODEL environment variable
- Multi-model support via the ModelBackend abstraction (Gemini, Anthropic)
- Transient failures (rate limits, overload, timeouts) retried with capped
  exponential backoff; they never surface if a later try succeeds
- Everything else is a GenerationBackendPermanent, raised immediately
"""

import logging
import os
import time
from typing import Optional

from tailor.executor.errors import (
    GenerationBackendPermanent,
    GenerationBackendTransient,
)
from tailor.llm.backends import ModelBackend
from tailor.llm.factory import get_backend

logger = logging.getLogger(__name__)

DEFAULT_MODEL = os.environ.get("TAILOR_MODEL", "gemini-2.5-pro")
DEFAULT_MAX_TOKENS = int(os.environ.get("TAILOR_MAX_TOKENS", "16000"))

# Retry settings
MAX_RETRIES = int(os.environ.get("AI_MAX_RETRIES", "5"))
INITIAL_RETRY_DELAY = float(os.environ.get("AI_INITIAL_RETRY_DELAY", "5"))  # seconds
MAX_RETRY_DELAY = float(os.environ.get("AI_MAX_RETRY_DELAY", "60"))  # seconds

_TRANSIENT_STATUS_CODES = {408, 429, 500, 502, 503, 504, 529}
_TRANSIENT_MARKERS = (
    "rate limit",
    "rate_limit",
    "resource_exhausted",
    "overloaded",
    "unavailable",
    "timed out",
    "timeout",
    "connection reset",
    "temporarily",
)


def _status_code(error: BaseException) -> Optional[int]:
    for attr in ("status_code", "status", "code"):
        value = getattr(error, attr, None)
        if isinstance(value, int):
            return value
    response = getattr(error, "response", None)
    value = getattr(response, "status_code", None)
    return value if isinstance(value, int) else None


def is_transient_error(error: BaseException) -> bool:
    """Classify a provider exception as transient (worth retrying) or not."""
    if isinstance(error, GenerationBackendTransient):
        return True
    if isinstance(error, (TimeoutError, ConnectionError)):
        return True
    status = _status_code(error)
    if status is not None and status in _TRANSIENT_STATUS_CODES:
        return True
    error_str = str(error).lower()
    if "invalid_api_key" in error_str or "authentication" in error_str:
        return False
    return any(marker in error_str for marker in _TRANSIENT_MARKERS)


def retry_delay(retry_number: int) -> float:
    """Capped exponential backoff: initial, 2x, 4x, ... up to MAX_RETRY_DELAY."""
    return min(INITIAL_RETRY_DELAY * (2 ** (retry_number - 1)), MAX_RETRY_DELAY)


class TextGenerator:
    """The Generation Backend as seen by the engine: ``generate(prompt) -> text``.

    Usage:
        generator = TextGenerator()
        text = generator.generate(prompt, system_prompt=system, label="cv attempt 1")
    """

    def __init__(
        self,
        backend: Optional[ModelBackend] = None,
        *,
        max_retries: int = MAX_RETRIES,
        max_tokens: int = DEFAULT_MAX_TOKENS,
    ):
        self.backend = backend or get_backend(DEFAULT_MODEL)
        self.max_retries = max(1, max_retries)
        self.max_tokens = max_tokens

    @property
    def model_id(self) -> str:
        return self.backend.model_id

    def generate(
        self,
        prompt: str,
        *,
        system_prompt: str = "",
        json_mode: bool = False,
        label: str = "",
    ) -> str:
        """Execute a single generation call with transient-failure retry.

        Returns:
            The generated text.

        Raises:
            GenerationBackendPermanent: On a non-retryable error, or when
                transient errors persist past max_retries.
        """
        label = label or "generate"
        last_error: Optional[BaseException] = None

        for attempt in range(self.max_retries):
            if attempt > 0:
                delay = retry_delay(attempt)
                logger.warning(
                    f"[{label}] Retry {attempt}/{self.max_retries - 1} after {delay:.1f}s "
                    f"(previous error: {last_error})"
                )
                time.sleep(delay)

            try:
                result = self.backend.execute_sync(
                    system_prompt=system_prompt,
                    user_message=prompt,
                    max_tokens=self.max_tokens,
                    json_mode=json_mode,
                    label=label,
                )
            except Exception as e:
                last_error = e
                if not is_transient_error(e):
                    logger.error(f"[{label}] Non-retryable backend error: {e}")
                    raise GenerationBackendPermanent(
                        f"AI service failed: {e}", retries=attempt, cause=e
                    ) from e
                logger.warning(f"[{label}] Attempt {attempt + 1} hit a transient error: {e}")
                continue

            logger.info(
                f"[{label}] Completed on try {attempt + 1}: "
                f"{result.input_tokens}+{result.output_tokens} tokens, {result.duration_ms}ms"
            )
            return result.content

        raise GenerationBackendPermanent(
            f"AI service failed after {self.max_retries} attempts: {last_error}",
            retries=self.max_retries,
            cause=last_error,
        )
