"""Shared LLM client utilities.

Provides common functions for interacting with LLM APIs (Google, Anthropic),
used by the engine runner for every generation call.
"""

from tailor.llm.client import (
    parse_llm_json_response,
    strip_code_fences,
)
from tailor.llm.backends import (
    LLMCallResult,
    ModelBackend,
    AnthropicBackend,
    GeminiBackend,
)
from tailor.llm.factory import get_backend

__all__ = [
    "parse_llm_json_response",
    "strip_code_fences",
    "LLMCallResult",
    "ModelBackend",
    "AnthropicBackend",
    "GeminiBackend",
    "get_backend",
]
