"""Helpers for post-processing raw LLM text.

Models wrap output in markdown fences despite being told not to; both the
JSON extraction calls and the LaTeX generation calls need them stripped.
"""

import json
import re

_FENCE_OPEN_RE = re.compile(r"^```[a-zA-Z]*\s*\n?")
_FENCE_CLOSE_RE = re.compile(r"\n?```\s*$")


def strip_code_fences(raw_text: str) -> str:
    """Remove a leading ```lang fence and a trailing ``` fence, if present."""
    content = raw_text.strip()
    content = _FENCE_OPEN_RE.sub("", content, count=1)
    content = _FENCE_CLOSE_RE.sub("", content, count=1)
    return content.strip()


def parse_llm_json_response(raw_text: str) -> dict:
    """Parse JSON from LLM response, handling markdown code fences.

    Raises:
        json.JSONDecodeError: If the text cannot be parsed as JSON
        ValueError: If the JSON is not an object
    """
    data = json.loads(strip_code_fences(raw_text))
    if not isinstance(data, dict):
        raise ValueError(f"Expected a JSON object, got {type(data).__name__}")
    return data
