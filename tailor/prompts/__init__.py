"""Prompt templates: YAML definitions rendered with Jinja2."""

from .composer import PromptComposer
from .registry import PromptRegistry, get_prompt_registry
from .schemas import ComposedPrompt, PromptTemplate

__all__ = [
    "ComposedPrompt",
    "PromptComposer",
    "PromptRegistry",
    "PromptTemplate",
    "get_prompt_registry",
]
