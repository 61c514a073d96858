"""Schemas for prompt definitions."""

from typing import Optional

from pydantic import BaseModel, Field


class PromptTemplate(BaseModel):
    """A prompt definition loaded from YAML."""

    key: str = Field(..., description="Unique identifier, e.g. 'generate_cv'")
    description: str = ""
    system: str = Field(default="", description="System prompt (Jinja2)")
    template: str = Field(..., description="User message template (Jinja2)")
    json_mode: bool = Field(default=False, description="Ask the backend for a JSON object")
    required_context: list[str] = Field(
        default_factory=list,
        description="Context variables that must be present and non-empty",
    )


class ComposedPrompt(BaseModel):
    """A fully rendered prompt ready for the generation backend."""

    key: str
    system_prompt: str = ""
    prompt: str
    json_mode: bool = False
    label: Optional[str] = None
