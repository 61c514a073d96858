"""Prompt composer using Jinja2 templates.

Renders the YAML prompt definitions with per-call context: job facts,
source documents, strategy hints, and (for corrective prompts) the
previous attempt's outcome.
"""

from datetime import datetime
from typing import Any, Optional

from jinja2 import BaseLoader, Environment, StrictUndefined, TemplateError

from .registry import PromptRegistry, get_prompt_registry
from .schemas import ComposedPrompt

# Raw content longer than this is truncated before it goes into a prompt
MAX_PROMPT_SOURCE_CHARS = 10000


def _truncate(text: Optional[str], limit: int = MAX_PROMPT_SOURCE_CHARS) -> str:
    text = text or ""
    if len(text) <= limit:
        return text
    return f"{text[:limit]} ...(truncated)"


class PromptComposer:
    """Composes prompts from templates and context.

    Usage:
        composer = PromptComposer()
        composed = composer.compose(
            "generate_cv",
            job_title="Data Engineer",
            company_name="Acme",
            job_description=jd,
            original_cv=cv,
        )
    """

    def __init__(self, registry: Optional[PromptRegistry] = None):
        self.registry = registry or get_prompt_registry()

        self.env = Environment(
            loader=BaseLoader(),
            autoescape=False,  # prompts carry LaTeX and plain text, not HTML
            trim_blocks=True,
            lstrip_blocks=True,
            undefined=StrictUndefined,
        )
        self.env.filters["truncate_source"] = _truncate
        self.env.filters["join_lines"] = lambda items: "\n".join(f"- {item}" for item in items)

    def compose(self, key: str, label: Optional[str] = None, **context: Any) -> ComposedPrompt:
        """Render the prompt registered under ``key``.

        Raises:
            ValueError: If the template is unknown, a required context
                variable is missing, or rendering fails
        """
        template = self.registry.get(key)
        if template is None:
            raise ValueError(f"Unknown prompt template: {key}")

        missing = [
            name for name in template.required_context
            if name not in context or context[name] is None
        ]
        if missing:
            raise ValueError(f"Prompt '{key}' is missing required context: {', '.join(missing)}")

        render_context = {
            "current_date": datetime.now().strftime("%B %d, %Y").replace(" 0", " "),
            **context,
        }

        try:
            system_prompt = self.env.from_string(template.system).render(**render_context)
            prompt = self.env.from_string(template.template).render(**render_context)
        except TemplateError as e:
            raise ValueError(f"Failed to render prompt '{key}': {e}") from e

        return ComposedPrompt(
            key=key,
            system_prompt=system_prompt.strip(),
            prompt=prompt.strip(),
            json_mode=template.json_mode,
            label=label or key,
        )
