"""Registry for prompt templates.

Loads prompt definitions from YAML and provides lookup methods.
"""

import logging
from pathlib import Path
from typing import Optional

import yaml

from .schemas import PromptTemplate

logger = logging.getLogger(__name__)

DEFINITIONS_DIR = Path(__file__).parent / "definitions"


class PromptRegistry:
    """Loads and serves prompt definitions."""

    def __init__(self, definitions_file: Optional[Path] = None) -> None:
        self._definitions_file = definitions_file or DEFINITIONS_DIR / "prompts.yaml"
        self._prompts: dict[str, PromptTemplate] = {}
        self._load_prompts()

    def _load_prompts(self) -> None:
        """Load prompts from YAML file."""
        if not self._definitions_file.exists():
            logger.warning(f"Prompts file not found: {self._definitions_file}")
            return

        with open(self._definitions_file, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}

        for prompt_data in data.get("prompts", []):
            try:
                prompt = PromptTemplate(**prompt_data)
                self._prompts[prompt.key] = prompt
                logger.debug(f"Loaded prompt: {prompt.key}")
            except Exception as e:
                logger.error(f"Failed to load prompt: {e}")

        logger.info(f"Loaded {len(self._prompts)} prompt templates")

    def get(self, key: str) -> Optional[PromptTemplate]:
        """Get a prompt by key."""
        return self._prompts.get(key)

    def list_keys(self) -> list[str]:
        return sorted(self._prompts)


# Global registry instance
_registry: Optional[PromptRegistry] = None


def get_prompt_registry() -> PromptRegistry:
    """Get the global prompt registry instance."""
    global _registry
    if _registry is None:
        _registry = PromptRegistry()
    return _registry
