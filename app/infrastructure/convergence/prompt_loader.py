"""
Prompt loader for the AI synthesis adjudicator.

Loads per-entity-type adjudication prompts from YAML configuration.
"""

import logging
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from app.domain.convergence.entities import AdjudicationPrompts, EntityType
from app.domain.convergence.ports import PromptRepository

logger = logging.getLogger(__name__)

DEFAULT_PROMPTS_PATH = Path(__file__).parent / "prompts.yaml"

_FALLBACK_SYSTEM = (
    "You are an arbiter reconciling independent opinions about a financial "
    "entity. Choose the single best label. Respond with ONLY valid JSON: "
    '{"label": "...", "rationale": "...", "confidence": 0.0}'
)
_FALLBACK_USER = (
    "Entity ({entity_type}):\n{entity}\n\n"
    "Opinions (status: {status}, leading label: {candidate}):\n{signals}\n\n"
    "Proposed labels: {labels}"
)


class PromptLoader(PromptRepository):
    """Load and serve adjudication prompts from YAML."""

    def __init__(self, config_path: Optional[Path] = None) -> None:
        """
        Initialize prompt loader.

        Args:
            config_path: Path to a prompts YAML file. Defaults to the
                prompts.yaml shipped next to this module.
        """
        self.config_path = Path(config_path) if config_path else DEFAULT_PROMPTS_PATH
        self.prompts = self._load_prompts()

    def _load_prompts(self) -> Dict[str, Any]:
        """Load prompts from YAML file."""
        try:
            with open(self.config_path, "r", encoding="utf-8") as f:
                prompts = yaml.safe_load(f)
            if not isinstance(prompts, dict):
                raise ValueError("top level must be a mapping")
            logger.info("Loaded prompts from %s", self.config_path)
            return prompts
        except (OSError, yaml.YAMLError, ValueError) as e:
            logger.error("Failed to load prompts from %s: %s", self.config_path, e)
            return self._get_fallback_prompts()

    def _get_fallback_prompts(self) -> Dict[str, Any]:
        """Fallback prompts if YAML fails to load."""
        return {
            entity_type.value: {
                "system": _FALLBACK_SYSTEM,
                "user_template": _FALLBACK_USER,
            }
            for entity_type in EntityType
        }

    def get_prompts(self, entity_type: EntityType) -> AdjudicationPrompts:
        """
        Get the prompt pair for an entity type.

        Missing entries fall back to the generic arbiter prompt.
        """
        section = self.prompts.get(entity_type.value) or {}
        return AdjudicationPrompts(
            system=section.get("system") or _FALLBACK_SYSTEM,
            user_template=section.get("user_template") or _FALLBACK_USER,
        )
