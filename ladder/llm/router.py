"""Model router: tiers and review roles to OpenRouter model ids.

Reads the user-managed config/models.yaml through ModelRegistry. Tier roles
are keyed by the tier value (``fast-surgeon``, ``wide-context-analyst``,
``deep-reasoner``); review roles are ``reviewer`` and ``reviser``.
"""

from __future__ import annotations

import logging

from ladder.core.config import ModelRegistry
from ladder.core.models import BackendTier

logger = logging.getLogger("ladder.llm.router")


class ModelRouter:
    def __init__(self, registry: ModelRegistry):
        self.registry = registry

    def get_model(self, role: str | BackendTier) -> str:
        """Resolve a role or tier to its configured model id.

        Raises:
            ConfigError: If the role is missing from models.yaml.
        """
        key = role.value if isinstance(role, BackendTier) else role
        model = self.registry.get_model(key)
        logger.debug("Resolved role '%s' -> model '%s'", key, model)
        return model

    def get_model_chain(self, role: str | BackendTier) -> list[str]:
        """[primary, fallbacks...] without duplicates."""
        key = role.value if isinstance(role, BackendTier) else role
        chain: list[str] = []
        for model in [self.get_model(key), *self.registry.get_fallback_models(key)]:
            if model and model not in chain:
                chain.append(model)
        return chain

    def get_reviewer_model(self, author_model: str) -> str:
        """Reviewer model, warning when it shares a provider with the author.

        A reviewer from the same family tends to repeat the author's blind spots.
        """
        reviewer_model = self.get_model("reviewer")
        if _extract_family(reviewer_model) == _extract_family(author_model):
            logger.warning(
                "Reviewer model '%s' is the same family as '%s'. "
                "Update config/models.yaml to use a different provider for review.",
                reviewer_model, author_model,
            )
        return reviewer_model


def _extract_family(model_id: str) -> str:
    """'anthropic/claude-sonnet-4' -> 'anthropic'."""
    if "/" in model_id:
        return model_id.split("/")[0].lower()
    return model_id.lower()
