"""LLM reviewer and reviser for the convergence loop."""

from __future__ import annotations

import json
import logging
from typing import Any, Optional

from ladder.core.config import PromptLoader
from ladder.core.models import Finding
from ladder.llm.client import LLMMessage, OpenRouterClient
from ladder.llm.response_parser import extract_code_blocks, parse_review_output
from ladder.llm.router import ModelRouter

logger = logging.getLogger("ladder.agents.reviewer")

_DEFAULT_REVIEWER_PROMPT = (
    "You are a strict, independent reviewer. Return JSON "
    '{"issues": [{"severity": "blocker|major|minor|nit", "title": "...", "detail": "..."}]} '
    "or exactly NO_ISSUES_FOUND."
)
_DEFAULT_REVISER_PROMPT = (
    "Revise the artifact so that every listed finding is resolved. "
    "Reply with the complete revised artifact only."
)


def render_artifact(artifact: Any) -> str:
    if isinstance(artifact, str):
        return artifact
    return json.dumps(artifact, indent=2, ensure_ascii=True, default=str)


class LLMReviewer:
    """Reviewer implementation; free-form output goes through parse_review_output."""

    def __init__(
        self,
        client: OpenRouterClient,
        router: ModelRouter,
        prompt_loader: Optional[PromptLoader] = None,
        role: str = "reviewer",
    ):
        self.client = client
        self.router = router
        self.prompt_loader = prompt_loader or PromptLoader()
        self.role = role

    def review(self, artifact: Any) -> list[Finding]:
        system = self.prompt_loader.load("reviewer_system.txt", _DEFAULT_REVIEWER_PROMPT)
        messages = [
            LLMMessage(role="system", content=system),
            LLMMessage(role="user", content=f"## Artifact\n\n{render_artifact(artifact)}"),
        ]
        response = self.client.complete_with_fallback(messages, self.router.get_model_chain(self.role))
        findings = parse_review_output(response.content)
        logger.debug("Review by %s: %d finding(s)", response.model, len(findings))
        return findings


class LLMReviser:
    """Reviser implementation returning the revised artifact text."""

    def __init__(
        self,
        client: OpenRouterClient,
        router: ModelRouter,
        prompt_loader: Optional[PromptLoader] = None,
        role: str = "reviser",
    ):
        self.client = client
        self.router = router
        self.prompt_loader = prompt_loader or PromptLoader()
        self.role = role

    def revise(self, artifact: Any, findings: list[Finding]) -> Any:
        system = self.prompt_loader.load("reviser_system.txt", _DEFAULT_REVISER_PROMPT)
        listed = "\n".join(
            f"- [{f.severity.value}] {f.title}"
            + (f" ({f.locator})" if f.locator else "")
            + (f": {f.detail}" if f.detail else "")
            for f in findings
        )
        messages = [
            LLMMessage(role="system", content=system),
            LLMMessage(
                role="user",
                content=f"## Findings\n{listed}\n\n## Artifact\n\n{render_artifact(artifact)}",
            ),
        ]
        response = self.client.complete_with_fallback(messages, self.router.get_model_chain(self.role))
        revised = response.content.strip()
        # A reply wrapped in a single fence is the artifact itself
        blocks = extract_code_blocks(revised)
        if len(blocks) == 1 and revised.startswith("```") and revised.endswith("```"):
            revised = blocks[0]
        if not revised:
            logger.warning("Reviser returned an empty artifact; keeping the previous revision")
            return artifact
        return revised
