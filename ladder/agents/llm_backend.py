"""LLM-backed tier backend.

One LLMBackend serves every tier: the tier picks the model chain from
config/models.yaml and the system prompt is rendered with the tier name.
Acceptance criteria are forwarded verbatim; gathered answers, still-open
questions and earlier findings are appended as context.
"""

from __future__ import annotations

import logging
from typing import Optional

from ladder.core.config import PromptLoader
from ladder.core.models import AccumulatedContext, BackendResponse, BackendTier, TaskPayload
from ladder.llm.client import LLMMessage, OpenRouterClient
from ladder.llm.response_parser import parse_backend_output
from ladder.llm.router import ModelRouter

logger = logging.getLogger("ladder.agents.llm_backend")

_DEFAULT_SYSTEM_PROMPT = (
    "You are the {tier} member of an engineering council. Complete the task so "
    'that every acceptance criterion holds. Respond with one JSON object with keys '
    '"output", "verification", "confidence", "findings" and "open_questions".'
)

# Earlier findings beyond this many are summarized by count only
MAX_PRIOR_FINDINGS = 10


class LLMBackend:
    """Backend implementation calling OpenRouter through ModelRouter."""

    def __init__(
        self,
        client: OpenRouterClient,
        router: ModelRouter,
        prompt_loader: Optional[PromptLoader] = None,
    ):
        self.client = client
        self.router = router
        self.prompt_loader = prompt_loader or PromptLoader()

    def attempt(
        self,
        tier: BackendTier,
        payload: TaskPayload,
        context: AccumulatedContext,
    ) -> BackendResponse:
        """Run one attempt at ``tier``.

        Raises:
            LLMError: If every model in the tier's chain failed.
            ResponseParseError: If the answer holds no JSON object.
        """
        system = self.prompt_loader.load("backend_system.txt", _DEFAULT_SYSTEM_PROMPT)
        messages = [
            LLMMessage(role="system", content=system.replace("{tier}", tier.value)),
            LLMMessage(role="user", content=build_task_prompt(payload, context)),
        ]
        response = self.client.complete_with_fallback(
            messages,
            self.router.get_model_chain(tier),
            temperature=payload.options.get("temperature"),
            max_tokens=payload.options.get("max_tokens"),
        )
        logger.debug(
            "Task %s attempt %d answered by %s (%d tokens)",
            payload.task_id, payload.sequence, response.model, response.tokens_used,
        )
        return parse_backend_output(response.content)


def build_task_prompt(payload: TaskPayload, context: AccumulatedContext) -> str:
    """Render the user message for one attempt."""
    lines = [f"# Task: {payload.title}", ""]
    if payload.description:
        lines += [payload.description, ""]
    if payload.acceptance_criteria:
        lines.append("## Acceptance criteria")
        lines += [f"{i}. {c}" for i, c in enumerate(payload.acceptance_criteria, start=1)]
        lines.append("")

    if context.answers:
        lines.append("## Answers gathered so far")
        for answer in context.answers:
            lines.append(f"- Q: {answer.question}")
            lines.append(f"  A ({answer.locator}): {answer.summary}")
        lines.append("")
    if context.unresolved_questions:
        lines.append("## Questions nobody could answer")
        lines += [f"- {q}" for q in context.unresolved_questions]
        lines.append("")
    if context.prior_findings:
        recent = context.prior_findings[-MAX_PRIOR_FINDINGS:]
        lines.append(f"## Findings from {context.attempts_so_far} earlier attempt(s)")
        for finding in recent:
            lines.append(f"- [{finding.severity.value}] {finding.title}: {finding.detail}".rstrip(": "))
        omitted = len(context.prior_findings) - len(recent)
        if omitted:
            lines.append(f"- ... {omitted} older finding(s) omitted")
        lines.append("")

    lines.append(f"This is attempt {payload.sequence}.")
    return "\n".join(lines)
