"""Escalation policy: attempt history -> next action.

Rules, evaluated in order against the most recent attempt:

1. Verification passed with confidence >= threshold: terminal success (None).
2. Open questions whose normalized set was never issued, budget left: GatherContext.
3. Counted failures at the current tier reached the cap and a higher tier
   exists: EscalateTier.
4. Counted failures below the cap: RetrySameTier.
5. Highest tier and cap reached: Abandon("exhausted").

A failed attempt whose questions triggered a gather is paid for by the
gather budget and does not count toward the tier's cap. Every decision is
a pure function of the recorded history, so the attempt count for a task
never exceeds ``len(tiers) * failure_cap + gather_budget``.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from typing import Iterable, Optional, Union

from ladder.core.config import PolicyConfig
from ladder.core.exceptions import LedgerError
from ladder.core.models import Attempt, BackendTier, Verification


# ---------------------------------------------------------------------------
# Actions
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RetrySameTier:
    tier: BackendTier


@dataclass(frozen=True)
class EscalateTier:
    next_tier: BackendTier


@dataclass(frozen=True)
class GatherContext:
    questions: tuple[str, ...]
    digest: str


@dataclass(frozen=True)
class Abandon:
    reason: str


Action = Union[RetrySameTier, EscalateTier, GatherContext, Abandon]


# ---------------------------------------------------------------------------
# Question-set digests
# ---------------------------------------------------------------------------

def normalize_question(question: str) -> str:
    return " ".join(question.lower().split()).rstrip("?.!: ")


def question_set_digest(questions: Iterable[str]) -> Optional[str]:
    """Order-insensitive digest of a question set; None when empty."""
    normalized = sorted({normalize_question(q) for q in questions if q and q.strip()})
    if not normalized:
        return None
    return hashlib.sha1("\n".join(normalized).encode("utf-8")).hexdigest()


# ---------------------------------------------------------------------------
# Derived state
# ---------------------------------------------------------------------------

def attempt_succeeded(attempt: Attempt, confidence_threshold: float) -> bool:
    return attempt.verification == Verification.PASS and attempt.confidence >= confidence_threshold


def failure_category(attempt: Attempt) -> str:
    if attempt.failure_category:
        return attempt.failure_category
    if attempt.verification == Verification.FAIL:
        return "verification_failed"
    if attempt.verification == Verification.PARTIAL:
        return "partial"
    return "low_confidence"


@dataclass(frozen=True)
class EscalationState:
    """Snapshot derived from a task's attempt history. Never stored."""

    attempt_count: int = 0
    current_tier: Optional[BackendTier] = None
    highest_tier: Optional[BackendTier] = None
    consecutive_failures: int = 0
    failure_categories: tuple[str, ...] = ()
    issued_digests: frozenset[str] = frozenset()
    last_succeeded: bool = False
    last_attempt: Optional[Attempt] = None
    open_questions: tuple[str, ...] = field(default=())

    @property
    def gather_count(self) -> int:
        return len(self.issued_digests)

    @classmethod
    def from_history(
        cls,
        attempts: Iterable[Attempt],
        confidence_threshold: float = 80.0,
    ) -> "EscalationState":
        """Fold an ordered attempt history into escalation state.

        Raises:
            LedgerError: If the history is out of sequence order.
        """
        history = list(attempts)
        if not history:
            return cls()

        for index, attempt in enumerate(history, start=1):
            if attempt.sequence != index:
                raise LedgerError(
                    f"Task {attempt.task_id}: history out of order at position {index} "
                    f"(sequence {attempt.sequence})"
                )

        issued = frozenset(a.context_digest for a in history if a.context_digest)

        categories: list[str] = []
        current_tier = history[-1].tier
        consecutive = 0
        for index, attempt in enumerate(history):
            succeeded = attempt_succeeded(attempt, confidence_threshold)
            if not succeeded:
                category = failure_category(attempt)
                if category not in categories:
                    categories.append(category)
            if attempt.tier != current_tier or succeeded:
                continue
            following = history[index + 1] if index + 1 < len(history) else None
            triggered_gather = (
                following is not None
                and following.context_digest is not None
                and following.context_digest == question_set_digest(attempt.open_questions)
            )
            if not triggered_gather:
                consecutive += 1

        last = history[-1]
        return cls(
            attempt_count=len(history),
            current_tier=current_tier,
            highest_tier=max((a.tier for a in history), key=lambda t: t.rank),
            consecutive_failures=consecutive,
            failure_categories=tuple(categories),
            issued_digests=issued,
            last_succeeded=attempt_succeeded(last, confidence_threshold),
            last_attempt=last,
            open_questions=tuple(last.open_questions),
        )


# ---------------------------------------------------------------------------
# Decision
# ---------------------------------------------------------------------------

def decide(state: EscalationState, policy: PolicyConfig) -> Optional[Action]:
    """Map escalation state to the next action; None means terminal success.

    Raises:
        LedgerError: If called before any attempt was recorded.
    """
    if state.last_attempt is None or state.current_tier is None:
        raise LedgerError("Cannot decide escalation without a recorded attempt")

    if state.last_succeeded:
        return None

    if policy.max_attempts is not None and state.attempt_count >= policy.max_attempts:
        return Abandon("max_attempts")

    digest = question_set_digest(state.open_questions)
    if (
        digest is not None
        and digest not in state.issued_digests
        and state.gather_count < policy.gather_budget
    ):
        return GatherContext(questions=state.open_questions, digest=digest)

    if state.consecutive_failures < policy.failure_cap:
        return RetrySameTier(state.current_tier)

    next_tier = policy.next_tier(state.current_tier)
    if next_tier is not None:
        return EscalateTier(next_tier)

    return Abandon("exhausted")


class EscalationPolicy:
    """Binds a PolicyConfig to the decision function."""

    def __init__(self, config: Optional[PolicyConfig] = None):
        self.config = config or PolicyConfig()

    def state_for(self, attempts: Iterable[Attempt]) -> EscalationState:
        return EscalationState.from_history(attempts, self.config.confidence_threshold)

    def decide(self, state: EscalationState) -> Optional[Action]:
        return decide(state, self.config)

    def decide_for(self, attempts: Iterable[Attempt]) -> Optional[Action]:
        return self.decide(self.state_for(attempts))
