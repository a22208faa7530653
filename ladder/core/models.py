"""All Pydantic data models for Ladder.

Defines the data contracts shared by the ledger, escalation policy,
council router, convergence loop, and the task stores. Tasks, attempts and
review rounds are frozen: a status change yields a new Task copy, and
attempts are never edited once recorded.
"""

from __future__ import annotations

import enum
import uuid
from datetime import UTC, datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


def _new_task_id() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class BackendTier(str, enum.Enum):
    FAST_SURGEON = "fast-surgeon"
    WIDE_CONTEXT_ANALYST = "wide-context-analyst"
    DEEP_REASONER = "deep-reasoner"

    @property
    def rank(self) -> int:
        """Position in the cost/depth ordering (0 = cheapest)."""
        return TIER_ORDER.index(self)


# Total order: fast-surgeon < wide-context-analyst < deep-reasoner
TIER_ORDER: tuple[BackendTier, ...] = (
    BackendTier.FAST_SURGEON,
    BackendTier.WIDE_CONTEXT_ANALYST,
    BackendTier.DEEP_REASONER,
)


class TaskState(str, enum.Enum):
    QUEUED = "queued"
    DISPATCHED = "dispatched"
    VERIFYING = "verifying"
    GATHERING_CONTEXT = "gathering_context"
    ESCALATING = "escalating"
    SUCCEEDED = "succeeded"
    ABANDONED = "abandoned"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({TaskState.SUCCEEDED, TaskState.ABANDONED})


class Severity(str, enum.Enum):
    BLOCKER = "blocker"
    MAJOR = "major"
    MINOR = "minor"
    NIT = "nit"


BLOCKING_SEVERITIES = frozenset({Severity.BLOCKER, Severity.MAJOR})


class Verification(str, enum.Enum):
    PASS = "pass"
    FAIL = "fail"
    PARTIAL = "partial"


class ReviewVerdict(str, enum.Enum):
    CLEAN = "clean"
    DIRTY = "dirty"


class ConvergenceOutcome(str, enum.Enum):
    CONVERGED = "converged"
    ROUNDS_EXHAUSTED = "rounds_exhausted"


# ---------------------------------------------------------------------------
# Tasks and attempts
# ---------------------------------------------------------------------------

class Finding(BaseModel):
    model_config = ConfigDict(frozen=True)

    severity: Severity
    title: str
    detail: str = ""
    category: Optional[str] = None
    locator: Optional[str] = None

    @property
    def is_blocking(self) -> bool:
        return self.severity in BLOCKING_SEVERITIES


class Task(BaseModel):
    """A unit of work. Immutable except for status, set via with_status()."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=_new_task_id)
    title: str
    description: str = ""
    acceptance_criteria: tuple[str, ...] = ()
    priority: int = 0
    dependencies: frozenset[str] = frozenset()
    architecturally_complex: bool = False
    reviewable: bool = False
    verification_commands: tuple[str, ...] = ()
    status: TaskState = TaskState.QUEUED
    created_at: datetime = Field(default_factory=_now)

    def with_status(self, status: TaskState) -> "Task":
        return self.model_copy(update={"status": status})


class Attempt(BaseModel):
    """One dispatch-and-verify cycle. Never mutated once recorded."""
    model_config = ConfigDict(frozen=True)

    task_id: str
    sequence: int = Field(ge=1)
    tier: BackendTier
    confidence: float = Field(ge=0, le=100)
    verification: Verification
    findings: tuple[Finding, ...] = ()
    open_questions: tuple[str, ...] = ()
    failure_category: Optional[str] = None
    context_digest: Optional[str] = None  # question-set digest merged into this attempt's input
    output: Any = None
    duration_seconds: float = 0.0
    created_at: datetime = Field(default_factory=_now)


# ---------------------------------------------------------------------------
# Collaborator messages
# ---------------------------------------------------------------------------

class TaskPayload(BaseModel):
    """What a backend sees of a task, plus per-call options."""
    task_id: str
    title: str
    description: str = ""
    acceptance_criteria: list[str] = Field(default_factory=list)
    sequence: int = 1
    options: dict[str, Any] = Field(default_factory=dict)


class BackendResponse(BaseModel):
    """Output of a tier backend for one attempt."""
    output: Any = None
    verification: Verification = Verification.FAIL
    confidence: float = Field(default=0.0, ge=0, le=100)
    findings: list[Finding] = Field(default_factory=list)
    open_questions: list[str] = Field(default_factory=list)


class VerificationReport(BaseModel):
    """Output of a Verifier; overrides the backend's self-reported verification.

    ``verification=None`` means the verifier had nothing to check.
    """
    verification: Optional[Verification] = None
    findings: list[Finding] = Field(default_factory=list)
    failure_category: Optional[str] = None


class Answer(BaseModel):
    model_config = ConfigDict(frozen=True)

    question: str
    locator: str
    summary: str


class AccumulatedContext(BaseModel):
    """Context carried from one attempt to the next for a single task."""
    answers: list[Answer] = Field(default_factory=list)
    unresolved_questions: list[str] = Field(default_factory=list)
    prior_findings: list[Finding] = Field(default_factory=list)
    attempts_so_far: int = 0


# ---------------------------------------------------------------------------
# Review / convergence
# ---------------------------------------------------------------------------

class ReviewRound(BaseModel):
    model_config = ConfigDict(frozen=True)

    round_number: int = Field(ge=1)
    findings: tuple[Finding, ...] = ()
    verdict: ReviewVerdict
    blocker_count: int = 0
    major_count: int = 0
    timed_out: bool = False
    created_at: datetime = Field(default_factory=_now)

    @classmethod
    def from_findings(
        cls,
        round_number: int,
        findings: list[Finding],
        timed_out: bool = False,
    ) -> "ReviewRound":
        blockers = sum(1 for f in findings if f.severity == Severity.BLOCKER)
        majors = sum(1 for f in findings if f.severity == Severity.MAJOR)
        verdict = ReviewVerdict.DIRTY if any(f.is_blocking for f in findings) else ReviewVerdict.CLEAN
        return cls(
            round_number=round_number,
            findings=tuple(findings),
            verdict=verdict,
            blocker_count=blockers,
            major_count=majors,
            timed_out=timed_out,
        )

    @property
    def is_clean(self) -> bool:
        return self.verdict == ReviewVerdict.CLEAN


class ConvergenceResult(BaseModel):
    outcome: ConvergenceOutcome
    rounds: list[ReviewRound] = Field(default_factory=list)
    artifact: Any = None

    @property
    def converged(self) -> bool:
        return self.outcome == ConvergenceOutcome.CONVERGED


# ---------------------------------------------------------------------------
# Reporting
# ---------------------------------------------------------------------------

class TaskStatusView(BaseModel):
    task_id: str
    state: TaskState
    last_attempt: Optional[Attempt] = None
    escalation_tier: Optional[BackendTier] = None


class TaskDisposition(BaseModel):
    """Final outcome of one task, with the full ledger for diagnosis."""
    task_id: str
    title: str
    state: TaskState
    reason: Optional[str] = None
    attempts: list[Attempt] = Field(default_factory=list)
    convergence: Optional[ConvergenceResult] = None

    @property
    def succeeded(self) -> bool:
        return self.state == TaskState.SUCCEEDED


class RunSummary(BaseModel):
    dispositions: list[TaskDisposition] = Field(default_factory=list)
    stop_reason: str = "not_started"
    started_at: datetime = Field(default_factory=_now)
    completed_at: Optional[datetime] = None

    @property
    def processed(self) -> int:
        return len(self.dispositions)

    @property
    def succeeded(self) -> int:
        return sum(1 for d in self.dispositions if d.state == TaskState.SUCCEEDED)

    @property
    def abandoned(self) -> int:
        return sum(1 for d in self.dispositions if d.state == TaskState.ABANDONED)
