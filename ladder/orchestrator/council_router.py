"""Council router: drives one task through the escalation ladder.

The council is a mapping from tier to backend. The router picks the entry
tier, dispatches, verifies, records the attempt, asks the escalation policy
what to do next and loops until the task is terminal. Its only side effects
are ledger appends and status transitions through TaskRouter; acceptance
criteria are passed to backends untouched.

One router instance runs exactly one task. The coordinator builds a fresh
router per task so no state leaks between tasks.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Mapping, Optional

from ladder.agents.context_gatherer import ContextGatherer
from ladder.core.config import DispatchConfig
from ladder.core.exceptions import (
    ConfigError,
    DispatchTimeoutError,
    DuplicateSequenceError,
    UnresolvedQuestionError,
)
from ladder.core.models import (
    AccumulatedContext,
    Attempt,
    BackendResponse,
    BackendTier,
    Finding,
    Severity,
    Task,
    TaskDisposition,
    TaskPayload,
    TaskState,
    Verification,
)
from ladder.core.protocols import Backend, Verifier
from ladder.orchestrator.dispatch import call_with_timeout
from ladder.orchestrator.escalation import (
    Abandon,
    EscalateTier,
    EscalationPolicy,
    GatherContext,
    RetrySameTier,
)
from ladder.orchestrator.ledger import AttemptLedger
from ladder.orchestrator.task_router import TaskRouter

logger = logging.getLogger("ladder.orchestrator.council_router")


class CouncilRouter:
    """Owns the state machine of a single task.

    Injected dependencies:
        backends: One Backend per configured tier.
        ledger: Shared AttemptLedger (this router writes only its task's partition).
        task_router: Validated status transitions persisted to the task store.
        policy: EscalationPolicy deciding the next step after every attempt.
        gatherer: Optional ContextGatherer for GatherContext steps.
        verifier: Optional Verifier; its verdict replaces the backend's own.
    """

    def __init__(
        self,
        backends: Mapping[BackendTier, Backend],
        ledger: AttemptLedger,
        task_router: TaskRouter,
        policy: Optional[EscalationPolicy] = None,
        gatherer: Optional[ContextGatherer] = None,
        verifier: Optional[Verifier] = None,
        dispatch_config: Optional[DispatchConfig] = None,
        scope: str = ".",
        cancel_event: Optional[threading.Event] = None,
    ):
        self.policy = policy or EscalationPolicy()
        missing = [t.value for t in self.policy.config.tiers if t not in backends]
        if missing:
            raise ConfigError(f"No backend configured for tier(s): {', '.join(missing)}")
        self.backends = dict(backends)
        self.ledger = ledger
        self.task_router = task_router
        self.gatherer = gatherer
        self.verifier = verifier
        self.dispatch_config = dispatch_config or DispatchConfig()
        self.scope = scope
        self.cancel_event = cancel_event or threading.Event()
        self._used = False

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def run(self, task: Task) -> TaskDisposition:
        """Drive ``task`` from QUEUED to SUCCEEDED or ABANDONED.

        Raises:
            DuplicateSequenceError: Ledger integrity violation; the task stops
                immediately and the error is not recovered.
        """
        if self._used:
            raise RuntimeError("CouncilRouter instances run exactly one task")
        self._used = True

        if task.status.is_terminal:
            return self._disposition(task, reason=None)
        if self.cancelled:
            task = self.task_router.mark_abandoned(task, "cancelled")
            return self._disposition(task, reason="cancelled")

        tier = self.policy.config.start_tier(task.architecturally_complex)
        task = self.task_router.transition(task, TaskState.DISPATCHED, reason=f"tier={tier.value}")
        context = AccumulatedContext()
        pending_digest: Optional[str] = None

        while True:
            attempt = self._attempt(task, tier, context, pending_digest)
            pending_digest = None
            task = self.task_router.transition(task, TaskState.VERIFYING)
            attempt = self._verify(task, attempt)
            self.ledger.record(attempt)

            context = context.model_copy(update={
                "prior_findings": context.prior_findings + list(attempt.findings),
                "attempts_so_far": attempt.sequence,
            })

            if self.cancelled:
                task = self.task_router.mark_abandoned(task, "cancelled")
                return self._disposition(task, reason="cancelled")

            action = self.policy.decide_for(self.ledger.history(task.id))
            if action is None:
                task = self.task_router.mark_succeeded(task)
                return self._disposition(task, reason=None)

            if isinstance(action, Abandon):
                task = self.task_router.mark_abandoned(task, action.reason)
                return self._disposition(task, reason=action.reason)

            if isinstance(action, GatherContext):
                task = self.task_router.transition(
                    task, TaskState.GATHERING_CONTEXT,
                    reason=f"{len(action.questions)} open question(s)",
                )
                context = self._gather(action, context)
                pending_digest = action.digest
                if self.cancelled:
                    task = self.task_router.mark_abandoned(task, "cancelled")
                    return self._disposition(task, reason="cancelled")
            elif isinstance(action, EscalateTier):
                task = self.task_router.transition(
                    task, TaskState.ESCALATING,
                    reason=f"{tier.value} → {action.next_tier.value}",
                )
                tier = action.next_tier
            elif isinstance(action, RetrySameTier):
                tier = action.tier

            task = self.task_router.transition(task, TaskState.DISPATCHED, reason=f"tier={tier.value}")

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _attempt(
        self,
        task: Task,
        tier: BackendTier,
        context: AccumulatedContext,
        context_digest: Optional[str],
    ) -> Attempt:
        sequence = self.ledger.next_sequence(task.id)
        payload = TaskPayload(
            task_id=task.id,
            title=task.title,
            description=task.description,
            acceptance_criteria=list(task.acceptance_criteria),
            sequence=sequence,
            options=self.dispatch_config.options_for(tier),
        )
        failure_category: Optional[str] = None
        started = time.monotonic()
        try:
            response = call_with_timeout(
                self.backends[tier].attempt,
                self.dispatch_config.timeout_seconds,
                tier,
                payload,
                context.model_copy(deep=True),
                operation=f"dispatch:{tier.value}",
            )
        except DispatchTimeoutError as e:
            logger.warning("Task %s attempt %d: %s", task.id, sequence, e)
            response = BackendResponse(
                findings=[Finding(severity=Severity.MAJOR, title="Backend timed out",
                                  detail=str(e), category="timeout")],
            )
            failure_category = "timeout"
        except DuplicateSequenceError:
            raise
        except Exception as e:
            # Backend failures are ordinary failed attempts.
            logger.warning(
                "Task %s attempt %d: backend %s raised %s: %s",
                task.id, sequence, tier.value, type(e).__name__, e,
            )
            response = BackendResponse(
                findings=[Finding(severity=Severity.MAJOR, title="Backend error",
                                  detail=f"{type(e).__name__}: {e}", category="backend_error")],
            )
            failure_category = "backend_error"

        return Attempt(
            task_id=task.id,
            sequence=sequence,
            tier=tier,
            confidence=response.confidence if failure_category is None else 0.0,
            verification=response.verification if failure_category is None else Verification.FAIL,
            findings=tuple(response.findings),
            open_questions=tuple(response.open_questions),
            failure_category=failure_category,
            context_digest=context_digest,
            output=response.output,
            duration_seconds=round(time.monotonic() - started, 3),
        )

    def _verify(self, task: Task, attempt: Attempt) -> Attempt:
        if self.verifier is None or attempt.failure_category is not None:
            return attempt
        report = self.verifier.verify(task, attempt.output)
        if report.verification is None and not report.findings:
            return attempt
        update: dict[str, Any] = {
            "verification": report.verification or attempt.verification,
            "findings": attempt.findings + tuple(report.findings),
        }
        if report.failure_category:
            update["failure_category"] = report.failure_category
        return attempt.model_copy(update=update)

    def _gather(self, action: GatherContext, context: AccumulatedContext) -> AccumulatedContext:
        answers = list(context.answers)
        open_questions = [q for q in context.unresolved_questions if q not in action.questions]
        if self.gatherer is None:
            open_questions.extend(action.questions)
        else:
            try:
                answers.extend(self.gatherer.resolve(action.questions, self.scope))
            except UnresolvedQuestionError as e:
                answers.extend(e.answers)
                open_questions.extend(e.unresolved)
                logger.info("%d question(s) remain open: %s", len(e.unresolved), e.unresolved)
        return context.model_copy(update={
            "answers": answers,
            "unresolved_questions": open_questions,
        })

    def _disposition(self, task: Task, reason: Optional[str]) -> TaskDisposition:
        return TaskDisposition(
            task_id=task.id,
            title=task.title,
            state=task.status,
            reason=reason,
            attempts=list(self.ledger.history(task.id)),
        )
