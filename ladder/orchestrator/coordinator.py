"""Task coordinator: the outer loop over the backlog.

Claims ready tasks from the task store, runs independent tasks concurrently
(one fresh CouncilRouter per task, sharing one AttemptLedger), runs the
convergence loop for reviewable artifacts and aggregates dispositions into
a RunSummary.

Only the coordinator thread touches the task store for claims, cascades and
cancellation of queued tasks; worker threads own the status transitions of
the task they were handed.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Iterable, Mapping, Optional

from ladder.agents.context_gatherer import ContextGatherer
from ladder.core.config import AppConfig
from ladder.core.exceptions import (
    ConfigError,
    DependencyCycleError,
    DependencyError,
    DuplicateSequenceError,
    TaskNotFoundError,
)
from ladder.core.models import (
    BackendTier,
    ConvergenceResult,
    Task,
    TaskDisposition,
    TaskState,
    TaskStatusView,
    RunSummary,
)
from ladder.core.protocols import Backend, Reviewer, Reviser, TaskStore, Verifier
from ladder.db.backlog import topological_order, validate_graph
from ladder.orchestrator.convergence import ConvergenceLoop, ConvergenceSession
from ladder.orchestrator.council_router import CouncilRouter
from ladder.orchestrator.escalation import EscalationPolicy
from ladder.orchestrator.ledger import AttemptHistory, AttemptLedger
from ladder.orchestrator.observability import EventLog
from ladder.orchestrator.task_router import TaskRouter

logger = logging.getLogger("ladder.orchestrator.coordinator")


class TaskCoordinator:
    """Runs the backlog through the escalation ladder.

    Injected dependencies:
        store: Task store used as the backlog.
        backends: One Backend per configured tier.
        config: Application configuration (escalation, dispatch, convergence,
            coordinator and context sections are read).
        gatherer: Optional ContextGatherer for open questions.
        verifier: Optional Verifier overriding the backends' self-reports.
        reviewer: Optional Reviewer; when set, reviewable tasks that succeed
            go through the convergence loop.
        reviser: Optional Reviser applied between dirty review rounds.
        event_log: Optional EventLog receiving attempts, transitions,
            review rounds and terminal dispositions.
    """

    def __init__(
        self,
        store: TaskStore,
        backends: Mapping[BackendTier, Backend],
        config: Optional[AppConfig] = None,
        gatherer: Optional[ContextGatherer] = None,
        verifier: Optional[Verifier] = None,
        reviewer: Optional[Reviewer] = None,
        reviser: Optional[Reviser] = None,
        event_log: Optional[EventLog] = None,
        ledger: Optional[AttemptLedger] = None,
    ):
        self.store = store
        self.backends = dict(backends)
        self.config = config or AppConfig()
        self.gatherer = gatherer
        self.verifier = verifier
        self.reviewer = reviewer
        self.reviser = reviser
        self.event_log = event_log
        self.policy = EscalationPolicy(self.config.escalation)
        self.ledger = ledger or AttemptLedger(
            on_record=event_log.attempt_recorded if event_log is not None else None
        )
        self.task_router = TaskRouter(
            store,
            on_transition=event_log.task_transition if event_log is not None else None,
        )
        self.convergence = ConvergenceLoop(
            self.config.convergence,
            on_round=event_log.review_round if event_log is not None else None,
        )
        missing = [t.value for t in self.config.escalation.tiers if t not in self.backends]
        if missing:
            raise ConfigError(f"No backend configured for tier(s): {', '.join(missing)}")

        self._lock = threading.Lock()
        self._cancel_events: dict[str, threading.Event] = {}
        self._running: set[str] = set()
        self._stop = threading.Event()

    # ------------------------------------------------------------------
    # Backlog
    # ------------------------------------------------------------------

    def submit_task(self, task: Task) -> str:
        """Add one task whose dependencies are already in the backlog.

        Raises:
            DependencyError: If a dependency is unknown or the task depends on itself.
        """
        problems = []
        for dep in sorted(task.dependencies):
            if dep == task.id:
                problems.append(f"task '{task.title}' depends on itself")
            elif not self._known(dep):
                problems.append(f"task '{task.title}' has unknown dependency: {dep}")
        if problems:
            raise DependencyError(f"Cannot submit task {task.id}", problems)
        self.store.add(task.with_status(TaskState.QUEUED))
        logger.info("Submitted task '%s' (%s)", task.title, task.id)
        return task.id

    def submit_backlog(self, tasks: Iterable[Task]) -> list[str]:
        """Validate a whole task graph and insert it in dependency order.

        Tasks whose id is already stored are skipped, so a backlog file can
        be resubmitted after a partial run.

        Raises:
            DependencyCycleError: If the graph has a cycle.
            DependencyError: If a blocker is neither in the graph nor stored, or
                two tasks share an id.
        """
        task_list = list(tasks)
        incoming = [t for t in task_list if not self._known(t.id)]
        known_ids = [t.id for t in self.store.list_tasks()]
        report = validate_graph(incoming, known_ids=known_ids)
        for warning in report.warnings:
            logger.warning(warning)
        if report.duplicate_ids:
            raise DependencyError("Backlog has duplicate task ids", report.duplicate_ids)
        if report.cycles:
            raise DependencyCycleError(report.cycles)
        if report.unknown_blockers:
            raise DependencyError("Backlog has unknown blockers", report.unknown_blockers)

        submitted: list[str] = []
        for task in topological_order(incoming):
            self.store.add(task.with_status(TaskState.QUEUED))
            submitted.append(task.id)
        logger.info(
            "Submitted %d task(s) from backlog (%d already stored)",
            len(submitted), len(task_list) - len(incoming),
        )
        return submitted

    def status(self, task_id: str) -> TaskStatusView:
        """Current state, last attempt and tier of the last attempt.

        Raises:
            TaskNotFoundError: If the task is unknown.
        """
        task = self.store.get(task_id)
        last = self.ledger.last(task_id)
        return TaskStatusView(
            task_id=task.id,
            state=task.status,
            last_attempt=last,
            escalation_tier=last.tier if last is not None else None,
        )

    def history(self, task_id: str) -> AttemptHistory:
        return self.ledger.history(task_id)

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    def cancel_task(self, task_id: str) -> TaskState:
        """Cancel one task; a no-op for terminal tasks.

        A queued task is abandoned immediately. A running task finishes its
        in-flight dispatch, which is recorded, and is then abandoned by its
        router. Returns the task's state after the call.

        Raises:
            TaskNotFoundError: If the task is unknown.
        """
        task = self.store.get(task_id)
        if task.status.is_terminal:
            return task.status

        self._cancel_event(task_id).set()
        with self._lock:
            running = task_id in self._running
        if running:
            logger.info("Cancellation requested for running task '%s'", task.title)
            return self.store.get(task_id).status

        claimed = self.store.claim(task_id)
        if claimed is None:
            # Claimed concurrently; its router sees the flag before dispatching.
            return self.store.get(task_id).status
        abandoned = self.task_router.mark_abandoned(claimed, "cancelled")
        self._emit_terminal(TaskDisposition(
            task_id=abandoned.id, title=abandoned.title,
            state=abandoned.status, reason="cancelled",
            attempts=list(self.ledger.history(task_id)),
        ))
        return abandoned.status

    def cancel_run(self) -> None:
        """Stop claiming new tasks and cancel the in-flight ones.

        Tasks still queued stay queued.
        """
        self._stop.set()
        with self._lock:
            running = list(self._running)
        for task_id in running:
            self._cancel_event(task_id).set()
        logger.info("Run cancellation requested (%d task(s) in flight)", len(running))

    # ------------------------------------------------------------------
    # Run loop
    # ------------------------------------------------------------------

    def run(self, max_tasks: Optional[int] = None) -> RunSummary:
        """Process ready tasks until the backlog drains or a stop condition hits.

        Raises:
            DuplicateSequenceError: On a ledger integrity violation. The
                offending task is abandoned, in-flight tasks are drained and
                no further tasks are claimed.
        """
        limit = max_tasks if max_tasks is not None else self.config.coordinator.max_tasks
        workers = max(1, self.config.coordinator.max_workers)
        summary = RunSummary(stop_reason="running")
        self._stop.clear()
        claimed = 0
        in_flight: dict[Future, Task] = {}
        integrity_error: Optional[DuplicateSequenceError] = None

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="ladder-task") as pool:
            while True:
                while (
                    not self._stop.is_set()
                    and len(in_flight) < workers
                    and (limit is None or claimed < limit)
                ):
                    task = self.store.claim_next()
                    if task is None:
                        break
                    claimed += 1
                    with self._lock:
                        self._running.add(task.id)
                    event = self._cancel_event(task.id)
                    in_flight[pool.submit(self._execute, task, event)] = task

                if not in_flight:
                    break

                done, _ = wait(
                    in_flight,
                    timeout=self.config.coordinator.poll_interval_seconds,
                    return_when=FIRST_COMPLETED,
                )
                for future in done:
                    task = in_flight.pop(future)
                    with self._lock:
                        self._running.discard(task.id)
                    try:
                        disposition = future.result()
                    except DuplicateSequenceError as e:
                        logger.error("Ledger integrity violation on task %s: %s", task.id, e)
                        disposition = self._abandon_after_error(task, "ledger_integrity_violation")
                        integrity_error = integrity_error or e
                        self._stop.set()
                    except Exception as e:
                        logger.exception("Task %s failed unexpectedly", task.id)
                        disposition = self._abandon_after_error(task, f"error: {type(e).__name__}: {e}")

                    summary.dispositions.append(disposition)
                    self._emit_terminal(disposition)
                    if disposition.state == TaskState.ABANDONED and self.config.coordinator.cascade_abandon:
                        for dependent in self._cascade_abandon(task.id):
                            summary.dispositions.append(dependent)
                            self._emit_terminal(dependent)

        summary.completed_at = datetime.now(UTC)
        if integrity_error is not None:
            summary.stop_reason = "ledger_integrity_violation"
        elif self._stop.is_set():
            summary.stop_reason = "cancelled"
        elif limit is not None and claimed >= limit:
            summary.stop_reason = "max_tasks"
        elif self.store.list_tasks(TaskState.QUEUED):
            summary.stop_reason = "blocked"
        else:
            summary.stop_reason = "backlog_drained"

        logger.info(
            "Run finished: %d processed, %d succeeded, %d abandoned (%s)",
            summary.processed, summary.succeeded, summary.abandoned, summary.stop_reason,
        )
        if self.event_log is not None:
            self.event_log.flush_metrics()
        if integrity_error is not None:
            raise integrity_error
        return summary

    def run_convergence(
        self,
        artifact: Any,
        max_rounds: Optional[int] = None,
        reviewer: Optional[Reviewer] = None,
        history_path: Optional[Path] = None,
    ) -> ConvergenceResult:
        """Review ``artifact`` until two consecutive clean rounds or ``max_rounds``.

        With ``history_path`` the session resumes from and is saved to that file.
        """
        reviewer = reviewer or self.reviewer
        if reviewer is None:
            raise DependencyError("No reviewer configured", ["convergence requires a reviewer"])
        session = None
        if history_path is not None:
            session = ConvergenceSession.load(
                history_path,
                required_clean_rounds=self.config.convergence.required_clean_rounds,
                min_rounds=self.config.convergence.min_rounds,
            )
        return self.convergence.run(
            artifact,
            reviewer,
            max_rounds=max_rounds,
            reviser=self.reviser,
            session=session,
            history_path=history_path,
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _execute(self, task: Task, cancel_event: threading.Event) -> TaskDisposition:
        """Worker body: one task through a fresh router, then review if needed."""
        router = CouncilRouter(
            backends=self.backends,
            ledger=self.ledger,
            task_router=self.task_router,
            policy=self.policy,
            gatherer=self.gatherer,
            verifier=self.verifier,
            dispatch_config=self.config.dispatch,
            scope=self.config.context.scope,
            cancel_event=cancel_event,
        )
        disposition = router.run(task)
        if disposition.succeeded and task.reviewable and self.reviewer is not None:
            artifact = disposition.attempts[-1].output if disposition.attempts else None
            disposition.convergence = self.run_convergence(
                artifact, history_path=self._history_path(task.id),
            )
            if not disposition.convergence.converged:
                logger.warning("Task '%s' succeeded but its review did not converge", task.title)
        return disposition

    def _history_path(self, task_id: str) -> Optional[Path]:
        history_dir = self.config.convergence.history_dir
        if not history_dir:
            return None
        return Path(history_dir) / f"{task_id}.json"

    def _abandon_after_error(self, task: Task, reason: str) -> TaskDisposition:
        current = self.store.get(task.id)
        if not current.status.is_terminal:
            current = self.task_router.mark_abandoned(current, reason)
        return TaskDisposition(
            task_id=current.id,
            title=current.title,
            state=current.status,
            reason=reason,
            attempts=list(self.ledger.history(task.id)),
        )

    def _cascade_abandon(self, failed_id: str) -> list[TaskDisposition]:
        """Abandon queued tasks that (transitively) depend on ``failed_id``."""
        dispositions: list[TaskDisposition] = []
        frontier = [failed_id]
        while frontier:
            blocker = frontier.pop()
            for queued in self.store.list_tasks(TaskState.QUEUED):
                if blocker not in queued.dependencies:
                    continue
                claimed = self.store.claim(queued.id)
                if claimed is None:
                    continue
                abandoned = self.task_router.mark_abandoned(claimed, "dependency_failed")
                dispositions.append(TaskDisposition(
                    task_id=abandoned.id,
                    title=abandoned.title,
                    state=abandoned.status,
                    reason="dependency_failed",
                ))
                frontier.append(abandoned.id)
        if dispositions:
            logger.info("Abandoned %d dependent task(s) of %s", len(dispositions), failed_id)
        return dispositions

    def _cancel_event(self, task_id: str) -> threading.Event:
        with self._lock:
            return self._cancel_events.setdefault(task_id, threading.Event())

    def _known(self, task_id: str) -> bool:
        try:
            self.store.get(task_id)
        except TaskNotFoundError:
            return False
        return True

    def _emit_terminal(self, disposition: TaskDisposition) -> None:
        if self.event_log is not None:
            self.event_log.task_terminal(disposition)
