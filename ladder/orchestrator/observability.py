"""JSONL event log and aggregate counters for orchestration runs."""

from __future__ import annotations

import json
import threading
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Optional

from ladder.core.models import Attempt, ReviewRound, Task, TaskDisposition, TaskState


@dataclass
class EventLog:
    """Writes JSONL events and aggregate counters.

    Hook methods match the ledger, task router and convergence callbacks so
    the log can be wired in without those components knowing about it.
    """

    jsonl_path: Path
    metrics_path: Path
    counters: dict[str, int] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def emit_event(self, event_type: str, payload: dict[str, Any]) -> None:
        record = {
            "timestamp": datetime.now(UTC).isoformat(),
            "event_type": event_type,
            "payload": payload,
        }
        with self._lock:
            self.counters[event_type] = self.counters.get(event_type, 0) + 1
            self.jsonl_path.parent.mkdir(parents=True, exist_ok=True)
            with self.jsonl_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, ensure_ascii=True, default=str) + "\n")

    def flush_metrics(self) -> None:
        with self._lock:
            snapshot = {
                "timestamp": datetime.now(UTC).isoformat(),
                "counters": dict(sorted(self.counters.items())),
            }
        self.metrics_path.parent.mkdir(parents=True, exist_ok=True)
        self.metrics_path.write_text(
            json.dumps(snapshot, indent=2, ensure_ascii=True),
            encoding="utf-8",
        )

    # ------------------------------------------------------------------
    # Hooks
    # ------------------------------------------------------------------

    def attempt_recorded(self, attempt: Attempt) -> None:
        self.emit_event("attempt_recorded", {
            "task_id": attempt.task_id,
            "sequence": attempt.sequence,
            "tier": attempt.tier.value,
            "verification": attempt.verification.value,
            "confidence": attempt.confidence,
            "failure_category": attempt.failure_category,
            "open_questions": len(attempt.open_questions),
        })

    def task_transition(self, task: Task, old_status: TaskState, reason: Optional[str]) -> None:
        self.emit_event("task_transition", {
            "task_id": task.id,
            "from": old_status.value,
            "to": task.status.value,
            "reason": reason,
        })

    def review_round(self, review_round: ReviewRound) -> None:
        self.emit_event("review_round", {
            "round": review_round.round_number,
            "verdict": review_round.verdict.value,
            "blockers": review_round.blocker_count,
            "majors": review_round.major_count,
            "timed_out": review_round.timed_out,
        })

    def task_terminal(self, disposition: TaskDisposition) -> None:
        payload: dict[str, Any] = {
            "task_id": disposition.task_id,
            "state": disposition.state.value,
            "reason": disposition.reason,
            "attempts": len(disposition.attempts),
        }
        if disposition.convergence is not None:
            payload["convergence"] = disposition.convergence.outcome.value
        self.emit_event("task_terminal", payload)
