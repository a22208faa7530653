"""Tests for ladder/orchestrator/observability.py."""

import json

from ladder.core.models import (
    ConvergenceOutcome,
    ConvergenceResult,
    ReviewRound,
    TaskDisposition,
    TaskState,
)
from ladder.orchestrator.observability import EventLog
from tests.conftest import DEEP, blocker, make_attempt


def _read_events(path):
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]


def test_event_log_writes_jsonl_and_metrics(tmp_path):
    log = EventLog(
        jsonl_path=tmp_path / "obs" / "events.jsonl",
        metrics_path=tmp_path / "obs" / "metrics.json",
    )
    log.emit_event("run_started", {"tasks": 2})
    log.emit_event("task_terminal", {"task_id": "a"})
    log.emit_event("task_terminal", {"task_id": "b"})
    log.flush_metrics()

    events = _read_events(log.jsonl_path)
    assert [e["event_type"] for e in events] == ["run_started", "task_terminal", "task_terminal"]
    assert events[0]["payload"] == {"tasks": 2}
    assert "timestamp" in events[0]

    metrics = json.loads(log.metrics_path.read_text(encoding="utf-8"))
    assert metrics["counters"] == {"run_started": 1, "task_terminal": 2}


def test_attempt_recorded_payload(tmp_path):
    log = EventLog(tmp_path / "e.jsonl", tmp_path / "m.json")
    log.attempt_recorded(make_attempt(2, tier=DEEP, confidence=55, questions=("q1", "q2")))

    payload = _read_events(log.jsonl_path)[0]["payload"]
    assert payload == {
        "task_id": "t1",
        "sequence": 2,
        "tier": "deep-reasoner",
        "verification": "fail",
        "confidence": 55.0,
        "failure_category": None,
        "open_questions": 2,
    }


def test_task_transition_payload(tmp_path, sample_task):
    log = EventLog(tmp_path / "e.jsonl", tmp_path / "m.json")
    log.task_transition(sample_task.with_status(TaskState.DISPATCHED), TaskState.QUEUED, "tier=fast-surgeon")

    payload = _read_events(log.jsonl_path)[0]["payload"]
    assert payload["from"] == "queued"
    assert payload["to"] == "dispatched"
    assert payload["reason"] == "tier=fast-surgeon"


def test_review_round_payload(tmp_path):
    log = EventLog(tmp_path / "e.jsonl", tmp_path / "m.json")
    log.review_round(ReviewRound.from_findings(3, [blocker()], timed_out=True))

    payload = _read_events(log.jsonl_path)[0]["payload"]
    assert payload == {"round": 3, "verdict": "dirty", "blockers": 1, "majors": 0, "timed_out": True}


def test_task_terminal_includes_convergence(tmp_path):
    log = EventLog(tmp_path / "e.jsonl", tmp_path / "m.json")
    log.task_terminal(TaskDisposition(
        task_id="a", title="A", state=TaskState.SUCCEEDED,
        attempts=[make_attempt(1, task_id="a")],
        convergence=ConvergenceResult(outcome=ConvergenceOutcome.ROUNDS_EXHAUSTED),
    ))
    log.task_terminal(TaskDisposition(task_id="b", title="B", state=TaskState.ABANDONED, reason="cancelled"))

    first, second = (e["payload"] for e in _read_events(log.jsonl_path))
    assert first["attempts"] == 1
    assert first["convergence"] == "rounds_exhausted"
    assert "convergence" not in second
    assert second["reason"] == "cancelled"
