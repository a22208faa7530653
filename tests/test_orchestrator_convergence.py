"""Tests for ladder/orchestrator/convergence.py — review until stable."""

import json
import logging
import time

import pytest

from ladder.core.config import ConvergenceConfig
from ladder.core.exceptions import ConfigError
from ladder.core.models import ConvergenceOutcome, ReviewRound, ReviewVerdict
from ladder.orchestrator.convergence import ConvergenceLoop, ConvergenceSession
from tests.conftest import RecordingReviser, ScriptedReviewer, blocker, major, minor


def _round(number, *findings):
    return ReviewRound.from_findings(number, list(findings))


class TestReviewRound:
    def test_counts_and_verdict(self):
        r = _round(1, blocker(), major("a"), major("b"), minor())
        assert r.blocker_count == 1
        assert r.major_count == 2
        assert r.verdict == ReviewVerdict.DIRTY

    def test_minor_only_is_clean(self):
        assert _round(1, minor()).is_clean


class TestConvergenceSession:
    def test_two_clean_rounds_converge(self):
        session = ConvergenceSession(rounds=[_round(1), _round(2)])
        assert session.converged

    def test_single_clean_round_does_not_converge(self):
        assert not ConvergenceSession(rounds=[_round(1)]).converged

    def test_clean_then_dirty_does_not_converge(self):
        session = ConvergenceSession(rounds=[_round(1), _round(2, major())])
        assert not session.converged

    def test_window_only_looks_at_latest_rounds(self):
        session = ConvergenceSession(rounds=[_round(1, blocker()), _round(2), _round(3)])
        assert session.converged

    def test_min_rounds_delays_convergence(self):
        session = ConvergenceSession(min_rounds=3, rounds=[_round(1), _round(2)])
        assert not session.converged
        session.add(_round(3))
        assert session.converged

    def test_round_numbers_must_increase(self):
        session = ConvergenceSession(rounds=[_round(2)])
        with pytest.raises(ValueError):
            session.add(_round(2))

    def test_next_round_number(self):
        assert ConvergenceSession().next_round_number == 1
        assert ConvergenceSession(rounds=[_round(4)]).next_round_number == 5

    def test_stalled_when_blocking_count_unchanged(self):
        assert ConvergenceSession(rounds=[_round(1, major()), _round(2, blocker())]).stalled
        assert not ConvergenceSession(rounds=[_round(1, major(), major()), _round(2, major())]).stalled
        assert not ConvergenceSession(rounds=[_round(1), _round(2)]).stalled

    def test_invalid_window(self):
        with pytest.raises(ValueError):
            ConvergenceSession(required_clean_rounds=0)


class TestSessionPersistence:
    def test_save_and_load(self, tmp_path):
        path = tmp_path / "reviews" / "history.json"
        ConvergenceSession(rounds=[_round(1, blocker("Race")), _round(2)]).save(path)

        data = json.loads(path.read_text())
        assert data["required_clean_rounds"] == 2
        assert [r["round_number"] for r in data["rounds"]] == [1, 2]

        loaded = ConvergenceSession.load(path)
        assert [r.round_number for r in loaded.rounds] == [1, 2]
        assert loaded.rounds[0].findings[0].title == "Race"
        assert not loaded.converged

    def test_missing_file_starts_fresh(self, tmp_path):
        session = ConvergenceSession.load(tmp_path / "none.json", min_rounds=1)
        assert session.rounds == []
        assert session.min_rounds == 1

    def test_invalid_file_raises_config_error(self, tmp_path):
        path = tmp_path / "bad.json"
        path.write_text("{not json")
        with pytest.raises(ConfigError):
            ConvergenceSession.load(path)

    def test_resumed_session_already_converged(self, tmp_path):
        path = tmp_path / "h.json"
        ConvergenceSession(rounds=[_round(1), _round(2)]).save(path)
        reviewer = ScriptedReviewer([[blocker()]])
        result = ConvergenceLoop().run("doc", reviewer, session=ConvergenceSession.load(path))
        assert result.converged
        assert reviewer.reviewed == []


class TestConvergenceLoop:
    def test_blocker_then_two_clean_rounds_converges_after_round_three(self):
        reviewer = ScriptedReviewer([[blocker()], [], []])
        result = ConvergenceLoop().run("draft", reviewer, max_rounds=10)

        assert result.outcome == ConvergenceOutcome.CONVERGED
        assert [r.round_number for r in result.rounds] == [1, 2, 3]
        assert [r.verdict for r in result.rounds] == [
            ReviewVerdict.DIRTY, ReviewVerdict.CLEAN, ReviewVerdict.CLEAN,
        ]

    def test_always_major_exhausts_rounds(self):
        reviewer = ScriptedReviewer([[major()]])
        result = ConvergenceLoop().run("draft", reviewer, max_rounds=3)

        assert result.outcome == ConvergenceOutcome.ROUNDS_EXHAUSTED
        assert not result.converged
        assert len(result.rounds) == 3

    def test_clean_then_dirty_is_not_converged(self):
        reviewer = ScriptedReviewer([[], [major()]])
        result = ConvergenceLoop().run("draft", reviewer, max_rounds=2)
        assert result.outcome == ConvergenceOutcome.ROUNDS_EXHAUSTED

    def test_reviser_receives_all_findings_of_dirty_round(self):
        findings = [blocker("A"), minor("B")]
        reviewer = ScriptedReviewer([findings, [], []])
        reviser = RecordingReviser()
        result = ConvergenceLoop().run("v0", reviewer, reviser=reviser)

        assert reviser.calls == [("v0", findings)]
        assert reviewer.reviewed == ["v0", "v0+r1", "v0+r1"]
        assert result.artifact == "v0+r1"

    def test_reviser_not_called_after_last_round(self):
        reviewer = ScriptedReviewer([[major()]])
        reviser = RecordingReviser()
        ConvergenceLoop().run("v0", reviewer, max_rounds=2, reviser=reviser)
        assert len(reviser.calls) == 1

    def test_review_timeout_is_dirty_round(self):
        class _Slow:
            def review(self, artifact):
                time.sleep(1.0)
                return []

        loop = ConvergenceLoop(ConvergenceConfig(review_timeout_seconds=0.05))
        result = loop.run("doc", _Slow(), max_rounds=1)

        only = result.rounds[0]
        assert only.timed_out
        assert only.blocker_count == 1
        assert only.findings[0].category == "timeout"
        assert not result.converged

    def test_reviewer_error_is_dirty_round(self):
        class _Down:
            def review(self, artifact):
                raise RuntimeError("provider down")

        result = ConvergenceLoop().run("doc", _Down(), max_rounds=3)

        assert result.outcome == ConvergenceOutcome.ROUNDS_EXHAUSTED
        assert len(result.rounds) == 3
        assert all(r.blocker_count == 1 for r in result.rounds)
        assert result.rounds[0].findings[0].category == "reviewer_error"
        assert "provider down" in result.rounds[0].findings[0].detail

    def test_reviewer_recovers_after_error(self):
        class _Flaky:
            def __init__(self):
                self.calls = 0

            def review(self, artifact):
                self.calls += 1
                if self.calls == 1:
                    raise RuntimeError("provider down")
                return []

        result = ConvergenceLoop().run("doc", _Flaky(), max_rounds=5)
        assert result.converged
        assert len(result.rounds) == 3

    def test_stall_warning(self, caplog):
        reviewer = ScriptedReviewer([[major()]])
        with caplog.at_level(logging.WARNING, logger="ladder.orchestrator.convergence"):
            ConvergenceLoop().run("doc", reviewer, max_rounds=3)
        assert "Review stalled" in caplog.text

    def test_no_stall_warning_while_improving(self, caplog):
        reviewer = ScriptedReviewer([[blocker(), major()], [major()], []])
        with caplog.at_level(logging.WARNING, logger="ladder.orchestrator.convergence"):
            ConvergenceLoop().run("doc", reviewer, max_rounds=4)
        assert "Review stalled" not in caplog.text

    def test_history_written_after_each_round(self, tmp_path):
        path = tmp_path / "history.json"
        reviewer = ScriptedReviewer([[major()], [], []])
        ConvergenceLoop().run("doc", reviewer, history_path=path)
        data = json.loads(path.read_text())
        assert len(data["rounds"]) == 3

    def test_max_rounds_counts_resumed_rounds(self):
        session = ConvergenceSession(rounds=[_round(1, major()), _round(2, major())])
        reviewer = ScriptedReviewer([[]])
        result = ConvergenceLoop().run("doc", reviewer, max_rounds=3, session=session)
        assert [r.round_number for r in result.rounds] == [1, 2, 3]
        assert result.outcome == ConvergenceOutcome.ROUNDS_EXHAUSTED

    def test_on_round_hook(self):
        seen = []
        ConvergenceLoop(on_round=seen.append).run("doc", ScriptedReviewer([[]]))
        assert [r.round_number for r in seen] == [1, 2]

    def test_invalid_max_rounds(self):
        with pytest.raises(ValueError):
            ConvergenceLoop().run("doc", ScriptedReviewer([[]]), max_rounds=0)

    def test_configurable_window(self):
        loop = ConvergenceLoop(ConvergenceConfig(required_clean_rounds=3))
        result = loop.run("doc", ScriptedReviewer([[]]), max_rounds=10)
        assert len(result.rounds) == 3
