"""Convergence loop: review, revise, repeat until the reviews are stable.

An artifact has converged once the last ``required_clean_rounds`` review
rounds (default 2) all report zero blockers and zero majors and at least
``min_rounds`` rounds have run. A single clean round is not enough: it may
be a lapse of the reviewer. Hitting ``max_rounds`` first yields
ROUNDS_EXHAUSTED, which callers must never read as success.

Sessions can be saved to and resumed from a JSON history file.
"""

from __future__ import annotations

import json
import logging
from collections import deque
from pathlib import Path
from typing import Any, Callable, Optional

from ladder.core.config import ConvergenceConfig
from ladder.core.exceptions import ConfigError, DispatchTimeoutError
from ladder.core.models import (
    ConvergenceOutcome,
    ConvergenceResult,
    Finding,
    ReviewRound,
    Severity,
)
from ladder.core.protocols import Reviewer, Reviser
from ladder.orchestrator.dispatch import call_with_timeout

logger = logging.getLogger("ladder.orchestrator.convergence")

RoundHook = Callable[[ReviewRound], None]


class ConvergenceSession:
    """Ordered review rounds for one artifact plus the convergence window."""

    def __init__(
        self,
        required_clean_rounds: int = 2,
        min_rounds: int = 0,
        rounds: Optional[list[ReviewRound]] = None,
    ):
        if required_clean_rounds < 1:
            raise ValueError("required_clean_rounds must be >= 1")
        self.required_clean_rounds = required_clean_rounds
        self.min_rounds = min_rounds
        self.rounds: list[ReviewRound] = []
        # (blocker_count, major_count) of the most recent rounds
        self.window: deque[tuple[int, int]] = deque(maxlen=required_clean_rounds)
        for review_round in rounds or []:
            self.add(review_round)

    @property
    def next_round_number(self) -> int:
        return self.rounds[-1].round_number + 1 if self.rounds else 1

    def add(self, review_round: ReviewRound) -> None:
        """Append a round; round numbers must strictly increase."""
        if self.rounds and review_round.round_number <= self.rounds[-1].round_number:
            raise ValueError(
                f"Round {review_round.round_number} does not follow round "
                f"{self.rounds[-1].round_number}"
            )
        self.rounds.append(review_round)
        self.window.append((review_round.blocker_count, review_round.major_count))

    @property
    def stalled(self) -> bool:
        """True when the blocking count is nonzero and unchanged across a full window."""
        if len(self.window) < max(2, self.required_clean_rounds):
            return False
        totals = {blockers + majors for blockers, majors in self.window}
        return len(totals) == 1 and totals.pop() > 0

    @property
    def converged(self) -> bool:
        if len(self.rounds) < max(self.min_rounds, self.required_clean_rounds):
            return False
        return len(self.window) == self.required_clean_rounds and all(
            blockers == 0 and majors == 0 for blockers, majors in self.window
        )

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        return {
            "required_clean_rounds": self.required_clean_rounds,
            "min_rounds": self.min_rounds,
            "rounds": [r.model_dump(mode="json") for r in self.rounds],
        }

    def save(self, path: Path) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(self.to_dict(), indent=2) + "\n", encoding="utf-8")

    @classmethod
    def load(
        cls,
        path: Path,
        required_clean_rounds: int = 2,
        min_rounds: int = 0,
    ) -> "ConvergenceSession":
        """Resume a session from a history file; a missing file starts fresh.

        Raises:
            ConfigError: If the file is not a valid history document.
        """
        if not path.exists():
            return cls(required_clean_rounds=required_clean_rounds, min_rounds=min_rounds)
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            rounds = [ReviewRound.model_validate(r) for r in data.get("rounds", [])]
        except (json.JSONDecodeError, AttributeError, ValueError) as e:
            raise ConfigError(f"Invalid convergence history {path}: {e}") from e
        return cls(required_clean_rounds=required_clean_rounds, min_rounds=min_rounds, rounds=rounds)


class ConvergenceLoop:
    """Drives repeated review of one artifact until stable or exhausted."""

    def __init__(
        self,
        config: Optional[ConvergenceConfig] = None,
        on_round: Optional[RoundHook] = None,
    ):
        self.config = config or ConvergenceConfig()
        self.on_round = on_round

    def run(
        self,
        artifact: Any,
        reviewer: Reviewer,
        max_rounds: Optional[int] = None,
        reviser: Optional[Reviser] = None,
        session: Optional[ConvergenceSession] = None,
        history_path: Optional[Path] = None,
    ) -> ConvergenceResult:
        """Review ``artifact`` until convergence or ``max_rounds`` rounds.

        ``max_rounds`` counts every round in the session, including rounds
        resumed from history.
        """
        limit = max_rounds if max_rounds is not None else self.config.max_rounds
        if limit < 1:
            raise ValueError("max_rounds must be >= 1")
        if session is None:
            session = ConvergenceSession(
                required_clean_rounds=self.config.required_clean_rounds,
                min_rounds=self.config.min_rounds,
            )

        while not session.converged and len(session.rounds) < limit:
            review_round = self._review(artifact, reviewer, session.next_round_number)
            session.add(review_round)
            if history_path is not None:
                session.save(history_path)
            if self.on_round is not None:
                self.on_round(review_round)
            logger.info(
                "Review round %d: %s (%d blocker(s), %d major(s))",
                review_round.round_number, review_round.verdict.value,
                review_round.blocker_count, review_round.major_count,
            )
            if session.stalled:
                logger.warning(
                    "Review stalled: %d blocking finding(s) for the last %d rounds",
                    review_round.blocker_count + review_round.major_count,
                    len(session.window),
                )

            if session.converged or len(session.rounds) >= limit:
                break
            if not review_round.is_clean and reviser is not None:
                artifact = reviser.revise(artifact, list(review_round.findings))

        outcome = ConvergenceOutcome.CONVERGED if session.converged else ConvergenceOutcome.ROUNDS_EXHAUSTED
        if outcome == ConvergenceOutcome.ROUNDS_EXHAUSTED:
            logger.warning("Review did not converge within %d round(s)", limit)
        return ConvergenceResult(outcome=outcome, rounds=list(session.rounds), artifact=artifact)

    def _review(self, artifact: Any, reviewer: Reviewer, round_number: int) -> ReviewRound:
        try:
            findings = call_with_timeout(
                reviewer.review,
                self.config.review_timeout_seconds,
                artifact,
                operation="review",
            )
        except DispatchTimeoutError as e:
            logger.warning("Review round %d: %s", round_number, e)
            synthetic = Finding(
                severity=Severity.BLOCKER,
                title="Review timed out",
                detail=str(e),
                category="timeout",
            )
            return ReviewRound.from_findings(round_number, [synthetic], timed_out=True)
        except Exception as e:
            # A failed review round counts as dirty; the loop carries on.
            logger.warning(
                "Review round %d: reviewer raised %s: %s",
                round_number, type(e).__name__, e,
            )
            synthetic = Finding(
                severity=Severity.BLOCKER,
                title="Reviewer failed",
                detail=f"{type(e).__name__}: {e}",
                category="reviewer_error",
            )
            return ReviewRound.from_findings(round_number, [synthetic])
        return ReviewRound.from_findings(round_number, list(findings))
