"""Append-only attempt ledger.

Each task gets its own partition. Attempts are recorded strictly in
sequence order and are never edited or removed; corrections are new
attempts.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, Iterator, Optional

from ladder.core.exceptions import DuplicateSequenceError
from ladder.core.models import Attempt

logger = logging.getLogger("ladder.orchestrator.ledger")


class AttemptHistory:
    """Restartable view over one task's attempts.

    Every iteration walks a snapshot taken when it starts, so attempts
    recorded mid-iteration never show up in (or break) a running loop.
    """

    def __init__(self, partition: list[Attempt]):
        self._partition = partition

    def __iter__(self) -> Iterator[Attempt]:
        return iter(tuple(self._partition))

    def __len__(self) -> int:
        return len(self._partition)

    def __bool__(self) -> bool:
        return bool(self._partition)


class AttemptLedger:
    """Per-task append-only record of attempts.

    Only the partition map is locked; each partition is written by exactly
    one CouncilRouter, so appends need no cross-task coordination.
    """

    def __init__(self, on_record: Optional[Callable[[Attempt], None]] = None):
        self._partitions: dict[str, list[Attempt]] = {}
        self._lock = threading.Lock()
        self._on_record = on_record

    def _partition(self, task_id: str) -> list[Attempt]:
        with self._lock:
            return self._partitions.setdefault(task_id, [])

    def record(self, attempt: Attempt) -> Attempt:
        """Append an attempt.

        Raises:
            DuplicateSequenceError: If the sequence is not exactly last + 1.
        """
        partition = self._partition(attempt.task_id)
        expected = len(partition) + 1
        if attempt.sequence != expected:
            raise DuplicateSequenceError(attempt.task_id, expected, attempt.sequence)
        partition.append(attempt)
        logger.debug(
            "Recorded attempt %d for task %s (tier=%s, verification=%s, confidence=%.0f)",
            attempt.sequence, attempt.task_id, attempt.tier.value,
            attempt.verification.value, attempt.confidence,
        )
        if self._on_record is not None:
            self._on_record(attempt)
        return attempt

    def history(self, task_id: str) -> AttemptHistory:
        return AttemptHistory(self._partition(task_id))

    def last_n(self, task_id: str, n: int) -> list[Attempt]:
        if n <= 0:
            return []
        return list(self._partition(task_id)[-n:])

    def last(self, task_id: str) -> Optional[Attempt]:
        partition = self._partition(task_id)
        return partition[-1] if partition else None

    def next_sequence(self, task_id: str) -> int:
        return len(self._partition(task_id)) + 1
