"""Collaborator interfaces consumed by the orchestration core.

Backends, reviewers, revisers, verifiers, evidence search and task stores
are pluggable. The core only depends on these structural protocols, so tests
and alternative deployments can pass any object with matching methods.
"""

from __future__ import annotations

from typing import Any, Mapping, Optional, Protocol, runtime_checkable

from ladder.core.models import (
    AccumulatedContext,
    BackendResponse,
    BackendTier,
    Finding,
    Task,
    TaskPayload,
    TaskState,
    VerificationReport,
)


@runtime_checkable
class Backend(Protocol):
    """A reasoning capability at one tier. How it answers is opaque."""

    def attempt(
        self,
        tier: BackendTier,
        payload: TaskPayload,
        context: AccumulatedContext,
    ) -> BackendResponse: ...


# The council: one capability reference per tier.
BackendSet = Mapping[BackendTier, Backend]


@runtime_checkable
class Reviewer(Protocol):
    def review(self, artifact: Any) -> list[Finding]: ...


@runtime_checkable
class Reviser(Protocol):
    """Applies review findings to an artifact and returns the revision."""

    def revise(self, artifact: Any, findings: list[Finding]) -> Any: ...


@runtime_checkable
class Verifier(Protocol):
    """Checks a backend output against a task's acceptance criteria."""

    def verify(self, task: Task, output: Any) -> VerificationReport: ...


@runtime_checkable
class EvidenceSearch(Protocol):
    """Returns opaque locators (``path:line``, URLs) for a query in a scope."""

    def search(self, scope: str, query: str) -> list[str]: ...


@runtime_checkable
class TaskStore(Protocol):
    """Key-value backlog keyed by task id.

    ``claim_next`` and ``claim`` must be atomic claim-or-skip operations:
    no two runners may ever receive the same task.
    """

    def add(self, task: Task) -> None: ...

    def get(self, task_id: str) -> Task: ...

    def put_status(self, task_id: str, status: TaskState) -> None: ...

    def claim_next(self) -> Optional[Task]: ...

    def claim(self, task_id: str) -> Optional[Task]: ...

    def list_tasks(self, status: Optional[TaskState] = None) -> list[Task]: ...
