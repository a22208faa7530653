"""Custom exception hierarchy for Ladder.

All exceptions inherit from LadderError so callers can catch broadly
or narrowly as needed.
"""

from __future__ import annotations


class LadderError(Exception):
    """Base exception for all Ladder errors."""


# ---------------------------------------------------------------------------
# Attempt ledger
# ---------------------------------------------------------------------------

class LedgerError(LadderError):
    """Attempt ledger integrity violation."""


class DuplicateSequenceError(LedgerError):
    """An attempt was recorded out of sequence; indicates a caller bug."""

    def __init__(self, task_id: str, expected: int, received: int):
        self.task_id = task_id
        self.expected = expected
        self.received = received
        super().__init__(
            f"Task {task_id}: expected attempt sequence {expected}, got {received}"
        )


# ---------------------------------------------------------------------------
# Context gathering
# ---------------------------------------------------------------------------

class ContextError(LadderError):
    """Context gathering failure."""


class UnresolvedQuestionError(ContextError):
    """A question could not be grounded in evidence.

    Carries the answers that were grounded so callers can merge them and
    keep only the unresolved questions open.
    """

    def __init__(
        self,
        question: str,
        unresolved: list[str] | None = None,
        answers: list | None = None,
    ):
        self.question = question
        self.unresolved = list(unresolved or [question])
        self.answers = list(answers or [])
        super().__init__(f"Unresolved question: {question}")


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------

class DispatchError(LadderError):
    """Backend or reviewer call failure."""


class DispatchTimeoutError(DispatchError):
    """Backend or reviewer call exceeded its timeout."""

    def __init__(self, operation: str, timeout_seconds: float):
        self.operation = operation
        self.timeout_seconds = timeout_seconds
        super().__init__(f"{operation} timed out after {timeout_seconds:g}s")


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------

class TaskError(LadderError):
    """Task lifecycle failure."""


class InvalidTransitionError(TaskError):
    """Illegal task state transition."""


class TaskNotFoundError(TaskError):
    """Task identifier not present in the task store."""

    def __init__(self, task_id: str):
        self.task_id = task_id
        super().__init__(f"Task not found: {task_id}")


class DuplicateTaskError(TaskError):
    """Task identifier already present in the task store."""

    def __init__(self, task_id: str):
        self.task_id = task_id
        super().__init__(f"Task already exists: {task_id}")


class DependencyError(TaskError):
    """Task dependency set references unknown tasks."""

    def __init__(self, message: str, problems: list[str] | None = None):
        self.problems = list(problems or [])
        super().__init__(message)


class DependencyCycleError(DependencyError):
    """Task dependency graph contains a cycle."""

    def __init__(self, cycles: list[list[str]]):
        self.cycles = cycles
        rendered = "; ".join(" -> ".join(c) for c in cycles)
        super().__init__(f"Dependency cycle detected: {rendered}", problems=[rendered])


# ---------------------------------------------------------------------------
# Policy / configuration
# ---------------------------------------------------------------------------

class PolicyMisconfiguredError(LadderError):
    """Escalation policy cannot guarantee termination."""


class ConfigError(LadderError):
    """Invalid or missing configuration."""


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------

class DatabaseError(LadderError):
    """Failed database operation."""


class SchemaInitError(DatabaseError):
    """Failed to initialize database schema."""


class ConnectionError(DatabaseError):
    """Failed to connect to database."""


# ---------------------------------------------------------------------------
# LLM
# ---------------------------------------------------------------------------

class LLMError(LadderError):
    """Failed LLM operation."""


class RateLimitError(LLMError):
    """Hit API rate limit."""


class AuthenticationError(LLMError):
    """Invalid API key or unauthorized."""


class ModelNotFoundError(LLMError):
    """Requested model not available."""


class ResponseParseError(LLMError):
    """Failed to parse LLM response."""


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------

class ToolError(LadderError):
    """Tool execution failure."""


class ShellTimeoutError(ToolError):
    """Shell command exceeded timeout."""


class SearchError(ToolError):
    """Evidence search failure."""
