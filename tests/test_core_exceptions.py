"""Tests for ladder/core/exceptions.py — exception hierarchy."""

import pytest

from ladder.core.exceptions import (
    AuthenticationError,
    ConfigError,
    ConnectionError,
    ContextError,
    DatabaseError,
    DependencyCycleError,
    DependencyError,
    DispatchError,
    DispatchTimeoutError,
    DuplicateSequenceError,
    DuplicateTaskError,
    InvalidTransitionError,
    LadderError,
    LedgerError,
    LLMError,
    ModelNotFoundError,
    PolicyMisconfiguredError,
    RateLimitError,
    ResponseParseError,
    SchemaInitError,
    SearchError,
    ShellTimeoutError,
    TaskError,
    TaskNotFoundError,
    ToolError,
    UnresolvedQuestionError,
)


class TestExceptionHierarchy:
    def test_base_exception(self):
        with pytest.raises(LadderError):
            raise LadderError("test")

    def test_ledger_errors(self):
        assert issubclass(LedgerError, LadderError)
        assert issubclass(DuplicateSequenceError, LedgerError)

    def test_task_errors(self):
        assert issubclass(TaskError, LadderError)
        assert issubclass(InvalidTransitionError, TaskError)
        assert issubclass(TaskNotFoundError, TaskError)
        assert issubclass(DuplicateTaskError, TaskError)
        assert issubclass(DependencyCycleError, DependencyError)
        assert issubclass(DependencyError, TaskError)

    def test_dispatch_and_context_errors(self):
        assert issubclass(DispatchTimeoutError, DispatchError)
        assert issubclass(UnresolvedQuestionError, ContextError)
        assert issubclass(ContextError, LadderError)

    def test_database_errors(self):
        assert issubclass(SchemaInitError, DatabaseError)
        assert issubclass(ConnectionError, DatabaseError)

    def test_llm_errors(self):
        for cls in (RateLimitError, AuthenticationError, ModelNotFoundError, ResponseParseError):
            assert issubclass(cls, LLMError)

    def test_tool_errors(self):
        assert issubclass(ShellTimeoutError, ToolError)
        assert issubclass(SearchError, ToolError)

    def test_policy_error_is_not_config_error(self):
        assert issubclass(PolicyMisconfiguredError, LadderError)
        assert not issubclass(PolicyMisconfiguredError, ConfigError)
        assert not issubclass(PolicyMisconfiguredError, ValueError)

    def test_catch_broadly(self):
        with pytest.raises(LadderError):
            raise SearchError("index offline")


class TestExceptionPayloads:
    def test_duplicate_sequence(self):
        err = DuplicateSequenceError("t1", expected=3, received=2)
        assert (err.task_id, err.expected, err.received) == ("t1", 3, 2)
        assert "expected attempt sequence 3, got 2" in str(err)

    def test_unresolved_question_defaults(self):
        err = UnresolvedQuestionError("Where is `x`?")
        assert err.unresolved == ["Where is `x`?"]
        assert err.answers == []

    def test_dispatch_timeout_message(self):
        err = DispatchTimeoutError("backend fast-surgeon", 1.5)
        assert str(err) == "backend fast-surgeon timed out after 1.5s"

    def test_task_not_found(self):
        assert TaskNotFoundError("t9").task_id == "t9"

    def test_dependency_cycle_rendering(self):
        err = DependencyCycleError([["a", "b", "a"]])
        assert "a -> b -> a" in str(err)
        assert err.problems == ["a -> b -> a"]
