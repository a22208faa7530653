"""Tests for ladder/agents/reviewer.py — LLM reviewer and reviser."""

import pytest

from ladder.agents.reviewer import LLMReviewer, LLMReviser, render_artifact
from ladder.core.config import PromptLoader
from ladder.core.models import Severity
from ladder.llm.router import ModelRouter
from tests.conftest import blocker, llm_client_replying, minor


@pytest.fixture
def router(model_registry):
    return ModelRouter(model_registry)


@pytest.fixture
def prompts(config_dir):
    return PromptLoader(config_dir / "prompts")


def test_render_artifact():
    assert render_artifact("text") == "text"
    assert '"a": 1' in render_artifact({"a": 1})


class TestLLMReviewer:
    def test_structured_review(self, router, prompts, model_registry):
        client, requests = llm_client_replying('{"issues": [{"severity": "major", "title": "No tests"}]}')
        findings = LLMReviewer(client, router, prompts).review("def f(): pass")

        assert [(f.severity, f.title) for f in findings] == [(Severity.MAJOR, "No tests")]
        assert requests[0]["model"] == model_registry.get_model("reviewer")
        assert "def f(): pass" in requests[0]["messages"][1]["content"]

    def test_no_issues(self, router, prompts):
        client, _ = llm_client_replying("NO_ISSUES_FOUND")
        assert LLMReviewer(client, router, prompts).review("doc") == []

    def test_unreadable_review_is_dirty(self, router, prompts):
        client, _ = llm_client_replying("hmm, maybe fine?")
        findings = LLMReviewer(client, router, prompts).review("doc")
        assert findings[0].is_blocking


class TestLLMReviser:
    def test_findings_listed_in_prompt(self, router, prompts, model_registry):
        client, requests = llm_client_replying("revised doc")
        revised = LLMReviser(client, router, prompts).revise("doc", [blocker("Race"), minor("Naming")])

        assert revised == "revised doc"
        user = requests[0]["messages"][1]["content"]
        assert "- [blocker] Race" in user
        assert "- [minor] Naming" in user
        assert requests[0]["model"] == model_registry.get_model("reviser")

    def test_single_fence_unwrapped(self, router, prompts):
        client, _ = llm_client_replying("```python\nx = 2\n```")
        assert LLMReviser(client, router, prompts).revise("x = 1", [blocker()]) == "x = 2"

    def test_empty_reply_keeps_previous_artifact(self, router, prompts):
        client, _ = llm_client_replying("   ")
        assert LLMReviser(client, router, prompts).revise("x = 1", [blocker()]) == "x = 1"
