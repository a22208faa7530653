"""Shared fixtures for Ladder tests.

Collaborators are scripted in-process implementations of the protocols
(backends, reviewers, search), never network calls. Tests requiring
external services use skip markers when unavailable.
"""

from __future__ import annotations

import os
import threading
from pathlib import Path
from typing import Any, Iterable, Optional

import pytest
from dotenv import load_dotenv

# Load .env from project root so DATABASE_URL, API keys, etc. are available
load_dotenv(Path(__file__).parent.parent / ".env", override=True)

from ladder.core.config import (
    AppConfig,
    DatabaseConfig,
    ModelRegistry,
    PolicyConfig,
    load_config,
    load_model_registry,
)
from ladder.core.models import (
    AccumulatedContext,
    Attempt,
    BackendResponse,
    BackendTier,
    Finding,
    Severity,
    Task,
    TaskPayload,
    Verification,
)
from ladder.db.memory_store import InMemoryTaskStore
from ladder.orchestrator.ledger import AttemptLedger
from ladder.orchestrator.task_router import TaskRouter

FAST = BackendTier.FAST_SURGEON
WIDE = BackendTier.WIDE_CONTEXT_ANALYST
DEEP = BackendTier.DEEP_REASONER


# ---------------------------------------------------------------------------
# Service availability checks
# ---------------------------------------------------------------------------

def _get_db_config() -> DatabaseConfig:
    """Build a DatabaseConfig from environment or defaults."""
    db_url = os.getenv("DATABASE_URL")
    if db_url and db_url.startswith(("postgresql://", "postgres://")):
        from urllib.parse import urlparse
        parsed = urlparse(db_url)
        return DatabaseConfig(
            backend="postgresql",
            host=parsed.hostname or "localhost",
            port=parsed.port or 5432,
            dbname=(parsed.path[1:] if parsed.path and len(parsed.path) > 1 else "ladder"),
            user=parsed.username or "ladder",
            password=parsed.password or "ladder",
        )
    return DatabaseConfig(backend="postgresql")


def _postgres_available() -> bool:
    """Check if PostgreSQL is reachable."""
    try:
        import psycopg
        conn = psycopg.connect(_get_db_config().connection_string, connect_timeout=3)
        conn.close()
        return True
    except Exception:
        return False


def _openrouter_key_set() -> bool:
    return bool(os.getenv("OPENROUTER_API_KEY"))


requires_postgres = pytest.mark.skipif(
    not _postgres_available(),
    reason="PostgreSQL not available",
)

requires_openrouter = pytest.mark.skipif(
    not _openrouter_key_set(),
    reason="OPENROUTER_API_KEY not set",
)


# ---------------------------------------------------------------------------
# Scripted collaborators
# ---------------------------------------------------------------------------

def response(
    confidence: float = 0.0,
    verification: Verification = Verification.FAIL,
    questions: Iterable[str] = (),
    output: Any = "patch",
    findings: Iterable[Finding] = (),
) -> BackendResponse:
    return BackendResponse(
        output=output,
        verification=verification,
        confidence=confidence,
        findings=list(findings),
        open_questions=list(questions),
    )


def passing(confidence: float = 90.0, output: Any = "patch") -> BackendResponse:
    return response(confidence=confidence, verification=Verification.PASS, output=output)


def failing(confidence: float = 30.0, questions: Iterable[str] = ()) -> BackendResponse:
    return response(confidence=confidence, verification=Verification.FAIL, questions=questions)


class ScriptedBackend:
    """Backend answering from a fixed script; the last entry repeats.

    Entries may be BackendResponse objects or exceptions to raise. Every call
    is recorded as (tier, payload, context).
    """

    def __init__(self, script: Iterable[Any] = (), default: Optional[BackendResponse] = None):
        self.script = list(script)
        self.default = default or failing()
        self.calls: list[tuple[BackendTier, TaskPayload, AccumulatedContext]] = []
        self._lock = threading.Lock()

    def attempt(self, tier: BackendTier, payload: TaskPayload, context: AccumulatedContext) -> BackendResponse:
        with self._lock:
            self.calls.append((tier, payload, context))
            if self.script:
                item = self.script.pop(0) if len(self.script) > 1 else self.script[0]
            else:
                item = self.default
        if isinstance(item, Exception):
            raise item
        return item


class ScriptedReviewer:
    """Reviewer returning one findings list per round; the last entry repeats."""

    def __init__(self, rounds: Iterable[list[Finding]]):
        self.rounds = list(rounds)
        self.reviewed: list[Any] = []

    def review(self, artifact: Any) -> list[Finding]:
        self.reviewed.append(artifact)
        if len(self.rounds) > 1:
            return self.rounds.pop(0)
        return list(self.rounds[0]) if self.rounds else []


class RecordingReviser:
    def __init__(self):
        self.calls: list[tuple[Any, list[Finding]]] = []

    def revise(self, artifact: Any, findings: list[Finding]) -> Any:
        self.calls.append((artifact, list(findings)))
        return f"{artifact}+r{len(self.calls)}"


class DictSearch:
    """EvidenceSearch keyed by lowercase query substring."""

    def __init__(self, index: dict[str, list[str]]):
        self.index = {k.lower(): v for k, v in index.items()}
        self.queries: list[tuple[str, str]] = []

    def search(self, scope: str, query: str) -> list[str]:
        self.queries.append((scope, query))
        lowered = query.lower()
        for key, locators in self.index.items():
            if key in lowered or lowered in key:
                return list(locators)
        return []


def llm_client_replying(*contents: str, model: str = "test/model"):
    """OpenRouterClient answering from ``contents`` over httpx.MockTransport.

    The last content repeats. Returns (client, requests) where ``requests``
    collects the decoded JSON body of every chat completion request.
    """
    import json

    import httpx

    from ladder.core.config import LLMConfig
    from ladder.llm.client import OpenRouterClient

    replies = list(contents)
    requests: list[dict[str, Any]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(json.loads(request.content))
        content = replies.pop(0) if len(replies) > 1 else replies[0]
        return httpx.Response(200, json={
            "choices": [{"message": {"content": content}}],
            "model": model,
            "usage": {"total_tokens": 10},
        })

    client = OpenRouterClient(LLMConfig(provider_retries=0, provider_backoff_seconds=0.01), api_key="test-key")
    client._client = httpx.Client(transport=httpx.MockTransport(handler))
    return client, requests


def blocker(title: str = "Broken invariant") -> Finding:
    return Finding(severity=Severity.BLOCKER, title=title)


def major(title: str = "Missing edge case") -> Finding:
    return Finding(severity=Severity.MAJOR, title=title)


def minor(title: str = "Naming") -> Finding:
    return Finding(severity=Severity.MINOR, title=title)


def make_attempt(
    sequence: int,
    tier: BackendTier = FAST,
    confidence: float = 30.0,
    verification: Verification = Verification.FAIL,
    questions: Iterable[str] = (),
    context_digest: Optional[str] = None,
    task_id: str = "t1",
    failure_category: Optional[str] = None,
) -> Attempt:
    return Attempt(
        task_id=task_id,
        sequence=sequence,
        tier=tier,
        confidence=confidence,
        verification=verification,
        open_questions=tuple(questions),
        context_digest=context_digest,
        failure_category=failure_category,
    )


# ---------------------------------------------------------------------------
# Config fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def config_dir() -> Path:
    return Path(__file__).parent.parent / "config"


@pytest.fixture
def app_config(config_dir: Path) -> AppConfig:
    return load_config(config_dir=config_dir)


@pytest.fixture
def model_registry(config_dir: Path) -> ModelRegistry:
    return load_model_registry(config_dir=config_dir)


@pytest.fixture
def two_tier_policy() -> PolicyConfig:
    return PolicyConfig(tiers=[FAST, DEEP], failure_cap=2, gather_budget=2, confidence_threshold=80)


@pytest.fixture
def fast_config() -> AppConfig:
    """AppConfig tuned for tests: short timeouts, no history files."""
    config = AppConfig()
    config.dispatch.timeout_seconds = 5
    config.convergence.review_timeout_seconds = 5
    config.coordinator.poll_interval_seconds = 0.01
    config.coordinator.max_workers = 2
    return config


# ---------------------------------------------------------------------------
# Store / ledger fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def store() -> InMemoryTaskStore:
    return InMemoryTaskStore()


@pytest.fixture
def ledger() -> AttemptLedger:
    return AttemptLedger()


@pytest.fixture
def task_router(store) -> TaskRouter:
    return TaskRouter(store)


@pytest.fixture
def sample_task() -> Task:
    return Task(
        id="t1",
        title="Fix off-by-one in pagination",
        description="Page 2 repeats the last row of page 1",
        acceptance_criteria=("page boundaries do not overlap", "existing tests pass"),
        priority=5,
    )


# ---------------------------------------------------------------------------
# Database fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def db_config() -> DatabaseConfig:
    return _get_db_config()


@pytest.fixture
def db_engine(db_config):
    """Real PostgreSQL engine: creates schema, yields, cleans up its rows."""
    from ladder.db.engine import DatabaseEngine
    engine = DatabaseEngine(db_config)
    engine.initialize_schema()
    engine.execute("DELETE FROM ladder_task_dependencies")
    engine.execute("DELETE FROM ladder_tasks")
    yield engine
    engine.execute("DELETE FROM ladder_task_dependencies")
    engine.execute("DELETE FROM ladder_tasks")
    engine.close()
