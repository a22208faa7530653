"""Component factory for Ladder.

Creates and wires the infrastructure (task store, LLM client, model router,
evidence search, verifier, event log) and the TaskCoordinator on top of it,
so the CLI and embedding applications receive fully-initialized components.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from ladder.agents.context_gatherer import ContextGatherer
from ladder.agents.llm_backend import LLMBackend
from ladder.agents.reviewer import LLMReviewer, LLMReviser
from ladder.agents.verifier import CommandVerifier
from ladder.core.config import (
    AppConfig,
    ModelRegistry,
    PromptLoader,
    load_config,
    load_model_registry,
)
from ladder.core.exceptions import ConfigError
from ladder.core.models import BackendTier
from ladder.core.protocols import Backend, EvidenceSearch, TaskStore
from ladder.db.engine import DatabaseEngine
from ladder.db.memory_store import InMemoryTaskStore
from ladder.db.repository import PostgresTaskStore
from ladder.llm.client import OpenRouterClient
from ladder.llm.router import ModelRouter
from ladder.orchestrator.coordinator import TaskCoordinator
from ladder.orchestrator.observability import EventLog
from ladder.tools.search import RepoEvidenceSearch, TavilyClient, TavilyEvidenceSearch

logger = logging.getLogger("ladder.factory")


@dataclass
class ComponentBundle:
    """Container for all initialized components.

    The factory builds the bundle once; ``coordinator`` is already wired to
    the other members.
    """

    config: AppConfig
    model_registry: ModelRegistry
    store: TaskStore
    llm_client: OpenRouterClient
    model_router: ModelRouter
    search: EvidenceSearch
    coordinator: TaskCoordinator
    db_engine: Optional[DatabaseEngine] = None
    search_client: Optional[TavilyClient] = None
    event_log: Optional[EventLog] = None


class ComponentFactory:
    """Factory for creating and wiring all Ladder infrastructure.

    Usage:
        bundle = ComponentFactory.create(config_dir=Path("config"))
        bundle.coordinator.submit_backlog(tasks)
        summary = bundle.coordinator.run()
        ComponentFactory.close(bundle)
    """

    @staticmethod
    def create(
        config_dir: Optional[Path] = None,
        env: Optional[str] = None,
        api_key: Optional[str] = None,
        initialize_schema: bool = True,
        backends: Optional[Mapping[BackendTier, Backend]] = None,
        config: Optional[AppConfig] = None,
    ) -> ComponentBundle:
        """Create and wire all components.

        Args:
            config_dir: Path to config/ directory. Default: project root/config.
            env: Environment name for config overlay (e.g., "test").
            api_key: OpenRouter API key. Falls back to OPENROUTER_API_KEY.
            initialize_schema: Whether to run schema.sql for the PostgreSQL store.
            backends: Optional tier backends replacing the LLM-backed default.
            config: Optional pre-built config; skips the YAML cascade.

        Raises:
            ConfigError: On invalid configuration or an unknown store/search provider.
        """
        logger.info("Initializing components...")

        # --- Config ---
        if config is None:
            config = load_config(config_dir=config_dir, env=env)
        model_registry = load_model_registry(config_dir=config_dir)
        prompts = PromptLoader(config_dir / "prompts" if config_dir else None)
        logger.info("Config loaded (%d model roles)", len(model_registry.roles))

        # --- Task store ---
        db_engine: Optional[DatabaseEngine] = None
        backend_name = config.database.backend.lower()
        if backend_name == "memory":
            store: TaskStore = InMemoryTaskStore()
        elif backend_name in ("postgres", "postgresql"):
            db_engine = DatabaseEngine(config.database)
            if initialize_schema:
                db_engine.initialize_schema()
            store = PostgresTaskStore(db_engine)
        else:
            raise ConfigError(f"Unknown database backend '{config.database.backend}'")

        # --- LLM ---
        llm_client = OpenRouterClient(config=config.llm, api_key=api_key)
        model_router = ModelRouter(model_registry)
        if backends is None:
            llm_backend = LLMBackend(llm_client, model_router, prompts)
            backends = {tier: llm_backend for tier in config.escalation.tiers}
        logger.info("LLM client configured (base_url=%s)", config.llm.base_url)

        # --- Evidence search ---
        search_client: Optional[TavilyClient] = None
        provider = config.search.provider.lower()
        if provider == "repo":
            search: EvidenceSearch = RepoEvidenceSearch(config.context)
        elif provider == "tavily":
            search_client = TavilyClient(config=config.search)
            search = TavilyEvidenceSearch(search_client)
        else:
            raise ConfigError(f"Unknown search provider '{config.search.provider}'")
        gatherer = ContextGatherer(search, max_new_questions=config.context.max_new_questions)

        # --- Review ---
        reviewer = reviser = None
        if "reviewer" in model_registry.roles:
            reviewer = LLMReviewer(llm_client, model_router, prompts)
            for tier in config.escalation.tiers:
                if tier.value in model_registry.roles:
                    model_router.get_reviewer_model(model_registry.get_model(tier.value))
        if "reviser" in model_registry.roles:
            reviser = LLMReviser(llm_client, model_router, prompts)

        # --- Observability ---
        event_log: Optional[EventLog] = None
        if config.observability.enabled:
            event_log = EventLog(
                jsonl_path=Path(config.observability.events_jsonl_path),
                metrics_path=Path(config.observability.metrics_path),
            )

        coordinator = TaskCoordinator(
            store=store,
            backends=backends,
            config=config,
            gatherer=gatherer,
            verifier=CommandVerifier(config.verifier),
            reviewer=reviewer,
            reviser=reviser,
            event_log=event_log,
        )
        logger.info("All components initialized (store=%s, search=%s)", backend_name, provider)

        return ComponentBundle(
            config=config,
            model_registry=model_registry,
            store=store,
            llm_client=llm_client,
            model_router=model_router,
            search=search,
            coordinator=coordinator,
            db_engine=db_engine,
            search_client=search_client,
            event_log=event_log,
        )

    @staticmethod
    def close(bundle: ComponentBundle) -> None:
        """Cleanly shut down all components."""
        if bundle.search_client:
            bundle.search_client.close()
        bundle.llm_client.close()
        if bundle.db_engine:
            bundle.db_engine.close()
        logger.info("All components shut down")
