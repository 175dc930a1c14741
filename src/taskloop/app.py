"""Application orchestrator - wires all components and manages lifecycle."""

from __future__ import annotations

import time
from typing import Callable, Optional

from taskloop.ai.gateway import AnthropicGateway, ModelGateway
from taskloop.ai.openai_compat import OpenAICompatGateway
from taskloop.ai.tools.builtin import build_tool_registry
from taskloop.config import AppConfig, RetryConfig
from taskloop.core.loop import AgentLoop
from taskloop.core.models import RunResult
from taskloop.errors import ConfigurationError
from taskloop.log import get_logger
from taskloop.memory.embeddings import EmbeddingCache, EmbeddingProvider, OpenAIEmbeddingProvider
from taskloop.memory.extraction import FactExtractor
from taskloop.memory.facts import FactStore
from taskloop.memory.semantic import SemanticIndex
from taskloop.memory.session_window import SessionWindow
from taskloop.observability.trace import TraceRecorder
from taskloop.resilience.breaker import CircuitBreaker
from taskloop.resilience.gateway import ResilientGateway
from taskloop.resilience.idempotency import IdempotencyGuard
from taskloop.resilience.retry import RetryPolicy
from taskloop.services.dispatcher import BackgroundWorkDispatcher
from taskloop.services.janitor import ExpiryJanitor
from taskloop.services.service_manager import ServiceManager
from taskloop.storage.database import Database
from taskloop.storage.session_repo import SessionRepository
from taskloop.storage.trace_repo import TraceRepository

logger = get_logger(__name__)


class AgentApp:
    """Top-level application orchestrator.

    Every shared component is constructed once here and passed by reference;
    nothing is looked up from module-level state.
    """

    def __init__(
        self,
        config: AppConfig,
        gateway: Optional[ModelGateway] = None,
        embedding_provider: Optional[EmbeddingProvider] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        memory = config.memory
        resilience = config.resilience

        # 1. Storage
        self.db = Database(config.storage.db_path)
        self.workspace_db: Optional[Database] = None
        if "query_database" in config.tools.enabled:
            self.workspace_db = Database(config.tools.query_database.db_path, schema="")
        self.sessions = SessionRepository(self.db)
        self.trace_repo = TraceRepository(self.db)
        self.traces = TraceRecorder(self.trace_repo)

        # 2. Background work
        self.dispatcher = BackgroundWorkDispatcher(
            workers=config.background.workers,
            queue_size=config.background.queue_size,
            shutdown_timeout=config.background.shutdown_timeout_seconds,
        )

        # 3. Memory
        self.windows = SessionWindow(
            self.db,
            max_messages=memory.session_max_messages,
            ttl_minutes=memory.session_ttl_minutes,
            clock=clock,
        )
        self.embedding_provider = embedding_provider or self._create_embedding_provider()
        self.embedding_cache: Optional[EmbeddingCache] = None
        if self.embedding_provider is not None:
            self.embedding_cache = EmbeddingCache(
                self.db,
                self.embedding_provider,
                ttl_days=config.embeddings.cache_ttl_days,
                clock=clock,
            )
        self.facts = FactStore(
            self.db,
            max_facts=memory.max_facts_per_owner,
            embeddings=self.embedding_cache,
            dispatcher=self.dispatcher,
        )
        self.semantic = SemanticIndex(
            self.facts,
            self.embedding_cache,
            top_k=memory.semantic_top_k,
            threshold=memory.similarity_threshold,
        )

        # 4. Model gateways: live runs and extraction never share a breaker
        self.raw_gateway = gateway or self._create_gateway()
        self.model_breaker = CircuitBreaker("model", resilience.model_breaker)
        self.gateway = ResilientGateway(self.raw_gateway, self.model_breaker, RetryPolicy(resilience.retry))
        self.extractor: Optional[FactExtractor] = None
        if memory.extraction_enabled:
            self.extraction_breaker = CircuitBreaker("fact_extraction", resilience.extraction_breaker)
            extraction_gateway = ResilientGateway(
                self.raw_gateway,
                self.extraction_breaker,
                RetryPolicy(RetryConfig(max_attempts=1)),
            )
            self.extractor = FactExtractor(extraction_gateway, self.facts)

        # 5. Tools and loop
        self.tools = build_tool_registry(config.tools, self.facts, self.semantic, self.workspace_db)
        self.idempotency = IdempotencyGuard(self.db, ttl_hours=resilience.idempotency_ttl_hours, clock=clock)
        self.loop = AgentLoop(
            gateway=self.gateway,
            tools=self.tools,
            sessions=self.sessions,
            windows=self.windows,
            facts=self.facts,
            traces=self.traces,
            dispatcher=self.dispatcher,
            extractor=self.extractor,
            idempotency=self.idempotency,
            max_iterations=config.agent.max_iterations,
            system_prompt=config.agent.system_prompt,
        )

        # 6. Services
        self.janitor = ExpiryJanitor(
            self.windows,
            self.idempotency,
            self.embedding_cache,
            interval_minutes=config.janitor.purge_interval_minutes,
        )
        self.service_manager = ServiceManager(self.dispatcher, self.janitor)

    async def start(self) -> None:
        """Initialize storage and start background services."""
        await self.db.initialize()
        if self.workspace_db is not None:
            await self.workspace_db.initialize()
        await self.service_manager.start_all()
        logger.info(
            "taskloop_started",
            model=self.raw_gateway.model_name,
            tools=self.tools.names(),
            embeddings=self.embedding_cache is not None,
        )

    async def stop(self) -> None:
        """Drain background work, then release connections."""
        await self.service_manager.stop_all()
        await self.raw_gateway.aclose()
        if self.embedding_provider is not None:
            await self.embedding_provider.aclose()
        if self.workspace_db is not None:
            await self.workspace_db.close()
        await self.db.close()
        logger.info("taskloop_stopped")

    async def __aenter__(self) -> "AgentApp":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.stop()

    async def run(
        self,
        owner_id: str,
        user_input: str,
        session_id: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> RunResult:
        return await self.loop.run(owner_id, user_input, session_id=session_id, idempotency_key=idempotency_key)

    def _create_gateway(self) -> ModelGateway:
        """Create the model backend selected by ``gateway.backend``."""
        match self.config.gateway.backend:
            case "anthropic":
                if not self.config.anthropic:
                    raise ConfigurationError("gateway.backend is 'anthropic' but there is no 'anthropic' section")
                return AnthropicGateway(self.config.anthropic, self.config.gateway)
            case "openai":
                if not self.config.openai:
                    raise ConfigurationError("gateway.backend is 'openai' but there is no 'openai' section")
                return OpenAICompatGateway(self.config.openai, self.config.gateway)
            case _:
                raise ConfigurationError(f"Unknown model backend: {self.config.gateway.backend}")

    def _create_embedding_provider(self) -> Optional[EmbeddingProvider]:
        embeddings = self.config.embeddings
        if not embeddings.enabled:
            return None
        if not embeddings.api_key:
            logger.warning("embeddings_disabled", reason="embeddings.api_key is not set")
            return None
        return OpenAIEmbeddingProvider(embeddings)
