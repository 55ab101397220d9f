"""
Pipeline Context
Builds and owns the full set of collaborating services.

Usage:
    async with await PipelineContext.create() as pipeline:
        await pipeline.processor.ingest_lead(payload)

Tests and embedders call build() directly with in-memory parts.
"""
import logging
import time
from typing import Callable, Dict, Optional

import httpx
import redis.asyncio as redis

from leadflow.core.config import ConfigManager, Settings
from leadflow.core.exceptions import DependencyError
from leadflow.domain.interfaces.channel import ChannelAgent
from leadflow.domain.interfaces.handover_destination import HandoverDestinationClient
from leadflow.domain.interfaces.job_queue import JobQueue
from leadflow.domain.interfaces.llm_provider import LLMProvider
from leadflow.domain.interfaces.pipeline_store import PipelineStore
from leadflow.domain.models.campaign import DestinationType
from leadflow.domain.models.lead import Channel
from leadflow.domain.services.circuit_breaker import BreakerRegistry
from leadflow.domain.services.conversation_engine import ConversationEngine
from leadflow.domain.services.coordination_hub import CoordinationHub
from leadflow.domain.services.coordination_store import CoordinationStore
from leadflow.domain.services.decision_engine import DecisionEngine
from leadflow.domain.services.handover_delivery import HandoverDeliveryService
from leadflow.domain.services.handover_service import HandoverService
from leadflow.domain.services.lead_locks import LeadLockManager
from leadflow.domain.services.qualification import ConversationAnalyzer
from leadflow.domain.services.queue_service import InMemoryJobQueue, JobQueueService
from leadflow.domain.services.text_generation import TextGenerationService
from leadflow.infrastructure.channels import ChannelFactory
from leadflow.infrastructure.handover import HandoverClientFactory
from leadflow.infrastructure.llm.factory import LLMFactory
from leadflow.infrastructure.storage.memory_store import InMemoryPipelineStore
from leadflow.infrastructure.storage.supabase_store import SupabasePipelineStore
from leadflow.services.lead_processor import LeadProcessor
from leadflow.utils.time_utils import Clock, utc_now

logger = logging.getLogger(__name__)


class PipelineContext:
    """Everything a worker or an embedding application needs, wired once."""

    def __init__(
        self,
        settings: Settings,
        config: ConfigManager,
        pipeline_store: PipelineStore,
        queue: JobQueue,
        coordination_store: CoordinationStore,
        breakers: BreakerRegistry,
        text_service: TextGenerationService,
        channels: Dict[Channel, ChannelAgent],
        handover_clients: Dict[DestinationType, HandoverDestinationClient],
        hub: CoordinationHub,
        handover_service: HandoverService,
        decision_engine: DecisionEngine,
        conversations: ConversationEngine,
        processor: LeadProcessor,
        llm_provider: Optional[LLMProvider] = None,
        redis_client=None,
        http_client: Optional[httpx.AsyncClient] = None
    ):
        self.settings = settings
        self.config = config
        self.pipeline_store = pipeline_store
        self.queue = queue
        self.coordination_store = coordination_store
        self.breakers = breakers
        self.text_service = text_service
        self.channels = channels
        self.handover_clients = handover_clients
        self.hub = hub
        self.handover_service = handover_service
        self.decision_engine = decision_engine
        self.conversations = conversations
        self.processor = processor
        self.llm_provider = llm_provider
        self.redis_client = redis_client
        self.http_client = http_client

    @classmethod
    def build(
        cls,
        settings: Optional[Settings] = None,
        config: Optional[ConfigManager] = None,
        pipeline_store: Optional[PipelineStore] = None,
        queue: Optional[JobQueue] = None,
        coordination_store: Optional[CoordinationStore] = None,
        llm_provider: Optional[LLMProvider] = None,
        channels: Optional[Dict[Channel, ChannelAgent]] = None,
        handover_clients: Optional[Dict[DestinationType, HandoverDestinationClient]] = None,
        redis_client=None,
        http_client: Optional[httpx.AsyncClient] = None,
        clock: Clock = utc_now,
        time_func: Callable[[], float] = time.monotonic
    ) -> "PipelineContext":
        """Wire every service. Anything not given falls back to a local default."""
        settings = settings or Settings()
        config = config or ConfigManager(env=settings.environment)
        queue_settings = config.get_queue_settings()

        pipeline_store = pipeline_store or InMemoryPipelineStore()
        queue = queue or InMemoryJobQueue(max_attempts=queue_settings["max_attempts"], clock=clock)
        coordination_store = coordination_store or CoordinationStore(redis_client)

        breakers = BreakerRegistry(config, time_func=time_func)
        text_service = TextGenerationService(llm_provider, breakers.get("llm"))

        if channels is None:
            channels = ChannelFactory.create_all(settings, text_service, redis_client=redis_client, http_client=http_client)
        if handover_clients is None:
            handover_clients = HandoverClientFactory.create_all(channels[Channel.EMAIL], http_client=http_client)

        coordination = config.get_coordination_settings()
        hub = CoordinationHub(
            coordination_store,
            pipeline_store,
            min_gap_minutes=coordination["min_gap_minutes"],
            stagger_minutes=coordination["stagger_minutes"],
            default_rotation=coordination["default_rotation"],
            clock=clock,
        )
        analyzer = ConversationAnalyzer(**config.get_scoring_settings())
        locks = LeadLockManager(redis_client)

        delivery = HandoverDeliveryService(pipeline_store, handover_clients, breakers)
        handover_service = HandoverService(pipeline_store, hub, delivery, queue=queue, clock=clock)
        decision_engine = DecisionEngine(pipeline_store, analyzer, text_service)
        conversations = ConversationEngine(
            pipeline_store,
            channels,
            breakers,
            hub,
            handover_service,
            decision_engine,
            analyzer,
            locks,
            clock=clock,
        )
        hub.on_completion(conversations.handle_goals_completed)

        processor = LeadProcessor(
            pipeline_store,
            decision_engine,
            conversations,
            hub,
            handover_service,
            queue,
            clock=clock,
        )

        return cls(
            settings=settings,
            config=config,
            pipeline_store=pipeline_store,
            queue=queue,
            coordination_store=coordination_store,
            breakers=breakers,
            text_service=text_service,
            channels=channels,
            handover_clients=handover_clients,
            hub=hub,
            handover_service=handover_service,
            decision_engine=decision_engine,
            conversations=conversations,
            processor=processor,
            llm_provider=llm_provider,
            redis_client=redis_client,
            http_client=http_client,
        )

    @classmethod
    async def create(
        cls,
        settings: Optional[Settings] = None,
        config: Optional[ConfigManager] = None
    ) -> "PipelineContext":
        """
        Connect to the configured backends and build the pipeline.

        Redis is required (queue, coordination, locks). Supabase and the
        LLM are optional; without them the pipeline runs on in-memory
        storage and template-only text.
        """
        settings = settings or Settings()
        config = config or ConfigManager(env=settings.environment)

        try:
            redis_client = redis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)
            await redis_client.ping()
        except Exception as e:
            logger.error(f"Failed to connect to Redis: {e}")
            raise DependencyError("redis", str(e)) from e
        logger.info(f"Connected to Redis: {settings.redis_url}")

        if settings.supabase_url and settings.supabase_service_key:
            pipeline_store: PipelineStore = SupabasePipelineStore.from_settings(
                settings.supabase_url, settings.supabase_service_key
            )
        else:
            logger.warning("SUPABASE_URL/SUPABASE_SERVICE_KEY not set, using in-memory pipeline store")
            pipeline_store = InMemoryPipelineStore()

        llm_provider = None
        if settings.groq_api_key:
            llm_config = dict(config.get(f"providers.llm.{settings.llm_provider}", {}) or {})
            llm_config["api_key"] = settings.groq_api_key
            llm_config.setdefault("model", settings.groq_model)
            llm_provider = LLMFactory.create(settings.llm_provider)
            await llm_provider.initialize(llm_config)
            logger.info(f"LLM provider ready: {llm_provider.name}")
        else:
            logger.warning("No LLM API key configured, adaptive text falls back to templates")

        queue_settings = config.get_queue_settings()
        queue = JobQueueService(redis_client=redis_client, max_attempts=queue_settings["max_attempts"])
        await queue.initialize()

        return cls.build(
            settings=settings,
            config=config,
            pipeline_store=pipeline_store,
            queue=queue,
            coordination_store=CoordinationStore(redis_client),
            llm_provider=llm_provider,
            redis_client=redis_client,
            http_client=httpx.AsyncClient(timeout=10.0),
        )

    async def close(self) -> None:
        """Release connections the pipeline opened."""
        for agent in self.channels.values():
            await agent.close()
        for client in self.handover_clients.values():
            await client.close()
        await self.text_service.close()
        await self.queue.close()
        await self.coordination_store.close()
        await self.pipeline_store.close()
        if self.http_client is not None:
            await self.http_client.aclose()
        if self.redis_client is not None:
            await self.redis_client.aclose()
        logger.info("Pipeline closed")

    async def __aenter__(self) -> "PipelineContext":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()
