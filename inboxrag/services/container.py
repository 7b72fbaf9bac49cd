from __future__ import annotations

from dataclasses import dataclass
import logging

from redis.asyncio import Redis

from inboxrag.core.config import get_settings
from inboxrag.core.errors import ProviderConfigError
from inboxrag.persistence.base import Storage
from inboxrag.persistence.db import dispose_engine, get_session_factory
from inboxrag.persistence.memory import MemoryState, build_memory_storage
from inboxrag.persistence.sql import build_sql_storage
from inboxrag.providers.embeddings.base import EmbeddingProvider
from inboxrag.providers.embeddings.factory import get_embedding_provider
from inboxrag.providers.generation.base import GenerationProvider
from inboxrag.providers.generation.factory import get_generation_provider
from inboxrag.services.channels import ChannelResolver
from inboxrag.services.knowledge.indexer import KnowledgeIndexer
from inboxrag.services.pipeline import PipelineWorker
from inboxrag.services.plans import PlanCatalog
from inboxrag.services.queue.base import JobQueue
from inboxrag.services.queue.memory import MemoryJobQueue
from inboxrag.services.queue.redis_queue import RedisJobQueue
from inboxrag.services.retrieval import RetrievalEngine
from inboxrag.services.usage import UsageLedger


logger = logging.getLogger(__name__)


@dataclass
class Container:
    # One wired object graph per process; API handlers and worker consumers share it.
    storage: Storage
    queue: JobQueue
    catalog: PlanCatalog
    ledger: UsageLedger
    resolver: ChannelResolver
    indexer: KnowledgeIndexer
    retrieval: RetrievalEngine
    pipeline: PipelineWorker
    embedder: EmbeddingProvider
    generator: GenerationProvider
    redis: Redis | None = None
    memory_state: MemoryState | None = None
    uses_sql: bool = False

    async def close(self) -> None:
        await self.queue.close()
        if self.redis is not None and self.queue_backend != "redis":
            await self.redis.aclose()
        if self.uses_sql:
            await dispose_engine()

    @property
    def queue_backend(self) -> str:
        return "redis" if isinstance(self.queue, RedisJobQueue) else "memory"


def _build_queue(redis: Redis | None) -> JobQueue:
    settings = get_settings()
    backend = (settings.queue_backend or "redis").lower()
    completed_ttl_s = settings.queue_completed_ttl_hours * 3600
    if backend == "memory":
        return MemoryJobQueue(
            max_attempts=settings.queue_max_attempts,
            backoff_base_ms=settings.queue_backoff_base_ms,
            backoff_max_ms=settings.queue_backoff_max_ms,
            completed_ttl_s=completed_ttl_s,
        )
    if backend == "redis":
        if redis is None:
            raise ProviderConfigError("redis queue backend requires a redis client")
        return RedisJobQueue(
            redis,
            prefix=settings.queue_prefix,
            max_attempts=settings.queue_max_attempts,
            backoff_base_ms=settings.queue_backoff_base_ms,
            backoff_max_ms=settings.queue_backoff_max_ms,
            completed_ttl_s=completed_ttl_s,
        )
    raise ProviderConfigError(f"Unsupported queue backend: {backend}")


def build_container(
    *,
    storage: Storage | None = None,
    memory_state: MemoryState | None = None,
    queue: JobQueue | None = None,
    embedder: EmbeddingProvider | None = None,
    generator: GenerationProvider | None = None,
    redis: Redis | None = None,
) -> Container:
    """Wire stores, queue and providers from settings; explicit arguments win."""
    settings = get_settings()
    uses_sql = False
    if storage is None:
        backend = (settings.storage_backend or "postgres").lower()
        if backend == "memory":
            storage, memory_state = build_memory_storage(memory_state)
        elif backend == "postgres":
            storage = build_sql_storage(get_session_factory())
            uses_sql = True
        else:
            raise ProviderConfigError(f"Unsupported storage backend: {backend}")
    if redis is None and (settings.queue_backend or "").lower() == "redis" and queue is None:
        redis = Redis.from_url(settings.redis_url)
    queue = queue or _build_queue(redis)
    embedder = embedder or get_embedding_provider()
    generator = generator or get_generation_provider()

    catalog = PlanCatalog(storage.tenants)
    ledger = UsageLedger(storage.usage, catalog)
    resolver = ChannelResolver(storage.channels)
    retrieval = RetrievalEngine(store=storage.knowledge, ledger=ledger)
    indexer = KnowledgeIndexer(
        store=storage.knowledge,
        catalog=catalog,
        ledger=ledger,
        queue=queue,
        embedder=embedder,
    )
    pipeline = PipelineWorker(
        resolver=resolver,
        catalog=catalog,
        ledger=ledger,
        retrieval=retrieval,
        embedder=embedder,
        generator=generator,
        conversations=storage.conversations,
    )
    logger.info(
        "container_built storage=%s queue=%s embeddings=%s generation=%s mode=%s",
        "postgres" if uses_sql else "memory",
        "redis" if isinstance(queue, RedisJobQueue) else "memory",
        settings.embedding_provider,
        settings.generation_provider,
        settings.execution_mode,
    )
    return Container(
        storage=storage,
        queue=queue,
        catalog=catalog,
        ledger=ledger,
        resolver=resolver,
        indexer=indexer,
        retrieval=retrieval,
        pipeline=pipeline,
        embedder=embedder,
        generator=generator,
        redis=redis,
        memory_state=memory_state,
        uses_sql=uses_sql,
    )


_container: Container | None = None


def get_container() -> Container:
    # Build lazily so importing the API never opens connections.
    global _container
    if _container is None:
        _container = build_container()
    return _container


def set_container(container: Container | None) -> None:
    global _container
    _container = container


async def reset_container() -> None:
    global _container
    if _container is not None:
        await _container.close()
    _container = None
