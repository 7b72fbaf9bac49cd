from __future__ import annotations

from datetime import datetime, timezone

import pytest

from inboxrag.core.config import get_settings
from inboxrag.persistence.memory import MemoryState, build_memory_storage
from inboxrag.providers.embeddings.hashing import HashEmbeddingProvider
from inboxrag.providers.generation.fake import FakeGenerationProvider
from inboxrag.services.container import Container, build_container, set_container
from inboxrag.services.queue.memory import MemoryJobQueue
from inboxrag.services.telemetry import reset_telemetry
from inboxrag.tests.utils.seed import Clock, seed_state


@pytest.fixture(autouse=True)
def memory_backends(monkeypatch) -> None:
    # Unit tests never touch Postgres or Redis unless a test opts in explicitly.
    monkeypatch.setenv("STORAGE_BACKEND", "memory")
    monkeypatch.setenv("QUEUE_BACKEND", "memory")
    monkeypatch.setenv("EXECUTION_MODE", "queue")
    monkeypatch.setenv("QUEUE_MAX_ATTEMPTS", "3")
    monkeypatch.setenv("EMBEDDING_PROVIDER", "hash")
    monkeypatch.setenv("GENERATION_PROVIDER", "fake")
    get_settings.cache_clear()
    reset_telemetry()
    set_container(None)
    yield
    set_container(None)
    get_settings.cache_clear()


@pytest.fixture
def memory_state() -> MemoryState:
    state = MemoryState()
    seed_state(state)
    return state


@pytest.fixture
def generator() -> FakeGenerationProvider:
    return FakeGenerationProvider(response="Thanks for reaching out!")


@pytest.fixture
def queue() -> MemoryJobQueue:
    # Zero backoff keeps retried jobs immediately visible to in-process drains.
    return MemoryJobQueue(max_attempts=3, backoff_base_ms=0, backoff_max_ms=0, completed_ttl_s=3600)


@pytest.fixture
def container(memory_state, queue, generator) -> Container:
    storage, _ = build_memory_storage(memory_state)
    wired = build_container(
        storage=storage,
        memory_state=memory_state,
        queue=queue,
        embedder=HashEmbeddingProvider(),
        generator=generator,
    )
    set_container(wired)
    return wired


@pytest.fixture
def clock() -> Clock:
    return Clock(now=datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc))
