from __future__ import annotations

from datetime import timedelta
from typing import List

import pytest

from src.copilot.infra.db.inmemory import InMemoryGenerationTransactionRepository, InMemorySessionRepository
from src.copilot.services.conversation.engine import ConversationFlowEngine
from src.copilot.services.conversation.locks import SessionLockRegistry
from src.copilot.services.generation.entity_host import InMemoryEntityHost
from src.copilot.services.generation.pipeline import GenerationPipeline
from src.copilot.services.parsing.response_parser import ResponseParser
from src.copilot.services.retry import RetryPolicy
from src.copilot.services.sessions.store import SessionStore
from tests.copilot.fakes import FakeClock


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleeps() -> List[float]:
    return []


@pytest.fixture
def retry_policy(sleeps) -> RetryPolicy:
    return RetryPolicy(max_attempts=3, backoff_seconds=0.1, sleep=sleeps.append)


@pytest.fixture
def session_repo() -> InMemorySessionRepository:
    return InMemorySessionRepository()


@pytest.fixture
def store(session_repo, retry_policy, clock) -> SessionStore:
    return SessionStore(session_repo, retry_policy=retry_policy, clock=clock, ttl=timedelta(days=30))


@pytest.fixture
def entity_host() -> InMemoryEntityHost:
    return InMemoryEntityHost()


@pytest.fixture
def transactions() -> InMemoryGenerationTransactionRepository:
    return InMemoryGenerationTransactionRepository()


@pytest.fixture
def pipeline(entity_host, transactions, retry_policy, clock) -> GenerationPipeline:
    return GenerationPipeline(entity_host=entity_host, transactions=transactions, retry_policy=retry_policy, clock=clock)


@pytest.fixture
def locks() -> SessionLockRegistry:
    return SessionLockRegistry()


@pytest.fixture
def make_engine(store, pipeline, locks, retry_policy, clock):
    engines: List[ConversationFlowEngine] = []

    def _make(gateway, **overrides) -> ConversationFlowEngine:
        options = dict(
            store=store,
            gateway=gateway,
            parser=ResponseParser(),
            pipeline=pipeline,
            locks=locks,
            retry_policy=retry_policy,
            gateway_timeout=2.0,
            clock=clock,
        )
        options.update(overrides)
        engine = ConversationFlowEngine(**options)
        engines.append(engine)
        return engine

    yield _make
    for engine in engines:
        engine.close()
