"""
Pytest configuration and fixtures.

Every fixture wires real engine components around an in-memory store and a
scripted content provider, so no test touches the network.
"""
import random
from datetime import datetime, timezone

import pytest

from factories import ScriptedProvider, make_idea
from mastery_engine.assembly import ContentAssembler
from mastery_engine.evaluation import LLMEvaluationProvider
from mastery_engine.mastery import MasteryTracker
from mastery_engine.review_queue import ReviewQueueManager
from mastery_engine.sessions import SessionOrchestrator
from mastery_engine.storage import InMemoryStore


@pytest.fixture
def now():
    return datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def idea():
    return make_idea()


@pytest.fixture
def other_idea():
    return make_idea("idea-2", "Interleaving", description="Mixing problem types improves discrimination.")


@pytest.fixture
def store(idea, other_idea):
    store = InMemoryStore()
    store.save_idea(idea)
    store.save_idea(other_idea)
    return store


@pytest.fixture
def provider():
    return ScriptedProvider()


@pytest.fixture
def queue(store):
    return ReviewQueueManager(store)


@pytest.fixture
def mastery(store, queue):
    return MasteryTracker(store, store, queue)


@pytest.fixture
def assembler(provider):
    return ContentAssembler(provider, rng=random.Random(7))


@pytest.fixture
def evaluator(provider):
    return LLMEvaluationProvider(provider)


@pytest.fixture
def orchestrator(store, assembler, evaluator, queue, mastery):
    return SessionOrchestrator(store, assembler, evaluator, queue, mastery)
