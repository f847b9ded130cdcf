"""Shared fixtures for coordination tests."""

import pytest

from teammate_agents.core.registry import AgentRegistry
from teammate_agents.core.task_coordinator import TaskCoordinator
from teammate_agents.memory.context_store import InMemoryContextStore
from teammate_agents.safeguards.retry_handler import RetryHandler
from teammate_agents.scoring.balancer import FairnessBalancer
from teammate_agents.scoring.scorer import AgentScorer

from coordination_fixtures import make_active_epic, make_agent


@pytest.fixture
def registry():
    return AgentRegistry([make_agent("backend-1"), make_agent("backend-2")])


@pytest.fixture
def store():
    return InMemoryContextStore()


@pytest.fixture
def coordinator(registry, store):
    coord = TaskCoordinator(
        registry,
        FairnessBalancer(AgentScorer()),
        store=store,
        retry=RetryHandler(sleep=lambda _: None),
    )
    coord.register_epic(make_active_epic())
    return coord
