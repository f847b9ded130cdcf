"""Builders shared by coordination tests."""

from teammate_agents.core.epic_state_machine import EpicStateMachine
from teammate_agents.core.models import AgentProfile, Epic, EpicState, PerformanceMetrics

EPIC_ID = "epic-1"


def make_agent(agent_id: str, **overrides) -> AgentProfile:
    defaults = dict(
        id=agent_id,
        agent_type="backend",
        capabilities=["api", "testing"],
        languages=["python"],
        frameworks=["fastapi"],
        performance=PerformanceMetrics(success_rate=0.8, tasks_completed=10),
    )
    defaults.update(overrides)
    return AgentProfile(**defaults)


def make_active_epic(epic_id: str = EPIC_ID, **overrides) -> EpicStateMachine:
    defaults = dict(id=epic_id, title="Payments rewrite")
    defaults.update(overrides)
    machine = EpicStateMachine(Epic(**defaults))
    machine.transition(EpicState.ACTIVE, event_id=f"{epic_id}:create")
    return machine
