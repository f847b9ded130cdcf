"""Core models, configuration and coordination state."""

from .models import (
    AgentProfile,
    Assignment,
    BlockedTaskRecord,
    Epic,
    EpicState,
    EscalationLevel,
    Issue,
    IssueStatus,
    Priority,
    ReviewDecision,
    ReviewRecord,
    WorkRequirements,
)
from .config import TeammateConfig, load_config, load_agents, is_teammate_mode_enabled
from .epic_state_machine import EpicStateMachine
from .registry import AgentRegistry

__all__ = [
    "AgentProfile",
    "Assignment",
    "BlockedTaskRecord",
    "Epic",
    "EpicState",
    "EscalationLevel",
    "Issue",
    "IssueStatus",
    "Priority",
    "ReviewDecision",
    "ReviewRecord",
    "WorkRequirements",
    "TeammateConfig",
    "load_config",
    "load_agents",
    "is_teammate_mode_enabled",
    "EpicStateMachine",
    "AgentRegistry",
]
