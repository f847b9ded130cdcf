"""Agent-to-issue scoring engine.

Five independently computed factors, each normalized to 0-1 and scaled by
its configured weight (weights sum to 100):

- capability match: required-tag hits plus partial credit for language and
  framework overlap, normalized against the total requirement count
- performance: rolling success rate
- availability: mean of free capacity and health
- specialization: agent type vs issue type, and domain overlap
- experience: completed-task band, success band, speed bonus

``score`` is a pure function of its inputs.
"""

import logging
from typing import Iterable, List, Optional

from pydantic import BaseModel

from ..core.capabilities import overlap_ratio
from ..core.config import ScoringConfig
from ..core.models import AgentProfile, ScoreBreakdown, WorkRequirements

logger = logging.getLogger(__name__)

# (minimum tasks completed, band value)
TASK_COUNT_BANDS = ((50, 0.4), (20, 0.35), (5, 0.25), (1, 0.15))
# (minimum success rate, band value)
SUCCESS_BANDS = ((0.9, 0.4), (0.75, 0.3), (0.5, 0.2))
SUCCESS_FLOOR = 0.1
SPEED_BONUS = 0.2
HIGH_PERFORMER = 0.9


class AgentScore(BaseModel):
    """Result of scoring one agent against one issue."""
    agent_id: str
    total: float
    breakdown: ScoreBreakdown
    confidence: float
    capability_ratio: float
    missing_required: List[str]
    eligible: bool


class AgentScorer:
    """Scores agents against work requirements."""

    def __init__(self, config: Optional[ScoringConfig] = None):
        self.config = config or ScoringConfig()

    def capability_ratio(self, agent: AgentProfile, req: WorkRequirements) -> float:
        if req.requirement_count == 0:
            return self.config.neutral_capability_ratio

        offered = agent.all_tags
        hits = float(len(req.required_capabilities & offered))
        if req.languages:
            hits += self.config.partial_credit * len(req.languages & agent.languages)
        if req.frameworks:
            hits += self.config.partial_credit * len(req.frameworks & agent.frameworks)
        return min(1.0, hits / req.requirement_count)

    def specialization_ratio(self, agent: AgentProfile, req: WorkRequirements) -> float:
        if req.issue_type is None:
            type_score = 0.5
        elif req.issue_type in (agent.agent_type, *agent.domains):
            type_score = 1.0
        else:
            type_score = 0.0

        if req.domains:
            domain_score = overlap_ratio(req.domains, agent.domains | agent.capabilities)
        else:
            domain_score = 0.5
        return (type_score + domain_score) / 2

    def experience_ratio(self, agent: AgentProfile, req: WorkRequirements) -> float:
        perf = agent.performance
        count_band = next(
            (value for minimum, value in TASK_COUNT_BANDS if perf.tasks_completed >= minimum),
            0.0,
        )
        success_band = next(
            (value for minimum, value in SUCCESS_BANDS if perf.success_rate >= minimum),
            SUCCESS_FLOOR,
        )
        speed = 0.0
        if (
            req.estimated_minutes
            and perf.average_duration_minutes is not None
            and perf.average_duration_minutes < req.estimated_minutes
        ):
            speed = SPEED_BONUS
        return min(1.0, count_band + success_band + speed)

    def score(self, agent: AgentProfile, req: WorkRequirements) -> AgentScore:
        weights = self.config.weights
        cap_ratio = self.capability_ratio(agent, req)
        availability = ((1.0 - agent.workload) + agent.health) / 2

        breakdown = ScoreBreakdown(
            capability_match=cap_ratio * weights.capability_match,
            performance=agent.performance.success_rate * weights.performance,
            availability=availability * weights.availability,
            specialization=self.specialization_ratio(agent, req) * weights.specialization,
            experience=self.experience_ratio(agent, req) * weights.experience,
        )
        total = round(max(0.0, min(100.0, breakdown.total)), 4)

        missing = sorted(req.required_capabilities - agent.all_tags)
        confidence = cap_ratio
        if req.required_capabilities:
            missing_fraction = len(missing) / len(req.required_capabilities)
            confidence *= 1.0 - self.config.missing_required_penalty * missing_fraction
        if agent.performance.success_rate >= HIGH_PERFORMER and agent.health >= HIGH_PERFORMER:
            confidence += self.config.confidence_boost
        confidence = max(0.0, min(1.0, confidence))

        return AgentScore(
            agent_id=agent.id,
            total=total,
            breakdown=breakdown,
            confidence=round(confidence, 4),
            capability_ratio=cap_ratio,
            missing_required=missing,
            eligible=total >= self.config.min_score,
        )

    def rank(self, agents: Iterable[AgentProfile], req: WorkRequirements) -> List[AgentScore]:
        """Score every agent, highest total first. Ties keep input order."""
        scores = [self.score(agent, req) for agent in agents]
        scores.sort(key=lambda s: -s.total)
        return scores
