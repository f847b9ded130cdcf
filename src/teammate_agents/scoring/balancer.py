"""Fairness balancer: capacity filtering, load-aware selection, rebalancing."""

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence

from ..core.config import BalancerConfig
from ..core.models import AgentProfile, WorkRequirements
from ..errors import NoCapacity
from .scorer import AgentScore, AgentScorer

logger = logging.getLogger(__name__)


@dataclass
class Candidate:
    """Agent that passed capacity filtering, with its combined score."""
    agent: AgentProfile
    match: AgentScore
    fairness: float
    combined: float


@dataclass
class RebalanceProposal:
    """Move one issue from an overloaded agent to an underloaded one."""
    issue_id: str
    from_agent: str
    to_agent: str
    reason: str


class FairnessBalancer:
    """Picks one agent per issue while keeping the pool evenly loaded."""

    def __init__(self, scorer: AgentScorer, config: Optional[BalancerConfig] = None):
        self.scorer = scorer
        self.config = config or BalancerConfig()

    def has_capacity(self, agent: AgentProfile) -> bool:
        return (
            agent.active_task_count < agent.max_concurrent_tasks
            and agent.workload <= self.config.max_workload
        )

    def fairness_score(self, agent: AgentProfile, pool_average: float) -> float:
        raw = 50.0 + self.config.fairness_step * (pool_average - agent.active_task_count)
        return max(0.0, min(100.0, raw))

    def candidates(
        self,
        agents: Sequence[AgentProfile],
        requirements: WorkRequirements,
        exclude: Iterable[str] = (),
    ) -> List[Candidate]:
        """Eligible candidates ordered best first; ties by registration order."""
        excluded = set(exclude)
        pool = [a for a in agents if a.id not in excluded]
        if not pool:
            return []
        pool_average = sum(a.active_task_count for a in pool) / len(pool)

        result = []
        for agent in pool:
            if not self.has_capacity(agent):
                logger.debug(
                    f"Skipping {agent.id}: {agent.active_task_count}/{agent.max_concurrent_tasks} "
                    f"tasks, workload {agent.workload:.2f}"
                )
                continue
            match = self.scorer.score(agent, requirements)
            if not match.eligible:
                continue
            fairness = self.fairness_score(agent, pool_average)
            combined = (
                self.config.match_weight * match.total
                + self.config.fairness_weight * fairness
            )
            result.append(Candidate(agent=agent, match=match, fairness=fairness, combined=combined))

        result.sort(key=lambda c: (-c.combined, c.agent.registered_seq))
        return result

    def select(
        self,
        issue_id: str,
        agents: Sequence[AgentProfile],
        requirements: WorkRequirements,
        exclude: Iterable[str] = (),
    ) -> Candidate:
        """Return the winning candidate or raise ``NoCapacity``."""
        ranked = self.candidates(agents, requirements, exclude)
        if not ranked:
            raise NoCapacity(issue_id)
        best = ranked[0]
        logger.debug(
            f"Selected {best.agent.id} for {issue_id}: match {best.match.total:.1f}, "
            f"fairness {best.fairness:.1f}, combined {best.combined:.1f}"
        )
        return best

    def propose_rebalance(
        self,
        agents: Sequence[AgentProfile],
        requirements_by_issue: Optional[Dict[str, WorkRequirements]] = None,
    ) -> List[RebalanceProposal]:
        """One move per overloaded agent per pass; each target receives at most one task.

        When ``requirements_by_issue`` is given, a target must also score as
        eligible for the moved issue.
        """
        requirements_by_issue = requirements_by_issue or {}
        overloaded = sorted(
            (a for a in agents if a.workload > self.config.overload_threshold and a.active_issue_ids),
            key=lambda a: (-a.workload, a.registered_seq),
        )
        underloaded = sorted(
            (a for a in agents if a.workload < self.config.underload_threshold and self.has_capacity(a)),
            key=lambda a: (a.workload, a.registered_seq),
        )

        proposals = []
        used_targets = set()
        for source in overloaded:
            moved = False
            for issue_id in sorted(source.active_issue_ids):
                req = requirements_by_issue.get(issue_id)
                for target in underloaded:
                    if target.id in used_targets:
                        continue
                    if req is not None and not self.scorer.score(target, req).eligible:
                        continue
                    proposals.append(RebalanceProposal(
                        issue_id=issue_id,
                        from_agent=source.id,
                        to_agent=target.id,
                        reason=(
                            f"{source.id} workload {source.workload:.2f} > "
                            f"{self.config.overload_threshold}; {target.id} at {target.workload:.2f}"
                        ),
                    ))
                    used_targets.add(target.id)
                    moved = True
                    break
                if moved:
                    break
        if proposals:
            logger.info(f"Rebalance pass proposes {len(proposals)} move(s)")
        return proposals
