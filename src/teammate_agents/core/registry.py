"""Thread-safe registry of agent profiles."""

import itertools
import logging
import threading
from typing import Dict, Iterable, List, Optional

from ..errors import NotFoundError
from .models import AgentProfile, ErrorRecord

logger = logging.getLogger(__name__)

MAX_RECENT_ERRORS = 20


class AgentRegistry:
    """Owns the live ``AgentProfile`` objects.

    Callers get deep copies from ``get``/``snapshot`` so scoring and
    balancing work on a consistent view while claims mutate the registry.
    """

    def __init__(self, agents: Optional[Iterable[AgentProfile]] = None):
        self._agents: Dict[str, AgentProfile] = {}
        self._lock = threading.RLock()
        self._seq = itertools.count()
        for agent in agents or []:
            self.register(agent)

    def register(self, agent: AgentProfile) -> AgentProfile:
        with self._lock:
            existing = self._agents.get(agent.id)
            seq = existing.registered_seq if existing else next(self._seq)
            stored = agent.model_copy(deep=True, update={"registered_seq": seq})
            if existing:
                stored.active_issue_ids = set(existing.active_issue_ids)
                stored.workload = existing.workload
            self._agents[agent.id] = stored
            logger.debug(f"Registered agent {agent.id} (seq {seq})")
            return stored.model_copy(deep=True)

    def unregister(self, agent_id: str) -> None:
        with self._lock:
            self._agents.pop(agent_id, None)

    def get(self, agent_id: str) -> AgentProfile:
        with self._lock:
            return self._require(agent_id).model_copy(deep=True)

    def __contains__(self, agent_id: str) -> bool:
        with self._lock:
            return agent_id in self._agents

    def __len__(self) -> int:
        with self._lock:
            return len(self._agents)

    def snapshot(self) -> List[AgentProfile]:
        """Deep copies ordered by registration."""
        with self._lock:
            agents = sorted(self._agents.values(), key=lambda a: a.registered_seq)
            return [a.model_copy(deep=True) for a in agents]

    def try_claim(self, agent_id: str, issue_id: str, max_workload: float = 0.9) -> bool:
        """Atomically check capacity and record the claim."""
        with self._lock:
            agent = self._require(agent_id)
            if issue_id in agent.active_issue_ids:
                return True
            if agent.active_task_count >= agent.max_concurrent_tasks or agent.workload > max_workload:
                return False
            self.record_claim(agent_id, issue_id)
            return True

    def record_claim(self, agent_id: str, issue_id: str) -> None:
        with self._lock:
            agent = self._require(agent_id)
            if issue_id in agent.active_issue_ids:
                return
            agent.active_issue_ids.add(issue_id)
            agent.workload = min(1.0, agent.workload + 1.0 / agent.max_concurrent_tasks)

    def record_release(self, agent_id: str, issue_id: str) -> None:
        with self._lock:
            agent = self._agents.get(agent_id)
            if agent is None or issue_id not in agent.active_issue_ids:
                return
            agent.active_issue_ids.discard(issue_id)
            agent.workload = max(0.0, agent.workload - 1.0 / agent.max_concurrent_tasks)

    def record_outcome(self, agent_id: str, succeeded: bool, duration_minutes: Optional[float] = None) -> None:
        """Fold a finished task into the agent's rolling metrics."""
        with self._lock:
            perf = self._require(agent_id).performance
            total_before = perf.tasks_completed + perf.tasks_failed
            if succeeded:
                perf.tasks_completed += 1
            else:
                perf.tasks_failed += 1
            total = total_before + 1
            perf.success_rate = (perf.success_rate * total_before + (1.0 if succeeded else 0.0)) / total
            if duration_minutes is not None and succeeded:
                if perf.average_duration_minutes is None:
                    perf.average_duration_minutes = duration_minutes
                else:
                    n = perf.tasks_completed
                    perf.average_duration_minutes += (duration_minutes - perf.average_duration_minutes) / n

    def record_error(self, agent_id: str, message: str, is_failure: bool = True, category: Optional[str] = None) -> None:
        with self._lock:
            agent = self._require(agent_id)
            agent.recent_errors.append(ErrorRecord(message=message, is_failure=is_failure, category=category))
            del agent.recent_errors[:-MAX_RECENT_ERRORS]

    def update_health(
        self,
        agent_id: str,
        health: Optional[float] = None,
        resource_health: Optional[float] = None,
        workload: Optional[float] = None,
    ) -> None:
        with self._lock:
            agent = self._require(agent_id)
            if health is not None:
                agent.health = _clamp(health)
            if resource_health is not None:
                agent.resource_health = _clamp(resource_health)
            if workload is not None:
                agent.workload = _clamp(workload)

    def _require(self, agent_id: str) -> AgentProfile:
        agent = self._agents.get(agent_id)
        if agent is None:
            raise NotFoundError("agent", agent_id)
        return agent


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))
