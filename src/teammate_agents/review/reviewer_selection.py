"""Reviewer selection for completed issues."""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, FrozenSet, Iterable, List, Optional, Sequence

from ..core.capabilities import overlap_ratio
from ..core.config import ReviewConfig
from ..core.models import AgentProfile, Issue, utcnow
from ..errors import ReviewerUnavailable

logger = logging.getLogger(__name__)

OVERLAP_WEIGHT = 0.6
SUCCESS_WEIGHT = 0.25
AVAILABILITY_WEIGHT = 0.15


@dataclass
class ReviewerScore:
    agent_id: str
    score: float
    overlap: float
    penalized: bool
    registered_seq: int = 0


def issue_tags(issue: Issue) -> FrozenSet[str]:
    req = issue.requirements
    return req.required_capabilities | req.languages | req.frameworks | req.domains


class ReviewerSelector:
    """Scores potential reviewers and picks one distinct from the author."""

    def __init__(self, config: Optional[ReviewConfig] = None, max_workload: float = 0.9):
        self.config = config or ReviewConfig()
        self.max_workload = max_workload
        self._recent_pairs: Dict[FrozenSet[str], datetime] = {}
        self._lock = threading.Lock()

    def record_pair(self, reviewer_id: str, author_id: str, at: Optional[datetime] = None) -> None:
        with self._lock:
            self._recent_pairs[frozenset((reviewer_id, author_id))] = at or utcnow()

    def reviewed_recently(self, a: str, b: str, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        window = timedelta(hours=self.config.recent_pair_window_hours)
        with self._lock:
            last = self._recent_pairs.get(frozenset((a, b)))
        return last is not None and now - last <= window

    def score(self, agent: AgentProfile, issue: Issue, author_id: str, now: Optional[datetime] = None) -> ReviewerScore:
        tags = issue_tags(issue)
        overlap = overlap_ratio(tags, agent.all_tags) if tags else 0.5
        availability = ((1.0 - agent.workload) + agent.health) / 2
        raw = 100.0 * (
            OVERLAP_WEIGHT * overlap
            + SUCCESS_WEIGHT * agent.performance.success_rate
            + AVAILABILITY_WEIGHT * availability
        )
        penalized = self.reviewed_recently(agent.id, author_id, now)
        if penalized:
            raw *= self.config.recent_pair_penalty
        return ReviewerScore(
            agent_id=agent.id,
            score=round(raw, 4),
            overlap=overlap,
            penalized=penalized,
            registered_seq=agent.registered_seq,
        )

    def _best(self, scored: List[ReviewerScore]) -> Optional[ReviewerScore]:
        qualified = [s for s in scored if s.score >= self.config.reviewer_min_score]
        if not qualified:
            return None
        preferred = [s for s in qualified if s.overlap >= self.config.preferred_overlap]
        pool = preferred or qualified
        return min(pool, key=lambda s: (-s.score, s.registered_seq))

    def select(
        self,
        issue: Issue,
        author_id: str,
        agents: Sequence[AgentProfile],
        epic_agent_ids: Optional[Iterable[str]] = None,
        now: Optional[datetime] = None,
    ) -> ReviewerScore:
        """Pick a reviewer, trying epic members first and then the wider pool.

        Raises:
            ReviewerUnavailable: nobody other than the author qualifies
        """
        pool = [a for a in agents if a.id != author_id and a.workload <= self.max_workload]
        scored = [self.score(a, issue, author_id, now) for a in pool]

        if epic_agent_ids is not None:
            members = set(epic_agent_ids)
            best = self._best([s for s in scored if s.agent_id in members])
            if best is not None:
                return best
            logger.debug(f"No in-epic reviewer for {issue.id}; widening to full pool")

        best = self._best(scored)
        if best is None:
            raise ReviewerUnavailable(issue.id, author_id)
        return best
