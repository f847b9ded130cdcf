"""Weighted multi-voter consensus for epic-level decisions."""

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from ..core.config import ConsensusConfig

logger = logging.getLogger(__name__)


@dataclass
class Vote:
    voter_id: str
    approve: bool
    rationale: str = ""


@dataclass
class ConsensusResult:
    """Outcome of one consensus round."""

    accepted: bool
    approve_weight: float
    total_weight: float
    threshold: float
    decision_class: str
    lead_id: Optional[str] = None
    votes: List[Vote] = field(default_factory=list)

    @property
    def approve_fraction(self) -> float:
        return self.approve_weight / self.total_weight if self.total_weight else 0.0

    def to_dict(self) -> dict:
        return {
            "accepted": self.accepted,
            "approve_fraction": round(self.approve_fraction, 3),
            "threshold": self.threshold,
            "decision_class": self.decision_class,
            "lead": self.lead_id,
            "votes": {v.voter_id: v.approve for v in self.votes},
        }


class ConsensusEngine:
    """Accepts a proposal when the weighted approve fraction meets the class threshold."""

    def __init__(self, config: Optional[ConsensusConfig] = None):
        self.config = config or ConsensusConfig()

    def threshold_for(self, decision_class: str = "default", critical: bool = False) -> float:
        """Class threshold, never below the critical one for critical decisions."""
        threshold = self.config.class_thresholds.get(decision_class, self.config.default_threshold)
        if critical or decision_class == "critical":
            threshold = max(threshold, self.config.critical_threshold)
        return threshold

    def decide(
        self,
        votes: Iterable[Vote],
        lead_id: Optional[str] = None,
        decision_class: str = "default",
        critical: bool = False,
    ) -> ConsensusResult:
        # Last vote per voter wins
        by_voter: Dict[str, Vote] = {}
        for vote in votes:
            by_voter[vote.voter_id] = vote
        ballots = list(by_voter.values())

        approve_weight = 0.0
        total_weight = 0.0
        for vote in ballots:
            weight = self.config.lead_weight if vote.voter_id == lead_id else 1.0
            total_weight += weight
            if vote.approve:
                approve_weight += weight

        threshold = self.threshold_for(decision_class, critical)
        result = ConsensusResult(
            accepted=False,
            approve_weight=approve_weight,
            total_weight=total_weight,
            threshold=threshold,
            decision_class=decision_class,
            lead_id=lead_id,
            votes=ballots,
        )
        result.accepted = total_weight > 0 and result.approve_fraction >= threshold
        logger.info(
            f"Consensus ({decision_class}): {result.approve_fraction:.2f} approve "
            f"vs threshold {threshold:.2f} -> {'accepted' if result.accepted else 'rejected'}"
        )
        return result
