"""Agent-to-issue scoring and fair selection."""

from .scorer import AgentScore, AgentScorer
from .balancer import Candidate, FairnessBalancer, RebalanceProposal

__all__ = [
    "AgentScore",
    "AgentScorer",
    "Candidate",
    "FairnessBalancer",
    "RebalanceProposal",
]
