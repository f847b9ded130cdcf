"""Peer review, reviewer selection and consensus voting."""

from .peer_review import PeerReviewEngine, ReviewRequest, criteria_coverage
from .reviewer_selection import ReviewerScore, ReviewerSelector
from .consensus import ConsensusEngine, ConsensusResult, Vote

__all__ = [
    "PeerReviewEngine",
    "ReviewRequest",
    "criteria_coverage",
    "ReviewerScore",
    "ReviewerSelector",
    "ConsensusEngine",
    "ConsensusResult",
    "Vote",
]
