"""Peer review engine.

Flow for one completed issue:

1. ``request_review`` picks a reviewer (never the author). No qualified
   reviewer produces an ``escalated`` record straight away.
2. ``submit_review`` ingests automated check results and the reviewer's
   manual scores and produces an immutable ``ReviewRecord``.

Decision rule:
- any blocking automated failure -> changes_requested (manual scores ignored)
- conflicting signals (manual approve with most checks failing, or an
  undecided reviewer) -> retry once, then escalated
- composite >= threshold and every acceptance criterion met -> approved
- otherwise -> changes_requested
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional

from ..core.config import ReviewConfig
from ..core.models import (
    AutomatedCheck,
    Issue,
    ManualScores,
    ReviewDecision,
    ReviewRecord,
    utcnow,
)
from ..core.registry import AgentRegistry
from ..errors import ReviewerUnavailable
from .reviewer_selection import ReviewerSelector

logger = logging.getLogger(__name__)

RetryReview = Callable[[], Optional[ManualScores]]


@dataclass
class ReviewRequest:
    issue_id: str
    epic_id: str
    author_id: str
    reviewer_id: Optional[str]
    reviewer_score: Optional[float] = None
    requested_at: datetime = field(default_factory=utcnow)
    escalation: Optional[ReviewRecord] = None


def _normalize_criterion(text: str) -> str:
    return " ".join(text.lower().split())


def criteria_coverage(criteria: List[str], met: Iterable[str]) -> float:
    """Fraction of acceptance criteria the reviewer marked as met. No criteria -> 1.0."""
    if not criteria:
        return 1.0
    met_set = {_normalize_criterion(m) for m in met}
    hits = sum(1 for c in criteria if _normalize_criterion(c) in met_set)
    return hits / len(criteria)


class PeerReviewEngine:
    """Selects reviewers and turns review input into decisions."""

    def __init__(
        self,
        registry: AgentRegistry,
        selector: Optional[ReviewerSelector] = None,
        config: Optional[ReviewConfig] = None,
    ):
        self.registry = registry
        self.config = config or ReviewConfig()
        self.selector = selector or ReviewerSelector(self.config)
        self._pending: Dict[str, ReviewRequest] = {}
        self._records: Dict[str, List[ReviewRecord]] = {}
        self._lock = threading.Lock()

    def request_review(self, issue: Issue, epic_agent_ids: Optional[Iterable[str]] = None) -> ReviewRequest:
        author_id = issue.assignee
        if author_id is None:
            raise ValueError(f"Issue {issue.id} has no author to review")
        try:
            choice = self.selector.select(issue, author_id, self.registry.snapshot(), epic_agent_ids)
        except ReviewerUnavailable as e:
            logger.warning(f"{e}; escalating to a human reviewer")
            record = self._record(
                issue,
                reviewer_id=None,
                author_id=author_id,
                decision=ReviewDecision.ESCALATED,
                reason=str(e),
            )
            return ReviewRequest(
                issue_id=issue.id,
                epic_id=issue.epic_id,
                author_id=author_id,
                reviewer_id=None,
                escalation=record,
            )

        request = ReviewRequest(
            issue_id=issue.id,
            epic_id=issue.epic_id,
            author_id=author_id,
            reviewer_id=choice.agent_id,
            reviewer_score=choice.score,
        )
        with self._lock:
            self._pending[issue.id] = request
        logger.info(f"Review of {issue.id} assigned to {choice.agent_id} (score {choice.score:.1f})")
        return request

    def pending_request(self, issue_id: str) -> Optional[ReviewRequest]:
        with self._lock:
            return self._pending.get(issue_id)

    def cancel(self, issue_id: str) -> bool:
        """Abandon an in-flight review, e.g. after the issue closed externally."""
        with self._lock:
            return self._pending.pop(issue_id, None) is not None

    def submit_review(
        self,
        issue: Issue,
        checks: List[AutomatedCheck],
        manual: Optional[ManualScores],
        retry: Optional[RetryReview] = None,
    ) -> Optional[ReviewRecord]:
        """Decide the pending review for ``issue``. Returns None if the review was abandoned."""
        with self._lock:
            request = self._pending.pop(issue.id, None)
        if request is None:
            logger.info(f"No pending review for {issue.id}; discarding submission")
            return None
        if issue.is_terminal:
            logger.info(f"{issue.id} is {issue.status.value}; discarding review outcome")
            return None

        record = self.evaluate(issue, request.author_id, request.reviewer_id, checks, manual, retry)
        if request.reviewer_id:
            self.selector.record_pair(request.reviewer_id, request.author_id)
        return record

    def evaluate(
        self,
        issue: Issue,
        author_id: str,
        reviewer_id: Optional[str],
        checks: List[AutomatedCheck],
        manual: Optional[ManualScores],
        retry: Optional[RetryReview] = None,
    ) -> ReviewRecord:
        """Apply the decision rule and store the resulting record."""
        blocking = [c.name for c in checks if c.blocking and not c.passed]
        if blocking:
            return self._record(
                issue, reviewer_id, author_id,
                decision=ReviewDecision.CHANGES_REQUESTED,
                checks=checks,
                reason=f"blocking check(s) failed: {', '.join(blocking)}",
            )

        attempts = 1
        while True:
            conflict = self.conflict_reason(checks, manual)
            if conflict is None:
                break
            if attempts >= self.config.max_decision_attempts or retry is None:
                return self._record(
                    issue, reviewer_id, author_id,
                    decision=ReviewDecision.ESCALATED,
                    checks=checks,
                    manual=manual,
                    reason=f"no decision after {attempts} attempt(s): {conflict}",
                    attempts=attempts,
                )
            logger.info(f"Review of {issue.id} inconclusive ({conflict}); retrying")
            manual = retry()
            attempts += 1

        composite = round(manual.composite, 4)
        coverage = criteria_coverage(issue.acceptance_criteria, manual.criteria_met)
        threshold = self.config.approval_threshold
        if composite >= threshold and coverage >= 1.0:
            decision = ReviewDecision.APPROVED
            reason = f"composite {composite:.2f} >= {threshold:.2f}"
        elif composite < threshold:
            decision = ReviewDecision.CHANGES_REQUESTED
            reason = f"composite {composite:.2f} < {threshold:.2f}"
        else:
            decision = ReviewDecision.CHANGES_REQUESTED
            reason = f"acceptance criteria {coverage:.0%} met"

        return self._record(
            issue, reviewer_id, author_id,
            decision=decision,
            checks=checks,
            manual=manual,
            composite=composite,
            criteria_coverage=coverage,
            reason=reason,
            attempts=attempts,
        )

    def conflict_reason(self, checks: List[AutomatedCheck], manual: Optional[ManualScores]) -> Optional[str]:
        if manual is None:
            return "no manual assessment"
        if manual.undecided:
            return "reviewer undecided"
        advisory = [c for c in checks if not c.blocking]
        failed = [c for c in advisory if not c.passed]
        if advisory and manual.composite >= self.config.approval_threshold and len(failed) * 2 >= len(advisory):
            return f"manual approval but {len(failed)}/{len(advisory)} automated checks failed"
        return None

    def records_for(self, issue_id: str) -> List[ReviewRecord]:
        with self._lock:
            return list(self._records.get(issue_id, []))

    def latest(self, issue_id: str) -> Optional[ReviewRecord]:
        records = self.records_for(issue_id)
        return records[-1] if records else None

    def all_records(self) -> List[ReviewRecord]:
        with self._lock:
            return [r for records in self._records.values() for r in records]

    def load(self, records: Iterable[ReviewRecord]) -> None:
        """Restore history from the context store."""
        with self._lock:
            for record in sorted(records, key=lambda r: r.decided_at):
                self._records.setdefault(record.issue_id, []).append(record)
        for record in self.all_records():
            if record.reviewer_id:
                self.selector.record_pair(record.reviewer_id, record.author_id, record.decided_at)

    def _record(self, issue: Issue, reviewer_id: Optional[str], author_id: str, **fields) -> ReviewRecord:
        previous = self.latest(issue.id)
        record = ReviewRecord(
            issue_id=issue.id,
            epic_id=issue.epic_id,
            reviewer_id=reviewer_id,
            author_id=author_id,
            supersedes=previous.id if previous else None,
            **fields,
        )
        with self._lock:
            self._records.setdefault(issue.id, []).append(record)
        logger.info(f"Review {record.id} for {issue.id}: {record.decision.value} ({record.reason})")
        return record
