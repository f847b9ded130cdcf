"""Tests for PeerReviewEngine — reviewer assignment and the review decision rule."""

import pytest

from teammate_agents.core.config import ReviewConfig
from teammate_agents.core.models import (
    AutomatedCheck,
    Issue,
    IssueStatus,
    ManualScores,
    ReviewDecision,
)
from teammate_agents.core.registry import AgentRegistry
from teammate_agents.review.peer_review import PeerReviewEngine, criteria_coverage

from coordination_fixtures import EPIC_ID, make_agent

CRITERIA = ["Cards are tokenized", "No PAN in logs"]


def _make_issue(**overrides) -> Issue:
    defaults = dict(
        id="issue-12",
        epic_id=EPIC_ID,
        title="Tokenize card numbers",
        status=IssueStatus.IN_REVIEW,
        assignee="backend-1",
        acceptance_criteria=list(CRITERIA),
    )
    defaults.update(overrides)
    return Issue(**defaults)


def _manual(score: float = 4.6, criteria=None, **overrides) -> ManualScores:
    defaults = dict(
        code_quality=score,
        design_alignment=score,
        completeness=score,
        criteria_met=list(CRITERIA) if criteria is None else criteria,
    )
    defaults.update(overrides)
    return ManualScores(**defaults)


def _checks(*results, blocking=False):
    return [AutomatedCheck(name=f"check-{i}", passed=ok, blocking=blocking) for i, ok in enumerate(results)]


@pytest.fixture
def engine(registry):
    return PeerReviewEngine(registry)


class TestReviewerAssignment:
    def test_reviewer_is_never_the_author(self, engine):
        request = engine.request_review(_make_issue())

        assert request.reviewer_id == "backend-2"
        assert request.author_id == "backend-1"
        assert engine.pending_request("issue-12") is request

    def test_no_reviewer_escalates_immediately(self):
        engine = PeerReviewEngine(AgentRegistry([make_agent("backend-1")]))

        request = engine.request_review(_make_issue())

        assert request.reviewer_id is None
        assert request.escalation.decision is ReviewDecision.ESCALATED
        assert engine.pending_request("issue-12") is None

    def test_issue_without_assignee_rejected(self, engine):
        with pytest.raises(ValueError, match="no author"):
            engine.request_review(_make_issue(assignee=None))


class TestDecisionRule:
    def test_high_scores_with_all_criteria_approve(self, engine):
        issue = _make_issue()
        engine.request_review(issue)

        record = engine.submit_review(issue, _checks(True, True), _manual(4.6))

        assert record.decision is ReviewDecision.APPROVED
        assert record.composite == pytest.approx(0.92)
        assert record.criteria_coverage == 1.0
        assert record.reviewer_id == "backend-2"

    def test_blocking_failure_overrides_manual_approval(self, engine):
        issue = _make_issue()
        engine.request_review(issue)

        record = engine.submit_review(issue, _checks(False, blocking=True), _manual(5.0))

        assert record.decision is ReviewDecision.CHANGES_REQUESTED
        assert "check-0" in record.reason

    def test_low_composite_requests_changes(self, engine):
        issue = _make_issue()
        engine.request_review(issue)

        record = engine.submit_review(issue, [], _manual(3.0))

        assert record.decision is ReviewDecision.CHANGES_REQUESTED
        assert record.composite == pytest.approx(0.6)

    def test_unmet_criteria_requests_changes(self, engine):
        issue = _make_issue()
        engine.request_review(issue)

        record = engine.submit_review(issue, [], _manual(5.0, criteria=[CRITERIA[0]]))

        assert record.decision is ReviewDecision.CHANGES_REQUESTED
        assert record.criteria_coverage == 0.5

    def test_threshold_given_as_percentage(self, registry):
        engine = PeerReviewEngine(registry, config=ReviewConfig(approval_threshold=95))
        issue = _make_issue()
        engine.request_review(issue)

        record = engine.submit_review(issue, [], _manual(4.6))

        assert engine.config.approval_threshold == pytest.approx(0.95)
        assert record.decision is ReviewDecision.CHANGES_REQUESTED


class TestConflicts:
    def test_conflict_without_retry_escalates(self, engine):
        issue = _make_issue()
        engine.request_review(issue)

        record = engine.submit_review(issue, _checks(False, False), _manual(4.8))

        assert record.decision is ReviewDecision.ESCALATED
        assert record.attempts == 1

    def test_retry_resolves_conflict(self, engine):
        issue = _make_issue()
        engine.request_review(issue)

        record = engine.submit_review(
            issue, _checks(False, False), _manual(4.8), retry=lambda: _manual(3.0),
        )

        assert record.decision is ReviewDecision.CHANGES_REQUESTED
        assert record.attempts == 2

    def test_undecided_after_retry_escalates(self, engine):
        issue = _make_issue()
        engine.request_review(issue)

        record = engine.submit_review(
            issue, [], _manual(undecided=True), retry=lambda: _manual(undecided=True),
        )

        assert record.decision is ReviewDecision.ESCALATED
        assert record.attempts == 2


class TestLifecycle:
    def test_submission_without_request_discarded(self, engine):
        assert engine.submit_review(_make_issue(), [], _manual()) is None

    def test_cancelled_review_discarded(self, engine):
        issue = _make_issue()
        engine.request_review(issue)

        assert engine.cancel(issue.id) is True
        assert engine.submit_review(issue, [], _manual()) is None

    def test_terminal_issue_discarded(self, engine):
        issue = _make_issue()
        engine.request_review(issue)

        assert engine.submit_review(_make_issue(status=IssueStatus.CLOSED), [], _manual()) is None

    def test_rereview_supersedes_previous_record(self, engine):
        issue = _make_issue()
        engine.request_review(issue)
        first = engine.submit_review(issue, [], _manual(3.0))
        engine.request_review(issue)

        second = engine.submit_review(issue, [], _manual(4.6))

        assert second.supersedes == first.id
        assert engine.latest(issue.id) == second
        assert len(engine.records_for(issue.id)) == 2

    def test_records_are_immutable(self, engine):
        issue = _make_issue()
        engine.request_review(issue)
        record = engine.submit_review(issue, [], _manual())

        with pytest.raises(Exception):
            record.decision = ReviewDecision.ESCALATED


class TestCriteriaCoverage:
    def test_no_criteria_counts_as_met(self):
        assert criteria_coverage([], []) == 1.0

    def test_matching_ignores_case_and_spacing(self):
        assert criteria_coverage(["No PAN in logs"], ["  no pan   in LOGS "]) == 1.0
