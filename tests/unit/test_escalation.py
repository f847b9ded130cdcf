"""Tests for escalation reports — error categorization and diagnostic rendering."""

import pytest

from teammate_agents.core.models import (
    AgentProfile,
    BlockedTaskRecord,
    ErrorRecord,
    EscalationLevel,
    Issue,
    StallReason,
)
from teammate_agents.safeguards.escalation import (
    EscalationReporter,
    analyze_failure_pattern,
    categorize_error,
)


def _record(reason: StallReason = StallReason.NO_ACTIVITY) -> BlockedTaskRecord:
    record = BlockedTaskRecord(
        issue_id="issue-4", epic_id="epic-1", agent_id="backend-1", reason=reason, stall_minutes=47.0,
    )
    record.advance("request_status", True)
    record.advance("wake_agent", True)
    record.advance("reassign", False, "No capacity for issue issue-4")
    return record


def _issue() -> Issue:
    return Issue(id="issue-4", epic_id="epic-1", title="Migrate invoices table")


def _agent(*messages) -> AgentProfile:
    return AgentProfile(id="backend-1", recent_errors=[ErrorRecord(message=m) for m in messages])


class TestCategorize:
    @pytest.mark.parametrize("message,category", [
        ("Connection refused by api.github.com", "network"),
        ("request timed out", "network"),
        ("401 Unauthorized", "authentication"),
        ("Validation error: title required", "validation"),
        ("out of memory", "resource"),
        ("assertion failed in test_invoice", "logic"),
        ("weird thing happened", "unknown"),
    ])
    def test_categories(self, message, category):
        assert categorize_error(message) == category

    def test_empty_message(self):
        assert categorize_error("") is None


class TestFailurePattern:
    def test_silent(self):
        assert analyze_failure_pattern([]) == "silent"

    def test_consistent(self):
        errors = [ErrorRecord(message="timed out"), ErrorRecord(message="connection refused")]

        assert analyze_failure_pattern(errors) == "consistent"

    def test_intermittent_network(self):
        errors = [ErrorRecord(message=m) for m in ("timed out", "timed out", "out of memory")]

        assert analyze_failure_pattern(errors) == "intermittent_network"

    def test_varied(self):
        errors = [ErrorRecord(message=m) for m in ("unauthorized", "out of memory")]

        assert analyze_failure_pattern(errors) == "varied"

    def test_recovered_warnings_ignored(self):
        assert analyze_failure_pattern([ErrorRecord(message="timed out", is_failure=False)]) == "silent"


class TestReport:
    def test_build_includes_ladder_and_hypothesis(self):
        report = EscalationReporter().build(_record(), _issue(), _agent("timed out", "timed out"))

        assert report.failure_pattern == "consistent"
        assert "network" in report.root_cause_hypothesis
        assert report.error_categories == {"network": 2}
        assert report.ladder[-1] == "level 3: reassign (failed) - No capacity for issue issue-4"
        assert len(report.suggested_interventions) <= 5

    def test_silent_agent_hypothesis(self):
        report = EscalationReporter().build(_record(), _issue(), None)

        assert report.failure_pattern == "silent"
        assert "47 minutes" in report.root_cause_hypothesis

    def test_dependency_wait_hypothesis(self):
        report = EscalationReporter().build(_record(StallReason.DEPENDENCY_WAIT), _issue(), None)

        assert "dependencies" in report.root_cause_hypothesis

    def test_render_markdown(self):
        reporter = EscalationReporter()
        body = reporter.render(reporter.build(_record(), _issue(), _agent("out of memory")))

        assert body.startswith("## Escalated to human: Migrate invoices table")
        assert "## Root Cause Analysis" in body
        assert "- resource: 1" in body
        assert "## Recovery Attempts" in body
        assert "1. Confirm the agent process is alive" in body

    def test_record_cannot_pass_top_of_ladder(self):
        record = _record()
        record.advance("escalate_to_human", True)

        assert record.level is EscalationLevel.ESCALATED_TO_HUMAN
        with pytest.raises(ValueError, match="already escalated"):
            record.advance("again", True)
