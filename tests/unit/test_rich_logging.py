"""Tests for context-aware logging and the monitor's activity listener."""

import logging
from unittest.mock import MagicMock

from teammate_agents.run_monitor import activity_listener
from teammate_agents.utils.rich_logging import ContextLogger, CoordinationLogFormatter


def _record(msg: str = "claimed", **extra) -> logging.LogRecord:
    record = logging.LogRecord("teammate", logging.INFO, __file__, 1, msg, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestFormatter:
    def test_context_prefix(self):
        formatter = CoordinationLogFormatter("monitor", use_colors=False)

        line = formatter.format(_record(epic_id="epic-1", issue_id="issue-3", agent_id="backend-1"))

        assert line.endswith("INFO     [monitor] [epic-1] [issue-3] <backend-1> claimed")

    def test_no_context(self):
        line = CoordinationLogFormatter("monitor", use_colors=False).format(_record())

        assert line.endswith("[monitor] claimed")


class TestContextLogger:
    def test_context_added_to_extra(self):
        log = ContextLogger(logging.getLogger("teammate.test"), "monitor")
        log.set_context(epic_id="epic-1", issue_id="issue-3")

        _, kwargs = log.process("msg", {})

        assert kwargs["extra"] == {"epic_id": "epic-1", "issue_id": "issue-3"}

    def test_clear_context(self):
        log = ContextLogger(logging.getLogger("teammate.test"), "monitor")
        log.set_context(agent_id="backend-1")
        log.clear_context()

        _, kwargs = log.process("msg", {})

        assert kwargs["extra"] == {}


class TestActivityListener:
    def test_claim_logged_as_assignment(self):
        log = MagicMock()

        activity_listener(log)("issue.claimed", {"issue_id": "issue-3", "agent_id": "backend-1", "score": 71.0})

        log.assignment_made.assert_called_once_with("issue-3", "backend-1", 71.0)

    def test_review_decision_logged(self):
        log = MagicMock()

        activity_listener(log)("review.changes_requested", {"issue_id": "issue-3"})

        log.review_decided.assert_called_once_with("issue-3", "changes_requested")

    def test_other_events_ignored(self):
        log = MagicMock()

        activity_listener(log)("issue.created", {"issue_id": "issue-3"})

        log.assignment_made.assert_not_called()
        log.warning.assert_not_called()
