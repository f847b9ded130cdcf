"""Tests for StallDetector — detection thresholds and the escalation ladder."""

import asyncio
import threading
from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from teammate_agents.core.config import StallConfig
from teammate_agents.core.models import (
    EpicState,
    EscalationLevel,
    IssueStatus,
    Priority,
    StallReason,
    utcnow,
)
from teammate_agents.core.registry import AgentRegistry
from teammate_agents.core.task_coordinator import TaskCoordinator
from teammate_agents.memory.context_store import blocked_key
from teammate_agents.safeguards.stall_detector import RecoveryActions, StallDetector
from teammate_agents.scoring.balancer import FairnessBalancer
from teammate_agents.scoring.scorer import AgentScorer

from coordination_fixtures import EPIC_ID, make_agent


@pytest.fixture
def notify():
    return MagicMock()


@pytest.fixture
def detector(coordinator, registry, store, notify):
    return StallDetector(coordinator, registry, recovery=RecoveryActions(notify), store=store)


def _claimed_issue(coordinator, priority=Priority.CRITICAL, agent_id="backend-1", **kwargs):
    issue = coordinator.add_issue(EPIC_ID, "Stuck work", priority=priority, **kwargs)
    coordinator.claim_issue(agent_id, issue.id)
    return coordinator.get_issue(issue.id)


def _later(minutes: float):
    return utcnow() + timedelta(minutes=minutes)


class TestDetection:
    def test_critical_issue_stale_for_20_minutes_detected(self, coordinator, detector):
        issue = _claimed_issue(coordinator)

        changed = detector.scan(_later(20))

        assert len(changed) == 1
        record = changed[0]
        assert record.issue_id == issue.id
        assert record.level is EscalationLevel.DETECTED
        assert record.reason is StallReason.NO_ACTIVITY
        assert record.stall_minutes >= 20

    def test_next_pass_advances_to_notified(self, coordinator, detector, notify):
        issue = _claimed_issue(coordinator)
        detector.scan(_later(20))

        changed = detector.scan(_later(21))

        assert changed[0].level is EscalationLevel.NOTIFIED
        assert changed[0].history[-1].action == "request_status"
        notify.assert_called_once()
        assert notify.call_args[0][:2] == ("request_status", "backend-1")
        assert detector.record_for(issue.id).level == 1

    def test_under_threshold_not_detected(self, coordinator, detector):
        _claimed_issue(coordinator, priority=Priority.MEDIUM)

        assert detector.scan(_later(20)) == []

    @pytest.mark.parametrize("priority,minutes", [
        (Priority.CRITICAL, 15),
        (Priority.HIGH, 30),
        (Priority.MEDIUM, 60),
        (Priority.LOW, 120),
    ])
    def test_thresholds_by_priority(self, coordinator, detector, priority, minutes):
        _claimed_issue(coordinator, priority=priority)

        assert detector.scan(_later(minutes - 1)) == []
        assert len(detector.scan(_later(minutes + 1))) == 1

    def test_open_issues_are_not_scanned(self, coordinator, detector):
        coordinator.add_issue(EPIC_ID, "Nobody took this", priority=Priority.CRITICAL)

        assert detector.scan(_later(500)) == []

    def test_paused_epic_not_scanned(self, coordinator, detector):
        _claimed_issue(coordinator)
        coordinator.epic_machine(EPIC_ID).transition(EpicState.PAUSED)

        assert detector.scan(_later(60)) == []

    def test_record_persisted(self, coordinator, detector, store):
        issue = _claimed_issue(coordinator)

        detector.scan(_later(20))

        assert store.retrieve(EPIC_ID, blocked_key(issue.id))["level"] == 0


class TestClassification:
    def test_error_threshold(self, coordinator, registry, detector):
        issue = _claimed_issue(coordinator)
        for message in ("connection refused", "timed out", "timed out", "ok", "timed out"):
            registry.record_error("backend-1", message, is_failure=message != "ok")

        assert detector.classify(issue, registry.get("backend-1")) is StallReason.ERROR_THRESHOLD

    def test_resource_exhaustion(self, coordinator, registry, detector):
        issue = _claimed_issue(coordinator)
        registry.update_health("backend-1", resource_health=0.1)

        assert detector.classify(issue, registry.get("backend-1")) is StallReason.RESOURCE_EXHAUSTION

    def test_no_agent_means_no_activity(self, coordinator, detector):
        issue = _claimed_issue(coordinator)

        assert detector.classify(issue, None) is StallReason.NO_ACTIVITY


class TestLadder:
    def test_levels_never_skip_or_decrease(self, coordinator, detector):
        issue = _claimed_issue(coordinator)

        levels = []
        for minutes in (20, 21, 22):
            detector.scan(_later(minutes))
            levels.append(int(detector.record_for(issue.id).level))

        assert levels == [0, 1, 2]

    def test_third_stale_pass_reassigns(self, coordinator, detector):
        issue = _claimed_issue(coordinator)
        for minutes in (20, 21, 22):
            detector.scan(_later(minutes))

        changed = detector.scan(_later(23))

        assert changed[0].level is EscalationLevel.REASSIGNED
        assert coordinator.get_issue(issue.id).assignee == "backend-2"

    def test_fresh_activity_clears_record(self, coordinator, detector):
        issue = _claimed_issue(coordinator)
        detector.scan(_later(20))
        detector.scan(_later(21))

        coordinator.report_progress(issue.id, "backend-1")
        detector.scan(_later(1))

        assert detector.record_for(issue.id) is None

    def test_failed_reassignment_escalates_to_human(self, coordinator, registry, detector):
        registry.unregister("backend-2")
        issue = _claimed_issue(coordinator)
        for minutes in (20, 21, 22):
            detector.scan(_later(minutes))

        changed = detector.scan(_later(23))

        record = changed[0]
        assert record.level is EscalationLevel.ESCALATED_TO_HUMAN
        assert [step.action for step in record.history][-2:] == ["reassign", "escalate_to_human"]
        assert record.history[-2].succeeded is False
        assert coordinator.get_issue(issue.id).needs_human is True
        assert coordinator.epic_machine(EPIC_ID).state is EpicState.BLOCKED
        assert detector.reports[issue.id].issue_id == issue.id

    def test_escalated_issue_is_left_alone(self, coordinator, registry, detector):
        registry.unregister("backend-2")
        issue = _claimed_issue(coordinator)
        for minutes in (20, 21, 22, 23):
            detector.scan(_later(minutes))

        coordinator.epic_machine(EPIC_ID).transition(EpicState.ACTIVE)

        assert detector.scan(_later(30)) == []
        assert detector.record_for(issue.id).level is EscalationLevel.ESCALATED_TO_HUMAN

    def test_tracker_gets_needs_human_report(self, coordinator, registry, detector):
        tracker = MagicMock()
        coordinator.tracker = tracker
        registry.unregister("backend-2")
        _claimed_issue(coordinator, number=77)
        for minutes in (20, 21, 22, 23):
            detector.scan(_later(minutes))

        number, body = tracker.mark_needs_human.call_args[0]
        assert number == 77
        assert body.startswith("## Escalated to human: Stuck work")

    def test_completed_issue_record_removed(self, coordinator, detector):
        issue = _claimed_issue(coordinator)
        detector.scan(_later(20))

        coordinator.close_issue(issue.id)
        detector.scan(_later(21))

        assert coordinator.get_issue(issue.id).status is IssueStatus.CLOSED
        assert detector.records() == []

    def test_claim_from_another_process_is_scanned(self, coordinator, detector, store):
        coordinator.persist_epic(coordinator.epic_machine(EPIC_ID).snapshot())
        issue = coordinator.add_issue(EPIC_ID, "Stuck work", priority=Priority.CRITICAL)
        other = TaskCoordinator(
            AgentRegistry([make_agent("backend-1"), make_agent("backend-2")]),
            FairnessBalancer(AgentScorer()),
            store=store,
        )
        other.restore_epic(EPIC_ID)
        other.claim_issue("backend-2", issue.id)

        changed = detector.scan(_later(20))

        assert [r.issue_id for r in changed] == [issue.id]
        assert changed[0].agent_id == "backend-2"


class TestRunLoop:
    def test_scan_runs_off_the_event_loop(self, coordinator, registry):
        detector = StallDetector(coordinator, registry, StallConfig(check_interval=0))
        loop_thread = threading.get_ident()
        scan_threads = []

        def scan_once(now=None):
            scan_threads.append(threading.get_ident())
            asyncio.run(detector.stop())
            return []

        detector.scan = scan_once
        asyncio.run(detector.run())

        assert len(scan_threads) == 1
        assert scan_threads[0] != loop_thread
