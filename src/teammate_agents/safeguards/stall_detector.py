"""Stall detection and the escalation ladder.

Each pass looks at every in-flight issue of an active epic. An issue whose
last activity is older than its priority's threshold gets a
``BlockedTaskRecord``; every further pass that still finds it stale moves
the record exactly one level up the ladder:

  DETECTED (0) -> NOTIFIED (1)                  ask the agent for status
  NOTIFIED (1) -> AUTO_RECOVERY_ATTEMPTED (2)   reason-specific recovery
  AUTO_RECOVERY_ATTEMPTED (2) -> REASSIGNED (3) move to another agent
  REASSIGNED (3) -> ESCALATED_TO_HUMAN (4)      diagnostic report, needs-human

A failed reassignment escalates to a human in the same pass. Fresh activity
deletes the record; nothing else lowers the level.
"""

import asyncio
import logging
import threading
from datetime import datetime
from typing import Callable, Dict, List, Optional

from ..core.config import StallConfig
from ..core.models import (
    IN_FLIGHT_STATUSES,
    AgentProfile,
    BlockedTaskRecord,
    EpicState,
    EscalationLevel,
    Issue,
    IssueStatus,
    StallReason,
    utcnow,
)
from ..core.registry import AgentRegistry
from ..core.task_coordinator import TaskCoordinator
from ..errors import NotFoundError, TeammateError
from ..memory.context_store import ContextStore, blocked_key
from .escalation import EscalationReport, EscalationReporter

logger = logging.getLogger(__name__)

# Changes-requested work is still owned by its agent
SCANNED_STATUSES = IN_FLIGHT_STATUSES | {IssueStatus.CHANGES_REQUESTED}

RECOVERY_ACTIONS = {
    StallReason.ERROR_THRESHOLD: "restart_agent",
    StallReason.RESOURCE_EXHAUSTION: "free_resources",
    StallReason.NO_ACTIVITY: "wake_agent",
    StallReason.DEPENDENCY_WAIT: "recheck_dependencies",
}


class RecoveryActions:
    """Signals sent to agents while climbing the ladder.

    The default implementation publishes each signal through ``notify``
    (typically the agent transport) and reports success. Subclasses can
    return False when a signal could not be delivered.
    """

    def __init__(self, notify: Optional[Callable[[str, str, Issue], None]] = None):
        self.notify = notify

    def _send(self, signal: str, agent_id: str, issue: Issue) -> bool:
        logger.info(f"Sending {signal} to {agent_id} for {issue.id}")
        if self.notify is not None:
            self.notify(signal, agent_id, issue)
        return True

    def request_status(self, agent_id: str, issue: Issue) -> bool:
        return self._send("request_status", agent_id, issue)

    def restart_agent(self, agent_id: str, issue: Issue) -> bool:
        return self._send("restart", agent_id, issue)

    def free_resources(self, agent_id: str, issue: Issue) -> bool:
        return self._send("free_resources", agent_id, issue)

    def wake_agent(self, agent_id: str, issue: Issue) -> bool:
        return self._send("wake", agent_id, issue)


class StallDetector:
    """Periodic scanner that drives ``BlockedTaskRecord``s up the ladder."""

    def __init__(
        self,
        coordinator: TaskCoordinator,
        registry: AgentRegistry,
        config: Optional[StallConfig] = None,
        recovery: Optional[RecoveryActions] = None,
        reporter: Optional[EscalationReporter] = None,
        store: Optional[ContextStore] = None,
    ):
        self.coordinator = coordinator
        self.registry = registry
        self.config = config or StallConfig()
        self.recovery = recovery or RecoveryActions()
        self.reporter = reporter or EscalationReporter()
        self.store = store
        self.reports: Dict[str, EscalationReport] = {}
        self._records: Dict[str, BlockedTaskRecord] = {}
        self._scan_lock = threading.Lock()
        self._running = False

    async def run(self) -> None:
        """Scan on a fixed interval until ``stop`` is called."""
        logger.info("Stall detector starting")
        self._running = True

        while self._running:
            try:
                await asyncio.to_thread(self.scan)
            except Exception as e:
                logger.exception(f"Error in stall detector loop: {e}")
            await asyncio.sleep(self.config.check_interval)

    async def stop(self) -> None:
        logger.info("Stall detector stopping")
        self._running = False

    def records(self) -> List[BlockedTaskRecord]:
        return [r.model_copy(deep=True) for r in self._records.values()]

    def record_for(self, issue_id: str) -> Optional[BlockedTaskRecord]:
        record = self._records.get(issue_id)
        return record.model_copy(deep=True) if record else None

    def load(self, records: List[BlockedTaskRecord]) -> None:
        """Restore records from the context store."""
        for record in records:
            self._records[record.issue_id] = record

    def threshold_minutes(self, issue: Issue) -> float:
        return float(self.config.thresholds[issue.priority.value])

    def classify(self, issue: Issue, agent: Optional[AgentProfile]) -> StallReason:
        if self.coordinator.pending_dependencies(issue):
            return StallReason.DEPENDENCY_WAIT
        if agent is not None:
            window = agent.recent_errors[-self.config.error_window:]
            if window:
                failures = sum(1 for e in window if e.is_failure)
                if failures / len(window) >= self.config.error_failure_ratio:
                    return StallReason.ERROR_THRESHOLD
            if agent.resource_health < self.config.resource_health_floor:
                return StallReason.RESOURCE_EXHAUSTION
        return StallReason.NO_ACTIVITY

    def scan(self, now: Optional[datetime] = None) -> List[BlockedTaskRecord]:
        """Run one detection pass. Returns records created or advanced."""
        now = now or utcnow()
        changed: List[BlockedTaskRecord] = []
        with self._scan_lock:
            self.coordinator.refresh()
            tracked = set()
            for issue in self.coordinator.all_issues():
                if issue.status not in SCANNED_STATUSES:
                    continue
                tracked.add(issue.id)
                try:
                    record = self._check(issue, now)
                except NotFoundError as e:
                    logger.debug(f"Skipping {issue.id}: {e}")
                    continue
                except TeammateError as e:
                    logger.warning(f"Stall handling for {issue.id} failed: {e}")
                    continue
                if record is not None:
                    changed.append(record.model_copy(deep=True))

            for issue_id in list(self._records):
                if issue_id not in tracked:
                    # Issue finished, closed or was released since the last pass
                    self._delete(issue_id, "no longer in flight")
        return changed

    def _check(self, issue: Issue, now: datetime) -> Optional[BlockedTaskRecord]:
        if issue.needs_human:
            return None
        if self.coordinator.epic_machine(issue.epic_id).state is not EpicState.ACTIVE:
            return None

        last = issue.last_activity_at or issue.claimed_at or issue.created_at
        minutes = (now - last).total_seconds() / 60
        record = self._records.get(issue.id)

        if minutes < self.threshold_minutes(issue):
            if record is not None:
                self._delete(issue.id, "fresh activity")
            return None

        agent = self._agent(issue.assignee)
        reason = self.classify(issue, agent)

        if record is None:
            record = BlockedTaskRecord(
                issue_id=issue.id,
                epic_id=issue.epic_id,
                agent_id=issue.assignee or "unassigned",
                reason=reason,
                stall_minutes=minutes,
                detected_at=now,
                last_checked_at=now,
            )
            self._records[issue.id] = record
            logger.warning(
                f"{issue.id} stalled for {minutes:.0f}m "
                f"(threshold {self.threshold_minutes(issue):.0f}m, {reason.value})"
            )
            self._persist(record)
            return record

        record.stall_minutes = minutes
        record.last_checked_at = now
        record.reason = reason
        if record.is_terminal:
            self._persist(record)
            return None

        self._advance(record, issue)
        self._persist(record)
        return record

    def _advance(self, record: BlockedTaskRecord, issue: Issue) -> None:
        level = EscalationLevel(record.level)
        agent_id = record.agent_id

        if level is EscalationLevel.DETECTED:
            ok = self.recovery.request_status(agent_id, issue)
            record.advance("request_status", ok)

        elif level is EscalationLevel.NOTIFIED:
            action = RECOVERY_ACTIONS[record.reason]
            if record.reason is StallReason.DEPENDENCY_WAIT:
                pending = self.coordinator.pending_dependencies(issue)
                ok = not pending
                detail = f"waiting on {', '.join(sorted(pending))}" if pending else "dependencies done"
            else:
                ok = getattr(self.recovery, action)(agent_id, issue)
                detail = ""
            record.advance(action, ok, detail)

        elif level is EscalationLevel.AUTO_RECOVERY_ATTEMPTED:
            try:
                assignment = self.coordinator.reassign(issue.id, exclude_agent=agent_id, reason="stalled")
            except TeammateError as e:
                record.advance("reassign", False, str(e))
                self._escalate_to_human(record, issue)
            else:
                record.advance("reassign", True, f"moved to {assignment.agent_id}")

        elif level is EscalationLevel.REASSIGNED:
            self._escalate_to_human(record, issue)

        logger.warning(
            f"{issue.id} escalation level {int(record.level)} "
            f"({EscalationLevel(record.level).name.lower()})"
        )

    def _escalate_to_human(self, record: BlockedTaskRecord, issue: Issue) -> None:
        report = self.reporter.build(record, issue, self._agent(record.agent_id))
        self.reports[issue.id] = report
        body = self.reporter.render(report)
        self.coordinator.mark_needs_human(issue.id, body)

        machine = self.coordinator.epic_machine(issue.epic_id)
        if machine.can_transition(EpicState.BLOCKED):
            machine.transition(
                EpicState.BLOCKED,
                event_id=f"escalation:{issue.id}:{record.detected_at.isoformat()}",
                reason=f"{issue.id} escalated to human ({record.reason.value})",
                triggered_by="stall-detector",
            )
        record.advance("escalate_to_human", True, report.root_cause_hypothesis)

    def _agent(self, agent_id: Optional[str]) -> Optional[AgentProfile]:
        if agent_id is None or agent_id not in self.registry:
            return None
        return self.registry.get(agent_id)

    def _persist(self, record: BlockedTaskRecord) -> None:
        if self.store is not None:
            self.store.store_model(record.epic_id, blocked_key(record.issue_id), record)

    def _delete(self, issue_id: str, why: str) -> None:
        record = self._records.pop(issue_id, None)
        if record is None:
            return
        logger.info(f"{issue_id} recovered at level {int(record.level)} ({why})")
        if self.store is not None:
            self.store.delete(record.epic_id, blocked_key(issue_id))
