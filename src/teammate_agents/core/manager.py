"""TeammateManager: wires the coordination components behind one facade.

The CLI and the monitor talk only to this class. Each process restores the
epics it needs from the context store on demand.
"""

import json
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional
from uuid import uuid4

from ..errors import ExternalSyncFailure, NotFoundError
from ..integrations.tracker import IssueTracker
from ..memory.context_store import (
    EPIC_KEY,
    ContextStore,
    FileContextStore,
    review_key,
)
from ..queue.locks import LockManager
from ..review.consensus import ConsensusEngine, ConsensusResult, Vote
from ..review.peer_review import PeerReviewEngine, ReviewRequest, RetryReview
from ..review.reviewer_selection import ReviewerSelector
from ..safeguards.retry_handler import RetryHandler
from ..safeguards.stall_detector import RecoveryActions, StallDetector
from ..scoring.balancer import FairnessBalancer
from ..scoring.scorer import AgentScorer
from .config import TeammateConfig, load_agents
from .epic_state_machine import EpicStateMachine
from .events import EventQueue
from .models import (
    AgentProfile,
    Assignment,
    AutomatedCheck,
    BlockedTaskRecord,
    Epic,
    EpicState,
    Issue,
    ManualScores,
    Priority,
    ReviewRecord,
    WorkRequirements,
)
from .progress import ProgressAggregator, ProgressReport
from .registry import AgentRegistry
from .task_coordinator import TaskCoordinator

logger = logging.getLogger(__name__)

CONTEXT_KEY = "context"
CHARS_PER_TOKEN = 4
RESTORE_STRATEGIES = ("full", "summary", "selective")
SYNC_DIRECTIONS = ("pull", "push", "bidirectional")


@dataclass
class RestoredContext:
    epic_id: str
    strategy: str
    summary: str
    payload: Dict[str, Any]
    token_count: int
    truncated: bool = False


@dataclass
class SyncResult:
    epic_id: str
    direction: str
    pulled: int = 0
    pushed: int = 0
    failures: List[str] = field(default_factory=list)


def generate_epic_id() -> str:
    return f"epic-{int(time.time() * 1000)}-{uuid4().hex[:8]}"


def estimate_tokens(data: Any) -> int:
    text = data if isinstance(data, str) else json.dumps(data, default=str)
    return (len(text) + CHARS_PER_TOKEN - 1) // CHARS_PER_TOKEN


class TeammateManager:
    """Facade over the registry, coordinator, review engine and stall detector."""

    def __init__(
        self,
        config: Optional[TeammateConfig] = None,
        store: Optional[ContextStore] = None,
        tracker: Optional[IssueTracker] = None,
        agents: Optional[Iterable[AgentProfile]] = None,
        locks: Optional[LockManager] = None,
        recovery: Optional[RecoveryActions] = None,
    ):
        self.config = config or TeammateConfig()
        self.store = store if store is not None else FileContextStore(self.config.context_path)
        self.tracker = tracker

        if agents is None:
            agents_path = Path(self.config.workspace) / "config" / "agents.yaml"
            agents = [definition.to_profile() for definition in load_agents(agents_path)]
        self.registry = AgentRegistry(agents)

        self.scorer = AgentScorer(self.config.scoring)
        self.balancer = FairnessBalancer(self.scorer, self.config.balancer)
        self.retry = RetryHandler.from_config(self.config.sync)
        self.coordinator = TaskCoordinator(
            registry=self.registry,
            balancer=self.balancer,
            locks=locks or LockManager(
                self.config.lock_path,
                timeout=self.config.coordinator.lock_timeout,
                poll_interval=self.config.coordinator.lock_poll_interval,
            ),
            tracker=tracker,
            store=self.store,
            retry=self.retry,
            config=self.config.coordinator,
        )
        self.review = PeerReviewEngine(
            self.registry,
            ReviewerSelector(self.config.review, max_workload=self.config.balancer.max_workload),
            self.config.review,
        )
        self.consensus = ConsensusEngine(self.config.consensus)
        self.stall_detector = StallDetector(
            self.coordinator,
            self.registry,
            self.config.stall,
            recovery=recovery,
            store=self.store,
        )
        self.progress = ProgressAggregator()
        self.events = EventQueue()

        self.coordinator.add_listener(self._on_coordinator_event)

    # ------------------------------------------------------------------
    # Epics
    # ------------------------------------------------------------------

    def create_epic(
        self,
        title: str,
        description: str = "",
        objectives: Optional[List[str]] = None,
        constraints: Optional[List[str]] = None,
        repository: Optional[str] = None,
        labels: Optional[List[str]] = None,
        create_external: bool = False,
    ) -> Epic:
        epic = Epic(
            id=generate_epic_id(),
            title=title,
            description=description,
            objectives=objectives or [],
            constraints=constraints or [],
            repository=repository,
            labels=labels or [],
        )
        if create_external and self.tracker is not None:
            body = description
            if epic.objectives:
                body += "\n\n## Objectives\n" + "\n".join(f"- {o}" for o in epic.objectives)
            try:
                epic.external_issue = self.retry.call(
                    lambda: self.tracker.create_issue(title, body, ["epic", f"epic:{epic.id}"]),
                    f"create epic issue for {epic.id}",
                )
            except ExternalSyncFailure as e:
                logger.warning(f"{e}; epic created locally only")

        machine = EpicStateMachine(epic, on_commit=self._on_epic_commit)
        self.coordinator.register_epic(machine)
        self.coordinator.persist_epic(machine.snapshot())
        result = machine.transition(EpicState.ACTIVE, event_id=f"{epic.id}:create", reason="created")
        logger.info(f"Created epic {epic.id}: {title}")
        return result.epic

    def load_epic(self, epic_id: str) -> EpicStateMachine:
        """Return the live machine, restoring it from the context store if needed."""
        try:
            return self.coordinator.epic_machine(epic_id)
        except NotFoundError:
            pass
        machine = self.coordinator.restore_epic(epic_id, on_commit=self._on_epic_commit)
        self.review.load(self.store.retrieve_models(epic_id, "review:", ReviewRecord))
        self.stall_detector.load(self.store.retrieve_models(epic_id, "blocked:", BlockedTaskRecord))
        return machine

    def load_all(self) -> List[str]:
        loaded = []
        for namespace in self.store.namespaces():
            if self.store.retrieve(namespace, EPIC_KEY) is None:
                continue
            self.load_epic(namespace)
            loaded.append(namespace)
        return loaded

    def list_epics(self, state: Optional[EpicState] = None) -> List[Epic]:
        epics = {}
        for namespace in self.store.namespaces():
            epic = self.store.retrieve_model(namespace, EPIC_KEY, Epic)
            if epic is not None:
                epics[epic.id] = epic
        for epic_id in self.coordinator.epic_ids():
            epics[epic_id] = self.coordinator.epic_machine(epic_id).snapshot()
        result = [e for e in epics.values() if state is None or e.state == EpicState(state)]
        return sorted(result, key=lambda e: e.created_at)

    def get_epic(self, epic_id: str) -> Epic:
        return self.load_epic(epic_id).snapshot()

    def update_epic(
        self,
        epic_id: str,
        state: Optional[EpicState] = None,
        reason: str = "",
        expected_version: Optional[int] = None,
        triggered_by: str = "cli",
        **fields,
    ) -> Epic:
        """Change descriptive fields and/or move the epic to ``state``."""
        machine = self.load_epic(epic_id)
        epic = machine.snapshot()
        changes = {k: v for k, v in fields.items() if v is not None}
        if changes:
            epic = machine.update(expected_version=expected_version, **changes)
            expected_version = epic.version if expected_version is not None else None
        if state is not None:
            epic = machine.transition(
                EpicState(state),
                reason=reason,
                triggered_by=triggered_by,
                expected_version=expected_version,
            ).epic
        return epic

    def progress_report(self, epic_id: str) -> ProgressReport:
        epic = self.get_epic(epic_id)
        return self.progress.report(
            epic,
            self.coordinator.issues_for_epic(epic_id),
            blocked=self.stall_detector.records(),
            reviews=self.review.all_records(),
        )

    # ------------------------------------------------------------------
    # Issues and assignment
    # ------------------------------------------------------------------

    def add_issue(
        self,
        epic_id: str,
        title: str,
        description: str = "",
        labels: Optional[List[str]] = None,
        priority: Optional[Priority] = None,
        dependencies: Iterable[str] = (),
        acceptance_criteria: Optional[List[str]] = None,
        requirements: Optional[WorkRequirements] = None,
        number: Optional[int] = None,
        create_external: bool = False,
    ) -> Issue:
        self.load_epic(epic_id)
        labels = list(labels or [])
        if number is None and create_external and self.tracker is not None:
            tracker_labels = labels + [f"epic:{epic_id}"]
            try:
                number = self.retry.call(
                    lambda: self.tracker.create_issue(title, description, tracker_labels),
                    f"create issue in {epic_id}",
                )
            except ExternalSyncFailure as e:
                logger.warning(f"{e}; issue created locally only")
        return self.coordinator.add_issue(
            epic_id,
            title=title,
            description=description,
            number=number,
            labels=labels,
            requirements=requirements,
            priority=priority,
            dependencies=dependencies,
            acceptance_criteria=acceptance_criteria,
        )

    def resolve_issue(self, epic_id: str, ref: str) -> Issue:
        """Find an issue by id or tracker number within the epic."""
        self.load_epic(epic_id)
        if ref.lstrip("#").isdigit():
            issue = self.coordinator.find_by_number(int(ref.lstrip("#")))
            if issue is not None and issue.epic_id == epic_id:
                return issue
        issue = self.coordinator.get_issue(ref)
        if issue.epic_id != epic_id:
            raise NotFoundError("issue", ref)
        return issue

    def auto_assign(self, epic_id: str) -> List[Assignment]:
        self.load_epic(epic_id)
        return self.coordinator.auto_assign(epic_id)

    def assign(self, epic_id: str, issue_ref: str, agent_id: str) -> Assignment:
        issue = self.resolve_issue(epic_id, issue_ref)
        return self.coordinator.claim_issue(agent_id, issue.id)

    def report_progress(self, issue_id: str, agent_id: str, note: Optional[str] = None) -> Issue:
        return self.coordinator.report_progress(issue_id, agent_id, note)

    def complete_issue(self, issue_id: str, agent_id: str, summary: Optional[str] = None) -> ReviewRequest:
        """Submit finished work and hand it to the review engine."""
        issue = self.coordinator.report_completion(issue_id, agent_id, summary)
        pending = self.review.pending_request(issue_id)
        if pending is not None and pending.author_id == issue.assignee:
            return pending
        if pending is not None:
            logger.info(f"Dropping review of {issue_id} requested for former assignee {pending.author_id}")
            self.review.cancel(issue_id)
        request = self.review.request_review(issue, self.coordinator.agents_in_epic(issue.epic_id))
        if request.escalation is not None:
            self._apply_review(request.escalation)
        return request

    def submit_review(
        self,
        issue_id: str,
        checks: List[AutomatedCheck],
        manual: Optional[ManualScores],
        retry: Optional[RetryReview] = None,
    ) -> Optional[ReviewRecord]:
        issue = self.coordinator.get_issue(issue_id)
        record = self.review.submit_review(issue, checks, manual, retry)
        if record is not None:
            self._apply_review(record)
        return record

    def decide_proposal(
        self,
        votes: Iterable[Vote],
        lead_id: Optional[str] = None,
        decision_class: str = "default",
        critical: bool = False,
    ) -> ConsensusResult:
        return self.consensus.decide(votes, lead_id, decision_class, critical)

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------

    def sync_epic(self, epic_id: str, direction: str = "bidirectional", force: bool = False) -> SyncResult:
        """Reconcile the epic with the issue tracker."""
        if direction not in SYNC_DIRECTIONS:
            raise ValueError(f"direction must be one of {SYNC_DIRECTIONS}, got {direction!r}")
        machine = self.load_epic(epic_id)
        result = SyncResult(epic_id=epic_id, direction=direction)
        if self.tracker is None:
            result.failures.append("no issue tracker configured")
            return result

        if direction in ("pull", "bidirectional"):
            try:
                issues = self.retry.call(
                    lambda: self.tracker.list_issues(label=f"epic:{epic_id}"),
                    f"list issues for {epic_id}",
                )
                result.pulled = self.coordinator.sync_from_tracker(epic_id, issues, force=force)
            except ExternalSyncFailure as e:
                logger.warning(f"{e}; keeping local state")
                result.failures.append(str(e))

        if direction in ("push", "bidirectional"):
            epic = machine.snapshot()
            if epic.external_issue is not None:
                number, state = epic.external_issue, epic.state.value
                if self.coordinator.sync_external(
                    f"epic state of #{number}", lambda: self.tracker.set_epic_state(number, state)
                ):
                    result.pushed += 1
                else:
                    result.failures.append(f"epic state of #{number}")
            for issue in self.coordinator.issues_for_epic(epic_id):
                if issue.number is None:
                    continue
                number, status = issue.number, issue.status.value
                if self.coordinator.sync_external(
                    f"status of #{number}", lambda: self.tracker.set_status(number, status)
                ):
                    result.pushed += 1
                else:
                    result.failures.append(f"status of #{number}")
                assignment = self.coordinator.active_assignment(issue.id)
                if assignment is not None and (assignment.sync_pending or force):
                    agent_id = assignment.agent_id
                    self.coordinator.sync_external(
                        f"mirror claim of #{number}", lambda: self.tracker.mirror_claim(number, agent_id)
                    )
        logger.info(f"Synced {epic_id} ({direction}): pulled {result.pulled}, pushed {result.pushed}")
        return result

    # ------------------------------------------------------------------
    # Context
    # ------------------------------------------------------------------

    def save_context(self, epic_id: str, data: Dict[str, Any], ttl: Optional[float] = None) -> Dict[str, Any]:
        """Merge ``data`` into the epic's free-form context."""
        if not isinstance(data, dict):
            raise ValueError("Context data must be a JSON object")
        self.load_epic(epic_id)
        current = self.store.retrieve(epic_id, CONTEXT_KEY) or {}
        current.update(data)
        self.store.store(epic_id, CONTEXT_KEY, current, ttl=ttl)
        return current

    def clear_context(self, epic_id: str, include_state: bool = False) -> int:
        """Drop saved context. ``include_state`` also wipes the epic's coordination records."""
        if self.store.retrieve(epic_id, EPIC_KEY) is None:
            raise NotFoundError("epic", epic_id)
        if include_state:
            return self.store.clear(epic_id)
        return 1 if self.store.delete(epic_id, CONTEXT_KEY) else 0

    def restore_context(
        self,
        epic_id: str,
        strategy: str = "summary",
        agent_id: Optional[str] = None,
        max_tokens: int = 4000,
    ) -> RestoredContext:
        """Rebuild an agent-facing view of the epic within a token budget."""
        if strategy not in RESTORE_STRATEGIES:
            raise ValueError(f"strategy must be one of {RESTORE_STRATEGIES}, got {strategy!r}")
        epic = self.get_epic(epic_id)
        issues = self.coordinator.issues_for_epic(epic_id)
        report = self.progress_report(epic_id)
        summary = self._summarize(epic, issues, report)
        extra = self.store.retrieve(epic_id, CONTEXT_KEY) or {}

        if strategy == "summary":
            payload: Dict[str, Any] = {"summary": summary, "context": extra}
        else:
            if strategy == "selective" and agent_id:
                issues = [i for i in issues if i.assignee == agent_id or i.assignee is None]
            issue_ids = {i.id for i in issues}
            payload = {
                "epic": epic.model_dump(mode="json", exclude={"state_history"}),
                "progress": report.model_dump(mode="json"),
                "issues": [i.model_dump(mode="json") for i in issues],
                "reviews": [
                    r.model_dump(mode="json") for r in self.review.all_records()
                    if r.issue_id in issue_ids
                ],
                "blocked": [
                    b.model_dump(mode="json") for b in self.stall_detector.records()
                    if b.issue_id in issue_ids
                ],
                "context": extra,
            }
            if strategy == "full":
                payload["epic"]["state_history"] = [
                    h.model_dump(mode="json") for h in epic.state_history
                ]
                payload["assignments"] = [
                    a.model_dump(mode="json") for a in self.coordinator.assignments_for_epic(epic_id)
                ]

        payload, truncated = _fit_budget(payload, max_tokens)
        return RestoredContext(
            epic_id=epic_id,
            strategy=strategy,
            summary=summary,
            payload=payload,
            token_count=estimate_tokens(payload),
            truncated=truncated,
        )

    def status(self, enabled: bool) -> Dict[str, Any]:
        epics = self.list_epics()
        return {
            "enabled": enabled,
            "total_epics": len(epics),
            "active_epics": sum(1 for e in epics if e.state is EpicState.ACTIVE),
            "blocked_epics": sum(1 for e in epics if e.state is EpicState.BLOCKED),
            "total_agents": len(self.registry),
            "tracker": "github" if self.tracker is not None else "local",
        }

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _apply_review(self, record: ReviewRecord) -> None:
        self.store.store_model(record.epic_id, review_key(record.id), record)
        self.coordinator.apply_review_decision(record)

    def _on_epic_commit(self, epic: Epic) -> None:
        self.coordinator.persist_epic(epic)
        if epic.external_issue is not None and self.tracker is not None:
            number, state = epic.external_issue, epic.state.value
            self.coordinator.sync_external(
                f"epic state of #{number}", lambda: self.tracker.set_epic_state(number, state)
            )

    def _on_coordinator_event(self, name: str, payload: dict) -> None:
        if name in ("issue.closed", "issue.released"):
            if self.review.cancel(payload["issue_id"]):
                logger.info(f"Abandoned pending review of {payload['issue_id']} ({name})")

    def _summarize(self, epic: Epic, issues: List[Issue], report: ProgressReport) -> str:
        lines = [
            f"Epic {epic.id}: {epic.title} [{epic.state.value}]",
            f"Progress: {report.completion_percent:.0f}% "
            f"({report.counts.get('done', 0)}/{report.total - report.counts.get('closed', 0)} done)",
        ]
        if epic.current_phase:
            lines.append(f"Phase: {epic.current_phase}")
        if epic.objectives:
            lines.append("Objectives: " + "; ".join(epic.objectives))
        if epic.constraints:
            lines.append("Constraints: " + "; ".join(epic.constraints))
        open_work = [i for i in issues if not i.is_terminal]
        for issue in sorted(open_work, key=lambda i: i.priority.rank)[:10]:
            owner = f" @{issue.assignee}" if issue.assignee else ""
            lines.append(f"- [{issue.priority.value}] {issue.title} ({issue.status.value}){owner}")
        if report.risks:
            lines.append("Risks: " + ", ".join(report.risks))
        return "\n".join(lines)


def _fit_budget(payload: Dict[str, Any], max_tokens: int):
    """Drop the oldest list items until the payload fits ``max_tokens``."""
    truncated = False
    trimmable = ("reviews", "assignments", "blocked", "issues")
    while estimate_tokens(payload) > max_tokens:
        lists = [k for k in trimmable if isinstance(payload.get(k), list) and payload[k]]
        if not lists:
            if isinstance(payload.get("summary"), str) and len(payload["summary"]) > 0:
                budget_chars = max(0, max_tokens * CHARS_PER_TOKEN - 64)
                payload["summary"] = payload["summary"][:budget_chars]
                payload["context"] = {}
                truncated = True
            break
        payload[lists[0]].pop(0)
        truncated = True
    return payload, truncated
