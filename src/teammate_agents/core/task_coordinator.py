"""Task coordinator: claims, progress, completion and issue lifecycle.

Issue status is only changed here (and by review decisions applied here).
Each issue is guarded by its own lock from ``LockManager``; there is no
lock over the whole system. Reads return copies taken from the issue table,
and every write replaces the stored issue wholesale, so a reader never
sees a half-applied change.
"""

import logging
import threading
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

from ..errors import (
    AlreadyClaimed,
    DependenciesNotMet,
    ExternalSyncFailure,
    InvalidTransition,
    LockTimeout,
    NoCapacity,
    NotAssignee,
    NotFoundError,
    StaleEvent,
)
from ..integrations.tracker import IssueTracker, TrackerIssue
from ..memory.context_store import (
    EPIC_KEY,
    ContextStore,
    assignment_key,
    issue_key,
)
from ..queue.locks import LockManager
from ..safeguards.retry_handler import RetryHandler
from ..scoring.balancer import Candidate, FairnessBalancer
from .capabilities import priority_from_labels, split_label
from .config import CoordinatorConfig
from .epic_state_machine import EpicStateMachine
from .events import EventKind, EventQueue, FreshnessTracker, IssueEvent
from .models import (
    Assignment,
    Epic,
    EpicState,
    Issue,
    IssueStatus,
    Priority,
    ReviewDecision,
    ReviewRecord,
    StateTransitionRecord,
    WorkRequirements,
    new_id,
    utcnow,
)
from .registry import AgentRegistry

logger = logging.getLogger(__name__)

Listener = Callable[[str, dict], None]


class TaskCoordinator:
    """Orchestrates claims and issue status for every registered epic."""

    def __init__(
        self,
        registry: AgentRegistry,
        balancer: FairnessBalancer,
        locks: Optional[LockManager] = None,
        tracker: Optional[IssueTracker] = None,
        store: Optional[ContextStore] = None,
        retry: Optional[RetryHandler] = None,
        config: Optional[CoordinatorConfig] = None,
    ):
        self.config = config or CoordinatorConfig()
        self.registry = registry
        self.balancer = balancer
        self.locks = locks or LockManager(
            timeout=self.config.lock_timeout,
            poll_interval=self.config.lock_poll_interval,
        )
        self.tracker = tracker
        self.store = store
        self.retry = retry or RetryHandler()
        self.freshness = FreshnessTracker()

        self._table_lock = threading.RLock()
        self._epics: Dict[str, EpicStateMachine] = {}
        self._issues: Dict[str, Issue] = {}
        self._by_number: Dict[int, str] = {}
        self._assignments: Dict[str, Assignment] = {}
        self._active_by_issue: Dict[str, str] = {}
        self._listeners: List[Listener] = []

    # ------------------------------------------------------------------
    # Registration and lookup
    # ------------------------------------------------------------------

    def register_epic(self, machine: EpicStateMachine) -> None:
        machine.on_enter(EpicState.BLOCKED, self._on_epic_blocked)
        with self._table_lock:
            self._epics[machine.epic_id] = machine

    def epic_machine(self, epic_id: str) -> EpicStateMachine:
        with self._table_lock:
            machine = self._epics.get(epic_id)
        if machine is None:
            raise NotFoundError("epic", epic_id)
        return machine

    def epic_ids(self) -> List[str]:
        with self._table_lock:
            return list(self._epics)

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def add_issue(
        self,
        epic_id: str,
        title: str,
        description: str = "",
        number: Optional[int] = None,
        labels: Optional[List[str]] = None,
        requirements: Optional[WorkRequirements] = None,
        priority: Optional[Priority] = None,
        dependencies: Iterable[str] = (),
        acceptance_criteria: Optional[List[str]] = None,
        issue_id: Optional[str] = None,
    ) -> Issue:
        """Register a new issue under ``epic_id``."""
        self.epic_machine(epic_id)
        labels = labels or []
        if requirements is None:
            requirements = WorkRequirements.from_labels(labels)
        if priority is None:
            label_priority = priority_from_labels(labels)
            priority = Priority(label_priority) if label_priority else requirements.priority
        if issue_id is None:
            issue_id = f"issue-{number}" if number is not None else new_id("issue")

        issue = Issue(
            id=issue_id,
            epic_id=epic_id,
            title=title,
            description=description,
            number=number,
            requirements=requirements,
            priority=priority,
            dependencies=set(dependencies) | set(requirements.dependencies),
            acceptance_criteria=acceptance_criteria or [],
            labels=labels,
        )
        with self._table_lock:
            if issue.id in self._issues:
                raise ValueError(f"Issue {issue.id} already exists")
            self._commit_issue(issue)
        logger.info(f"Added issue {issue.id} to epic {epic_id} ({issue.priority.value})")
        self._emit("issue.created", {"issue_id": issue.id, "epic_id": epic_id})
        return issue.model_copy(deep=True)

    def get_issue(self, issue_id: str) -> Issue:
        with self._table_lock:
            return self._require_issue(issue_id).model_copy(deep=True)

    def find_by_number(self, number: int) -> Optional[Issue]:
        with self._table_lock:
            issue_id = self._by_number.get(number)
            return self._issues[issue_id].model_copy(deep=True) if issue_id else None

    def issues_for_epic(self, epic_id: str) -> List[Issue]:
        with self._table_lock:
            issues = [i for i in self._issues.values() if i.epic_id == epic_id]
            return [i.model_copy(deep=True) for i in sorted(issues, key=lambda i: i.created_at)]

    def all_issues(self) -> List[Issue]:
        with self._table_lock:
            return [i.model_copy(deep=True) for i in self._issues.values()]

    def assignments_for_epic(self, epic_id: str) -> List[Assignment]:
        with self._table_lock:
            return [a.model_copy() for a in self._assignments.values() if a.epic_id == epic_id]

    def active_assignment(self, issue_id: str) -> Optional[Assignment]:
        with self._table_lock:
            assignment_id = self._active_by_issue.get(issue_id)
            return self._assignments[assignment_id].model_copy() if assignment_id else None

    def agents_in_epic(self, epic_id: str) -> Set[str]:
        """Agents that have held an assignment in the epic."""
        with self._table_lock:
            return {a.agent_id for a in self._assignments.values() if a.epic_id == epic_id}

    def pending_dependencies(self, issue: Issue) -> Set[str]:
        with self._table_lock:
            return {
                dep for dep in issue.dependencies
                if dep not in self._issues or self._issues[dep].status != IssueStatus.DONE
            }

    def ready_issues(self, epic_id: str) -> List[Issue]:
        """Open, unassigned issues with every dependency done; critical first."""
        issues = [
            i for i in self.issues_for_epic(epic_id)
            if i.status == IssueStatus.OPEN and not i.needs_human and not self.pending_dependencies(i)
        ]
        return sorted(issues, key=lambda i: (i.priority.rank, i.created_at))

    # ------------------------------------------------------------------
    # Claims
    # ------------------------------------------------------------------

    def select_agent(self, issue_id: str, exclude: Iterable[str] = ()) -> Candidate:
        """Balancer choice for ``issue_id`` over a registry snapshot."""
        issue = self.get_issue(issue_id)
        return self.balancer.select(issue_id, self.registry.snapshot(), issue.requirements, exclude)

    def claim_issue(self, agent_id: str, issue_id: str, candidate: Optional[Candidate] = None) -> Assignment:
        """Claim ``issue_id`` for ``agent_id``.

        Raises:
            AlreadyClaimed: another agent holds the issue (re-run selection)
            LockTimeout: the per-issue lock was not acquired in time (retryable)
            EpicNotActive: the epic does not accept assignments
            DependenciesNotMet: a dependency is not done
            NoCapacity: the agent is at its cap or over the workload limit
        """
        self._ensure_claimable(self._reload(issue_id))

        with self.locks.lock(issue_id):
            issue = self._reload(issue_id)
            self._ensure_claimable(issue)
            self.epic_machine(issue.epic_id).require_assignable("claim")
            pending = self.pending_dependencies(issue)
            if pending:
                raise DependenciesNotMet(issue_id, pending)

            if candidate is not None and candidate.agent.id == agent_id:
                match = candidate.match
                combined = candidate.combined
            else:
                match = self.balancer.scorer.score(self.registry.get(agent_id), issue.requirements)
                combined = None

            if not self.registry.try_claim(agent_id, issue_id, self.balancer.config.max_workload):
                raise NoCapacity(issue_id, f"agent {agent_id} has no free capacity")

            now = utcnow()
            assignment = Assignment(
                issue_id=issue_id,
                epic_id=issue.epic_id,
                agent_id=agent_id,
                score=match.total,
                breakdown=match.breakdown,
                combined_score=combined,
                claimed_at=now,
            )
            issue.assignee = agent_id
            issue.claimed_at = now
            issue.touch(now)
            issue.status = IssueStatus.IN_PROGRESS

            if issue.number is not None and self.tracker is not None:
                number = issue.number
                synced = self.sync_external(
                    f"mirror claim of #{number}",
                    lambda: self.tracker.mirror_claim(number, agent_id),
                )
                assignment.sync_pending = not synced

            with self._table_lock:
                self._assignments[assignment.id] = assignment
                self._active_by_issue[issue_id] = assignment.id
                self._commit_issue(issue)
                self._persist_assignment(assignment)

        logger.info(f"Agent {agent_id} claimed {issue_id} (score {match.total:.1f})")
        self._emit("issue.claimed", {
            "issue_id": issue_id,
            "epic_id": issue.epic_id,
            "agent_id": agent_id,
            "assignment_id": assignment.id,
            "score": match.total,
        })
        return assignment.model_copy()

    def assign_next(self, issue_id: str, exclude: Iterable[str] = ()) -> Assignment:
        """Select an agent through the balancer and claim the issue for it.

        Lock timeouts and agents that fill up between selection and claim
        trigger a fresh selection, up to ``max_claim_attempts``.
        """
        excluded = set(exclude)
        last_error: Optional[Exception] = None
        for attempt in range(1, self.config.max_claim_attempts + 1):
            candidate = self.select_agent(issue_id, excluded)
            try:
                return self.claim_issue(candidate.agent.id, issue_id, candidate)
            except LockTimeout as e:
                last_error = e
                logger.warning(f"Claim attempt {attempt} on {issue_id} timed out; retrying")
            except NoCapacity as e:
                last_error = e
                excluded.add(candidate.agent.id)
        raise last_error

    def auto_assign(self, epic_id: str) -> List[Assignment]:
        """Assign every ready issue in the epic that has a willing agent."""
        self.epic_machine(epic_id).require_assignable("auto-assign")
        assignments = []
        for issue in self.ready_issues(epic_id):
            try:
                assignments.append(self.assign_next(issue.id))
            except NoCapacity as e:
                logger.info(f"No capacity for {issue.id}: {e.reason}")
            except (AlreadyClaimed, LockTimeout, DependenciesNotMet) as e:
                logger.debug(f"Skipping {issue.id}: {e}")
        logger.info(f"Auto-assigned {len(assignments)} issue(s) in epic {epic_id}")
        return assignments

    # ------------------------------------------------------------------
    # Progress and completion
    # ------------------------------------------------------------------

    def report_progress(self, issue_id: str, agent_id: str, note: Optional[str] = None) -> Issue:
        with self.locks.lock(issue_id):
            issue = self._require_assignee(issue_id, agent_id)
            issue.touch()
            if issue.status == IssueStatus.CHANGES_REQUESTED:
                issue.status = IssueStatus.IN_PROGRESS
            with self._table_lock:
                self._commit_issue(issue)
        if note and issue.number is not None and self.tracker is not None:
            number = issue.number
            self.sync_external(f"progress comment on #{number}", lambda: self.tracker.add_comment(number, note))
        self._emit("issue.progress", {"issue_id": issue_id, "agent_id": agent_id})
        return issue.model_copy(deep=True)

    def report_completion(self, issue_id: str, agent_id: str, summary: Optional[str] = None) -> Issue:
        """Move the issue to review. The caller hands it to the review engine."""
        with self.locks.lock(issue_id):
            issue = self._require_assignee(issue_id, agent_id)
            if issue.status == IssueStatus.IN_REVIEW:
                return issue
            issue.status = IssueStatus.IN_REVIEW
            issue.touch()
            with self._table_lock:
                self._commit_issue(issue)
        if issue.number is not None and self.tracker is not None:
            number = issue.number
            self.sync_external(f"status of #{number}", lambda: self.tracker.set_status(number, IssueStatus.IN_REVIEW.value))
        logger.info(f"{issue_id} submitted for review by {agent_id}")
        self._emit("issue.completed", {"issue_id": issue_id, "agent_id": agent_id, "summary": summary})
        return issue.model_copy(deep=True)

    def apply_review_decision(self, record: ReviewRecord) -> bool:
        """Apply a review outcome. Returns False if the outcome was stale and discarded."""
        done = False
        with self.locks.lock(record.issue_id):
            issue = self._reload(record.issue_id)
            if issue.is_terminal or issue.status != IssueStatus.IN_REVIEW:
                logger.info(
                    f"Discarding review {record.id} for {issue.id}: issue is {issue.status.value}"
                )
                return False

            if record.decision is ReviewDecision.APPROVED:
                now = utcnow()
                issue.status = IssueStatus.DONE
                issue.completed_at = now
                issue.touch(now)
                assignment = self._close_active(issue.id, "completed", now)
                if assignment is not None:
                    duration = (now - assignment.claimed_at).total_seconds() / 60
                    self.registry.record_outcome(assignment.agent_id, True, duration)
                done = True
            elif record.decision is ReviewDecision.CHANGES_REQUESTED:
                issue.status = IssueStatus.CHANGES_REQUESTED
                issue.review_cycles += 1
                issue.touch()
            else:
                issue.needs_human = True

            with self._table_lock:
                self._commit_issue(issue)

        self._mirror_review(issue, record)
        self._emit(f"review.{record.decision.value}", {"issue_id": issue.id, "review_id": record.id})
        if done:
            self._unblock_dependents(issue)
            self._maybe_advance_epic(issue.epic_id)
        return True

    # ------------------------------------------------------------------
    # Reassignment and cancellation
    # ------------------------------------------------------------------

    def release_issue(
        self,
        issue_id: str,
        reason: str = "released",
        failed: bool = False,
        holder: Optional[str] = None,
    ) -> Optional[Assignment]:
        """Return an in-flight issue to ``open``.

        With ``holder`` set, nothing happens unless that agent still holds the issue.
        """
        with self.locks.lock(issue_id):
            issue = self._reload(issue_id)
            if issue.is_terminal:
                return None
            if holder is not None and issue.assignee != holder:
                logger.info(f"Not releasing {issue_id}: held by {issue.assignee}, not {holder}")
                return None
            assignment = self._close_active(issue_id, reason, utcnow())
            if assignment is not None and failed:
                self.registry.record_outcome(assignment.agent_id, False)
            issue.status = IssueStatus.OPEN
            issue.assignee = None
            issue.claimed_at = None
            issue.touch()
            with self._table_lock:
                self._commit_issue(issue)
        if assignment is not None and issue.number is not None and self.tracker is not None:
            number, agent_id = issue.number, assignment.agent_id
            self.sync_external(f"release claim on #{number}", lambda: self.tracker.release_claim(number, agent_id))
        self._emit("issue.released", {"issue_id": issue_id, "reason": reason})
        return assignment

    def reassign(self, issue_id: str, exclude_agent: str, reason: str = "reassigned") -> Assignment:
        """Move the issue to a different agent.

        The replacement is chosen before the current claim is released, so a
        pool with no alternative leaves the assignment untouched.

        Raises:
            NoCapacity: no other agent qualifies
        """
        self.select_agent(issue_id, exclude=[exclude_agent])
        self.release_issue(issue_id, reason=reason, failed=True, holder=exclude_agent)
        return self.assign_next(issue_id, exclude=[exclude_agent])

    def rebalance(self) -> List[Assignment]:
        """Apply the balancer's rebalance proposals for in-progress work.

        Proposals whose issue moved on since the snapshot are skipped.
        """
        self.refresh()
        requirements = {}
        for issue in self.all_issues():
            if issue.status == IssueStatus.IN_PROGRESS:
                requirements[issue.id] = issue.requirements
        snapshot = self.registry.snapshot()
        for agent in snapshot:
            agent.active_issue_ids = {i for i in agent.active_issue_ids if i in requirements}

        moved = []
        for proposal in self.balancer.propose_rebalance(snapshot, requirements):
            issue = self.get_issue(proposal.issue_id)
            if issue.status != IssueStatus.IN_PROGRESS or issue.assignee != proposal.from_agent:
                continue
            if not self.epic_machine(issue.epic_id).accepts_assignments():
                continue
            if self.release_issue(proposal.issue_id, reason="rebalanced", holder=proposal.from_agent) is None:
                continue
            try:
                moved.append(self.claim_issue(proposal.to_agent, proposal.issue_id))
            except (AlreadyClaimed, NoCapacity, LockTimeout, DependenciesNotMet) as e:
                logger.warning(f"Rebalance of {proposal.issue_id} to {proposal.to_agent} failed: {e}")
        return moved

    def close_issue(self, issue_id: str, reason: str = "closed externally") -> bool:
        """Cancel in-flight work on an externally closed issue."""
        with self.locks.lock(issue_id):
            issue = self._reload(issue_id)
            if issue.is_terminal:
                return False
            self._close_active(issue_id, "cancelled", utcnow())
            issue.status = IssueStatus.CLOSED
            issue.touch()
            with self._table_lock:
                self._commit_issue(issue)
        logger.info(f"{issue_id} closed: {reason}")
        self._emit("issue.closed", {"issue_id": issue_id, "reason": reason})
        self._maybe_advance_epic(issue.epic_id)
        return True

    def mark_needs_human(self, issue_id: str, report: str) -> None:
        with self.locks.lock(issue_id):
            issue = self._reload(issue_id)
            issue.needs_human = True
            with self._table_lock:
                self._commit_issue(issue)
        if issue.number is not None and self.tracker is not None:
            number = issue.number
            self.sync_external(f"escalate #{number}", lambda: self.tracker.mark_needs_human(number, report))
        self._emit("issue.needs_human", {"issue_id": issue_id})

    # ------------------------------------------------------------------
    # Inbound events
    # ------------------------------------------------------------------

    def apply_event(self, event: IssueEvent, force: bool = False) -> bool:
        """Apply a normalized tracker event. Returns False if it was discarded.

        ``force`` skips the freshness check (full re-sync).
        """
        if not force:
            try:
                self.freshness.check(event)
            except StaleEvent as e:
                logger.debug(str(e))
                return False

        issue = self.find_by_number(event.issue_number)
        applied = False
        if issue is None:
            epic_id = event.epic_id or _epic_from_labels(event.labels)
            if epic_id and epic_id in self._epics and event.kind is not EventKind.CLOSED:
                self.add_issue(
                    epic_id,
                    title=event.title,
                    description=event.body,
                    number=event.issue_number,
                    labels=event.labels,
                )
                applied = True
            else:
                logger.debug(f"Ignoring event for untracked issue #{event.issue_number}")
        elif event.kind is EventKind.CLOSED:
            applied = self.close_issue(issue.id)
        elif event.kind is EventKind.REOPENED:
            applied = self._reopen(issue.id)
        elif event.kind in (EventKind.EDITED, EventKind.LABELED, EventKind.UNLABELED, EventKind.CREATED):
            applied = self._refresh(issue.id, event)

        self.freshness.mark(event.issue_key, event.updated_at, event.fingerprint)
        return applied

    def process_events(self, queue: EventQueue, limit: Optional[int] = None) -> int:
        """Drain ``queue`` (up to ``limit`` events). Returns the number applied."""
        applied = 0
        processed = 0
        while limit is None or processed < limit:
            event = queue.get()
            if event is None:
                break
            try:
                if self.apply_event(event):
                    applied += 1
            finally:
                queue.done(event)
            processed += 1
        return applied

    def sync_from_tracker(self, epic_id: str, issues: Iterable[TrackerIssue], force: bool = False) -> int:
        """Fold tracker issues into the epic through the normal event path."""
        count = 0
        for tracked in issues:
            updated = tracked.updated_at or utcnow()
            known = self.find_by_number(tracked.number)
            if tracked.state == "closed":
                kind = EventKind.CLOSED
            elif known is None:
                kind = EventKind.CREATED
            else:
                kind = EventKind.EDITED
            event = IssueEvent(
                event_id=f"sync-{tracked.number}-{updated.isoformat()}",
                kind=kind,
                issue_number=tracked.number,
                epic_id=epic_id,
                title=tracked.title,
                body=tracked.body,
                labels=tracked.labels,
                state=tracked.state,
                updated_at=updated,
            )
            if self.apply_event(event, force=force):
                count += 1
        return count

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def persist_epic(self, epic: Epic) -> None:
        if self.store is not None:
            self.store.store_model(epic.id, EPIC_KEY, epic)

    def restore_epic(
        self,
        epic_id: str,
        on_commit: Optional[Callable[[Epic], None]] = None,
    ) -> EpicStateMachine:
        """Rebuild an epic, its issues and assignments from the context store."""
        if self.store is None:
            raise NotFoundError("epic", epic_id)
        epic = self.store.retrieve_model(epic_id, EPIC_KEY, Epic)
        if epic is None:
            raise NotFoundError("epic", epic_id)
        machine = EpicStateMachine(epic, on_commit=on_commit or self.persist_epic)
        self.register_epic(machine)
        issues, assignments = self.refresh_epic(epic_id)
        logger.info(
            f"Restored epic {epic_id}: {issues} issue(s), {assignments} assignment(s)"
        )
        return machine

    def refresh(self) -> None:
        """Re-read every registered epic from the context store."""
        for epic_id in self.epic_ids():
            self.refresh_epic(epic_id)

    def refresh_epic(self, epic_id: str) -> Tuple[int, int]:
        """Fold what other processes committed to the store into the tables.

        Returns the number of stored issues and assignments seen.
        """
        machine = self.epic_machine(epic_id)
        if self.store is None:
            return 0, 0
        with self._table_lock:
            epic = self.store.retrieve_model(epic_id, EPIC_KEY, Epic)
            issues = self.store.retrieve_models(epic_id, "issue:", Issue)
            assignments = self.store.retrieve_models(epic_id, "assignment:", Assignment)
            for issue in issues:
                self._adopt_issue(issue)
            for assignment in assignments:
                self._adopt_assignment(assignment)
        if epic is not None and machine.adopt(epic):
            logger.debug(f"Epic {epic_id} refreshed to v{epic.version}")
        return len(issues), len(assignments)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _require_issue(self, issue_id: str) -> Issue:
        issue = self._issues.get(issue_id)
        if issue is None:
            raise NotFoundError("issue", issue_id)
        return issue

    def _reload(self, issue_id: str) -> Issue:
        """Copy of the issue as last committed by any process.

        Mutators call this under the issue lock so their checks see claims
        made by other processes sharing the store.
        """
        with self._table_lock:
            cached = self._require_issue(issue_id)
            if self.store is not None:
                stored = self.store.retrieve_model(cached.epic_id, issue_key(issue_id), Issue)
                if stored is not None:
                    self._adopt_issue(stored)
                for assignment in self.store.retrieve_models(cached.epic_id, "assignment:", Assignment):
                    if assignment.issue_id == issue_id:
                        self._adopt_assignment(assignment)
            return self._issues[issue_id].model_copy(deep=True)

    def _adopt_issue(self, issue: Issue) -> None:
        """Caller holds ``_table_lock``."""
        self._issues[issue.id] = issue
        if issue.number is not None:
            self._by_number[issue.number] = issue.id

    def _adopt_assignment(self, assignment: Assignment) -> None:
        """Caller holds ``_table_lock``; keeps registry workload in step with the store."""
        self._assignments[assignment.id] = assignment
        issue_id = assignment.issue_id
        current = self._active_by_issue.get(issue_id)
        if assignment.active:
            if current == assignment.id:
                return
            if current is not None:
                self.registry.record_release(self._assignments[current].agent_id, issue_id)
            self._active_by_issue[issue_id] = assignment.id
            if assignment.agent_id in self.registry:
                self.registry.record_claim(assignment.agent_id, issue_id)
        elif current == assignment.id:
            del self._active_by_issue[issue_id]
            self.registry.record_release(assignment.agent_id, issue_id)

    def _require_assignee(self, issue_id: str, agent_id: str) -> Issue:
        issue = self._reload(issue_id)
        if issue.assignee != agent_id or issue.is_terminal:
            raise NotAssignee(issue_id, agent_id, issue.assignee)
        return issue

    def _ensure_claimable(self, issue: Issue) -> None:
        if issue.status != IssueStatus.OPEN or issue.assignee is not None or issue.id in self._active_by_issue:
            raise AlreadyClaimed(issue.id, holder=issue.assignee, status=issue.status.value)

    def _commit_issue(self, issue: Issue) -> None:
        """Replace the stored issue. Caller holds ``_table_lock``."""
        issue.updated_at = utcnow()
        self._issues[issue.id] = issue
        if issue.number is not None:
            self._by_number[issue.number] = issue.id
        if self.store is not None:
            self.store.store_model(issue.epic_id, issue_key(issue.id), issue)

    def _persist_assignment(self, assignment: Assignment) -> None:
        if self.store is not None:
            self.store.store_model(assignment.epic_id, assignment_key(assignment.id), assignment)

    def _close_active(self, issue_id: str, reason: str, at: datetime) -> Optional[Assignment]:
        with self._table_lock:
            assignment_id = self._active_by_issue.pop(issue_id, None)
            if assignment_id is None:
                return None
            assignment = self._assignments[assignment_id]
            assignment.closed_at = at
            assignment.close_reason = reason
            self._persist_assignment(assignment)
        self.registry.record_release(assignment.agent_id, issue_id)
        return assignment.model_copy()

    def sync_external(self, operation: str, fn: Callable[[], None]) -> bool:
        """Mirror to the tracker; on repeated failure keep local state and warn."""
        try:
            self.retry.call(fn, operation)
            return True
        except ExternalSyncFailure as e:
            logger.warning(f"{e}; continuing with local state")
            return False

    def _mirror_review(self, issue: Issue, record: ReviewRecord) -> None:
        if issue.number is None or self.tracker is None:
            return
        number = issue.number
        if record.decision is ReviewDecision.ESCALATED:
            self.sync_external(f"escalate review of #{number}", lambda: self.tracker.mark_needs_human(number, record.reason))
            return
        status = IssueStatus.DONE if record.decision is ReviewDecision.APPROVED else IssueStatus.CHANGES_REQUESTED
        self.sync_external(f"review status of #{number}", lambda: self.tracker.set_status(number, status.value))
        if issue.status == IssueStatus.DONE and issue.assignee:
            agent_id = issue.assignee
            self.sync_external(f"release claim on #{number}", lambda: self.tracker.release_claim(number, agent_id))

    def _reopen(self, issue_id: str) -> bool:
        with self.locks.lock(issue_id):
            issue = self._reload(issue_id)
            if issue.status == IssueStatus.DONE:
                # Done work stays done so dependents are never re-blocked
                logger.info(f"Ignoring reopen of completed issue {issue_id}")
                return False
            if issue.status != IssueStatus.CLOSED:
                return False
            issue.status = IssueStatus.OPEN
            issue.assignee = None
            issue.touch()
            with self._table_lock:
                self._commit_issue(issue)
        self._emit("issue.reopened", {"issue_id": issue_id})
        return True

    def _refresh(self, issue_id: str, event: IssueEvent) -> bool:
        with self.locks.lock(issue_id):
            issue = self._reload(issue_id)
            if issue.is_terminal:
                return False
            issue.title = event.title or issue.title
            issue.description = event.body or issue.description
            if event.labels != issue.labels:
                issue.labels = list(event.labels)
                requirements = WorkRequirements.from_labels(
                    event.labels,
                    issue_type=issue.requirements.issue_type,
                    estimated_minutes=issue.requirements.estimated_minutes,
                    complexity=issue.requirements.complexity,
                )
                issue.requirements = requirements
                label_priority = priority_from_labels(event.labels)
                if label_priority:
                    issue.priority = Priority(label_priority)
            with self._table_lock:
                self._commit_issue(issue)
        return True

    def _unblock_dependents(self, done_issue: Issue) -> None:
        for issue in self.issues_for_epic(done_issue.epic_id):
            if done_issue.id in issue.dependencies and issue.status == IssueStatus.OPEN:
                if not self.pending_dependencies(issue):
                    logger.info(f"{issue.id} unblocked by completion of {done_issue.id}")
                    self._emit("issue.ready", {"issue_id": issue.id, "epic_id": issue.epic_id})

    def _maybe_advance_epic(self, epic_id: str) -> None:
        machine = self.epic_machine(epic_id)
        issues = self.issues_for_epic(epic_id)
        done = sum(1 for i in issues if i.status == IssueStatus.DONE)
        if not done or machine.state is not EpicState.ACTIVE:
            return
        if all(i.is_terminal for i in issues):
            try:
                machine.transition(
                    EpicState.REVIEW,
                    event_id=f"{epic_id}:all-done:{done}",
                    reason="all issues complete",
                )
            except InvalidTransition as e:
                # Epic moved on concurrently
                logger.debug(str(e))

    def _on_epic_blocked(self, epic: Epic, record: StateTransitionRecord) -> None:
        logger.warning(f"Epic {epic.id} blocked: {record.reason or 'no reason given'}")
        if epic.external_issue is not None and self.tracker is not None:
            number = epic.external_issue
            reason = record.reason or "epic blocked"
            self.sync_external(f"mark epic #{number} blocked", lambda: self.tracker.mark_blocked(number, reason))
        self._emit("epic.blocked", {"epic_id": epic.id, "reason": record.reason})

    def _emit(self, name: str, payload: dict) -> None:
        for listener in list(self._listeners):
            try:
                listener(name, payload)
            except Exception as e:
                logger.error(f"Listener failed on {name}: {e}")


def _epic_from_labels(labels: Iterable[str]) -> Optional[str]:
    for label in labels:
        prefix, value = split_label(label)
        if prefix == "epic":
            return value.strip()
    return None
