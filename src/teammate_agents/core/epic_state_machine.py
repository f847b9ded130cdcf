"""Epic lifecycle state machine."""

import logging
import threading
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Dict, FrozenSet, List, Optional

from ..errors import EpicNotActive, InvalidTransition, VersionConflict
from .models import Epic, EpicState, StateTransitionRecord, utcnow

logger = logging.getLogger(__name__)

TRANSITIONS: Dict[EpicState, FrozenSet[EpicState]] = {
    EpicState.UNINITIALIZED: frozenset({EpicState.ACTIVE}),
    EpicState.ACTIVE: frozenset({EpicState.PAUSED, EpicState.BLOCKED, EpicState.REVIEW}),
    EpicState.PAUSED: frozenset({EpicState.ACTIVE, EpicState.ARCHIVED}),
    EpicState.BLOCKED: frozenset({EpicState.ACTIVE, EpicState.PAUSED}),
    EpicState.REVIEW: frozenset({EpicState.ACTIVE, EpicState.COMPLETED}),
    EpicState.COMPLETED: frozenset({EpicState.ARCHIVED}),
    EpicState.ARCHIVED: frozenset(),
}

# Fields that ``update`` may change; state changes go through ``transition``
UPDATABLE_FIELDS = frozenset({
    "title", "description", "objectives", "constraints", "current_phase",
    "repository", "external_issue", "labels", "metadata",
})

MAX_TRACKED_EVENTS = 1024

EnterHook = Callable[[Epic, StateTransitionRecord], None]


@dataclass
class TransitionResult:
    epic: Epic
    record: Optional[StateTransitionRecord]
    applied: bool  # False when the event id was already processed


def allowed_targets(state: EpicState) -> FrozenSet[EpicState]:
    return TRANSITIONS[EpicState(state)]


class EpicStateMachine:
    """Sole owner of one ``Epic``.

    Every mutation happens under the machine's lock and bumps the version.
    Enter hooks run once per committed transition, before the commit; a hook
    that raises aborts the transition with nothing changed.
    """

    def __init__(
        self,
        epic: Epic,
        on_commit: Optional[Callable[[Epic], None]] = None,
    ):
        self._epic = epic.model_copy(deep=True)
        self._lock = threading.RLock()
        self._hooks: Dict[EpicState, List[EnterHook]] = {}
        self._processed_events: "OrderedDict[str, StateTransitionRecord]" = OrderedDict()
        self._on_commit = on_commit
        self.on_enter(EpicState.COMPLETED, freeze_assignments)
        for record in self._epic.state_history:
            if record.event_id:
                self._remember(record.event_id, record)

    @property
    def epic_id(self) -> str:
        return self._epic.id

    @property
    def state(self) -> EpicState:
        with self._lock:
            return self._epic.state

    @property
    def version(self) -> int:
        with self._lock:
            return self._epic.version

    def snapshot(self) -> Epic:
        with self._lock:
            return self._epic.model_copy(deep=True)

    def on_enter(self, state: EpicState, hook: EnterHook) -> None:
        self._hooks.setdefault(EpicState(state), []).append(hook)

    def can_transition(self, target: EpicState) -> bool:
        with self._lock:
            return EpicState(target) in allowed_targets(self._epic.state)

    def transition(
        self,
        target: EpicState,
        event_id: Optional[str] = None,
        reason: str = "",
        triggered_by: str = "system",
        expected_version: Optional[int] = None,
    ) -> TransitionResult:
        """Move the epic to ``target``.

        Raises:
            InvalidTransition: ``target`` is not allowed from the current state
            VersionConflict: ``expected_version`` does not match
        """
        target = EpicState(target)
        with self._lock:
            epic = self._epic
            if event_id is not None and event_id in self._processed_events:
                logger.debug(f"Epic {epic.id}: event {event_id} already applied, skipping")
                return TransitionResult(epic=self.snapshot(), record=self._processed_events[event_id], applied=False)

            self._check_version(expected_version)
            allowed = allowed_targets(epic.state)
            if target not in allowed:
                raise InvalidTransition(epic.id, epic.state.value, target.value, [s.value for s in allowed])

            record = StateTransitionRecord(
                from_state=epic.state,
                to_state=target,
                event_id=event_id,
                reason=reason,
                triggered_by=triggered_by,
                version=epic.version + 1,
            )

            pending = epic.model_copy(deep=True)
            pending.state = target
            for hook in self._hooks.get(target, []):
                hook(pending, record)

            pending.version = record.version
            pending.updated_at = record.at
            pending.state_history.append(record)
            self._epic = pending
            if event_id is not None:
                self._remember(event_id, record)

            logger.info(
                f"Epic {epic.id}: {record.from_state.value} -> {target.value} "
                f"(v{record.version}, by {triggered_by})"
            )
            committed = pending.model_copy(deep=True)

        if self._on_commit:
            self._on_commit(committed)
        return TransitionResult(epic=committed, record=record, applied=True)

    def update(self, expected_version: Optional[int] = None, **changes) -> Epic:
        """Change descriptive fields; bumps the version."""
        unknown = set(changes) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update epic fields: {sorted(unknown)}")
        with self._lock:
            self._check_version(expected_version)
            if self._epic.state is EpicState.ARCHIVED:
                raise EpicNotActive(self._epic.id, self._epic.state.value, "update")
            pending = self._epic.model_copy(deep=True, update=changes)
            pending = Epic.model_validate(pending.model_dump())
            pending.version = self._epic.version + 1
            pending.updated_at = utcnow()
            self._epic = pending
            committed = pending.model_copy(deep=True)
        if self._on_commit:
            self._on_commit(committed)
        return committed

    def adopt(self, epic: Epic) -> bool:
        """Take a newer copy of the epic committed elsewhere. Returns True if adopted."""
        with self._lock:
            if epic.id != self._epic.id or epic.version <= self._epic.version:
                return False
            self._epic = epic.model_copy(deep=True)
            for record in self._epic.state_history:
                if record.event_id and record.event_id not in self._processed_events:
                    self._remember(record.event_id, record)
            return True

    def accepts_assignments(self) -> bool:
        with self._lock:
            return self._epic.state is EpicState.ACTIVE and not self._epic.assignments_frozen

    def require_assignable(self, operation: str = "assignment") -> None:
        with self._lock:
            if not (self._epic.state is EpicState.ACTIVE and not self._epic.assignments_frozen):
                raise EpicNotActive(self._epic.id, self._epic.state.value, operation)

    def _check_version(self, expected_version: Optional[int]) -> None:
        if expected_version is not None and expected_version != self._epic.version:
            raise VersionConflict(self._epic.id, expected_version, self._epic.version)

    def _remember(self, event_id: str, record: StateTransitionRecord) -> None:
        self._processed_events[event_id] = record
        while len(self._processed_events) > MAX_TRACKED_EVENTS:
            self._processed_events.popitem(last=False)


def freeze_assignments(epic: Epic, record: StateTransitionRecord) -> None:
    """Enter-hook for ``completed``: no further assignments."""
    epic.assignments_frozen = True
