"""Tests for EpicStateMachine — transition table, idempotency and version checks."""

import threading

import pytest

from teammate_agents.core.epic_state_machine import TRANSITIONS, EpicStateMachine
from teammate_agents.core.models import Epic, EpicState
from teammate_agents.errors import EpicNotActive, InvalidTransition, VersionConflict


def _make_machine(state: EpicState = EpicState.UNINITIALIZED, **kwargs) -> EpicStateMachine:
    return EpicStateMachine(Epic(id="epic-9", title="Search revamp", state=state), **kwargs)


def _all_pairs():
    for source in EpicState:
        for target in EpicState:
            yield source, target


class TestTransitionTable:
    @pytest.mark.parametrize("source,target", list(_all_pairs()))
    def test_only_listed_transitions_succeed(self, source, target):
        machine = _make_machine(source)

        if target in TRANSITIONS[source]:
            result = machine.transition(target)
            assert result.applied is True
            assert machine.state is target
        else:
            with pytest.raises(InvalidTransition):
                machine.transition(target)
            assert machine.state is source
            assert machine.version == 0

    def test_archived_is_absorbing(self):
        machine = _make_machine(EpicState.ARCHIVED)

        for target in EpicState:
            assert machine.can_transition(target) is False

    def test_invalid_transition_lists_allowed_targets(self):
        machine = _make_machine(EpicState.ACTIVE)

        with pytest.raises(InvalidTransition) as exc_info:
            machine.transition(EpicState.COMPLETED)

        assert exc_info.value.allowed == ["blocked", "paused", "review"]

    def test_full_lifecycle_records_history(self):
        machine = _make_machine()
        for target in (EpicState.ACTIVE, EpicState.REVIEW, EpicState.COMPLETED, EpicState.ARCHIVED):
            machine.transition(target, triggered_by="cli")

        epic = machine.snapshot()
        assert epic.version == 4
        assert [r.to_state for r in epic.state_history] == [
            EpicState.ACTIVE, EpicState.REVIEW, EpicState.COMPLETED, EpicState.ARCHIVED,
        ]
        assert [r.version for r in epic.state_history] == [1, 2, 3, 4]


class TestIdempotency:
    def test_duplicate_event_id_applies_once(self):
        machine = _make_machine()

        first = machine.transition(EpicState.ACTIVE, event_id="evt-1")
        second = machine.transition(EpicState.ACTIVE, event_id="evt-1")

        assert first.applied is True
        assert second.applied is False
        assert second.record == first.record
        assert machine.version == 1

    def test_restored_history_remembers_event_ids(self):
        machine = _make_machine()
        machine.transition(EpicState.ACTIVE, event_id="evt-1")

        restored = EpicStateMachine(machine.snapshot())

        assert restored.transition(EpicState.ACTIVE, event_id="evt-1").applied is False

    def test_concurrent_duplicates_apply_once(self):
        machine = _make_machine(EpicState.ACTIVE)
        barrier = threading.Barrier(8)
        results = []

        def worker():
            barrier.wait()
            results.append(machine.transition(EpicState.PAUSED, event_id="pause-1").applied)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count(True) == 1
        assert machine.version == 1


class TestVersioning:
    def test_stale_expected_version_conflicts(self):
        machine = _make_machine(EpicState.ACTIVE)
        machine.update(title="Search revamp v2")

        with pytest.raises(VersionConflict) as exc_info:
            machine.transition(EpicState.PAUSED, expected_version=0)

        assert exc_info.value.actual == 1
        assert machine.state is EpicState.ACTIVE

    def test_update_bumps_version_and_applies_fields(self):
        machine = _make_machine(EpicState.ACTIVE)

        epic = machine.update(expected_version=0, current_phase="design", objectives=["ship it"])

        assert epic.version == 1
        assert epic.current_phase == "design"
        assert epic.objectives == ["ship it"]

    def test_update_rejects_state_and_unknown_fields(self):
        machine = _make_machine(EpicState.ACTIVE)

        with pytest.raises(ValueError, match="state"):
            machine.update(state=EpicState.ARCHIVED)

    def test_archived_epic_cannot_be_updated(self):
        machine = _make_machine(EpicState.ARCHIVED)

        with pytest.raises(EpicNotActive):
            machine.update(title="too late")

    def test_commit_callback_sees_each_version(self):
        seen = []
        machine = _make_machine(on_commit=lambda epic: seen.append(epic.version))

        machine.transition(EpicState.ACTIVE)
        machine.update(description="more detail")

        assert seen == [1, 2]


class TestHooks:
    def test_completed_freezes_assignments(self):
        machine = _make_machine(EpicState.REVIEW)

        machine.transition(EpicState.COMPLETED)

        assert machine.snapshot().assignments_frozen is True
        assert machine.accepts_assignments() is False
        with pytest.raises(EpicNotActive):
            machine.require_assignable()

    def test_failing_hook_aborts_transition(self):
        machine = _make_machine(EpicState.ACTIVE)

        def refuse(epic, record):
            raise RuntimeError("tracker down")

        machine.on_enter(EpicState.BLOCKED, refuse)

        with pytest.raises(RuntimeError):
            machine.transition(EpicState.BLOCKED)

        assert machine.state is EpicState.ACTIVE
        assert machine.version == 0

    @pytest.mark.parametrize("state", [EpicState.PAUSED, EpicState.BLOCKED, EpicState.REVIEW])
    def test_only_active_accepts_assignments(self, state):
        assert _make_machine(state).accepts_assignments() is False
