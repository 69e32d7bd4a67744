"""
Unit tests for the room and tournament state machines.
Tests all state transitions, guards, phase derivation and helper methods.
"""
from datetime import datetime
from types import SimpleNamespace

import pytest
from shared.state_machine import (
    RoomStateMachine,
    RoomState,
    RoomPhase,
    TournamentStateMachine,
    TournamentState,
    TransitionError,
    quorum_guard,
    room_phase
)


class TestStateEnums:
    """Tests for state enums."""

    def test_room_states(self):
        """All expected room states should exist."""
        assert RoomState.WAITING.value == "waiting"
        assert RoomState.ACTIVE.value == "active"
        assert RoomState.COMPLETED.value == "completed"

    def test_tournament_states(self):
        """All expected tournament states should exist."""
        assert TournamentState.REGISTERING.value == "registering"
        assert TournamentState.ONGOING.value == "ongoing"
        assert TournamentState.COMPLETED.value == "completed"

    def test_state_is_string_enum(self):
        """States should compare equal to their stored strings."""
        assert RoomState.WAITING == "waiting"


class TestTransitionError:
    """Tests for TransitionError exception."""

    def test_error_attributes(self):
        """TransitionError should have from_state and to_state."""
        error = TransitionError("waiting", "completed")
        assert error.from_state == "waiting"
        assert error.to_state == "completed"

    def test_default_reason(self):
        """Default reason should mention both states."""
        error = TransitionError("waiting", "active")
        assert "waiting" in str(error)
        assert "active" in str(error)

    def test_custom_reason(self):
        """Custom reason should be used if provided."""
        error = TransitionError("waiting", "active", "Not enough people")
        assert str(error) == "Not enough people"
        assert error.reason == "Not enough people"


class TestRoomStateMachine:
    """Tests for RoomStateMachine transitions."""

    def test_default_initial_state(self):
        """Rooms start out waiting."""
        assert RoomStateMachine().state == RoomState.WAITING

    def test_start_moves_to_active(self):
        """Start should move a waiting room to active."""
        sm = RoomStateMachine()
        assert sm.transition('start') == RoomState.ACTIVE

    def test_countdown_is_a_self_loop(self):
        """Countdown and its cancellation keep the room waiting."""
        sm = RoomStateMachine()
        sm.transition('countdown')
        assert sm.state == RoomState.WAITING
        sm.transition('cancel_countdown')
        assert sm.state == RoomState.WAITING

    def test_begin_keeps_room_active(self):
        """Beginning the discussion should keep the room active."""
        sm = RoomStateMachine(initial_state=RoomState.ACTIVE)
        sm.transition('begin')
        assert sm.state == RoomState.ACTIVE

    def test_end_from_waiting_and_active(self):
        """Should allow ending from waiting and active."""
        for state in (RoomState.WAITING, RoomState.ACTIVE):
            sm = RoomStateMachine(initial_state=state)
            assert sm.transition('end') == RoomState.COMPLETED

    def test_completed_is_terminal(self):
        """No action leaves the completed state."""
        sm = RoomStateMachine(initial_state=RoomState.COMPLETED)
        for action in ('start', 'end', 'begin', 'countdown'):
            with pytest.raises(TransitionError):
                sm.transition(action)

    def test_cannot_start_twice(self):
        """Should raise TransitionError when starting twice."""
        sm = RoomStateMachine(initial_state=RoomState.ACTIVE)
        with pytest.raises(TransitionError):
            sm.transition('start')

    def test_start_guard_blocks_without_quorum(self):
        """Start guard should fail when members are below the requirement."""
        sm = RoomStateMachine()
        with pytest.raises(TransitionError) as exc:
            sm.transition('start', {'members': 1, 'required': 2})
        assert "Guard condition failed" in str(exc.value)
        assert sm.state == RoomState.WAITING

    def test_start_guard_passes_with_quorum(self):
        """Start guard should pass once quorum is met."""
        sm = RoomStateMachine()
        sm.transition('start', {'members': 2, 'required': 2})
        assert sm.state == RoomState.ACTIVE

    def test_guard_skipped_without_context(self):
        """Guards only run when a context is supplied."""
        sm = RoomStateMachine()
        sm.transition('start')
        assert sm.state == RoomState.ACTIVE

    def test_history_records_transitions(self):
        """Should record each transition in history."""
        sm = RoomStateMachine()
        sm.transition('start')
        sm.transition('end')
        assert sm.get_history() == [
            (RoomState.WAITING, 'start', RoomState.ACTIVE),
            (RoomState.ACTIVE, 'end', RoomState.COMPLETED),
        ]

    def test_allowed_actions(self):
        """Should list the actions allowed per state."""
        sm = RoomStateMachine(initial_state=RoomState.ACTIVE)
        assert sm.can_perform('transcribe')
        assert not sm.can_perform('start')

    def test_from_state_string(self):
        """Should build a machine from a stored status string."""
        assert RoomStateMachine.from_state_string("active").state == RoomState.ACTIVE
        assert RoomStateMachine.from_state_string("bogus").state == RoomState.WAITING


class TestQuorumGuard:
    """Tests for the quorum guard."""

    def test_defaults(self):
        """An empty context requires one member and has none."""
        assert quorum_guard({}) is False

    def test_threshold(self):
        """Quorum guard should compare members against the minimum."""
        assert quorum_guard({'members': 3, 'required': 3}) is True
        assert quorum_guard({'members': 2, 'required': 3}) is False


class TestTournamentStateMachine:
    """Tests for TournamentStateMachine transitions."""

    def test_default_initial_state(self):
        """New tournaments should start in registering."""
        assert TournamentStateMachine().state == TournamentState.REGISTERING

    def test_full_lifecycle(self):
        """Should walk registering, ongoing, completed."""
        sm = TournamentStateMachine()
        sm.transition('start')
        assert sm.state == TournamentState.ONGOING
        sm.transition('complete')
        assert sm.state == TournamentState.COMPLETED

    def test_reopen_registration(self):
        """Should allow reopening registration from ongoing."""
        sm = TournamentStateMachine(initial_state=TournamentState.ONGOING)
        sm.transition('reopen')
        assert sm.state == TournamentState.REGISTERING

    def test_completed_is_terminal(self):
        """Completed should accept no further transitions."""
        sm = TournamentStateMachine(initial_state=TournamentState.COMPLETED)
        with pytest.raises(TransitionError):
            sm.transition('reopen')

    def test_action_to_target(self):
        """action_to should find the action leading to a state."""
        sm = TournamentStateMachine()
        assert sm.action_to(TournamentState.ONGOING) == 'start'
        assert sm.action_to(TournamentState.COMPLETED) == 'complete'
        assert sm.action_to(TournamentState.REGISTERING) is None

    def test_delete_only_while_registering(self):
        """Delete should be allowed only while registering."""
        assert TournamentStateMachine().can_perform('delete')
        assert not TournamentStateMachine(initial_state=TournamentState.ONGOING).can_perform('delete')

    def test_no_grouping_after_completion(self):
        """Should block grouping once completed."""
        sm = TournamentStateMachine(initial_state=TournamentState.COMPLETED)
        assert not sm.can_perform('generate_groups')
        assert sm.can_perform('score')


class TestRoomPhase:
    """Tests for room_phase derivation."""

    def _room(self, **fields):
        defaults = dict(status='waiting', started_at=None, countdown_started_at=None)
        defaults.update(fields)
        return SimpleNamespace(**defaults)

    def test_waiting(self):
        """Waiting room without countdown should be in the waiting phase."""
        assert room_phase(self._room()) == RoomPhase.WAITING

    def test_countdown(self):
        """Should report countdown while one is running."""
        room = self._room(countdown_started_at=datetime(2025, 1, 1))
        assert room_phase(room) == RoomPhase.COUNTDOWN

    def test_prep_before_discussion_starts(self):
        """Active room without started_at should be in prep."""
        assert room_phase(self._room(status='active')) == RoomPhase.PREP

    def test_discussion(self):
        """Should report discussion once started_at is set."""
        room = self._room(status='active', started_at=datetime(2025, 1, 1))
        assert room_phase(room) == RoomPhase.DISCUSSION

    def test_completed(self):
        """Completed room should be in the completed phase."""
        room = self._room(status='completed', started_at=datetime(2025, 1, 1))
        assert room_phase(room) == RoomPhase.COMPLETED
