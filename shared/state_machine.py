from enum import Enum
from typing import Optional, Callable, List, Type
from dataclasses import dataclass


class RoomState(str, Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"


class RoomPhase(str, Enum):
    """Finer-grained view of a room derived from its status and timestamps."""
    WAITING = "waiting"
    COUNTDOWN = "countdown"
    PREP = "prep"
    DISCUSSION = "discussion"
    COMPLETED = "completed"


class TournamentState(str, Enum):
    REGISTERING = "registering"
    ONGOING = "ongoing"
    COMPLETED = "completed"


class TransitionError(Exception):
    def __init__(self, from_state: str, to_state: str, reason: str = None):
        self.from_state = from_state
        self.to_state = to_state
        self.reason = reason or f"Cannot transition from {from_state} to {to_state}"
        super().__init__(self.reason)


@dataclass
class Transition:
    from_state: Enum
    to_state: Enum
    action: str
    guard: Optional[Callable] = None


class StateMachine:
    STATE_ENUM: Type[Enum] = None
    INITIAL_STATE: Enum = None
    TRANSITIONS: List[Transition] = []
    ALLOWED_ACTIONS: dict = {}

    def __init__(self, initial_state: Enum = None):
        self._state = initial_state if initial_state is not None else self.INITIAL_STATE
        self._history: List[tuple] = []

    @property
    def state(self):
        return self._state

    @property
    def allowed_actions(self) -> List[str]:
        return self.ALLOWED_ACTIONS.get(self._state, [])

    def can_transition(self, action: str) -> bool:
        for t in self.TRANSITIONS:
            if t.from_state == self._state and t.action == action:
                return True
        return False

    def can_perform(self, action: str) -> bool:
        return action in self.allowed_actions

    def transition(self, action: str, guard_context: dict = None):
        for t in self.TRANSITIONS:
            if t.from_state == self._state and t.action == action:
                if t.guard and guard_context is not None:
                    if not t.guard(guard_context):
                        raise TransitionError(
                            self._state.value,
                            t.to_state.value,
                            f"Guard condition failed for action '{action}'"
                        )

                old_state = self._state
                self._state = t.to_state
                self._history.append((old_state, action, self._state))
                return self._state

        raise TransitionError(
            self._state.value,
            "unknown",
            f"No valid transition for action '{action}' from state '{self._state.value}'"
        )

    def action_to(self, target) -> Optional[str]:
        """First action leading from the current state to ``target``."""
        for t in self.TRANSITIONS:
            if t.from_state == self._state and t.to_state == target and t.from_state != t.to_state:
                return t.action
        return None

    def get_history(self) -> List[tuple]:
        return self._history.copy()

    @classmethod
    def from_state_string(cls, state_str: str) -> "StateMachine":
        try:
            state = cls.STATE_ENUM(state_str)
        except ValueError:
            state = cls.INITIAL_STATE
        return cls(initial_state=state)


def quorum_guard(context: dict) -> bool:
    return context.get("members", 0) >= context.get("required", 1)


class RoomStateMachine(StateMachine):
    STATE_ENUM = RoomState
    INITIAL_STATE = RoomState.WAITING

    TRANSITIONS = [
        Transition(RoomState.WAITING, RoomState.WAITING, "countdown"),
        Transition(RoomState.WAITING, RoomState.WAITING, "cancel_countdown"),
        Transition(RoomState.WAITING, RoomState.ACTIVE, "start", guard=quorum_guard),
        Transition(RoomState.WAITING, RoomState.COMPLETED, "end"),
        Transition(RoomState.ACTIVE, RoomState.ACTIVE, "begin"),
        Transition(RoomState.ACTIVE, RoomState.COMPLETED, "end"),
    ]

    ALLOWED_ACTIONS = {
        RoomState.WAITING: ["join", "leave", "countdown", "cancel_countdown", "start", "end"],
        RoomState.ACTIVE: ["join", "leave", "begin", "transcribe", "end"],
        RoomState.COMPLETED: ["view"],
    }


class TournamentStateMachine(StateMachine):
    STATE_ENUM = TournamentState
    INITIAL_STATE = TournamentState.REGISTERING

    TRANSITIONS = [
        Transition(TournamentState.REGISTERING, TournamentState.ONGOING, "start"),
        Transition(TournamentState.REGISTERING, TournamentState.COMPLETED, "complete"),
        Transition(TournamentState.ONGOING, TournamentState.REGISTERING, "reopen"),
        Transition(TournamentState.ONGOING, TournamentState.COMPLETED, "complete"),
    ]

    ALLOWED_ACTIONS = {
        TournamentState.REGISTERING: ["register", "generate_groups", "edit_group", "score", "start", "complete", "delete"],
        TournamentState.ONGOING: ["join", "generate_groups", "edit_group", "score", "reopen", "complete"],
        TournamentState.COMPLETED: ["view", "score"],
    }


def room_phase(room) -> RoomPhase:
    """Derive the phase of a room-like object from its status and timestamps."""
    if room.status == RoomState.COMPLETED.value:
        return RoomPhase.COMPLETED
    if room.status == RoomState.ACTIVE.value:
        return RoomPhase.DISCUSSION if room.started_at else RoomPhase.PREP
    if room.countdown_started_at:
        return RoomPhase.COUNTDOWN
    return RoomPhase.WAITING
