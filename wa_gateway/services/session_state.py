from enum import Enum


class SessionState(str, Enum):
    CONNECTING = "connecting"
    ACTIVE = "active"
    INACTIVE = "inactive"


VALID_TRANSITIONS = {
    SessionState.CONNECTING: [SessionState.ACTIVE, SessionState.INACTIVE, SessionState.CONNECTING],
    SessionState.ACTIVE: [SessionState.CONNECTING, SessionState.INACTIVE],
    SessionState.INACTIVE: [SessionState.CONNECTING],
}


class InvalidTransitionError(Exception):
    def __init__(self, from_state: SessionState, to_state: SessionState):
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(f"Invalid transition: {from_state.value} -> {to_state.value}")


def can_transition(from_state: SessionState, to_state: SessionState) -> bool:
    """Check if transition is valid."""
    return to_state in VALID_TRANSITIONS.get(from_state, [])


def transition(from_state: SessionState, to_state: SessionState) -> SessionState:
    """Perform state transition. Raises InvalidTransitionError if not allowed."""
    if not can_transition(from_state, to_state):
        raise InvalidTransitionError(from_state, to_state)
    return to_state


def connection_opened(current_state: SessionState) -> SessionState:
    """Transport reported an open connection."""
    return transition(current_state, SessionState.ACTIVE)


def connection_dropped(current_state: SessionState) -> SessionState:
    """Transient disconnect; a reconnect will follow."""
    return transition(current_state, SessionState.CONNECTING)


def logged_out(current_state: SessionState) -> SessionState:
    """Authenticated logout, or a restart that could not be completed."""
    return transition(current_state, SessionState.INACTIVE)


def restarting(current_state: SessionState) -> SessionState:
    """A new transport handle is being opened."""
    return transition(current_state, SessionState.CONNECTING)
