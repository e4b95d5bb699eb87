from enum import Enum


class SessionState(str, Enum):
    INITIALIZING = "INITIALIZING"
    QR_READY = "QR_READY"
    AUTHENTICATED = "AUTHENTICATED"
    READY = "READY"
    DISCONNECTED = "DISCONNECTED"


VALID_TRANSITIONS = {
    SessionState.INITIALIZING: [SessionState.QR_READY, SessionState.DISCONNECTED],
    SessionState.QR_READY: [SessionState.AUTHENTICATED, SessionState.DISCONNECTED],
    SessionState.AUTHENTICATED: [SessionState.READY, SessionState.DISCONNECTED],
    SessionState.READY: [SessionState.DISCONNECTED],
    # Leaving DISCONNECTED is only done through an explicit start/restart.
    SessionState.DISCONNECTED: [SessionState.INITIALIZING],
}


class InvalidTransitionError(Exception):
    def __init__(self, from_state: SessionState, to_state: SessionState):
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(f"Invalid transition: {from_state.value} -> {to_state.value}")


def can_transition(from_state: SessionState, to_state: SessionState) -> bool:
    """Check if transition is valid."""
    allowed = VALID_TRANSITIONS.get(from_state, [])
    return to_state in allowed


def transition(from_state: SessionState, to_state: SessionState) -> SessionState:
    """Perform state transition. Raises InvalidTransitionError if not allowed."""
    if not can_transition(from_state, to_state):
        raise InvalidTransitionError(from_state, to_state)
    return to_state


def is_live(state: SessionState) -> bool:
    return state != SessionState.DISCONNECTED


def reinitialize(current_state: SessionState) -> SessionState:
    """Explicit restart of a disconnected session."""
    return transition(current_state, SessionState.INITIALIZING)


def disconnect(current_state: SessionState) -> SessionState:
    return transition(current_state, SessionState.DISCONNECTED)
