"""Session state machine for ralph-engine.

Manages legal status transitions for a session and enforces the state graph.
Sessions flow: initialized → running → (paused | verify | completed | aborted)
and can be resumed from paused, verify, aborted or crashed. ``crashed`` is
never entered by the loop itself; it is reported when a session claims to be
running but its owning process is gone.
"""

from __future__ import annotations

import logging
import os
from datetime import UTC, datetime
from typing import Optional

from ralph_engine.core.exceptions import SessionStateError
from ralph_engine.core.models import DecisionAction, SessionState, SessionStatus

logger = logging.getLogger("ralph.orchestrator.session_router")

# Legal state transitions: each key maps to the set of states it can move to
VALID_TRANSITIONS: dict[SessionStatus, set[SessionStatus]] = {
    SessionStatus.INITIALIZED: {SessionStatus.RUNNING, SessionStatus.ABORTED},
    SessionStatus.RUNNING: {
        SessionStatus.RUNNING,
        SessionStatus.PAUSED,
        SessionStatus.VERIFY,
        SessionStatus.COMPLETED,
        SessionStatus.ABORTED,
        SessionStatus.CRASHED,
    },
    SessionStatus.PAUSED: {SessionStatus.RUNNING, SessionStatus.ABORTED},
    SessionStatus.VERIFY: {SessionStatus.RUNNING, SessionStatus.COMPLETED, SessionStatus.ABORTED},
    SessionStatus.CRASHED: {SessionStatus.RUNNING, SessionStatus.ABORTED},
    SessionStatus.ABORTED: {SessionStatus.RUNNING},
    SessionStatus.COMPLETED: set(),  # Terminal, start a new session
}

RESUMABLE: frozenset[SessionStatus] = frozenset({
    SessionStatus.INITIALIZED,
    SessionStatus.PAUSED,
    SessionStatus.VERIFY,
    SessionStatus.ABORTED,
    SessionStatus.CRASHED,
})

# Decision action -> status the loop moves to
ACTION_STATUS: dict[DecisionAction, SessionStatus] = {
    DecisionAction.CONTINUE: SessionStatus.RUNNING,
    DecisionAction.PAUSE: SessionStatus.PAUSED,
    DecisionAction.VERIFY: SessionStatus.VERIFY,
    DecisionAction.COMPLETE: SessionStatus.COMPLETED,
    DecisionAction.ABORT: SessionStatus.ABORTED,
}


def can_transition(from_status: SessionStatus, to_status: SessionStatus) -> bool:
    """Check if a transition is legal."""
    return to_status in VALID_TRANSITIONS.get(from_status, set())


def transition(
    state: SessionState,
    new_status: SessionStatus,
    reason: Optional[str] = None,
) -> SessionState:
    """Return ``state`` moved to ``new_status``.

    Raises:
        SessionStateError: If the transition is not allowed.
    """
    if not can_transition(state.status, new_status):
        raise SessionStateError(
            f"Invalid transition: {state.status.value} → {new_status.value} "
            f"for session {state.session_id}"
        )

    if state.status != new_status:
        log_msg = f"Session {state.session_id}: {state.status.value} → {new_status.value}"
        if reason:
            log_msg += f" ({reason})"
        logger.info(log_msg)

    return state.model_copy(update={"status": new_status, "updated_at": datetime.now(UTC)})


def is_process_alive(pid: Optional[int]) -> bool:
    """Whether the process behind a PID recorded by the owning loop still exists."""
    if not pid or pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but owned by another user
        return True
    return True


def effective_status(state: SessionState, owner_pid: Optional[int]) -> SessionStatus:
    """Status as observed from outside: a running session with a dead owner is crashed."""
    if state.status == SessionStatus.RUNNING and not is_process_alive(owner_pid):
        return SessionStatus.CRASHED
    return state.status
