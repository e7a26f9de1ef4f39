"""Tests for ralph_engine/orchestrator/session_router.py: status state machine."""

import os

import pytest

from ralph_engine.core.exceptions import SessionStateError
from ralph_engine.core.models import DecisionAction, SessionState, SessionStatus
from ralph_engine.orchestrator.session_router import (
    ACTION_STATUS,
    RESUMABLE,
    can_transition,
    effective_status,
    is_process_alive,
    transition,
)


class TestTransitions:
    def test_initialized_to_running(self):
        state = transition(SessionState(), SessionStatus.RUNNING)
        assert state.status == SessionStatus.RUNNING

    def test_running_self_transition(self):
        state = SessionState(status=SessionStatus.RUNNING)
        assert transition(state, SessionStatus.RUNNING).status == SessionStatus.RUNNING

    def test_completed_is_terminal(self):
        state = SessionState(status=SessionStatus.COMPLETED)
        for target in SessionStatus:
            assert can_transition(SessionStatus.COMPLETED, target) is False
        with pytest.raises(SessionStateError, match="Invalid transition"):
            transition(state, SessionStatus.RUNNING)

    def test_paused_cannot_complete(self):
        state = SessionState(status=SessionStatus.PAUSED)
        with pytest.raises(SessionStateError):
            transition(state, SessionStatus.COMPLETED)

    def test_resumable_statuses_can_run(self):
        for status in RESUMABLE:
            assert can_transition(status, SessionStatus.RUNNING)

    def test_transition_returns_copy(self):
        state = SessionState()
        moved = transition(state, SessionStatus.RUNNING, reason="start")
        assert state.status == SessionStatus.INITIALIZED
        assert moved.updated_at >= state.updated_at


def test_every_action_maps_to_a_running_successor():
    for action in DecisionAction:
        assert can_transition(SessionStatus.RUNNING, ACTION_STATUS[action])


class TestLiveness:
    def test_own_process_alive(self):
        assert is_process_alive(os.getpid()) is True

    def test_missing_pid(self):
        assert is_process_alive(None) is False
        assert is_process_alive(0) is False

    def test_running_with_dead_owner_is_crashed(self, monkeypatch):
        monkeypatch.setattr(
            "ralph_engine.orchestrator.session_router.is_process_alive", lambda pid: False,
        )
        state = SessionState(status=SessionStatus.RUNNING)
        assert effective_status(state, 12345) == SessionStatus.CRASHED

    def test_running_with_live_owner(self):
        state = SessionState(status=SessionStatus.RUNNING)
        assert effective_status(state, os.getpid()) == SessionStatus.RUNNING

    def test_paused_is_reported_as_is(self):
        state = SessionState(status=SessionStatus.PAUSED)
        assert effective_status(state, None) == SessionStatus.PAUSED
