"""Tests for ralph_engine/workflow/session.py: operator lifecycle commands."""

import os
import signal
from types import SimpleNamespace

import pytest

from ralph_engine.core.exceptions import PlanParseError, SessionLockedError, SessionStateError
from ralph_engine.core.models import HealthState, SessionStatus, TestBaseline, TestTrend
from ralph_engine.state.store import FileStateStore
from ralph_engine.tools.test_runner import TestRunResult
from ralph_engine.workflow import SessionManager, format_status_report

OTHER_PID = 424242


@pytest.fixture
def live_pids(monkeypatch):
    """Pids reported alive by the liveness check; everything else is dead."""
    alive: set[int] = set()

    def is_alive(pid):
        return pid in alive

    monkeypatch.setattr("ralph_engine.workflow.session.is_process_alive", is_alive)
    monkeypatch.setattr("ralph_engine.orchestrator.session_router.is_process_alive", is_alive)
    return alive


@pytest.fixture
def kills():
    return []


@pytest.fixture
def kill(kills, live_pids):
    """Records signals; the signalled process exits at once."""
    def _kill(pid, sig):
        kills.append((pid, sig))
        live_pids.discard(pid)
    return _kill


@pytest.fixture
def manager(state_dir, config, kill):
    store = FileStateStore(state_dir)
    return SessionManager(store, config, plan_path=store.plan_path, kill=kill)


def _baseline_runner(passed=False, exit_code=1, output="2 failed, 5 passed"):
    result = TestRunResult(passed=passed, output=output, exit_code=exit_code, duration_seconds=0.5)
    return SimpleNamespace(run=lambda: result)


def _set_status(manager, status):
    state = manager.load().model_copy(update={"status": status})
    manager.store.save(state)
    return state


class TestStart:
    def test_creates_session_from_plan(self, manager):
        state = manager.start()
        assert state.status == SessionStatus.INITIALIZED
        assert state.task == "Add a health endpoint to the API service."
        assert [c.number for c in state.criteria] == [1, 2, 3]
        assert len(state.steps) == 2
        assert len(state.backlog) == 1
        assert manager.load() == state

    def test_clears_stale_operator_channels(self, manager):
        manager.store.write_urgent("old news")
        manager.store.request_pause()
        manager.start()
        assert manager.store.read_urgent() is None
        assert manager.store.pause_requested() is False

    def test_refuses_to_replace_paused_session(self, manager):
        manager.start()
        _set_status(manager, SessionStatus.PAUSED)
        with pytest.raises(SessionStateError, match="status: paused"):
            manager.start()

    def test_force_archives_paused_session(self, manager):
        first = manager.start()
        _set_status(manager, SessionStatus.PAUSED)
        second = manager.start(force=True)
        assert second.session_id != first.session_id
        archived = list((manager.store.state_dir / "archive").iterdir())
        assert len(archived) == 1
        assert archived[0].name.endswith(first.session_id)

    def test_completed_session_archived_without_force(self, manager):
        manager.start()
        _set_status(manager, SessionStatus.COMPLETED)
        assert manager.start().status == SessionStatus.INITIALIZED

    def test_crashed_session_blocks(self, manager):
        manager.start()
        _set_status(manager, SessionStatus.RUNNING)
        manager.store.acquire_owner(OTHER_PID)
        with pytest.raises(SessionStateError, match="status: crashed"):
            manager.start()

    def test_live_owner_locks(self, manager, live_pids):
        manager.start()
        manager.store.acquire_owner(OTHER_PID)
        live_pids.add(OTHER_PID)
        with pytest.raises(SessionLockedError) as exc_info:
            manager.start(force=True)
        assert exc_info.value.pid == OTHER_PID

    def test_failing_baseline_recorded(self, state_dir, config, kill):
        store = FileStateStore(state_dir)
        manager = SessionManager(store, config, plan_path=store.plan_path, test_runner=_baseline_runner(), kill=kill)
        state = manager.start()
        assert state.test_baseline.passed is False
        assert (state.test_baseline.passed_count, state.test_baseline.failed_count) == (5, 2)
        assert state.last_test_output == "2 failed, 5 passed"
        assert manager.status_report().test_baseline == state.test_baseline
        text = format_status_report(manager.status_report())
        assert "Tests:      baseline failed (exit 1)" in text

    def test_baseline_runner_error_records_nothing(self, state_dir, config, kill):
        def explode():
            raise OSError("no shell")

        store = FileStateStore(state_dir)
        runner = SimpleNamespace(run=explode)
        manager = SessionManager(store, config, plan_path=store.plan_path, test_runner=runner, kill=kill)
        state = manager.start()
        assert state.test_baseline is None
        assert state.status == SessionStatus.INITIALIZED

    def test_missing_plan(self, manager):
        manager.plan_path.unlink()
        with pytest.raises(PlanParseError):
            manager.start()


class TestResume:
    def test_no_session(self, manager):
        with pytest.raises(SessionStateError, match="No active session"):
            manager.prepare_resume()

    def test_completed_cannot_resume(self, manager):
        manager.start()
        _set_status(manager, SessionStatus.COMPLETED)
        with pytest.raises(SessionStateError, match="completed"):
            manager.prepare_resume()

    def test_reset_health(self, manager):
        state = manager.start()
        manager.store.save(state.model_copy(update={
            "status": SessionStatus.ABORTED,
            "health": HealthState(consecutive_errors=3, tripped=True, trip_reason="x"),
        }))
        resumed = manager.prepare_resume(reset_health_counters=True)
        assert resumed.health == HealthState()
        assert manager.load().health.tripped is False

    def test_keeps_health_by_default(self, manager):
        state = manager.start()
        manager.store.save(state.model_copy(update={"health": HealthState(consecutive_no_change=2)}))
        assert manager.prepare_resume().health.consecutive_no_change == 2

    def test_reloads_missing_criteria(self, manager):
        state = manager.start()
        manager.store.save(state.model_copy(update={"criteria": []}))
        assert len(manager.prepare_resume().criteria) == 3

    def test_clears_urgent_and_pause(self, manager):
        manager.start()
        manager.inject("stale")
        manager.store.request_pause()
        manager.prepare_resume()
        assert manager.show_injection() is None
        assert manager.store.pause_requested() is False

    def test_crashed_session_resumes(self, manager):
        manager.start()
        _set_status(manager, SessionStatus.RUNNING)
        manager.store.acquire_owner(OTHER_PID)
        assert manager.prepare_resume().status == SessionStatus.RUNNING


class TestOwnership:
    def test_lock_held_and_released(self, manager):
        manager.start()
        with manager.ownership(pid=OTHER_PID):
            assert manager.store.owner_pid() == OTHER_PID
        assert manager.store.owner_pid() is None

    def test_own_pid_does_not_lock(self, manager, live_pids):
        manager.start()
        manager.store.acquire_owner(os.getpid())
        live_pids.add(os.getpid())
        with manager.ownership():
            pass

    def test_stale_lock_replaced(self, manager):
        manager.start()
        manager.store.acquire_owner(OTHER_PID)
        with manager.ownership(pid=1234):
            assert manager.store.owner_pid() == 1234
        assert manager.store.owner_pid() is None

    def test_malformed_lock_replaced(self, manager):
        manager.start()
        (manager.store.state_dir / ".loop.pid").write_text("not-a-pid\n")
        with manager.ownership(pid=1234):
            assert manager.store.owner_pid() == 1234
        assert manager.store.owner_pid() is None

    def test_live_foreign_lock_refused(self, manager, live_pids):
        manager.start()
        manager.store.acquire_owner(OTHER_PID)
        live_pids.add(OTHER_PID)
        with pytest.raises(SessionLockedError) as exc_info:
            with manager.ownership(pid=1234):
                pass
        assert exc_info.value.pid == OTHER_PID
        assert manager.store.owner_pid() == OTHER_PID

    def test_nested_ownership_keeps_outer_lock(self, manager):
        manager.start()
        with manager.ownership(pid=1234):
            with manager.ownership(pid=1234):
                pass
            assert manager.store.owner_pid() == 1234
        assert manager.store.owner_pid() is None

    def test_crashed_session_detected_under_own_lock(self, manager):
        manager.start()
        _set_status(manager, SessionStatus.RUNNING)
        with manager.ownership():
            assert manager.current_status(manager.load()) == SessionStatus.CRASHED
            assert manager.prepare_resume().status == SessionStatus.RUNNING
        assert manager.store.owner_pid() is None

    def test_released_on_error(self, manager):
        manager.start()
        with pytest.raises(RuntimeError):
            with manager.ownership(pid=OTHER_PID):
                raise RuntimeError("loop blew up")
        assert manager.store.owner_pid() is None


class TestPauseAbort:
    def test_pause_not_running(self, manager):
        manager.start()
        assert manager.pause() is False
        assert manager.store.pause_requested() is False

    def test_pause_running(self, manager, live_pids):
        manager.start()
        _set_status(manager, SessionStatus.RUNNING)
        manager.store.acquire_owner(OTHER_PID)
        live_pids.add(OTHER_PID)
        assert manager.pause() is True
        assert manager.store.pause_requested() is True

    def test_abort_signals_owner(self, manager, live_pids, kills):
        manager.start()
        _set_status(manager, SessionStatus.RUNNING)
        manager.store.acquire_owner(OTHER_PID)
        live_pids.add(OTHER_PID)

        state = manager.abort()
        assert kills == [(OTHER_PID, signal.SIGTERM)]
        assert state.status == SessionStatus.ABORTED
        assert manager.load().status == SessionStatus.ABORTED
        assert manager.store.owner_pid() is None

    def test_abort_keeps_iteration_saved_while_stopping(self, state_dir, config, live_pids):
        store = FileStateStore(state_dir)

        def kill(pid, sig):
            # The loop finishes its iteration before exiting
            store.save(store.load().model_copy(update={"last_iteration": 3}))
            live_pids.discard(pid)

        manager = SessionManager(store, config, plan_path=store.plan_path, kill=kill)
        manager.start()
        _set_status(manager, SessionStatus.RUNNING)
        store.acquire_owner(OTHER_PID)
        live_pids.add(OTHER_PID)

        state = manager.abort()
        assert state.status == SessionStatus.ABORTED
        assert state.last_iteration == 3
        assert manager.load().last_iteration == 3

    def test_abort_owner_ignoring_signal(self, state_dir, config, live_pids):
        store = FileStateStore(state_dir)
        manager = SessionManager(
            store, config, plan_path=store.plan_path, kill=lambda pid, sig: None, abort_wait_seconds=0,
        )
        manager.start()
        _set_status(manager, SessionStatus.RUNNING)
        store.acquire_owner(OTHER_PID)
        live_pids.add(OTHER_PID)
        assert manager.abort().status == SessionStatus.ABORTED
        assert store.owner_pid() is None

    def test_abort_dead_owner_no_signal(self, manager, kills):
        manager.start()
        _set_status(manager, SessionStatus.PAUSED)
        manager.store.acquire_owner(OTHER_PID)
        assert manager.abort().status == SessionStatus.ABORTED
        assert kills == []

    def test_abort_twice(self, manager):
        manager.start()
        first = manager.abort()
        assert manager.abort().updated_at == first.updated_at

    def test_abort_completed_raises(self, manager):
        manager.start()
        _set_status(manager, SessionStatus.COMPLETED)
        with pytest.raises(SessionStateError):
            manager.abort()


class TestInject:
    def test_inject_show_clear(self, manager):
        text = manager.inject("  Use port 8081  ")
        assert text.startswith("**Injected at:** ")
        assert text.endswith("\n\nUse port 8081")
        assert manager.show_injection() == text
        manager.clear_injection()
        assert manager.show_injection() is None

    def test_empty_message(self, manager):
        with pytest.raises(ValueError, match="Empty"):
            manager.inject("   ")


class TestStatusReport:
    def test_report(self, manager):
        manager.start()
        manager.inject("hello")
        report = manager.status_report()
        assert report.status == SessionStatus.INITIALIZED
        assert report.iteration == 0
        assert (report.criteria_done, report.criteria_total) == (1, 3)
        assert report.all_complete is False
        assert report.urgent_pending is True
        assert report.owner_pid is None
        assert report.budget.within_budget is True

    def test_running_with_dead_owner_reports_crashed(self, manager):
        manager.start()
        _set_status(manager, SessionStatus.RUNNING)
        manager.store.acquire_owner(OTHER_PID)
        assert manager.status_report().status == SessionStatus.CRASHED

    def test_format(self, manager):
        manager.start()
        text = format_status_report(manager.status_report(), manager.criteria_markdown())
        assert "Status:     initialized" in text
        assert "Criteria:   1/3" in text
        assert "Health:     errors=0" in text
        assert "Urgent" not in text
        assert "Tokens: 0 / 500,000" in text
        assert "- [x] 3. Endpoint is documented" in text

    def test_resumable(self, manager, live_pids):
        manager.start()
        report = manager.status_report()
        assert report.resumable is True
        assert "Next:" not in format_status_report(report)

        _set_status(manager, SessionStatus.PAUSED)
        report = manager.status_report()
        assert report.resumable is True
        assert "Next:       ralph resume" in format_status_report(report)

        _set_status(manager, SessionStatus.RUNNING)
        manager.store.acquire_owner(OTHER_PID)
        live_pids.add(OTHER_PID)
        assert manager.status_report().resumable is False

    def test_completed_not_resumable(self, manager):
        manager.start()
        _set_status(manager, SessionStatus.COMPLETED)
        assert manager.status_report().resumable is False

    def test_format_trend(self, manager):
        state = manager.start()
        manager.store.save(state.model_copy(update={
            "test_baseline": TestBaseline(passed=True, exit_code=0),
            "test_trend": TestTrend.REGRESSED,
        }))
        text = format_status_report(manager.status_report())
        assert "Tests:      baseline passed, now regressed" in text
