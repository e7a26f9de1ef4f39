"""Tests for ralph_engine/orchestrator/health_monitor.py: circuit breaker counters."""

from datetime import UTC, datetime

from ralph_engine.core.config import LoopConfig
from ralph_engine.core.models import HealthState, IterationOutcome
from ralph_engine.orchestrator.health_monitor import (
    HealthMonitor,
    check_tripped,
    reset_health,
    update_health,
)


def _ok(**kwargs) -> IterationOutcome:
    return IterationOutcome(success=True, **kwargs)


def _fail(message: str = "boom") -> IterationOutcome:
    return IterationOutcome(success=False, error_message=message)


class TestUpdateHealth:
    def test_success_resets_errors(self):
        state = HealthState(consecutive_errors=2)
        now = datetime(2026, 1, 1, tzinfo=UTC)
        new = update_health(state, _ok(has_changes=True), now=now)
        assert new.consecutive_errors == 0
        assert new.last_success == now
        assert state.consecutive_errors == 2

    def test_failure_increments_and_records_message(self):
        new = update_health(HealthState(), _fail("agent timed out"))
        assert new.consecutive_errors == 1
        assert new.last_error is not None
        assert new.last_error_message == "agent timed out"

    def test_long_error_message_truncated(self):
        new = update_health(HealthState(), _fail("x" * 500))
        assert new.last_error_message == "x" * 200 + "..."

    def test_no_change_counter(self):
        state = update_health(HealthState(), _ok())
        state = update_health(state, _ok())
        assert state.consecutive_no_change == 2
        state = update_health(state, _ok(has_changes=True))
        assert state.consecutive_no_change == 0

    def test_criterion_counts_as_progress(self):
        state = HealthState(consecutive_no_change=3)
        assert update_health(state, _ok(criterion_completed=True)).consecutive_no_change == 0

    def test_failure_leaves_no_change_counter(self):
        state = HealthState(consecutive_no_change=3)
        assert update_health(state, _fail()).consecutive_no_change == 3

    def test_test_only_counter(self):
        state = update_health(HealthState(), _ok(test_only=True))
        state = update_health(state, _ok(test_only=True))
        assert state.consecutive_test_only == 2
        assert update_health(state, _ok(has_changes=True)).consecutive_test_only == 0

    def test_test_failure_counter(self):
        state = update_health(HealthState(), _ok(tests_passed=False))
        assert state.consecutive_test_failures == 1
        # No test run leaves the counter alone
        state = update_health(state, _ok(tests_passed=None))
        assert state.consecutive_test_failures == 1
        assert update_health(state, _ok(tests_passed=True)).consecutive_test_failures == 0


class TestCheckTripped:
    def test_healthy(self):
        assert check_tripped(HealthState(), LoopConfig()).tripped is False

    def test_errors_trip(self):
        status = check_tripped(HealthState(consecutive_errors=3), LoopConfig())
        assert status.tripped is True
        assert status.reason == "Too many consecutive errors (3)"

    def test_no_change_trip(self):
        status = check_tripped(HealthState(consecutive_no_change=5), LoopConfig())
        assert status.reason == "No changes for 5 iterations"

    def test_test_only_trip(self):
        status = check_tripped(HealthState(consecutive_test_only=3), LoopConfig())
        assert status.reason == "Test-only loop for 3 iterations"

    def test_test_failures_trip(self):
        status = check_tripped(HealthState(consecutive_test_failures=5), LoopConfig())
        assert status.reason.startswith("Tests failing for 5 iterations")

    def test_priority_order(self):
        state = HealthState(consecutive_errors=3, consecutive_no_change=9)
        assert "consecutive errors" in check_tripped(state, LoopConfig()).reason

    def test_custom_thresholds(self):
        thresholds = LoopConfig(max_consecutive_errors=1)
        assert check_tripped(HealthState(consecutive_errors=1), thresholds).tripped is True


class TestHealthMonitor:
    def test_trips_after_three_failures(self):
        monitor = HealthMonitor(LoopConfig())
        monitor.record(_fail())
        monitor.record(_fail())
        assert monitor.is_tripped is False
        state = monitor.record(_fail())
        assert state.tripped is True
        assert state.trip_reason == "Too many consecutive errors (3)"
        assert monitor.is_tripped is True

    def test_success_closes_breaker(self):
        monitor = HealthMonitor(LoopConfig(), HealthState(consecutive_errors=2))
        state = monitor.record(_ok(has_changes=True))
        assert state.tripped is False
        assert state.trip_reason is None

    def test_reset(self):
        monitor = HealthMonitor(LoopConfig(), HealthState(consecutive_errors=3, tripped=True))
        assert monitor.reset() == reset_health()
        assert monitor.state.tripped is False
