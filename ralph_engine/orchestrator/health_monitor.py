"""Health monitor / circuit breaker for the iteration loop.

Tracks consecutive-failure counters across iterations and trips when any
of them reaches its threshold:

1. Consecutive errors: agent invocation failed or timed out
2. No change: successful iterations with neither edits nor a criterion
3. Test-only: the agent keeps re-running tests without editing
4. Test failures: the project's test command keeps failing

The state transitions are pure functions over HealthState so they can be
unit-tested and replayed; HealthMonitor is the stateful convenience
wrapper the loop holds.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Optional

from ralph_engine.core.config import LoopConfig
from ralph_engine.core.models import HealthState, IterationOutcome, TripStatus

logger = logging.getLogger("ralph.orchestrator.health_monitor")

_MAX_ERROR_MESSAGE_CHARS = 200


def update_health(
    state: HealthState,
    outcome: IterationOutcome,
    now: Optional[datetime] = None,
) -> HealthState:
    """Return the health state after one iteration's outcome."""
    now = now or datetime.now(UTC)
    changes: dict = {}

    if outcome.success:
        changes["consecutive_errors"] = 0
        changes["last_success"] = now
    else:
        changes["consecutive_errors"] = state.consecutive_errors + 1
        changes["last_error"] = now
        message = outcome.error_message
        if message and len(message) > _MAX_ERROR_MESSAGE_CHARS:
            message = message[:_MAX_ERROR_MESSAGE_CHARS] + "..."
        changes["last_error_message"] = message

    # A checked criterion counts as progress even without a diff
    has_progress = outcome.has_changes or outcome.criterion_completed
    if outcome.success and not has_progress:
        changes["consecutive_no_change"] = state.consecutive_no_change + 1
    elif outcome.success and has_progress:
        changes["consecutive_no_change"] = 0

    if outcome.test_only:
        changes["consecutive_test_only"] = state.consecutive_test_only + 1
    elif outcome.success:
        changes["consecutive_test_only"] = 0

    if outcome.tests_passed is False:
        changes["consecutive_test_failures"] = state.consecutive_test_failures + 1
    elif outcome.tests_passed is True:
        changes["consecutive_test_failures"] = 0

    return state.model_copy(update=changes)


def check_tripped(state: HealthState, thresholds: LoopConfig) -> TripStatus:
    """Evaluate thresholds in priority order; the first breach wins."""
    if state.consecutive_errors >= thresholds.max_consecutive_errors:
        return TripStatus(
            tripped=True,
            reason=f"Too many consecutive errors ({state.consecutive_errors})",
        )
    if state.consecutive_no_change >= thresholds.max_consecutive_no_change:
        return TripStatus(
            tripped=True,
            reason=f"No changes for {state.consecutive_no_change} iterations",
        )
    if state.consecutive_test_only >= thresholds.max_consecutive_test_only:
        return TripStatus(
            tripped=True,
            reason=f"Test-only loop for {state.consecutive_test_only} iterations",
        )
    if state.consecutive_test_failures >= thresholds.max_consecutive_test_failures:
        return TripStatus(
            tripped=True,
            reason=(
                f"Tests failing for {state.consecutive_test_failures} iterations "
                "(CI/tests not passing)"
            ),
        )
    return TripStatus(tripped=False)


def apply_trip(state: HealthState, thresholds: LoopConfig) -> HealthState:
    """Stamp the current trip status onto the state."""
    status = check_tripped(state, thresholds)
    return state.model_copy(update={"tripped": status.tripped, "trip_reason": status.reason})


def reset_health() -> HealthState:
    """Zeroed counters, breaker closed."""
    return HealthState()


class HealthMonitor:
    """Circuit breaker held by the iteration loop.

    Injected dependencies:
        thresholds: LoopConfig carrying the max_consecutive_* limits.
    """

    def __init__(self, thresholds: LoopConfig, state: Optional[HealthState] = None):
        self.thresholds = thresholds
        self.state = state or reset_health()

    def record(self, outcome: IterationOutcome, now: Optional[datetime] = None) -> HealthState:
        """Fold an outcome into the state and re-evaluate the breaker."""
        was_tripped = self.state.tripped
        self.state = apply_trip(update_health(self.state, outcome, now=now), self.thresholds)

        if not outcome.success:
            logger.warning(
                "Consecutive agent errors: %d/%d",
                self.state.consecutive_errors, self.thresholds.max_consecutive_errors,
            )
        if self.state.tripped and not was_tripped:
            logger.warning("Circuit breaker TRIPPED: %s", self.state.trip_reason)
        elif not self.state.tripped:
            logger.debug(
                "Health: errors=%d no_change=%d test_only=%d test_failures=%d",
                self.state.consecutive_errors,
                self.state.consecutive_no_change,
                self.state.consecutive_test_only,
                self.state.consecutive_test_failures,
            )
        return self.state

    def check(self) -> TripStatus:
        return check_tripped(self.state, self.thresholds)

    def reset(self) -> HealthState:
        self.state = reset_health()
        logger.info("Health counters reset")
        return self.state

    @property
    def is_tripped(self) -> bool:
        return self.check().tripped
