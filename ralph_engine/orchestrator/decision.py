"""Decision engine: one authoritative action per iteration.

Fuses the extracted signals, the health state, the budget status and the
criteria-complete flag into a single Decision. The rules form an ordered
cascade and the first matching rule wins:

 1. all criteria checked + TASK_COMPLETE        -> complete
 2. all criteria checked                        -> complete
 3. TASK_COMPLETE, no tool calls, criteria open -> pause (human)
 4. TASK_COMPLETE, tool calls, criteria open    -> continue (warning)
 5. stuck signal                                -> pause (human)
 6. circuit breaker tripped                     -> abort
 7. budget exceeded                             -> abort
 8. completion score >= threshold               -> verify
 9. test-only loop                              -> continue (warning)
10. otherwise                                   -> continue

Checked criteria outrank the agent's self-report. Requests for human
attention outrank automated aborts. Safety aborts outrank soft heuristics.
"""

from __future__ import annotations

import yaml

from ralph_engine.core.config import LoopConfig
from ralph_engine.core.models import (
    BudgetStatus,
    Confidence,
    Decision,
    DecisionAction,
    HealthState,
    Signals,
)
from ralph_engine.orchestrator.health_monitor import check_tripped


def decide(
    signals: Signals,
    health: HealthState,
    budget: BudgetStatus,
    all_criteria_complete: bool,
    config: LoopConfig,
) -> Decision:
    """Pure: identical inputs always yield an identical Decision."""
    if all_criteria_complete and signals.exit_signal:
        return Decision(
            action=DecisionAction.COMPLETE,
            reason="TASK_COMPLETE signal and all criteria verified",
            confidence=Confidence.HIGH,
        )

    if all_criteria_complete:
        return Decision(
            action=DecisionAction.COMPLETE,
            reason="All completion criteria satisfied",
            confidence=Confidence.HIGH,
        )

    if signals.exit_signal and signals.tool_calls.total == 0:
        return Decision(
            action=DecisionAction.PAUSE,
            reason="TASK_COMPLETE with no tool calls but criteria unchecked - needs human verification",
            confidence=Confidence.HIGH,
            requires_human=True,
        )

    if signals.exit_signal:
        return Decision(
            action=DecisionAction.CONTINUE,
            reason="TASK_COMPLETE signal but criteria not all checked - continuing",
            confidence=Confidence.MEDIUM,
            warning="Agent claimed complete but unchecked criteria remain",
        )

    if signals.stuck_signal:
        return Decision(
            action=DecisionAction.PAUSE,
            reason=signals.stuck_reason or "Agent reported being stuck",
            confidence=Confidence.HIGH,
            requires_human=True,
        )

    trip = check_tripped(health, config)
    if trip.tripped or health.tripped:
        return Decision(
            action=DecisionAction.ABORT,
            reason=trip.reason or health.trip_reason or "Circuit breaker tripped",
            confidence=Confidence.HIGH,
        )

    if not budget.within_budget:
        return Decision(
            action=DecisionAction.ABORT,
            reason=budget.exceeded_reason or "Budget exceeded",
            confidence=Confidence.HIGH,
        )

    if signals.completion_score >= config.completion_score_threshold:
        return Decision(
            action=DecisionAction.VERIFY,
            reason="High completion confidence - needs verification",
            confidence=Confidence.MEDIUM,
        )

    if signals.test_only_loop:
        return Decision(
            action=DecisionAction.CONTINUE,
            reason="Test-only loop detected - may need intervention soon",
            confidence=Confidence.MEDIUM,
            warning="Possible test-only loop",
        )

    return Decision(
        action=DecisionAction.CONTINUE,
        reason="Continuing iteration",
        confidence=Confidence.HIGH,
    )


def decision_to_yaml(decision: Decision) -> str:
    payload = decision.model_dump(mode="json", exclude_none=True)
    if not decision.requires_human:
        payload.pop("requires_human", None)
    return yaml.safe_dump(payload, sort_keys=False).strip()
