"""Steering guidance injected into the agent's next context.

Two sources:
- escalating "fix the tests first" guidance while the test command fails,
  counting down the attempts left before the circuit breaker trips;
- budget hints once the remaining token or iteration budget runs low.
"""

from __future__ import annotations

from typing import Optional

from ralph_engine.core.models import BudgetStatus

TEST_FAILURE_HEADER = "## TESTS ARE FAILING - FIX BEFORE CONTINUING"


def failing_tests_guidance(consecutive_failures: int, max_failures: int) -> str:
    """Guidance for the next iteration after a failed test run."""
    remaining = max(max_failures - consecutive_failures, 0)
    return "\n".join([
        TEST_FAILURE_HEADER,
        "",
        "The test suite is failing. You MUST fix these test failures before "
        "continuing with other work.",
        "",
        f"**Attempt {consecutive_failures} of {max_failures}** - "
        f"{remaining} attempts remaining before circuit break.",
        "",
        "Review the test output in the Test Results section below and fix the issues.",
        "Common fixes:",
        "- Type errors: Check function signatures and return types",
        "- Import errors: Verify all imports exist and are correct",
        "- Runtime errors: Check for null/undefined access",
        "",
        "Focus ONLY on fixing the failing tests. Do not continue with new features "
        "until tests pass.",
    ])


def is_test_failure_guidance(text: Optional[str]) -> bool:
    return bool(text) and TEST_FAILURE_HEADER in text


def next_steering(
    current: Optional[str],
    tests_passed: Optional[bool],
    consecutive_failures: int,
    max_failures: int,
) -> Optional[str]:
    """Steering text to carry into the next iteration."""
    if tests_passed is False:
        return failing_tests_guidance(consecutive_failures, max_failures)
    if tests_passed is True and is_test_failure_guidance(current):
        return None
    return current


def generate_budget_hint(status: BudgetStatus) -> Optional[str]:
    """Budget guidance for the agent.

    Returns None if budget is healthy and no guidance is needed.
    """
    parts: list[str] = []
    token_ratio = status.tokens_remaining / max(status.max_tokens, 1)

    if status.iterations_remaining <= 1:
        parts.append(
            f"DEADLINE: This is the last iteration in budget "
            f"({status.iterations + 1}/{status.max_iterations}). "
            "Finish and mark the criteria you have verified NOW."
        )
    elif status.percent_iterations_used >= 70.0:
        parts.append(
            f"Iteration {status.iterations + 1}/{status.max_iterations}: "
            f"{status.iterations_remaining} iterations left. Prioritise unchecked criteria."
        )

    if token_ratio <= 0.0:
        parts.append("TOKEN BUDGET EXHAUSTED. Produce the most minimal change possible.")
    elif token_ratio < 0.20:
        parts.append(
            f"Token budget is critically low ({status.tokens_remaining:,} remaining). "
            "Make the smallest change that satisfies the next criterion."
        )
    elif token_ratio < 0.50:
        parts.append(
            f"Token budget is limited ({status.tokens_remaining:,} remaining). "
            "Focus on correctness first, minimize response length."
        )

    if not parts:
        return None

    return "\n".join(parts)
