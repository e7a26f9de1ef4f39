"""Token and iteration budget tracking.

Every iteration appends one entry to an append-only ledger:
(iteration, input_tokens, output_tokens, total, cumulative). The ledger is
the audit log; status is recomputed from it by a fold, which is cheap
because entry counts are bounded by max_iterations.
"""

from __future__ import annotations

import logging
from typing import Optional

from ralph_engine.core.models import BudgetEntry, BudgetLedger, BudgetStatus

logger = logging.getLogger("ralph.orchestrator.budget")


def append_usage(
    ledger: BudgetLedger,
    iteration: int,
    input_tokens: int,
    output_tokens: int,
) -> BudgetLedger:
    """Return a new ledger with one more entry. Prior entries are untouched."""
    if input_tokens < 0 or output_tokens < 0:
        raise ValueError(
            f"Token counts must be non-negative (input={input_tokens}, output={output_tokens})"
        )
    total = input_tokens + output_tokens
    entry = BudgetEntry(
        iteration=iteration,
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        total=total,
        cumulative=ledger.total_tokens + total,
    )
    return BudgetLedger(entries=[*ledger.entries, entry])


def budget_status(ledger: BudgetLedger, max_tokens: int, max_iterations: int) -> BudgetStatus:
    """Reaching a ceiling counts as exceeding it."""
    total_tokens = ledger.total_tokens
    iterations = ledger.iterations

    exceeded_reason: Optional[str] = None
    if iterations >= max_iterations:
        exceeded_reason = f"Max iterations ({max_iterations}) reached"
    elif total_tokens >= max_tokens:
        exceeded_reason = f"Max tokens ({max_tokens}) reached"

    return BudgetStatus(
        within_budget=total_tokens < max_tokens and iterations < max_iterations,
        total_tokens=total_tokens,
        iterations=iterations,
        max_tokens=max_tokens,
        max_iterations=max_iterations,
        tokens_remaining=max_tokens - total_tokens,
        iterations_remaining=max_iterations - iterations,
        percent_tokens_used=100.0 * total_tokens / max(max_tokens, 1),
        percent_iterations_used=100.0 * iterations / max(max_iterations, 1),
        exceeded_reason=exceeded_reason,
    )


def format_budget_status(status: BudgetStatus) -> str:
    """Human-readable status block for the CLI."""
    return "\n".join([
        f"Tokens: {status.total_tokens:,} / {status.max_tokens:,} "
        f"({status.percent_tokens_used:.1f}%)",
        f"Iterations: {status.iterations} / {status.max_iterations} "
        f"({status.percent_iterations_used:.1f}%)",
        f"Within budget: {str(status.within_budget).lower()}",
    ])


class BudgetTracker:
    """Holds the session ledger and its ceilings.

    Usage:
        tracker = BudgetTracker(max_tokens=500_000, max_iterations=50)
        tracker.record(iteration=1, input_tokens=1200, output_tokens=800)
        tracker.status().within_budget
    """

    def __init__(
        self,
        max_tokens: int,
        max_iterations: int,
        ledger: Optional[BudgetLedger] = None,
    ):
        self.max_tokens = max_tokens
        self.max_iterations = max_iterations
        self.ledger = ledger or BudgetLedger()

    def record(self, iteration: int, input_tokens: int, output_tokens: int) -> BudgetEntry:
        self.ledger = append_usage(self.ledger, iteration, input_tokens, output_tokens)
        entry = self.ledger.entries[-1]
        logger.debug(
            "Token usage recorded: iteration=%d in=%d out=%d cumulative=%d",
            iteration, input_tokens, output_tokens, entry.cumulative,
        )
        return entry

    def status(self) -> BudgetStatus:
        return budget_status(self.ledger, self.max_tokens, self.max_iterations)
