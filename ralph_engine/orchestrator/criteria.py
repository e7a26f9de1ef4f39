"""Completion criteria store.

Criteria are an ordered checklist keyed by a stable number taken from
plan.md. Entries only ever flip from unchecked to checked, and numbers are
never reused or renumbered.
"""

from __future__ import annotations

import logging
from typing import Iterable, Optional

from ralph_engine.core.models import Criterion

logger = logging.getLogger("ralph.orchestrator.criteria")


def mark_checked(criteria: list[Criterion], number: int) -> list[Criterion]:
    """Return a copy with criterion ``number`` checked. Unknown numbers are ignored."""
    if not any(c.number == number for c in criteria):
        logger.warning("CRITERION_DONE for unknown criterion %d ignored", number)
        return list(criteria)
    return [
        c.model_copy(update={"checked": True}) if c.number == number else c
        for c in criteria
    ]


def pending_numbers(criteria: list[Criterion], numbers: Iterable[int]) -> list[int]:
    """The subset of ``numbers`` that would flip an unchecked criterion."""
    unchecked = {c.number for c in criteria if not c.checked}
    return sorted({n for n in numbers if n in unchecked})


def mark_many(criteria: list[Criterion], numbers: Iterable[int]) -> tuple[list[Criterion], list[int]]:
    """Check every number in ``numbers``; also return which ones were newly checked."""
    numbers = list(numbers)
    newly_checked = pending_numbers(criteria, numbers)
    updated = list(criteria)
    for number in numbers:
        updated = mark_checked(updated, number)
    for number in newly_checked:
        logger.info("Criterion %d marked complete", number)
    return updated, newly_checked


def all_complete(criteria: list[Criterion]) -> bool:
    """An empty checklist is never complete."""
    return len(criteria) >= 1 and all(c.checked for c in criteria)


def criteria_progress(criteria: list[Criterion]) -> tuple[int, int]:
    return sum(1 for c in criteria if c.checked), len(criteria)


def next_unchecked(criteria: list[Criterion]) -> Optional[Criterion]:
    for criterion in criteria:
        if not criterion.checked:
            return criterion
    return None


def criteria_to_markdown(criteria: list[Criterion]) -> str:
    return "\n".join(
        f"- [{'x' if c.checked else ' '}] {c.number}. {c.text}" for c in criteria
    )
