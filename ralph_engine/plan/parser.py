"""plan.md parser.

A plan is plain markdown. The sections the loop cares about:

    # Task                    first paragraph is the task description
    ## Context                free text handed to the agent verbatim
    ## Completion Criteria    numbered checkboxes: "- [ ] 1. text"
    ## Implementation Plan    plain checkboxes:    "- [ ] text"
    ## Backlog                checkbox lines kept as-is

Headings match case-insensitively on their prefix, and a section runs until
the next heading of the same or higher level.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Optional

from ralph_engine.core.exceptions import PlanParseError
from ralph_engine.core.models import Criterion, Plan, PlanStep

logger = logging.getLogger("ralph.plan.parser")

_CHECKBOX_RE = re.compile(r"^\s*-\s*\[([ xX])\]\s*(.+)$")
_NUMBERED_CHECKBOX_RE = re.compile(r"^\s*-\s*\[([ xX])\]\s*(\d+)\.\s*(.+)$")
_BACKLOG_ITEM_RE = re.compile(r"^\s*-\s*\[.\].*$")
_HEADING_RE = re.compile(r"^(#{1,6})\s+.*$")


def parse_checkbox(line: str) -> Optional[PlanStep]:
    match = _CHECKBOX_RE.match(line)
    if not match:
        return None
    return PlanStep(text=match.group(2).strip(), checked=match.group(1) != " ")


def parse_numbered_checkbox(line: str) -> Optional[Criterion]:
    match = _NUMBERED_CHECKBOX_RE.match(line)
    if not match:
        return None
    return Criterion(
        number=int(match.group(2)),
        text=match.group(3).strip(),
        checked=match.group(1) != " ",
    )


def extract_section(content: str, heading: str) -> str:
    """Body of the section introduced by ``heading`` (without the heading line)."""
    level = len(heading) - len(heading.lstrip("#"))
    heading_re = re.compile(re.escape(heading) + r".*", re.IGNORECASE)
    in_section = False
    collected: list[str] = []

    for line in content.splitlines():
        if heading_re.fullmatch(line):
            in_section = True
            continue
        if in_section:
            match = _HEADING_RE.match(line)
            if match and len(match.group(1)) <= level:
                in_section = False
                continue
            collected.append(line)

    return "\n".join(collected)


def parse_criteria(content: str) -> list[Criterion]:
    """Numbered criteria, sorted by number. Duplicate numbers keep the first entry."""
    section = extract_section(content, "## Completion Criteria")
    criteria: dict[int, Criterion] = {}
    for line in section.splitlines():
        criterion = parse_numbered_checkbox(line)
        if criterion is None:
            continue
        if criterion.number in criteria:
            logger.warning("Duplicate criterion number %d in plan ignored", criterion.number)
            continue
        criteria[criterion.number] = criterion
    return [criteria[n] for n in sorted(criteria)]


def parse_steps(content: str) -> list[PlanStep]:
    section = extract_section(content, "## Implementation Plan")
    return [step for step in map(parse_checkbox, section.splitlines()) if step is not None]


def parse_task(content: str) -> str:
    section = extract_section(content, "# Task").strip()
    return section.split("\n\n")[0].strip()


def parse_context(content: str) -> str:
    return extract_section(content, "## Context").strip()


def parse_backlog(content: str) -> list[str]:
    section = extract_section(content, "## Backlog")
    return [line for line in section.splitlines() if line.strip() and _BACKLOG_ITEM_RE.match(line)]


def parse_plan(content: str) -> Plan:
    """Parse a complete plan.md document.

    Raises:
        PlanParseError: If the plan has neither a task nor any criteria.
    """
    plan = Plan(
        task=parse_task(content),
        criteria=parse_criteria(content),
        steps=parse_steps(content),
        context=parse_context(content),
        backlog=parse_backlog(content),
    )
    if not plan.task and not plan.criteria:
        raise PlanParseError("plan.md has no '# Task' section and no completion criteria")
    if not plan.criteria:
        logger.warning("plan.md has no numbered completion criteria; the loop cannot auto-complete")
    return plan


def load_plan(path: Path) -> Plan:
    if not path.exists():
        raise PlanParseError(f"Plan file not found: {path}")
    return parse_plan(path.read_text())


def steps_to_markdown(steps: list[PlanStep]) -> str:
    return "\n".join(
        f"- [{'x' if s.checked else ' '}] Step {i}: {s.text}"
        for i, s in enumerate(steps, start=1)
    )
