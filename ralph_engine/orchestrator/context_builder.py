"""Builds the context document handed to the agent each iteration.

Two modes:
- full: everything the agent needs to start cold (protocol, task, criteria,
  plan steps, rules, backlog, recent iterations, changes, test results);
- continue: a short update for an agent that still holds the previous
  iterations in its own session (hybrid session mode).
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Literal, Optional

from ralph_engine.core.config import ContextConfig, PromptLoader
from ralph_engine.core.models import IterationRecord, SessionState, TestTrend
from ralph_engine.orchestrator.criteria import criteria_progress, criteria_to_markdown, next_unchecked
from ralph_engine.plan.parser import steps_to_markdown

logger = logging.getLogger("ralph.orchestrator.context_builder")

ContextMode = Literal["full", "continue"]

DEFAULT_PROTOCOL = """\
You are working through a task one iteration at a time. Each iteration, make
concrete progress on the next unchecked completion criterion, then report.

Report progress with these markers, each on its own line:
- `CRITERION_DONE: <n>` once criterion <n> is implemented AND verified
- `STEP_DONE: <n>` when implementation plan step <n> is finished
- `TASK_COMPLETE` only when every completion criterion is checked
- `STUCK: <reason>` if you cannot proceed without human input

Never mark a criterion done without verifying it. Work on one criterion at a time."""


def _truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[:limit].rstrip() + "\n... [truncated]"


class ContextBuilder:
    """Assembles context markdown from session state and operator inputs.

    Usage:
        builder = ContextBuilder(PromptLoader(state_dir / "prompts"), rules_path=state_dir / "rules.md")
        text = builder.build(state, iteration=4, mode="full", urgent=store.read_urgent())
    """

    def __init__(
        self,
        prompt_loader: Optional[PromptLoader] = None,
        config: Optional[ContextConfig] = None,
        rules_path: Optional[Path] = None,
    ):
        self.prompt_loader = prompt_loader
        self.config = config or ContextConfig()
        self.rules_path = rules_path

    def protocol(self) -> str:
        if self.prompt_loader is None:
            return DEFAULT_PROTOCOL
        return self.prompt_loader.load("protocol.md", default=DEFAULT_PROTOCOL)

    def read_rules(self) -> Optional[str]:
        if self.rules_path is None or not self.rules_path.exists():
            return None
        return self.rules_path.read_text().strip() or None

    def rules_mtime(self) -> Optional[float]:
        if self.rules_path is None or not self.rules_path.exists():
            return None
        return self.rules_path.stat().st_mtime

    def build(
        self,
        state: SessionState,
        iteration: int,
        mode: ContextMode = "full",
        urgent: Optional[str] = None,
        budget_hint: Optional[str] = None,
        diff_summary: Optional[str] = None,
        recent: Optional[list[IterationRecord]] = None,
    ) -> str:
        if mode == "continue":
            sections = self._continue_sections(state, iteration)
        else:
            sections = self._full_sections(state, iteration, recent or [])

        sections += self._steering_sections(state, urgent, budget_hint)
        sections.append(("## Changes", diff_summary or "_No changes_"))
        sections.append(("## Test Results", self._test_results(state)))

        parts = []
        for heading, body in sections:
            parts.append(f"{heading}\n\n{body}" if heading else body)
        text = "\n\n".join(parts) + "\n"
        logger.debug("Built %s context for iteration %d (%d chars)", mode, iteration, len(text))
        return text

    # -- sections -----------------------------------------------------------

    def _full_sections(
        self,
        state: SessionState,
        iteration: int,
        recent: list[IterationRecord],
    ) -> list[tuple[str, str]]:
        sections: list[tuple[str, str]] = [
            (f"# Iteration {iteration}", self.protocol()),
            ("## Task", state.task or "_No task defined_"),
        ]
        if state.context:
            sections.append(("## Context", state.context))
        sections.append(("## Completion Criteria", criteria_to_markdown(state.criteria) or "_No criteria_"))
        if state.steps:
            sections.append(("## Implementation Plan", steps_to_markdown(state.steps)))

        rules = self.read_rules()
        if rules:
            sections.append(("## Rules", rules))

        if state.backlog:
            sections.append((
                "## Backlog (DO NOT work on these)",
                "These items need more input or are blocked. For reference only:\n\n"
                + "\n".join(state.backlog),
            ))

        sections.append(("## Recent Iterations", self._recent_iterations(recent)))
        return sections

    def _continue_sections(self, state: SessionState, iteration: int) -> list[tuple[str, str]]:
        done, total = criteria_progress(state.criteria)
        summary = f"Completed {done}/{total} criteria so far."
        upcoming = next_unchecked(state.criteria)
        if upcoming is not None:
            summary += f" Next: criterion {upcoming.number}. {upcoming.text}"
        return [
            (f"# Iteration {iteration} (continued)", summary),
            ("## Completion Criteria", criteria_to_markdown(state.criteria) or "_No criteria_"),
        ]

    def _steering_sections(
        self,
        state: SessionState,
        urgent: Optional[str],
        budget_hint: Optional[str],
    ) -> list[tuple[str, str]]:
        sections: list[tuple[str, str]] = []
        if urgent and urgent.strip():
            sections.append(("## URGENT", urgent.strip()))
        if state.steering:
            # Guidance carries its own heading
            sections.append(("", state.steering.strip()))
        if budget_hint:
            sections.append(("## Budget", budget_hint))
        return sections

    def _test_results(self, state: SessionState) -> str:
        if not state.last_test_output:
            return "_No test results_"
        block = "```\n" + _truncate(state.last_test_output, self.config.max_excerpt_chars) + "\n```"
        if state.test_trend is None:
            return block
        trend = state.test_trend.value
        if state.test_trend == TestTrend.REGRESSED:
            trend += " since session start; fix the regression before new work"
        return f"**Compared to baseline:** {trend}\n\n{block}"

    def _recent_iterations(self, records: list[IterationRecord]) -> str:
        records = records[-self.config.recent_iterations:] if self.config.recent_iterations > 0 else []
        if not records:
            return "_No previous iterations_"

        blocks = []
        for idx, record in enumerate(reversed(records)):
            title = f"### Iteration {record.iteration:03d}" + (" (latest)" if idx == 0 else "")
            lines = [
                title,
                "",
                f"**Decision:** {record.decision.action.value} - {record.decision.reason}",
                f"**Tokens:** {record.input_tokens} in / {record.output_tokens} out",
            ]
            if record.outcome.error_message:
                lines.append(f"**Error:** {record.outcome.error_message}")
            if record.response_excerpt:
                lines += ["", _truncate(record.response_excerpt, self.config.max_excerpt_chars)]
            blocks.append("\n".join(lines))
        return "\n\n---\n\n".join(blocks)
