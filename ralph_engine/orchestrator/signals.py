"""Signal extraction from free-text agent responses.

The agent's output is unstructured, so every signal here is either an
explicit protocol marker (TASK_COMPLETE, CRITERION_DONE: n, STEP_DONE: n,
STUCK: reason) or a soft heuristic. The decision engine weighs them; this
module only classifies text and never decides anything.
"""

from __future__ import annotations

import re

import yaml

from ralph_engine.core.models import Signals, ToolCalls

EXIT_MARKER = "TASK_COMPLETE"
STUCK_MARKER = "STUCK:"

COMPLETION_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(p, re.IGNORECASE)
    for p in (
        r"all\s+(tasks?|criteria)\s+(are\s+)?(now\s+)?(complete|done|finished)",
        r"implementation\s+(is\s+)?(now\s+)?complete",
        r"all\s+tests?\s+(are\s+)?(now\s+)?passing",
        r"successfully\s+(completed|implemented|finished)",
        r"task\s+(is\s+)?(now\s+)?(complete|done|finished)",
        r"everything\s+(is\s+)?(now\s+)?(working|complete|done)",
    )
)

ERROR_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(p, re.IGNORECASE)
    for p in (
        r"error:",
        r"failed",
        r"exception",
        r"cannot\s+find",
        r"not\s+found",
        r"permission\s+denied",
    )
)

STUCK_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(p, re.IGNORECASE)
    for p in (
        r"i('m|\s+am)\s+stuck",
        r"i('m|\s+am)\s+unable\s+to",
        r"i\s+need\s+(help|assistance|guidance)",
        r"cannot\s+proceed",
        r"blocked\s+by",
        r"waiting\s+for\s+(human|user|input)",
    )
)

_CRITERION_DONE_RE = re.compile(r"CRITERION_DONE:\s*(\d+)")
_STEP_DONE_RE = re.compile(r"STEP_DONE:\s*(\d+)")
_STUCK_REASON_RE = re.compile(r"STUCK:[ \t]*([^\r\n]*)")

_TEST_MENTION_RE = re.compile(
    r"tests?\s+(pass|passes|passing|passed|run|running|ran)"
    r"|(running|ran|run)\s+(the\s+)?tests?",
    re.IGNORECASE,
)
_CHANGE_VERB_RE = re.compile(
    r"\b(creat(e|ed|es|ing)|modif(y|ied|ies|ying)|chang(e|ed|es|ing)"
    r"|updat(e|ed|es|ing)|add(ed|s|ing)?|wr(ite|ites|ote|itten|iting)|edit(ed|s|ing)?)\b",
    re.IGNORECASE,
)

_EDIT_TOOL_RE = re.compile(r"\b(edit|write|notebookedit|multiedit)\b", re.IGNORECASE)
_BASH_TOOL_RE = re.compile(r"\bbash\b", re.IGNORECASE)
_READ_TOOL_RE = re.compile(r"\b(read|glob|grep)\b", re.IGNORECASE)


def count_pattern_matches(patterns: tuple[re.Pattern[str], ...], text: str) -> int:
    """Number of distinct patterns that match at least once."""
    return sum(1 for pattern in patterns if pattern.search(text))


def _extract_numbers(pattern: re.Pattern[str], text: str) -> list[int]:
    return sorted({int(m) for m in pattern.findall(text)})


def extract_criteria_done(text: str) -> list[int]:
    return _extract_numbers(_CRITERION_DONE_RE, text)


def extract_steps_done(text: str) -> list[int]:
    return _extract_numbers(_STEP_DONE_RE, text)


def detect_stuck(text: str) -> bool:
    return STUCK_MARKER in text or count_pattern_matches(STUCK_PATTERNS, text) > 0


def extract_stuck_reason(text: str) -> str:
    match = _STUCK_REASON_RE.search(text)
    if not match:
        return ""
    return match.group(1).strip()


def detect_test_only_loop(text: str) -> bool:
    """Running or passing tests, with no sign of any edit."""
    return bool(_TEST_MENTION_RE.search(text)) and not _CHANGE_VERB_RE.search(text)


def extract_tool_calls(text: str) -> ToolCalls:
    edit = len(_EDIT_TOOL_RE.findall(text))
    bash = len(_BASH_TOOL_RE.findall(text))
    read = len(_READ_TOOL_RE.findall(text))
    return ToolCalls(edit=edit, bash=bash, read=read, total=edit + bash + read)


def extract_signals(text: str) -> Signals:
    """Classify one agent response. Pure and deterministic."""
    text = text or ""
    return Signals(
        exit_signal=EXIT_MARKER in text,
        criteria_done=extract_criteria_done(text),
        steps_done=extract_steps_done(text),
        stuck_signal=detect_stuck(text),
        stuck_reason=extract_stuck_reason(text),
        completion_score=count_pattern_matches(COMPLETION_PATTERNS, text),
        error_score=count_pattern_matches(ERROR_PATTERNS, text),
        test_only_loop=detect_test_only_loop(text),
        tool_calls=extract_tool_calls(text),
    )


def signals_to_yaml(signals: Signals) -> str:
    """Render signals as YAML for iteration transcripts."""
    return yaml.safe_dump(signals.model_dump(mode="json"), sort_keys=False).strip()
