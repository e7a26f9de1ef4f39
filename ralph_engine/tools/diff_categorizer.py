"""Categorise changed files from ``git diff --numstat`` output.

The context builder shows the agent what it touched last time, grouped by
category, so it can tell source progress from test or doc churn.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

# Checked in order; the first category with a matching pattern wins.
FILE_CATEGORIES: list[tuple[str, list[re.Pattern[str]]]] = [
    ("test", [re.compile(p) for p in (r"test", r"spec", r"__tests__", r"\.test\.", r"\.spec\.")]),
    ("config", [re.compile(p) for p in (r"config", r"\.json$", r"\.yaml$", r"\.yml$", r"\.toml$", r"\.env")]),
    ("docs", [re.compile(p) for p in (r"\.md$", r"readme", r"changelog", r"docs/")]),
    ("source", [re.compile(p) for p in (
        r"\.ts$", r"\.tsx$", r"\.js$", r"\.jsx$", r"\.py$", r"\.rb$", r"\.go$", r"\.rs$", r"\.clj$",
    )]),
    ("styles", [re.compile(p) for p in (r"\.css$", r"\.scss$", r"\.less$", r"\.styled\.")]),
    ("build", [re.compile(p) for p in (r"package\.json$", r"cargo\.toml$", r"build\.", r"makefile", r"\.lock$")]),
]


@dataclass
class FileChange:
    path: str
    added: int
    removed: int
    category: str


@dataclass
class CategorySummary:
    count: int = 0
    added: int = 0
    removed: int = 0
    files: list[str] = field(default_factory=list)


def categorize_file(path: str) -> str:
    lower = path.lower()
    for category, patterns in FILE_CATEGORIES:
        if any(p.search(lower) for p in patterns):
            return category
    return "other"


def parse_numstat(output: str) -> list[FileChange]:
    """Parse numstat lines ``added<TAB>removed<TAB>path``. Binary files ("-") count as 0."""
    changes = []
    for line in output.splitlines():
        parts = line.split("\t")
        if len(parts) < 3 or not parts[2]:
            continue
        added, removed, path = parts[0], parts[1], parts[2]
        try:
            changes.append(FileChange(
                path=path,
                added=0 if added == "-" else int(added),
                removed=0 if removed == "-" else int(removed),
                category=categorize_file(path),
            ))
        except ValueError:
            continue
    return changes


def summarize_by_category(changes: list[FileChange]) -> dict[str, CategorySummary]:
    summary: dict[str, CategorySummary] = {}
    for change in changes:
        entry = summary.setdefault(change.category, CategorySummary())
        entry.count += 1
        entry.added += change.added
        entry.removed += change.removed
        entry.files.append(change.path)
    return summary


def has_meaningful_changes(summary: dict[str, CategorySummary]) -> bool:
    """Source, config or build changes count; tests and docs alone do not."""
    return any(summary.get(c, CategorySummary()).count > 0 for c in ("source", "config", "build"))


def is_test_only(summary: dict[str, CategorySummary]) -> bool:
    def count(category: str) -> int:
        return summary.get(category, CategorySummary()).count

    return count("test") > 0 and count("source") == 0 and count("config") == 0


def format_diff_summary(summary: dict[str, CategorySummary]) -> str:
    lines = ["## Changes by Category", ""]
    for category in sorted(summary):
        entry = summary[category]
        lines.append(f"### {category} ({entry.count} files, +{entry.added}/-{entry.removed})")
        lines.extend(f"- {path}" for path in entry.files)
        lines.append("")
    if is_test_only(summary):
        lines.append("**Note:** only test files changed. No source progress yet.")
    elif summary and not has_meaningful_changes(summary):
        lines.append("**Note:** no source, config or build changes yet.")
    return "\n".join(lines).rstrip()
