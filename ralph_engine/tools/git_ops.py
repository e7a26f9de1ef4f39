"""Git operations for ralph-engine.

Change detection for the health monitor, numstat output for the diff
categorizer, and the periodic / final commits made by the loop.
"""

from __future__ import annotations

import logging
from typing import Optional

from ralph_engine.core.exceptions import GitOperationError, ToolError
from ralph_engine.tools.shell import run_command

logger = logging.getLogger("ralph.tools.git_ops")


def _exclude_specs(exclude: Optional[list[str]]) -> list[str]:
    if not exclude:
        return []
    return ["--", "."] + [f":(exclude){path}" for path in exclude]


def is_git_repo(path: str) -> bool:
    """Check if the given path is inside a git repository."""
    try:
        result = run_command(["git", "rev-parse", "--is-inside-work-tree"], cwd=path)
    except ToolError:
        return False
    return result.success and result.stdout.strip() == "true"


def has_commits(repo_path: str) -> bool:
    return run_command(["git", "rev-parse", "--verify", "HEAD"], cwd=repo_path).success


def has_uncommitted_changes(repo_path: str, exclude: Optional[list[str]] = None) -> bool:
    """True if tracked or untracked files differ from HEAD.

    Args:
        repo_path: Path to the git repository.
        exclude: Paths ignored for the check (e.g. the state directory).

    Raises:
        GitOperationError: If git status fails.
    """
    cmd = ["git", "status", "--porcelain", "--untracked-files=all"] + _exclude_specs(exclude)
    result = run_command(cmd, cwd=repo_path)
    if not result.success:
        raise GitOperationError(f"git status failed: {result.stderr}")
    return bool(result.stdout.strip())


def uncommitted_numstat(repo_path: str, exclude: Optional[list[str]] = None) -> str:
    """``git diff --numstat`` for unstaged then staged changes."""
    specs = _exclude_specs(exclude)
    parts = []
    for cmd in (["git", "diff", "--numstat"], ["git", "diff", "--numstat", "--cached"]):
        result = run_command(cmd + specs, cwd=repo_path)
        if result.success and result.stdout.strip():
            parts.append(result.stdout.strip())
    return "\n".join(parts)


def commit(
    repo_path: str,
    message: str,
    files: Optional[list[str]] = None,
    exclude: Optional[list[str]] = None,
) -> str:
    """Stage files and create a git commit.

    Args:
        repo_path: Path to the git repository.
        message: Commit message.
        files: Specific files to stage. If None, stages all changes.
        exclude: Paths never staged when staging all changes.

    Returns:
        Commit hash, or "" if there was nothing to commit.

    Raises:
        GitOperationError: If commit fails.
    """
    if files:
        for f in files:
            result = run_command(["git", "add", f], cwd=repo_path)
            if not result.success:
                raise GitOperationError(f"git add failed for {f}: {result.stderr}")
    else:
        result = run_command(["git", "add", "-A"] + _exclude_specs(exclude), cwd=repo_path)
        if not result.success:
            raise GitOperationError(f"git add -A failed: {result.stderr}")

    if has_commits(repo_path):
        staged = run_command(["git", "diff", "--cached", "--quiet"], cwd=repo_path)
        if staged.success:
            logger.info("Nothing to commit")
            return ""

    result = run_command(["git", "commit", "-m", message], cwd=repo_path)
    if not result.success:
        if "nothing to commit" in result.stdout:
            logger.info("Nothing to commit")
            return ""
        raise GitOperationError(f"git commit failed: {result.stderr or result.stdout}")

    hash_result = run_command(["git", "rev-parse", "HEAD"], cwd=repo_path)
    commit_hash = hash_result.stdout.strip()
    logger.info("Committed %s: %s", commit_hash[:8], message.splitlines()[0])
    return commit_hash


def push(repo_path: str) -> bool:
    """Push the current branch to origin. Returns False when skipped or rejected."""
    remotes = run_command(["git", "remote"], cwd=repo_path)
    if not remotes.stdout.strip():
        logger.info("No remote configured, skipping push")
        return False

    branch = run_command(["git", "rev-parse", "--abbrev-ref", "HEAD"], cwd=repo_path).stdout.strip()
    result = run_command(["git", "push", "-u", "origin", branch], cwd=repo_path, timeout=300)
    if not result.success:
        logger.warning("Push to origin/%s failed: %s", branch, result.stderr.strip())
        return False
    logger.info("Pushed to origin/%s", branch)
    return True


class GitVcs:
    """VersionControl collaborator backed by a git working tree."""

    def __init__(
        self,
        repo_path: str = ".",
        exclude: Optional[list[str]] = None,
        auto_push: bool = False,
    ):
        self.repo_path = repo_path
        self.exclude = exclude or []
        self.auto_push = auto_push

    def has_changes(self) -> bool:
        return has_uncommitted_changes(self.repo_path, self.exclude)

    def diff_numstat(self) -> str:
        return uncommitted_numstat(self.repo_path, self.exclude)

    def commit(self, message: str) -> str:
        commit_hash = commit(self.repo_path, message, exclude=self.exclude)
        if commit_hash and self.auto_push:
            push(self.repo_path)
        return commit_hash
