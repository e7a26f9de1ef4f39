"""Custom exception hierarchy for ralph-engine.

All exceptions inherit from RalphError so callers can catch broadly
or narrowly as needed.
"""


class RalphError(Exception):
    """Base exception for all ralph-engine errors."""


# ---------------------------------------------------------------------------
# Session state
# ---------------------------------------------------------------------------

class StateError(RalphError):
    """Failed to read or write persisted session state."""


class SessionStateError(StateError):
    """Illegal session status transition or missing session."""


class SessionLockedError(StateError):
    """Another live loop process owns the session."""

    def __init__(self, pid: int):
        self.pid = pid
        super().__init__(f"Session is owned by a running loop process (pid {pid})")


# ---------------------------------------------------------------------------
# Agent
# ---------------------------------------------------------------------------

class AgentError(RalphError):
    """Agent processing failure."""


class AgentInvocationError(AgentError):
    """The agent process failed, timed out, or produced unusable output."""


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------

class ToolError(RalphError):
    """Tool execution failure."""


class ShellTimeoutError(ToolError):
    """Shell command exceeded timeout."""


class GitOperationError(ToolError):
    """Git operation failed."""


# ---------------------------------------------------------------------------
# Configuration / plan
# ---------------------------------------------------------------------------

class ConfigError(RalphError):
    """Invalid or missing configuration."""


class PlanParseError(RalphError):
    """plan.md is missing or has no usable task definition."""
