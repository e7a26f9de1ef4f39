"""Session lifecycle workflow for operators."""

from ralph_engine.workflow.session import (
    SessionManager,
    StatusReport,
    format_status_report,
)

__all__ = [
    "SessionManager",
    "StatusReport",
    "format_status_report",
]
