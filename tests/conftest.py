"""Shared fixtures for ralph-engine tests.

Collaborators that leave the process (agent CLIs) are replaced with small
scripted fakes; git and shell tests run against real temp directories.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import pytest
from dotenv import load_dotenv

# Load .env from project root so RALPH_* overrides are visible to config tests
load_dotenv(Path(__file__).parent.parent / ".env")

from ralph_engine.agents.invoker import AgentResponse
from ralph_engine.core.config import AppConfig
from ralph_engine.core.exceptions import AgentInvocationError
from ralph_engine.core.models import Criterion, SessionState

SAMPLE_PLAN = """\
# Task

Add a health endpoint to the API service.

It should report build metadata.

## Context

The service is a small Flask app under app/.

## Implementation Plan

- [ ] Add the route
- [x] Write the handler

## Completion Criteria

- [ ] 1. GET /health returns 200
- [ ] 2. Response includes the git sha
- [x] 3. Endpoint is documented

## Backlog

- [ ] Add readiness probe (needs infra input)
"""


class ScriptedInvoker:
    """AgentInvoker fake: replays responses in order and records calls.

    A scripted item that is an Exception instance is raised instead.
    """

    def __init__(self, responses: list):
        self.responses = list(responses)
        self.calls: list[dict] = []

    def invoke(self, context: str, model: str, session_handle: Optional[str] = None) -> AgentResponse:
        self.calls.append({"context": context, "model": model, "session_handle": session_handle})
        if not self.responses:
            raise AgentInvocationError("script exhausted")
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        if isinstance(item, str):
            return AgentResponse(text=item, input_tokens=100, output_tokens=50, session_handle="sess-1")
        return item


class FakeVcs:
    def __init__(self, changes: bool = True, numstat: str = ""):
        self.changes = changes
        self.numstat = numstat
        self.commits: list[str] = []

    def has_changes(self) -> bool:
        return self.changes

    def diff_numstat(self) -> str:
        return self.numstat

    def commit(self, message: str) -> str:
        self.commits.append(message)
        return "abcdef1234567890"


@pytest.fixture
def sample_plan() -> str:
    return SAMPLE_PLAN


@pytest.fixture
def state_dir(tmp_path) -> Path:
    d = tmp_path / ".ralph"
    d.mkdir()
    (d / "plan.md").write_text(SAMPLE_PLAN)
    return d


@pytest.fixture
def config() -> AppConfig:
    return AppConfig()


@pytest.fixture
def session_state() -> SessionState:
    return SessionState(
        task="Add a health endpoint",
        criteria=[
            Criterion(number=1, text="GET /health returns 200"),
            Criterion(number=2, text="Response includes the git sha"),
        ],
    )
