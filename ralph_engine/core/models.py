"""All Pydantic data models for ralph-engine.

Defines the data contracts shared by the signal extractor, the health
monitor, the budget tracker, the criteria store, the decision engine and
the iteration loop. Every persisted record and audit entry has a model here.
"""

from __future__ import annotations

import enum
import uuid
from datetime import UTC, datetime
from typing import Optional

from pydantic import BaseModel, Field, field_validator, model_validator


def _new_session_id() -> str:
    return uuid.uuid4().hex[:12]


def _now() -> datetime:
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class SessionStatus(str, enum.Enum):
    INITIALIZED = "initialized"
    RUNNING = "running"
    PAUSED = "paused"
    VERIFY = "verify"
    COMPLETED = "completed"
    ABORTED = "aborted"
    CRASHED = "crashed"


class DecisionAction(str, enum.Enum):
    CONTINUE = "continue"
    COMPLETE = "complete"
    PAUSE = "pause"
    VERIFY = "verify"
    ABORT = "abort"


class Confidence(str, enum.Enum):
    HIGH = "high"
    MEDIUM = "medium"


class TestTrend(str, enum.Enum):
    """Latest test run compared with the session's baseline run."""
    __test__ = False

    IMPROVED = "improved"
    REGRESSED = "regressed"
    UNCHANGED = "unchanged"


# ---------------------------------------------------------------------------
# Signals
# ---------------------------------------------------------------------------

class ToolCalls(BaseModel):
    """Lexical counts of action verbs seen in an agent response."""
    edit: int = 0
    bash: int = 0
    read: int = 0
    total: int = 0


class Signals(BaseModel):
    """Structured facts extracted from one agent response."""
    exit_signal: bool = False
    criteria_done: list[int] = Field(default_factory=list)
    steps_done: list[int] = Field(default_factory=list)
    stuck_signal: bool = False
    stuck_reason: str = ""
    completion_score: int = 0
    error_score: int = 0
    test_only_loop: bool = False
    tool_calls: ToolCalls = Field(default_factory=ToolCalls)


class IterationOutcome(BaseModel):
    """What happened in one iteration, as seen by the health monitor."""
    success: bool
    has_changes: bool = False
    test_only: bool = False
    criterion_completed: bool = False
    tests_passed: Optional[bool] = None  # None = no test run
    error_message: Optional[str] = None


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------

class HealthState(BaseModel):
    consecutive_errors: int = Field(default=0, ge=0)
    consecutive_no_change: int = Field(default=0, ge=0)
    consecutive_test_only: int = Field(default=0, ge=0)
    consecutive_test_failures: int = Field(default=0, ge=0)
    last_error: Optional[datetime] = None
    last_error_message: Optional[str] = None
    last_success: Optional[datetime] = None
    tripped: bool = False
    trip_reason: Optional[str] = None


class TripStatus(BaseModel):
    tripped: bool = False
    reason: Optional[str] = None


# ---------------------------------------------------------------------------
# Budget
# ---------------------------------------------------------------------------

class BudgetEntry(BaseModel):
    iteration: int
    input_tokens: int = Field(ge=0)
    output_tokens: int = Field(ge=0)
    total: int = Field(ge=0)
    cumulative: int = Field(ge=0)


class BudgetLedger(BaseModel):
    """Append-only token usage log. cumulative[i] = cumulative[i-1] + total[i]."""
    entries: list[BudgetEntry] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_chain(self) -> "BudgetLedger":
        running = 0
        for entry in self.entries:
            if entry.total != entry.input_tokens + entry.output_tokens:
                raise ValueError(f"Ledger entry {entry.iteration}: total != input + output")
            running += entry.total
            if entry.cumulative != running:
                raise ValueError(f"Ledger entry {entry.iteration}: cumulative mismatch")
        return self

    @property
    def total_tokens(self) -> int:
        return self.entries[-1].cumulative if self.entries else 0

    @property
    def iterations(self) -> int:
        return len(self.entries)


class BudgetStatus(BaseModel):
    within_budget: bool
    total_tokens: int
    iterations: int
    max_tokens: int
    max_iterations: int
    tokens_remaining: int
    iterations_remaining: int
    percent_tokens_used: float
    percent_iterations_used: float
    exceeded_reason: Optional[str] = None


# ---------------------------------------------------------------------------
# Criteria / plan
# ---------------------------------------------------------------------------

class Criterion(BaseModel):
    number: int = Field(ge=0)
    text: str
    checked: bool = False


class PlanStep(BaseModel):
    text: str
    checked: bool = False


class Plan(BaseModel):
    """Parsed plan.md task definition."""
    task: str = ""
    criteria: list[Criterion] = Field(default_factory=list)
    steps: list[PlanStep] = Field(default_factory=list)
    context: str = ""
    backlog: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Tests
# ---------------------------------------------------------------------------

class TestBaseline(BaseModel):
    """Test suite result recorded when the session starts."""
    __test__ = False

    passed: bool
    exit_code: int
    passed_count: int = Field(default=0, ge=0)
    failed_count: int = Field(default=0, ge=0)
    recorded_at: datetime = Field(default_factory=_now)


# ---------------------------------------------------------------------------
# Decision
# ---------------------------------------------------------------------------

class Decision(BaseModel):
    action: DecisionAction
    reason: str
    confidence: Confidence
    requires_human: bool = False
    warning: Optional[str] = None


# ---------------------------------------------------------------------------
# Session snapshot + audit
# ---------------------------------------------------------------------------

class SessionState(BaseModel):
    """Everything the loop persists between iterations, saved as one snapshot."""
    session_id: str = Field(default_factory=_new_session_id)
    status: SessionStatus = SessionStatus.INITIALIZED
    started_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)
    last_iteration: int = Field(default=0, ge=0)
    task: str = ""
    context: str = ""
    criteria: list[Criterion] = Field(default_factory=list)
    steps: list[PlanStep] = Field(default_factory=list)
    backlog: list[str] = Field(default_factory=list)
    health: HealthState = Field(default_factory=HealthState)
    ledger: BudgetLedger = Field(default_factory=BudgetLedger)
    last_signals: Optional[Signals] = None
    last_decision: Optional[Decision] = None
    last_test_output: Optional[str] = None
    test_baseline: Optional[TestBaseline] = None
    test_trend: Optional[TestTrend] = None
    steering: Optional[str] = None
    agent_session_handle: Optional[str] = None
    session_started_iteration: int = 0

    @field_validator("criteria")
    @classmethod
    def _unique_numbers(cls, value: list[Criterion]) -> list[Criterion]:
        numbers = [c.number for c in value]
        if len(numbers) != len(set(numbers)):
            raise ValueError("Criterion numbers must be unique")
        return value


class IterationRecord(BaseModel):
    """Audit-trail entry for one completed iteration."""
    iteration: int
    started_at: datetime
    completed_at: datetime = Field(default_factory=_now)
    outcome: IterationOutcome
    signals: Signals
    decision: Decision
    input_tokens: int = 0
    output_tokens: int = 0
    response_excerpt: str = ""
    test_output_excerpt: Optional[str] = None
    test_trend: Optional[TestTrend] = None
