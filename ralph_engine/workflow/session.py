"""Operator-facing session lifecycle: start, resume, pause, abort, inject, status."""

from __future__ import annotations

import contextlib
import logging
import os
import signal
import time
from datetime import UTC, datetime
from pathlib import Path
from typing import Callable, Iterator, Optional, Protocol

from pydantic import BaseModel

from ralph_engine.core.config import AppConfig
from ralph_engine.core.exceptions import SessionLockedError, SessionStateError
from ralph_engine.core.models import (
    BudgetStatus,
    Decision,
    HealthState,
    SessionState,
    SessionStatus,
    TestBaseline,
    TestTrend,
)
from ralph_engine.orchestrator.budget import budget_status, format_budget_status
from ralph_engine.orchestrator.criteria import all_complete, criteria_progress, criteria_to_markdown
from ralph_engine.orchestrator.health_monitor import reset_health
from ralph_engine.orchestrator.session_router import RESUMABLE, effective_status, is_process_alive, transition
from ralph_engine.plan.parser import load_plan
from ralph_engine.state.store import StateStore
from ralph_engine.tools.test_runner import TestRunResult, baseline_from_result

logger = logging.getLogger("ralph.workflow.session")

# A new session refuses to replace one that may still be resumed
_BLOCKING_STATUSES = {SessionStatus.RUNNING, SessionStatus.PAUSED, SessionStatus.CRASHED}

# How long abort waits for a signalled owner to exit before re-reading state
ABORT_WAIT_SECONDS = 10.0


class BaselineRunner(Protocol):
    def run(self) -> TestRunResult: ...


class StatusReport(BaseModel):
    session_id: str
    status: SessionStatus
    iteration: int
    task: str
    last_decision: Optional[Decision] = None
    health: HealthState
    budget: BudgetStatus
    criteria_done: int
    criteria_total: int
    all_complete: bool
    owner_pid: Optional[int] = None
    urgent_pending: bool = False
    pause_requested: bool = False
    test_baseline: Optional[TestBaseline] = None
    test_trend: Optional[TestTrend] = None
    resumable: bool = False


def format_status_report(report: StatusReport, criteria_markdown: str = "") -> str:
    lines = [
        f"Session:    {report.session_id}",
        f"Status:     {report.status.value}",
        f"Iteration:  {report.iteration}",
        f"Criteria:   {report.criteria_done}/{report.criteria_total}"
        + (" (all complete)" if report.all_complete else ""),
    ]
    if report.last_decision is not None:
        lines.append(
            f"Decision:   {report.last_decision.action.value} - {report.last_decision.reason}"
        )
    health = report.health
    lines.append(
        f"Health:     errors={health.consecutive_errors} no_change={health.consecutive_no_change} "
        f"test_only={health.consecutive_test_only} test_failures={health.consecutive_test_failures}"
        + (f" TRIPPED ({health.trip_reason})" if health.tripped else "")
    )
    if report.owner_pid:
        lines.append(f"Owner pid:  {report.owner_pid}")
    if report.urgent_pending:
        lines.append("Urgent:     message pending")
    if report.pause_requested:
        lines.append("Pause:      requested")
    if report.test_baseline is not None:
        baseline = "passed" if report.test_baseline.passed else f"failed (exit {report.test_baseline.exit_code})"
        trend = f", now {report.test_trend.value}" if report.test_trend else ""
        lines.append(f"Tests:      baseline {baseline}{trend}")
    if report.resumable and report.status != SessionStatus.INITIALIZED:
        lines.append("Next:       ralph resume")
    lines += ["", format_budget_status(report.budget)]
    if criteria_markdown:
        lines += ["", criteria_markdown]
    return "\n".join(lines)


class SessionManager:
    """Session lifecycle over a StateStore.

    Injected dependencies:
        store: Persisted state.
        config: Application configuration (budget ceilings for reports).
        plan_path: Location of plan.md.
        test_runner: Optional; runs the baseline test pass when a session starts.
        kill: Signal sender used by abort (os.kill outside tests).
        abort_wait_seconds: How long abort waits for the signalled owner to exit.
    """

    def __init__(
        self,
        store: StateStore,
        config: AppConfig,
        plan_path: Path,
        test_runner: Optional[BaselineRunner] = None,
        kill: Callable[[int, int], None] = os.kill,
        abort_wait_seconds: float = ABORT_WAIT_SECONDS,
    ):
        self.store = store
        self.config = config
        self.plan_path = plan_path
        self.test_runner = test_runner
        self._kill = kill
        self.abort_wait_seconds = abort_wait_seconds

    # -- helpers ------------------------------------------------------------

    def _live_owner(self) -> Optional[int]:
        pid = self.store.owner_pid()
        if pid is not None and pid != os.getpid() and is_process_alive(pid):
            return pid
        return None

    def _require_unlocked(self) -> None:
        pid = self._live_owner()
        if pid is not None:
            raise SessionLockedError(pid)

    def _acquire(self, pid: int) -> bool:
        """Take the owner lock for ``pid``, replacing a lock left by a dead process.

        Returns:
            False if ``pid`` already held the lock.

        Raises:
            SessionLockedError: A live process holds the lock.
        """
        for attempt in range(3):
            if self.store.acquire_owner(pid):
                return True
            holder = self.store.owner_pid()
            if holder == pid:
                return False
            if holder is None and attempt == 0:
                # Released between our attempt and the read, or unreadable
                continue
            if holder is not None and is_process_alive(holder):
                raise SessionLockedError(holder)
            logger.warning("Removing stale owner lock (pid %s)", holder)
            self.store.release_owner(holder)
        holder = self.store.owner_pid()
        raise SessionLockedError(holder if holder is not None else -1)

    def load(self) -> SessionState:
        """Raises SessionStateError if there is no session."""
        state = self.store.load()
        if state is None:
            raise SessionStateError("No active session; run 'ralph start' first")
        return state

    def current_status(self, state: SessionState) -> SessionStatus:
        owner = self.store.owner_pid()
        # Our own lock does not vouch for a snapshot this process has not run yet
        if owner == os.getpid():
            owner = None
        return effective_status(state, owner)

    def _run_baseline(self) -> Optional[TestRunResult]:
        if self.test_runner is None:
            return None
        logger.info("Running baseline tests")
        try:
            return self.test_runner.run()
        except Exception as e:
            logger.warning("Baseline test run failed; no baseline recorded: %s", e)
            return None

    # -- lifecycle ----------------------------------------------------------

    def start(self, force: bool = False) -> SessionState:
        """Create a new session from plan.md, archiving any finished one.

        When a test runner is configured the suite is run once and recorded
        as the session's baseline.

        Raises:
            SessionLockedError: A live loop owns the current session.
            SessionStateError: A resumable session exists and ``force`` is not set.
            PlanParseError: plan.md is missing or unusable.
        """
        self._require_unlocked()

        existing = self.store.load()
        if existing is not None:
            status = self.current_status(existing)
            if status in _BLOCKING_STATUSES and not force:
                raise SessionStateError(
                    f"A session exists (status: {status.value}). "
                    "Use 'ralph resume' to continue or 'ralph abort' to stop it."
                )

        plan = load_plan(self.plan_path)
        if existing is not None:
            archived = self.store.archive()
            if archived:
                logger.info("Previous session (%s) archived as %s", existing.status.value, archived)

        state = SessionState(
            task=plan.task,
            context=plan.context,
            criteria=plan.criteria,
            steps=plan.steps,
            backlog=plan.backlog,
        )
        baseline = self._run_baseline()
        if baseline is not None:
            state = state.model_copy(update={
                "test_baseline": baseline_from_result(baseline),
                "last_test_output": baseline.output,
            })
            logger.info("Test baseline: %s", "passed" if baseline.passed else "failed")

        self.store.clear_urgent()
        self.store.clear_pause_request()
        self.store.save(state)
        logger.info(
            "Session %s initialized with %d criteria and %d steps",
            state.session_id, len(state.criteria), len(state.steps),
        )
        return state

    def prepare_resume(self, reset_health_counters: bool = False) -> SessionState:
        """Make a stopped session ready for the loop.

        Raises:
            SessionLockedError: A live loop already owns the session.
            SessionStateError: No session, or it is not in a resumable status.
        """
        self._require_unlocked()
        state = self.load()
        status = self.current_status(state)

        if status == SessionStatus.COMPLETED:
            raise SessionStateError("Session is completed. Start a new session with 'ralph start'.")
        if status not in RESUMABLE:
            raise SessionStateError(f"Session cannot be resumed from status: {status.value}")
        if status == SessionStatus.CRASHED:
            logger.warning("Session %s crashed; resuming from iteration %d", state.session_id, state.last_iteration + 1)
        else:
            logger.info("Resuming session %s from status: %s", state.session_id, status.value)

        updates: dict = {"updated_at": datetime.now(UTC)}
        if reset_health_counters:
            logger.info("Resetting health counters")
            updates["health"] = reset_health()
        if not state.criteria and self.plan_path.exists():
            plan = load_plan(self.plan_path)
            if plan.criteria:
                logger.warning("Session has no criteria; reloading %d from plan.md", len(plan.criteria))
                updates["criteria"] = plan.criteria

        if self.store.read_urgent() is not None:
            logger.info("Clearing previous urgent message")
            self.store.clear_urgent()
        self.store.clear_pause_request()

        state = state.model_copy(update=updates)
        self.store.save(state)
        return state

    @contextlib.contextmanager
    def ownership(self, pid: Optional[int] = None) -> Iterator[None]:
        """Hold the owner lock while the block runs.

        Take it before ``start`` or ``prepare_resume`` so that no other
        process can change the snapshot between those calls and the loop.
        Re-entering with the pid that already holds the lock is allowed.

        Raises:
            SessionLockedError: Another live process holds the lock.
        """
        pid = pid or os.getpid()
        acquired = self._acquire(pid)
        try:
            yield
        finally:
            if acquired:
                self.store.release_owner(pid)

    def pause(self) -> bool:
        """Ask the running loop to pause after the current iteration.

        Returns:
            False if the session is not running (nothing to pause).
        """
        state = self.load()
        status = self.current_status(state)
        if status != SessionStatus.RUNNING:
            logger.warning("Session is not running (status: %s)", status.value)
            return False
        self.store.request_pause()
        logger.info("Pause requested; the loop will stop after the current iteration")
        return True

    def _wait_for_exit(self, pid: int) -> bool:
        deadline = time.monotonic() + self.abort_wait_seconds
        while is_process_alive(pid):
            if time.monotonic() >= deadline:
                return False
            time.sleep(0.1)
        return True

    def abort(self) -> SessionState:
        """Stop the owner process (if alive) and mark the session aborted.

        The owner is signalled first and the snapshot is read afterwards, so
        an iteration it saved in the meantime is kept.

        Raises:
            SessionStateError: No session, or it is already completed.
        """
        self.load()

        pid = self._live_owner()
        if pid is not None:
            logger.info("Terminating loop process %d", pid)
            try:
                self._kill(pid, signal.SIGTERM)
            except ProcessLookupError:
                logger.debug("Loop process %d already gone", pid)
            if not self._wait_for_exit(pid):
                logger.warning("Loop process %d still alive after %.0fs", pid, self.abort_wait_seconds)
        self.store.release_owner()
        self.store.clear_pause_request()

        state = self.load()
        if state.status == SessionStatus.ABORTED:
            logger.warning("Session is already aborted")
            return state

        state = transition(state, SessionStatus.ABORTED, "aborted by operator")
        self.store.save(state)
        return state

    # -- operator messages --------------------------------------------------

    def inject(self, message: str) -> str:
        """Queue an urgent message for the next iteration's context."""
        message = message.strip()
        if not message:
            raise ValueError("Empty message")
        stamp = datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")
        text = f"**Injected at:** {stamp}\n\n{message}"
        self.store.write_urgent(text)
        logger.info("Urgent message injected (%d chars)", len(message))
        return text

    def clear_injection(self) -> None:
        self.store.clear_urgent()

    def show_injection(self) -> Optional[str]:
        return self.store.read_urgent()

    # -- reporting ----------------------------------------------------------

    def status_report(self) -> StatusReport:
        state = self.load()
        done, total = criteria_progress(state.criteria)
        loop_cfg = self.config.loop
        owner = self.store.owner_pid()
        status = effective_status(state, owner)
        return StatusReport(
            session_id=state.session_id,
            status=status,
            iteration=state.last_iteration,
            task=state.task,
            last_decision=state.last_decision,
            health=state.health,
            budget=budget_status(state.ledger, loop_cfg.max_tokens, loop_cfg.max_iterations),
            criteria_done=done,
            criteria_total=total,
            all_complete=all_complete(state.criteria),
            owner_pid=owner if owner and is_process_alive(owner) else None,
            urgent_pending=self.store.read_urgent() is not None,
            pause_requested=self.store.pause_requested(),
            test_baseline=state.test_baseline,
            test_trend=state.test_trend,
            resumable=status in RESUMABLE,
        )

    def criteria_markdown(self) -> str:
        return criteria_to_markdown(self.load().criteria)
