"""Iteration control loop for ralph-engine.

Each iteration runs a strictly sequential pipeline:

  context → agent → signals → tests → outcome → health → budget
          → criteria → steering → decide → persist → act

The snapshot is saved in one atomic write after the audit record, so an
iteration is either fully persisted or leaves no trace. A restart resumes
at ``last_iteration + 1``.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Callable, Iterable, Optional, Protocol

from ralph_engine.agents.invoker import AgentInvoker, AgentResponse
from ralph_engine.core.config import AppConfig
from ralph_engine.core.exceptions import (
    AgentInvocationError,
    SessionStateError,
    ToolError,
)
from ralph_engine.core.models import (
    Decision,
    DecisionAction,
    IterationOutcome,
    IterationRecord,
    PlanStep,
    SessionState,
    SessionStatus,
    Signals,
    TestTrend,
)
from ralph_engine.orchestrator.budget import BudgetTracker
from ralph_engine.orchestrator.context_builder import ContextBuilder
from ralph_engine.orchestrator.criteria import all_complete, criteria_progress, mark_many, pending_numbers
from ralph_engine.orchestrator.decision import decide
from ralph_engine.orchestrator.guidance import generate_budget_hint, next_steering
from ralph_engine.orchestrator.health_monitor import HealthMonitor
from ralph_engine.orchestrator.session_router import ACTION_STATUS, transition
from ralph_engine.orchestrator.signals import extract_signals
from ralph_engine.state.store import StateStore
from ralph_engine.tools.diff_categorizer import format_diff_summary, parse_numstat, summarize_by_category
from ralph_engine.tools.test_runner import TestRunResult, compare_to_baseline

logger = logging.getLogger("ralph.orchestrator.loop")

RESPONSE_EXCERPT_LINES = 50


class TestRunner(Protocol):
    def run(self) -> TestRunResult: ...


class VersionControl(Protocol):
    def has_changes(self) -> bool: ...
    def diff_numstat(self) -> str: ...
    def commit(self, message: str) -> str: ...


class LoopControl:
    """Cancellation token checked at iteration boundaries.

    Pause and abort can be requested in-process, or picked up from polled
    sources such as the store's pause sentinel written by ``ralph pause``.
    """

    def __init__(
        self,
        pause_sources: Iterable[Callable[[], bool]] = (),
        abort_sources: Iterable[Callable[[], bool]] = (),
    ):
        self._pause = False
        self._abort = False
        self._pause_sources = list(pause_sources)
        self._abort_sources = list(abort_sources)

    def request_pause(self) -> None:
        self._pause = True

    def request_abort(self) -> None:
        self._abort = True

    @property
    def pause_requested(self) -> bool:
        return self._pause or any(source() for source in self._pause_sources)

    @property
    def abort_requested(self) -> bool:
        return self._abort or any(source() for source in self._abort_sources)

    def clear(self) -> None:
        self._pause = False
        self._abort = False


def _excerpt(text: str, max_lines: int = RESPONSE_EXCERPT_LINES) -> str:
    return "\n".join(text.splitlines()[:max_lines])


def _mark_steps(steps: list[PlanStep], numbers: list[int]) -> list[PlanStep]:
    """STEP_DONE numbers are 1-based positions in the implementation plan."""
    wanted = set(numbers)
    return [
        s.model_copy(update={"checked": True}) if i in wanted and not s.checked else s
        for i, s in enumerate(steps, start=1)
    ]


class IterationLoop:
    """Drives a session through iterations until a decision stops it.

    Injected dependencies:
        store: Snapshot, audit trail and operator channels.
        invoker: Agent provider.
        context_builder: Builds the per-iteration context document.
        config: Application configuration (thresholds, session mode, vcs).
        test_runner: Optional; without one tests_passed is None.
        vcs: Optional; without one has_changes is False and nothing is committed.
        control: Pause/abort token checked at iteration boundaries.
        progress_callback: Receives one-line progress messages for the CLI.
    """

    def __init__(
        self,
        store: StateStore,
        invoker: AgentInvoker,
        context_builder: ContextBuilder,
        config: AppConfig,
        test_runner: Optional[TestRunner] = None,
        vcs: Optional[VersionControl] = None,
        control: Optional[LoopControl] = None,
        progress_callback: Optional[Callable[[str], None]] = None,
    ):
        self.store = store
        self.invoker = invoker
        self.context_builder = context_builder
        self.config = config
        self.test_runner = test_runner
        self.vcs = vcs
        self.control = control or LoopControl(pause_sources=[store.pause_requested])
        self._progress_callback = progress_callback
        self._rules_mtime: Optional[float] = None
        self._rules_tracked = False
        self._urgent_seen: Optional[str] = None

    def _notify(self, message: str) -> None:
        """Send a progress notification to the CLI callback, if configured."""
        if self._progress_callback is not None:
            self._progress_callback(message)

    # -- hybrid session -----------------------------------------------------

    def should_refresh(self, state: SessionState, iteration: int, urgent: Optional[str]) -> bool:
        """Whether this iteration starts a fresh agent session with full context."""
        agent = self.config.agent
        if agent.session_mode == "stateless":
            return True
        if not state.agent_session_handle:
            return True
        if iteration - state.session_started_iteration >= agent.refresh_interval:
            logger.debug("Refresh: interval reached")
            return True
        if self._rules_tracked and self.context_builder.rules_mtime() != self._rules_mtime:
            logger.debug("Refresh: rules changed")
            return True
        if agent.refresh_on_inject and urgent and urgent != self._urgent_seen:
            logger.debug("Refresh: new urgent message")
            return True
        if agent.refresh_on_criterion and state.last_signals and state.last_signals.criteria_done:
            logger.debug("Refresh: criterion completed last iteration")
            return True
        return False

    def _track_refresh(self, urgent: Optional[str]) -> None:
        self._rules_mtime = self.context_builder.rules_mtime()
        self._rules_tracked = True
        self._urgent_seen = urgent

    # -- collaborators ------------------------------------------------------

    def _run_tests(self) -> Optional[TestRunResult]:
        if self.test_runner is None:
            return None
        try:
            return self.test_runner.run()
        except ToolError as e:
            logger.warning("Test runner failed: %s", e)
            detail = str(e)
        except Exception as e:
            logger.exception("Test runner raised unexpectedly")
            detail = f"{type(e).__name__}: {e}"
        return TestRunResult(passed=False, output=detail, exit_code=-1, duration_seconds=0.0)

    def _has_changes(self) -> bool:
        if self.vcs is None:
            return False
        try:
            return self.vcs.has_changes()
        except Exception as e:
            logger.warning("Change detection failed: %s", e)
            return False

    def _diff_summary(self) -> Optional[str]:
        if self.vcs is None:
            return None
        try:
            numstat = self.vcs.diff_numstat()
        except Exception as e:
            logger.warning("Diff summary unavailable: %s", e)
            return None
        changes = parse_numstat(numstat)
        if not changes:
            return "_No uncommitted changes_"
        return format_diff_summary(summarize_by_category(changes))

    def _commit(self, message: str) -> None:
        if self.vcs is None:
            return
        try:
            if not self.vcs.has_changes():
                return
            commit_hash = self.vcs.commit(message)
            if commit_hash:
                self._notify(f"[GIT] {message} ({commit_hash[:8]})")
        except Exception as e:
            logger.warning("Git commit failed (non-fatal): %s", e)

    # -- pipeline -----------------------------------------------------------

    def run_iteration(self, state: SessionState, iteration: int) -> tuple[SessionState, Decision]:
        """Run one iteration through persist. Returns the saved state and the decision."""
        started_at = datetime.now(UTC)
        loop_cfg = self.config.loop
        logger.info("Starting iteration %d", iteration)

        # 1. Context
        urgent = self.store.read_urgent()
        refresh = self.should_refresh(state, iteration, urgent)
        if refresh:
            state = state.model_copy(update={"session_started_iteration": iteration})
            self._track_refresh(urgent)
        budget_before = BudgetTracker(loop_cfg.max_tokens, loop_cfg.max_iterations, state.ledger).status()
        context = self.context_builder.build(
            state,
            iteration,
            mode="full" if refresh else "continue",
            urgent=urgent,
            budget_hint=generate_budget_hint(budget_before),
            diff_summary=self._diff_summary(),
            recent=self.store.list_records(limit=self.config.context.recent_iterations) if refresh else None,
        )
        session_handle = None if refresh else state.agent_session_handle

        # 2. Agent
        error: Optional[str] = None
        try:
            response = self.invoker.invoke(context, self.config.agent.model, session_handle=session_handle)
        except AgentInvocationError as e:
            logger.error("Agent invocation failed on iteration %d: %s", iteration, e)
            error = str(e)
        except Exception as e:
            logger.exception("Agent invoker raised unexpectedly on iteration %d", iteration)
            error = f"{type(e).__name__}: {e}"
        if error is not None:
            self._notify(f"[ERROR] Agent failed: {error}")
            return self._complete_iteration(
                state,
                iteration,
                started_at,
                response=AgentResponse(text="", session_handle=state.agent_session_handle),
                signals=Signals(),
                outcome=IterationOutcome(success=False, error_message=error),
                test_result=None,
            )

        # 3. Signals
        signals = extract_signals(response.text)

        # 4. Tests
        test_result = self._run_tests()
        tests_passed = None if test_result is None else test_result.passed

        # 5. Outcome
        outcome = IterationOutcome(
            success=True,
            has_changes=self._has_changes(),
            test_only=signals.test_only_loop,
            criterion_completed=bool(pending_numbers(state.criteria, signals.criteria_done)),
            tests_passed=tests_passed,
        )
        return self._complete_iteration(state, iteration, started_at, response, signals, outcome, test_result)

    def _complete_iteration(
        self,
        state: SessionState,
        iteration: int,
        started_at: datetime,
        response: AgentResponse,
        signals: Signals,
        outcome: IterationOutcome,
        test_result: Optional[TestRunResult],
    ) -> tuple[SessionState, Decision]:
        loop_cfg = self.config.loop

        # 6. Health
        health = HealthMonitor(loop_cfg, state.health).record(outcome)

        # 7. Budget
        tracker = BudgetTracker(loop_cfg.max_tokens, loop_cfg.max_iterations, state.ledger)
        tracker.record(iteration, response.input_tokens, response.output_tokens)
        budget = tracker.status()

        # 8. Criteria
        criteria, newly_checked = mark_many(state.criteria, signals.criteria_done)
        steps = _mark_steps(state.steps, signals.steps_done)
        for number in newly_checked:
            self._notify(f"[CRITERION] {number} complete")

        # 9. Steering
        steering = next_steering(
            state.steering,
            outcome.tests_passed,
            health.consecutive_test_failures,
            loop_cfg.max_consecutive_test_failures,
        )

        test_trend = state.test_trend
        if test_result is not None and state.test_baseline is not None:
            test_trend = compare_to_baseline(state.test_baseline, test_result)
            if test_trend == TestTrend.REGRESSED:
                logger.warning("Iteration %d: tests regressed against the session baseline", iteration)
                self._notify("[ERROR] Tests regressed against the session baseline")

        # 10. Decide
        decision = decide(signals, health, budget, all_complete(criteria), loop_cfg)
        logger.info(
            "Iteration %d decision: %s (%s)", iteration, decision.action.value, decision.reason,
        )
        if decision.warning:
            logger.warning("Iteration %d: %s", iteration, decision.warning)

        # 11. Persist
        test_output = test_result.output if test_result is not None else state.last_test_output
        new_state = state.model_copy(update={
            "last_iteration": iteration,
            "updated_at": datetime.now(UTC),
            "criteria": criteria,
            "steps": steps,
            "health": health,
            "ledger": tracker.ledger,
            "last_signals": signals,
            "last_decision": decision,
            "last_test_output": test_output,
            "test_trend": test_trend,
            "steering": steering,
            "agent_session_handle": response.session_handle or state.agent_session_handle,
        })
        record = IterationRecord(
            iteration=iteration,
            started_at=started_at,
            outcome=outcome,
            signals=signals,
            decision=decision,
            input_tokens=response.input_tokens,
            output_tokens=response.output_tokens,
            response_excerpt=_excerpt(response.text),
            test_output_excerpt=test_result.output if test_result is not None else None,
            test_trend=test_trend if test_result is not None else None,
        )
        self.store.append_record(record)
        self.store.save(new_state)
        return new_state, decision

    # -- act ----------------------------------------------------------------

    def act(self, state: SessionState, decision: Decision, iteration: int) -> SessionState:
        """Apply a decision to the session status. Saves when the status changes."""
        interval = self.config.vcs.auto_commit_interval
        if decision.action != DecisionAction.COMPLETE and interval > 0 and iteration % interval == 0:
            self._commit(f"chore(ralph): auto-commit (iteration {iteration})")

        target = ACTION_STATUS[decision.action]
        reason = decision.reason
        if decision.action == DecisionAction.CONTINUE:
            if self.control.abort_requested:
                target, reason = SessionStatus.ABORTED, "Abort requested by operator"
            elif self.control.pause_requested:
                target, reason = SessionStatus.PAUSED, "Pause requested by operator"

        if target == SessionStatus.COMPLETED and self.config.vcs.commit_on_complete:
            self._commit(f"chore(ralph): task completed (iteration {iteration})")

        if target == state.status:
            return state

        state = transition(state, target, reason)
        self.store.save(state)
        self._notify(f"[{target.value.upper()}] {reason}")
        return state

    def run(self, single: bool = False) -> SessionState:
        """Run iterations until a decision or an operator request stops the loop.

        Args:
            single: Stop after one iteration even if the decision is continue.

        Returns:
            The final persisted session state.

        Raises:
            SessionStateError: If there is no session or it cannot be resumed.
        """
        state = self.store.load()
        if state is None:
            raise SessionStateError("No session to run; start one first")

        state = transition(state, SessionStatus.RUNNING, "loop started")
        self.store.save(state)
        iteration = state.last_iteration + 1
        logger.info(
            "Starting loop at iteration %d (max: %d)", iteration, self.config.loop.max_iterations,
        )

        try:
            while state.status == SessionStatus.RUNNING:
                if self.control.abort_requested:
                    state = transition(state, SessionStatus.ABORTED, "Abort requested by operator")
                    self.store.save(state)
                    break

                state, decision = self.run_iteration(state, iteration)
                state = self.act(state, decision, iteration)

                done, total = criteria_progress(state.criteria)
                self._notify(
                    f"  Iteration {iteration}: {decision.action.value} - {decision.reason} "
                    f"({done}/{total} criteria)"
                )
                if single and state.status == SessionStatus.RUNNING:
                    state = transition(state, SessionStatus.PAUSED, "Single iteration complete")
                    self.store.save(state)
                    break
                iteration += 1
        finally:
            self.store.clear_pause_request()

        logger.info("Loop stopped at iteration %d with status %s", state.last_iteration, state.status.value)
        return state
