"""Component factory for ralph-engine.

Creates and wires the loop's collaborators (state store, agent invoker,
test runner, version control, context builder) from configuration so the
CLI and embedding callers receive fully initialized dependencies.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from ralph_engine.agents.invoker import AgentInvoker, create_invoker
from ralph_engine.core.config import DEFAULT_STATE_DIR, AppConfig, PromptLoader, load_config
from ralph_engine.orchestrator.context_builder import ContextBuilder
from ralph_engine.orchestrator.loop import IterationLoop, LoopControl
from ralph_engine.state.store import FileStateStore
from ralph_engine.tools.git_ops import GitVcs, is_git_repo
from ralph_engine.tools.test_runner import ShellTestRunner
from ralph_engine.workflow.session import SessionManager

logger = logging.getLogger("ralph.core.factory")


@dataclass
class ComponentBundle:
    """Container for all initialized components.

    The factory builds the bundle once; the CLI hands references to the
    session manager and the iteration loop.
    """

    config: AppConfig
    state_dir: Path
    workdir: Path
    store: FileStateStore
    session_manager: SessionManager
    context_builder: ContextBuilder
    invoker: AgentInvoker
    test_runner: Optional[ShellTestRunner] = None
    vcs: Optional[GitVcs] = None


class ComponentFactory:
    """Factory for creating and wiring ralph-engine components.

    Usage:
        bundle = ComponentFactory.create(state_dir=Path(".ralph"))
        loop = ComponentFactory.build_loop(bundle)
    """

    @staticmethod
    def create(
        state_dir: Optional[Path] = None,
        env: Optional[str] = None,
        max_iterations: Optional[int] = None,
    ) -> ComponentBundle:
        """Create and wire all components.

        Args:
            state_dir: Session state directory. Default: ./.ralph
            env: Environment name for config overlay (e.g., "test").
            max_iterations: Overrides loop.max_iterations for this run.

        Raises:
            ConfigError: Invalid configuration.
            AgentInvocationError: Unknown agent provider.
        """
        state_dir = Path(state_dir or DEFAULT_STATE_DIR)
        workdir = state_dir.resolve().parent

        config = load_config(state_dir=state_dir, env=env)
        if max_iterations is not None:
            config = config.model_copy(
                update={"loop": config.loop.model_copy(update={"max_iterations": max_iterations})}
            )
        logger.info(
            "Config loaded (provider=%s model=%s max_iterations=%d)",
            config.agent.provider, config.agent.model, config.loop.max_iterations,
        )

        context_builder = ContextBuilder(
            prompt_loader=PromptLoader(state_dir / "prompts"),
            config=config.context,
            rules_path=state_dir / "rules.md",
        )
        invoker = create_invoker(
            config.agent.provider,
            cwd=str(workdir),
            timeout_seconds=config.agent.timeout_seconds,
        )

        test_runner = None
        if config.tests.command:
            test_runner = ShellTestRunner(
                command=config.tests.command,
                cwd=str(workdir),
                timeout_seconds=config.tests.timeout_seconds,
                max_output_lines=config.tests.max_output_lines,
                report_path=state_dir / "tests" / "latest.md",
            )
        else:
            logger.info("No test command configured; iterations run without tests")

        store = FileStateStore(state_dir)
        session_manager = SessionManager(store, config, plan_path=store.plan_path, test_runner=test_runner)

        vcs = None
        if is_git_repo(str(workdir)):
            try:
                excluded = [str(state_dir.resolve().relative_to(workdir))]
            except ValueError:
                excluded = []
            vcs = GitVcs(str(workdir), exclude=excluded, auto_push=config.vcs.auto_push)
        else:
            logger.warning("%s is not a git repository; change detection disabled", workdir)

        return ComponentBundle(
            config=config,
            state_dir=state_dir,
            workdir=workdir,
            store=store,
            session_manager=session_manager,
            context_builder=context_builder,
            invoker=invoker,
            test_runner=test_runner,
            vcs=vcs,
        )

    @staticmethod
    def build_loop(
        bundle: ComponentBundle,
        control: Optional[LoopControl] = None,
        progress_callback: Optional[Callable[[str], None]] = None,
    ) -> IterationLoop:
        return IterationLoop(
            store=bundle.store,
            invoker=bundle.invoker,
            context_builder=bundle.context_builder,
            config=bundle.config,
            test_runner=bundle.test_runner,
            vcs=bundle.vcs,
            control=control,
            progress_callback=progress_callback,
        )
