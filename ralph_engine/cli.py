"""CLI entrypoint for ralph-engine."""

from __future__ import annotations

import logging
import signal
import sys
from pathlib import Path
from typing import Any, Optional

import click

from ralph_engine.core.config import DEFAULT_STATE_DIR
from ralph_engine.core.exceptions import RalphError
from ralph_engine.core.factory import ComponentBundle, ComponentFactory
from ralph_engine.core.models import SessionStatus
from ralph_engine.workflow.session import format_status_report

# Session id of the loop currently running in this process, for the interrupt summary
_active_session_id: str | None = None


def _sigint_handler(signum: int, frame: Any) -> None:
    """Handle Ctrl+C with a resume hint instead of a bare traceback."""
    click.echo("\n")
    click.echo(click.style("Interrupted.", fg="yellow", bold=True))
    if _active_session_id:
        click.echo(f"  Session: {_active_session_id}")
    click.echo(
        "\nCompleted iterations are persisted. Resume with:\n"
        "  ralph resume"
    )
    sys.exit(130)


def _setup_logging(verbose: bool = False, state_dir: Path = DEFAULT_STATE_DIR) -> None:
    """Apply logging configuration from <state_dir>/config.yaml."""
    from ralph_engine.core.config import load_config

    log_to_file = True
    try:
        config = load_config(state_dir=state_dir)
        level_name = config.logging.level
        fmt = config.logging.format
        log_to_file = config.logging.log_to_file
    except RalphError:
        level_name = "INFO"
        fmt = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    level = logging.DEBUG if verbose else getattr(logging, level_name.upper(), logging.INFO)
    logging.basicConfig(level=level, format=fmt, stream=sys.stderr)

    if log_to_file and state_dir.is_dir():
        log_path = (state_dir / "logs" / "ralph.log").resolve()
        root = logging.getLogger()
        if not any(
            isinstance(h, logging.FileHandler) and Path(h.baseFilename) == log_path
            for h in root.handlers
        ):
            log_path.parent.mkdir(parents=True, exist_ok=True)
            handler = logging.FileHandler(log_path)
            handler.setFormatter(logging.Formatter(fmt))
            handler.setLevel(level)
            root.addHandler(handler)


def _progress(message: str) -> None:
    """CLI progress callback: styled output."""
    if message.startswith("[CRITERION]") or message.startswith("[COMPLETED]"):
        click.echo(click.style(message, fg="green", bold=True))
    elif message.startswith("[ERROR]") or message.startswith("[ABORTED]"):
        click.echo(click.style(message, fg="red"))
    elif message.startswith("[PAUSED]") or message.startswith("[VERIFY]"):
        click.echo(click.style(message, fg="yellow"))
    elif message.startswith("[GIT]"):
        click.echo(click.style(message, fg="cyan"))
    else:
        click.echo(message)


def _bundle(ctx: click.Context, max_iterations: Optional[int] = None) -> ComponentBundle:
    try:
        return ComponentFactory.create(
            state_dir=ctx.obj["state_dir"],
            env=ctx.obj["env"],
            max_iterations=max_iterations,
        )
    except RalphError as exc:
        raise click.ClickException(str(exc)) from exc


def _run_loop(ctx: click.Context, bundle: ComponentBundle, single: bool) -> None:
    """Run the loop. The caller holds the session's owner lock."""
    global _active_session_id

    manager = bundle.session_manager
    loop = ComponentFactory.build_loop(bundle, progress_callback=_progress)
    previous_handler = signal.signal(signal.SIGINT, _sigint_handler)
    try:
        _active_session_id = manager.load().session_id
        state = loop.run(single=single)
    except RalphError as exc:
        raise click.ClickException(str(exc)) from exc
    finally:
        signal.signal(signal.SIGINT, previous_handler)
        _active_session_id = None

    reason = state.last_decision.reason if state.last_decision else ""
    click.echo(
        click.style("\nLoop stopped:", bold=True)
        + f" {state.status.value} after iteration {state.last_iteration}"
        + (f" ({reason})" if reason else "")
    )
    if state.status == SessionStatus.ABORTED:
        ctx.exit(1)


@click.group()
@click.option("--verbose", is_flag=True, default=False, help="Enable verbose (DEBUG) logging.")
@click.option(
    "--state-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=DEFAULT_STATE_DIR,
    show_default=True,
    help="Session state directory.",
)
@click.option("--env", default=None, help="Config overlay name (loads config.<env>.yaml).")
@click.pass_context
def cli(ctx: click.Context, verbose: bool, state_dir: Path, env: Optional[str]) -> None:
    """ralph-engine: run a coding agent in iterations until the plan is done."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["state_dir"] = state_dir
    ctx.obj["env"] = env
    _setup_logging(verbose=verbose, state_dir=state_dir)


@cli.command()
@click.option("--force", is_flag=True, default=False, help="Archive a paused or crashed session and start over.")
@click.option("--single", is_flag=True, default=False, help="Run one iteration, then pause.")
@click.option("--max-iterations", type=int, default=None, help="Override loop.max_iterations.")
@click.option("--no-run", is_flag=True, default=False, help="Initialize the session without running the loop.")
@click.pass_context
def start(ctx: click.Context, force: bool, single: bool, max_iterations: Optional[int], no_run: bool) -> None:
    """Start a new session from <state-dir>/plan.md."""
    bundle = _bundle(ctx, max_iterations)
    manager = bundle.session_manager
    try:
        with manager.ownership():
            state = manager.start(force=force)
            click.echo(
                click.style(f"Session {state.session_id} started", bold=True)
                + f" ({len(state.criteria)} criteria, {len(state.steps)} steps)"
            )
            if state.test_baseline is not None:
                click.echo(f"Test baseline: {'passed' if state.test_baseline.passed else 'failed'}")
            if not no_run:
                _run_loop(ctx, bundle, single)
    except RalphError as exc:
        raise click.ClickException(str(exc)) from exc


@cli.command()
@click.option("--reset-health", is_flag=True, default=False, help="Reset health counters before resuming.")
@click.option("--single", is_flag=True, default=False, help="Run one iteration, then pause.")
@click.option("--max-iterations", type=int, default=None, help="Override loop.max_iterations.")
@click.pass_context
def resume(ctx: click.Context, reset_health: bool, single: bool, max_iterations: Optional[int]) -> None:
    """Resume a paused, stopped or crashed session."""
    bundle = _bundle(ctx, max_iterations)
    manager = bundle.session_manager
    try:
        with manager.ownership():
            state = manager.prepare_resume(reset_health_counters=reset_health)
            click.echo(f"Resuming session {state.session_id} at iteration {state.last_iteration + 1}")
            _run_loop(ctx, bundle, single)
    except RalphError as exc:
        raise click.ClickException(str(exc)) from exc


@cli.command()
@click.pass_context
def pause(ctx: click.Context) -> None:
    """Pause the running loop after its current iteration."""
    bundle = _bundle(ctx)
    try:
        requested = bundle.session_manager.pause()
    except RalphError as exc:
        raise click.ClickException(str(exc)) from exc

    if requested:
        click.echo("Pause requested - the session will pause after the current iteration.")
        click.echo("Use 'ralph resume' to continue when ready.")
    else:
        click.echo("Session is not running; nothing to pause.")


@cli.command()
@click.pass_context
def abort(ctx: click.Context) -> None:
    """Stop the loop process and mark the session aborted."""
    bundle = _bundle(ctx)
    try:
        state = bundle.session_manager.abort()
    except RalphError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Session {state.session_id} aborted.")
    click.echo("To start fresh: ralph start")


@cli.command()
@click.argument("message", nargs=-1)
@click.option(
    "--file",
    "from_file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Read the message from a file.",
)
@click.option("--clear", is_flag=True, default=False, help="Clear the pending urgent message.")
@click.option("--show", is_flag=True, default=False, help="Show the pending urgent message.")
@click.pass_context
def inject(
    ctx: click.Context,
    message: tuple[str, ...],
    from_file: Optional[Path],
    clear: bool,
    show: bool,
) -> None:
    """Inject an urgent message into the next iteration's context."""
    manager = _bundle(ctx).session_manager

    if show:
        current = manager.show_injection()
        if current:
            click.echo(click.style("Current urgent message:", bold=True))
            click.echo()
            click.echo(current)
        else:
            click.echo("No urgent message set.")
        return

    if clear:
        manager.clear_injection()
        click.echo("Urgent message cleared.")
        return

    if from_file is not None:
        content = from_file.read_text()
    elif message:
        content = " ".join(message)
    else:
        content = click.get_text_stream("stdin").read()

    try:
        manager.inject(content)
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc

    click.echo("Urgent message injected; it will be included in the next iteration context.")


@cli.command()
@click.option("--json", "as_json", is_flag=True, default=False, help="Emit the status report as JSON.")
@click.pass_context
def status(ctx: click.Context, as_json: bool) -> None:
    """Show session status, health, budget and criteria progress."""
    manager = _bundle(ctx).session_manager
    try:
        report = manager.status_report()
        criteria = manager.criteria_markdown()
    except RalphError as exc:
        raise click.ClickException(str(exc)) from exc

    if as_json:
        click.echo(report.model_dump_json(indent=2))
        return
    click.echo(format_status_report(report, criteria))


def main() -> None:
    """Entry point used by the `ralph` console script."""
    from dotenv import load_dotenv
    load_dotenv(Path.cwd() / ".env")
    cli()


if __name__ == "__main__":
    main()
