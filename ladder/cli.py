"""CLI entrypoint for Ladder."""

from __future__ import annotations

import logging
import signal
import sys
from pathlib import Path
from typing import Any, Optional

import click

from ladder.core.exceptions import LadderError
from ladder.core.models import ConvergenceResult, RunSummary, Task, TaskState

# Track the active coordinator for graceful shutdown
_active_coordinator: Optional[Any] = None


def _sigint_handler(signum: int, frame: Any) -> None:
    """Handle Ctrl+C with a run summary instead of a bare traceback."""
    click.echo("\n")
    click.echo(click.style("Interrupted.", fg="yellow", bold=True))
    if _active_coordinator is not None:
        _active_coordinator.cancel_run()
        counts: dict[str, int] = {}
        for task in _active_coordinator.store.list_tasks():
            counts[task.status.value] = counts.get(task.status.value, 0) + 1
        for state in TaskState:
            if counts.get(state.value):
                click.echo(f"  {state.value:<18} {counts[state.value]}")
        click.echo("\nQueued tasks stay queued; resubmitting the backlog skips stored tasks.")
    sys.exit(130)


def _setup_logging(verbose: bool = False, config_dir: Optional[Path] = None) -> None:
    """Apply logging configuration from config/default.yaml."""
    from ladder.core.config import load_config

    try:
        config = load_config(config_dir=config_dir)
        level_name = config.logging.level
        fmt = config.logging.format
    except LadderError:
        level_name = "INFO"
        fmt = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    level = logging.DEBUG if verbose else getattr(logging, level_name.upper(), logging.INFO)
    logging.basicConfig(level=level, format=fmt, stream=sys.stderr)


def _load_tasks(backlog: Path, config_dir: Optional[Path], env: Optional[str]) -> list[Task]:
    from ladder.core.config import load_config
    from ladder.db.backlog import load_backlog

    config = load_config(config_dir=config_dir, env=env)
    return load_backlog(
        backlog,
        infer_complexity=config.coordinator.infer_complexity,
        complexity_threshold=config.coordinator.complexity_threshold,
    )


def _echo_summary(summary: RunSummary) -> None:
    click.echo(click.style("\nRun summary:", bold=True))
    for disposition in summary.dispositions:
        colour = "green" if disposition.succeeded else "red"
        line = f"  [{disposition.state.value}] {disposition.title} ({len(disposition.attempts)} attempt(s))"
        if disposition.reason:
            line += f": {disposition.reason}"
        if disposition.convergence is not None:
            line += f", review {disposition.convergence.outcome.value}"
        click.echo(click.style(line, fg=colour))
    click.echo(
        f"  Processed:       {summary.processed}\n"
        f"  Succeeded:       {summary.succeeded}\n"
        f"  Abandoned:       {summary.abandoned}"
    )
    click.echo(click.style(f"  Stop reason:     {summary.stop_reason}", fg="yellow"))


def _echo_convergence(result: ConvergenceResult) -> None:
    for review_round in result.rounds:
        colour = "green" if review_round.is_clean else "red"
        suffix = " (timed out)" if review_round.timed_out else ""
        click.echo(click.style(
            f"  Round {review_round.round_number}: {review_round.verdict.value} "
            f"- {review_round.blocker_count} blocker(s), {review_round.major_count} major(s){suffix}",
            fg=colour,
        ))
    colour = "green" if result.converged else "yellow"
    click.echo(click.style(f"Outcome: {result.outcome.value}", fg=colour, bold=True))


_backlog_option = click.option(
    "--backlog",
    "backlog_path",
    required=True,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Task graph file (JSON or YAML).",
)
_config_dir_option = click.option(
    "--config-dir",
    required=False,
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    default=None,
    help="Optional config directory (defaults to the bundled config/).",
)
_env_option = click.option("--env", required=False, default=None, help="Optional config overlay environment.")


@click.group()
@click.option("--verbose", is_flag=True, default=False, help="Enable verbose (DEBUG) logging.")
@click.pass_context
def cli(ctx: click.Context, verbose: bool) -> None:
    """Ladder: escalating council of model tiers over a task backlog."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    _setup_logging(verbose=verbose)
    signal.signal(signal.SIGINT, _sigint_handler)


@cli.command("validate")
@_backlog_option
@_config_dir_option
@_env_option
def validate(backlog_path: Path, config_dir: Optional[Path], env: Optional[str]) -> None:
    """Check a task graph for unknown blockers and dependency cycles."""
    from ladder.db.backlog import validate_graph

    try:
        tasks = _load_tasks(backlog_path, config_dir, env)
    except LadderError as exc:
        raise click.ClickException(str(exc)) from exc

    report = validate_graph(tasks)
    click.echo(f"{len(tasks)} open task(s) in {backlog_path}")
    for warning in report.warnings:
        click.echo(click.style(f"  warning: {warning}", fg="yellow"))
    for problem in report.duplicate_ids:
        click.echo(click.style(f"  error: {problem}", fg="red"))
    for problem in report.unknown_blockers:
        click.echo(click.style(f"  error: {problem}", fg="red"))
    for cycle in report.cycles:
        click.echo(click.style(f"  error: dependency cycle: {' -> '.join(cycle)}", fg="red"))
    if not report.ok:
        raise click.ClickException("Task graph is invalid")
    click.echo(click.style("Task graph OK", fg="green"))


@cli.command("status")
@_backlog_option
@_config_dir_option
@_env_option
def status(backlog_path: Path, config_dir: Optional[Path], env: Optional[str]) -> None:
    """Dry view: execution order, readiness and entry tier of every task."""
    from ladder.core.config import load_config
    from ladder.db.backlog import topological_order

    try:
        config = load_config(config_dir=config_dir, env=env)
        tasks = _load_tasks(backlog_path, config_dir, env)
        ordered = topological_order(tasks)
    except LadderError as exc:
        raise click.ClickException(str(exc)) from exc

    ids = {t.id for t in ordered}
    for task in ordered:
        blockers = sorted(d for d in task.dependencies if d in ids)
        state = "ready" if not blockers else f"blocked by {', '.join(blockers)}"
        tier = config.escalation.start_tier(task.architecturally_complex)
        click.echo(f"  {task.id:<12} p{task.priority:<3} {tier.value:<21} {state:<30} {task.title}")


@cli.command("run")
@_backlog_option
@_config_dir_option
@_env_option
@click.option(
    "--api-key",
    required=False,
    default=None,
    envvar="OPENROUTER_API_KEY",
    help="OpenRouter API key (falls back to OPENROUTER_API_KEY).",
)
@click.option("--max-tasks", required=False, type=int, default=None, help="Stop after claiming N tasks.")
@click.option("--workers", required=False, type=int, default=None, help="Override coordinator.max_workers.")
def run(
    backlog_path: Path,
    config_dir: Optional[Path],
    env: Optional[str],
    api_key: Optional[str],
    max_tasks: Optional[int],
    workers: Optional[int],
) -> None:
    """Submit a backlog and run it through the escalation ladder."""
    global _active_coordinator
    from ladder.core.config import load_config
    from ladder.core.factory import ComponentFactory

    bundle = None
    try:
        config = load_config(config_dir=config_dir, env=env)
        if workers is not None:
            config.coordinator.max_workers = workers
        tasks = _load_tasks(backlog_path, config_dir, env)
        bundle = ComponentFactory.create(config_dir=config_dir, api_key=api_key, config=config)
        _active_coordinator = bundle.coordinator

        submitted = bundle.coordinator.submit_backlog(tasks)
        click.echo(f"Submitted {len(submitted)} task(s); running with {config.coordinator.max_workers} worker(s)")
        summary = bundle.coordinator.run(max_tasks=max_tasks)
    except LadderError as exc:
        raise click.ClickException(f"Run failed: {exc}\nCheck logs with --verbose for details.") from exc
    finally:
        _active_coordinator = None
        if bundle is not None:
            ComponentFactory.close(bundle)

    _echo_summary(summary)
    if summary.abandoned:
        sys.exit(1)


@cli.command("converge")
@click.option(
    "--artifact",
    "artifact_path",
    required=True,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="File to review until two consecutive clean rounds.",
)
@click.option(
    "--history",
    "history_path",
    required=False,
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Round history JSON; resumed when it exists, updated after every round.",
)
@click.option("--max-rounds", required=False, type=int, default=None, help="Override convergence.max_rounds.")
@click.option("--output", "output_path", required=False, type=click.Path(dir_okay=False, path_type=Path),
              default=None, help="Write the final (revised) artifact here.")
@_config_dir_option
@_env_option
@click.option("--api-key", required=False, default=None, envvar="OPENROUTER_API_KEY")
def converge(
    artifact_path: Path,
    history_path: Optional[Path],
    max_rounds: Optional[int],
    output_path: Optional[Path],
    config_dir: Optional[Path],
    env: Optional[str],
    api_key: Optional[str],
) -> None:
    """Review an artifact repeatedly until the reviews are stable."""
    from ladder.core.factory import ComponentFactory

    bundle = None
    try:
        bundle = ComponentFactory.create(config_dir=config_dir, env=env, api_key=api_key)
        result = bundle.coordinator.run_convergence(
            artifact_path.read_text(encoding="utf-8"),
            max_rounds=max_rounds,
            history_path=history_path,
        )
    except LadderError as exc:
        raise click.ClickException(f"Convergence failed: {exc}") from exc
    finally:
        if bundle is not None:
            ComponentFactory.close(bundle)

    _echo_convergence(result)
    if output_path is not None and result.artifact is not None:
        output_path.parent.mkdir(parents=True, exist_ok=True)
        output_path.write_text(str(result.artifact), encoding="utf-8")
        click.echo(f"Wrote final artifact to {output_path}")
    if not result.converged:
        sys.exit(1)


def main() -> None:
    """Entry point used by `ladder` console script."""
    from dotenv import load_dotenv
    load_dotenv(Path(__file__).parent.parent / ".env", override=True)
    cli()


if __name__ == "__main__":
    main()
