"""CLI entrypoint for codebridge."""

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

import rich_click as click

from codebridge import __version__
from codebridge.orchestrator.controllers import (
    ListRunsCommand,
    OrchestratorCliController,
    ResumeCommand,
    RunLookupCommand,
    StartCommand,
    StopCommand,
    SubmitCommand,
)
from codebridge.orchestrator.errors import CodebridgeError
from codebridge.orchestrator.models import SUPPORTED_ENGINES, SUPPORTED_INTENTS, RunState

click.rich_click.USE_MARKDOWN = True
ORCHESTRATOR_CONTROLLER = OrchestratorCliController()

_runs_dir_option = click.option(
    "--runs-dir",
    type=click.Path(path_type=Path),
    default=None,
    help="Run store directory (default: CODEBRIDGE_RUNS_DIR or .runs).",
)


@click.group()
@click.version_option(version=__version__, prog_name="codebridge")
def codebridge() -> None:
    """Dispatch coding tasks to external agent CLIs as durable runs."""


@codebridge.command("submit")
@_runs_dir_option
@click.option(
    "--intent",
    type=click.Choice(SUPPORTED_INTENTS, case_sensitive=False),
    default="coding",
    show_default=True,
    help="Task category.",
)
@click.option(
    "--workspace",
    type=click.Path(file_okay=False, path_type=Path),
    default=Path("."),
    show_default=True,
    help="Directory the agent works in.",
)
@click.option("--message", required=True, help="Instruction text for the agent.")
@click.option(
    "--engine",
    type=click.Choice(SUPPORTED_ENGINES, case_sensitive=False),
    default=None,
    help="Agent engine (default: CODEBRIDGE_DEFAULT_ENGINE).",
)
@click.option("--model", default=None, help="Optional model override passed to the engine.")
@click.option(
    "--timeout-ms",
    type=click.IntRange(min=1),
    default=None,
    help="Backend deadline (default: CODEBRIDGE_DEFAULT_TIMEOUT_MS).",
)
@click.option(
    "--no-network",
    is_flag=True,
    default=False,
    help="Record constraints.allow_network=false on the request.",
)
@click.option("--task-id", default=None, help="Caller-supplied task id.")
@click.option(
    "--wait",
    is_flag=True,
    default=False,
    help="Process the run in this process and print its result.",
)
def submit(  # noqa: PLR0913
    runs_dir: Path | None,
    intent: str,
    workspace: Path,
    message: str,
    engine: str | None,
    model: str | None,
    timeout_ms: int | None,
    no_network: bool,
    task_id: str | None,
    wait: bool,
) -> None:
    """Submit a new run."""

    with _surface_errors():
        _emit_lines(
            ORCHESTRATOR_CONTROLLER.submit(
                SubmitCommand(
                    runs_dir=runs_dir,
                    intent=intent.lower(),
                    workspace=str(workspace),
                    message=message,
                    engine=engine.lower() if engine is not None else None,
                    model=model,
                    timeout_ms=timeout_ms,
                    allow_network=not no_network,
                    task_id=task_id,
                    wait=wait,
                ),
            ),
        )


@codebridge.command("status")
@_runs_dir_option
@click.argument("run_id")
def status(runs_dir: Path | None, run_id: str) -> None:
    """Show a run's session record and result as JSON."""

    with _surface_errors():
        _emit_lines(ORCHESTRATOR_CONTROLLER.status(RunLookupCommand(runs_dir, run_id)))


@codebridge.command("runs")
@_runs_dir_option
@click.option(
    "--state",
    type=click.Choice([state.value for state in RunState], case_sensitive=False),
    default=None,
    help="Only list runs in this state.",
)
def runs(runs_dir: Path | None, state: str | None) -> None:
    """List runs."""

    with _surface_errors():
        _emit_lines(ORCHESTRATOR_CONTROLLER.list_runs(ListRunsCommand(runs_dir, state)))


@codebridge.command("resume")
@_runs_dir_option
@click.argument("run_id")
@click.option("--message", required=True, help="Follow-up instruction.")
@click.option(
    "--wait",
    is_flag=True,
    default=False,
    help="Process the run in this process and print its result.",
)
def resume(runs_dir: Path | None, run_id: str, message: str, wait: bool) -> None:
    """Resume a completed or failed run in its backend session."""

    with _surface_errors():
        _emit_lines(
            ORCHESTRATOR_CONTROLLER.resume(
                ResumeCommand(runs_dir=runs_dir, run_id=run_id, message=message, wait=wait),
            ),
        )


@codebridge.command("stop")
@_runs_dir_option
@click.argument("run_id")
@click.option(
    "--grace-seconds",
    type=click.FloatRange(min=0),
    default=None,
    help="Wait before SIGKILL (default: CODEBRIDGE_STOP_GRACE_SECONDS).",
)
def stop(runs_dir: Path | None, run_id: str, grace_seconds: float | None) -> None:
    """Stop a running run and mark it failed with TASK_STOPPED."""

    with _surface_errors():
        _emit_lines(
            ORCHESTRATOR_CONTROLLER.stop(
                StopCommand(runs_dir=runs_dir, run_id=run_id, grace_seconds=grace_seconds),
            ),
        )


@codebridge.command("logs")
@_runs_dir_option
@click.argument("run_id")
def logs(runs_dir: Path | None, run_id: str) -> None:
    """Print backend stdout/stderr logs of a run."""

    with _surface_errors():
        _emit_lines(ORCHESTRATOR_CONTROLLER.logs(RunLookupCommand(runs_dir, run_id)))


@codebridge.command("start")
@_runs_dir_option
@click.option(
    "--poll-interval",
    type=click.FloatRange(min=0, min_open=True),
    default=None,
    help="Seconds between poll ticks (default: CODEBRIDGE_POLL_INTERVAL_SECONDS).",
)
@click.option(
    "--max-concurrent",
    type=click.IntRange(min=0),
    default=None,
    help="Cap on in-flight runs; 0 means unbounded (default: CODEBRIDGE_MAX_CONCURRENT).",
)
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="INFO",
    show_default=True,
    help="Daemon log level.",
)
def start(
    runs_dir: Path | None,
    poll_interval: float | None,
    max_concurrent: int | None,
    log_level: str,
) -> None:
    """Run the polling daemon until SIGINT/SIGTERM."""

    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    with _surface_errors():
        _emit_lines(
            ORCHESTRATOR_CONTROLLER.start(
                StartCommand(
                    runs_dir=runs_dir,
                    poll_interval_seconds=poll_interval,
                    max_concurrent=max_concurrent,
                ),
            ),
        )


@codebridge.command("doctor")
@_runs_dir_option
def doctor(runs_dir: Path | None) -> None:
    """Report which engine executables are available and whether the run store is writable."""

    result = ORCHESTRATOR_CONTROLLER.doctor(runs_dir)
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Doctor check failed.")


@contextmanager
def _surface_errors() -> Iterator[None]:
    try:
        yield
    except (CodebridgeError, ValueError) as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    codebridge()
