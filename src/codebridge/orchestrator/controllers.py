"""Controllers for orchestrator CLI commands."""

from __future__ import annotations

import asyncio
import json
import logging
import signal
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any

from codebridge.config import Settings
from codebridge.orchestrator.contracts import record_to_dict, result_to_dict
from codebridge.orchestrator.daemon import Daemon
from codebridge.orchestrator.diagnostics import run_doctor
from codebridge.orchestrator.models import RunRecord, RunResult, RunState
from codebridge.orchestrator.services import RunService, SubmitTask

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SubmitCommand:
    """CLI input for run submission."""

    runs_dir: Path | None
    intent: str
    workspace: str
    message: str
    engine: str | None
    model: str | None
    timeout_ms: int | None
    allow_network: bool = True
    task_id: str | None = None
    wait: bool = False


@dataclass(slots=True)
class RunLookupCommand:
    """CLI input for single-run inspection (status, logs)."""

    runs_dir: Path | None
    run_id: str


@dataclass(slots=True)
class ListRunsCommand:
    """CLI input for run listing."""

    runs_dir: Path | None
    state: str | None


@dataclass(slots=True)
class ResumeCommand:
    """CLI input for resuming a terminal run."""

    runs_dir: Path | None
    run_id: str
    message: str
    wait: bool = False


@dataclass(slots=True)
class StopCommand:
    """CLI input for stopping a running run."""

    runs_dir: Path | None
    run_id: str
    grace_seconds: float | None


@dataclass(slots=True)
class StartCommand:
    """CLI input for the polling daemon."""

    runs_dir: Path | None
    poll_interval_seconds: float | None
    max_concurrent: int | None


@dataclass(slots=True)
class DoctorResult:
    """Doctor report to render in CLI."""

    lines: list[str]
    success: bool


class OrchestratorCliController:
    """Coordinates run submission, inspection, and daemon CLI operations."""

    def submit(self, command: SubmitCommand) -> list[str]:
        service = RunService(_settings(command.runs_dir))
        record = service.submit(
            SubmitTask(
                intent=command.intent,
                workspace_path=command.workspace,
                message=command.message,
                engine=command.engine,
                model=command.model,
                timeout_ms=command.timeout_ms,
                allow_network=command.allow_network,
                task_id=command.task_id,
            ),
        )
        lines = [
            f"Run submitted: run_id={record.run_id} state={record.state.value} "
            f"engine={record.engine} workspace={record.workspace_path}",
        ]
        if command.wait:
            lines.extend(_result_lines(asyncio.run(service.process(record.run_id))))
        return lines

    def status(self, command: RunLookupCommand) -> list[str]:
        service = RunService(_settings(command.runs_dir))
        record = service.status(command.run_id)
        payload: dict[str, Any] = record_to_dict(record)
        result = service.result(command.run_id)
        payload["result"] = result_to_dict(result) if result is not None else None
        return [json.dumps(payload, indent=2, ensure_ascii=False)]

    def list_runs(self, command: ListRunsCommand) -> list[str]:
        state = RunState(command.state.strip().lower()) if command.state else None
        records = RunService(_settings(command.runs_dir)).list_runs(state)
        lines = [f"Runs: {len(records)}"]
        lines.extend(f"  {_record_line(record)}" for record in records)
        return lines

    def resume(self, command: ResumeCommand) -> list[str]:
        service = RunService(_settings(command.runs_dir))
        record = service.resume(command.run_id, command.message)
        lines = [
            f"Run resumed: run_id={record.run_id} state={record.state.value} "
            f"session_id={record.session_id}",
        ]
        if command.wait:
            lines.extend(_result_lines(asyncio.run(service.process(record.run_id))))
        return lines

    def stop(self, command: StopCommand) -> list[str]:
        service = RunService(_settings(command.runs_dir))
        result = asyncio.run(service.stop(command.run_id, command.grace_seconds))
        return [f"Run stopped: run_id={result.run_id}", *_result_lines(result)]

    def logs(self, command: RunLookupCommand) -> list[str]:
        paths = RunService(_settings(command.runs_dir)).logs(command.run_id)
        if not paths:
            return [f"No logs for {command.run_id}"]
        lines: list[str] = []
        for path in paths:
            lines.append(f"==> {path.name} <==")
            lines.extend(path.read_text("utf-8", errors="replace").splitlines())
        return lines

    def start(self, command: StartCommand) -> list[str]:
        settings = _settings(command.runs_dir)
        daemon_settings = settings.daemon
        if command.poll_interval_seconds is not None:
            daemon_settings = replace(
                daemon_settings,
                poll_interval_seconds=command.poll_interval_seconds,
            )
        if command.max_concurrent is not None:
            daemon_settings = replace(daemon_settings, max_concurrent=command.max_concurrent)
        settings = replace(settings, daemon=daemon_settings)
        settings.validate()

        daemon = RunService(settings).build_daemon()
        asyncio.run(_serve(daemon))
        return ["Daemon stopped."]

    def doctor(self, runs_dir: Path | None) -> DoctorResult:
        settings = Settings.from_env(runs_dir=runs_dir)
        report = run_doctor(settings)
        lines = ["codebridge doctor:"]
        runs_state = "writable" if report.runs_dir_writable else f"error: {report.runs_dir_error}"
        lines.append(f"  runs_dir={report.runs_dir} {runs_state}")
        for check in report.engines:
            line = (
                f"  engine={check.engine} executable={check.executable} "
                f"available={'yes' if check.available else 'no'}"
            )
            if check.version:
                line += f" version={check.version}"
            if check.error:
                line += f" error={check.error}"
            lines.append(line)
        lines.append(f"Doctor status: {'passed' if report.healthy else 'failed'}")
        if not report.healthy:
            lines.append(
                "Hint: install an engine CLI or point "
                "CODEBRIDGE_{CLAUDE|CODEX|KIMI|OPENCODE}_COMMAND at it.",
            )
        return DoctorResult(lines=lines, success=report.healthy)


async def _serve(daemon: Daemon) -> None:
    loop = asyncio.get_running_loop()
    pending: set[asyncio.Task[None]] = set()

    def request_stop() -> None:
        logger.info("Shutdown requested")
        task = loop.create_task(daemon.stop())
        pending.add(task)
        task.add_done_callback(pending.discard)

    signals = (signal.SIGINT, signal.SIGTERM)
    for signum in signals:
        loop.add_signal_handler(signum, request_stop)
    try:
        await daemon.run_forever()
    finally:
        for signum in signals:
            loop.remove_signal_handler(signum)


def _settings(runs_dir: Path | None) -> Settings:
    settings = Settings.from_env(runs_dir=runs_dir)
    settings.validate()
    return settings


def _record_line(record: RunRecord) -> str:
    return (
        f"run_id={record.run_id} state={record.state.value} engine={record.engine} "
        f"intent={record.intent} mode={record.mode.value} "
        f"session_id={record.session_id or '-'} updated_at={record.updated_at.isoformat()}"
    )


def _result_lines(result: RunResult | None) -> list[str]:
    if result is None:
        return ["Result: -"]
    return [json.dumps(result_to_dict(result), indent=2, ensure_ascii=False)]
