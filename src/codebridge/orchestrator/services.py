"""Use-case services behind the command surface."""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from uuid import uuid4

from codebridge.config import Settings
from codebridge.orchestrator.backend.base import ExecutionBackend
from codebridge.orchestrator.backend.registry import resolve_backend
from codebridge.orchestrator.contracts import validate_request
from codebridge.orchestrator.daemon import Daemon
from codebridge.orchestrator.errors import (
    ErrorCode,
    InvalidStateError,
    RequestValidationError,
    make_error,
)
from codebridge.orchestrator.models import (
    RunMode,
    RunRecord,
    RunResult,
    RunState,
    TaskRequest,
)
from codebridge.orchestrator.process import kill_after_grace
from codebridge.orchestrator.reconciler import Reconciler
from codebridge.orchestrator.repository import RunRepository
from codebridge.orchestrator.runner import BackendResolver, TaskRunner
from codebridge.orchestrator.session import SessionStateMachine

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SubmitTask:
    """High-level command to submit a new run."""

    intent: str
    workspace_path: str
    message: str
    engine: str | None = None
    model: str | None = None
    timeout_ms: int | None = None
    allow_network: bool = True
    task_id: str | None = None


class RunService:
    """Coordinates the run store, state machine, and backends for one runs directory."""

    def __init__(
        self,
        settings: Settings,
        *,
        backend_resolver: BackendResolver | None = None,
    ) -> None:
        self.settings = settings
        self.repository = RunRepository(settings.runs_dir)
        self.state_machine = SessionStateMachine(self.repository)
        self.backend_resolver = backend_resolver or self._resolve_backend

    def build_runner(self) -> TaskRunner:
        return TaskRunner(
            repository=self.repository,
            state_machine=self.state_machine,
            backend_resolver=self.backend_resolver,
            timeout_grace_seconds=self.settings.daemon.timeout_grace_seconds,
            stop_grace_seconds=self.settings.daemon.stop_grace_seconds,
            allowed_roots=self.settings.allowed_roots,
        )

    def build_reconciler(self) -> Reconciler:
        return Reconciler(repository=self.repository, state_machine=self.state_machine)

    def build_daemon(self) -> Daemon:
        return Daemon(
            repository=self.repository,
            runner=self.build_runner(),
            reconciler=self.build_reconciler(),
            poll_interval_seconds=self.settings.daemon.poll_interval_seconds,
            max_concurrent=self.settings.daemon.max_concurrent,
        )

    def submit(self, command: SubmitTask) -> RunRecord:
        """Validate a submission and persist it as a ``created`` run."""

        workspace = command.workspace_path
        if workspace and "\x00" not in workspace:
            workspace = os.path.abspath(os.path.expanduser(workspace))
        request = validate_request(
            {
                "task_id": command.task_id or f"task-{uuid4().hex[:12]}",
                "intent": command.intent,
                "workspace_path": workspace,
                "message": command.message,
                "engine": command.engine or self.settings.engines.default_engine,
                "mode": RunMode.NEW.value,
                "model": command.model,
                "constraints": {
                    "timeout_ms": command.timeout_ms or self.settings.engines.default_timeout_ms,
                    "allow_network": command.allow_network,
                },
                "allowed_roots": list(self.settings.allowed_roots),
            },
        )
        run_id = self.repository.create_run(request)
        logger.info("Submitted %s (task=%s engine=%s)", run_id, request.task_id, request.engine)
        return self.repository.get_status(run_id)

    def status(self, run_id: str) -> RunRecord:
        return self.repository.get_status(run_id)

    def list_runs(self, state: RunState | None = None) -> list[RunRecord]:
        return [
            record
            for record in self.repository.list_runs()
            if state is None or record.state is state
        ]

    def result(self, run_id: str) -> RunResult | None:
        self.repository.get_status(run_id)
        return self.repository.read_result(run_id)

    def resume(self, run_id: str, message: str) -> RunRecord:
        """Re-arm a terminal run with a follow-up message.

        The new request reuses the stored workspace, engine, model, and
        constraints, and is published under the run lock together with the
        ``created`` transition. A rejected transition leaves disk untouched.
        """

        if not message.strip():
            raise RequestValidationError(["message: must be a non-empty string"])

        def publish(current: RunRecord) -> None:
            self.repository.publish_request(
                run_id,
                TaskRequest(
                    task_id=current.task_id,
                    intent=current.intent,
                    workspace_path=current.workspace_path,
                    message=message,
                    engine=current.engine,
                    mode=RunMode.RESUME,
                    session_id=current.session_id,
                    model=current.model,
                    constraints=current.constraints,
                    allowed_roots=self.settings.allowed_roots,
                ),
            )

        record = self.state_machine.transition(
            run_id,
            RunState.CREATED,
            {"message": message, "mode": RunMode.RESUME},
            on_commit=publish,
        )
        logger.info("Resumed %s (session=%s)", run_id, record.session_id)
        return record

    async def stop(self, run_id: str, grace_seconds: float | None = None) -> RunResult:
        """Finalize a ``running`` run as ``TASK_STOPPED`` and kill its backend process.

        The terminal transition is taken first so the runner's own outcome for
        the killed process is dropped. The backend gets ``stop(pid)`` and is
        SIGKILLed if still alive after ``grace_seconds``.
        """

        grace = self.settings.daemon.stop_grace_seconds if grace_seconds is None else grace_seconds
        record = self.repository.get_status(run_id)
        if record.state is not RunState.RUNNING:
            raise InvalidStateError(
                f"Run {run_id} is not running (state: {record.state.value})",
            )

        captured: list[RunRecord] = []
        self.state_machine.transition(run_id, RunState.FAILED, on_commit=captured.append)
        previous = captured[0]

        error = make_error(ErrorCode.TASK_STOPPED)
        result = RunResult(
            run_id=run_id,
            status=RunState.FAILED,
            output="",
            summary=error.message,
            session_id=previous.session_id,
            duration_ms=0,
            artifacts=self.repository.workdir(run_id).list_artifacts(),
            error=error,
        )
        self.repository.write_result(result)

        pid = previous.pid
        if pid is not None and pid != previous.owner_pid:
            backend = self.backend_resolver(previous.engine)
            await backend.stop(pid)
            if not await kill_after_grace(pid, grace):
                logger.warning(
                    "Run %s: pid %s ignored stop; killed after %.1fs",
                    run_id,
                    pid,
                    grace,
                )
        logger.info("Stopped %s", run_id)
        return result

    def logs(self, run_id: str) -> list[Path]:
        """Backend log files of a run, oldest first."""

        self.repository.get_status(run_id)
        logs_dir = self.repository.workdir(run_id).logs_dir
        if not logs_dir.is_dir():
            return []
        return sorted(path for path in logs_dir.iterdir() if path.is_file())

    async def process(self, run_id: str) -> RunResult | None:
        """Process a run inline, or wait for whoever already claimed it."""

        try:
            result = await self.build_runner().process_run(run_id)
        except InvalidStateError as error:
            logger.info("Run %s is being processed elsewhere (%s); waiting", run_id, error)
            result = None
        if result is None:
            result = await self.wait_for_result(run_id)
        return result

    async def wait_for_result(
        self,
        run_id: str,
        poll_interval_seconds: float | None = None,
    ) -> RunResult | None:
        interval = poll_interval_seconds or self.settings.daemon.poll_interval_seconds
        while True:
            record = self.repository.get_status(run_id)
            if record.state.is_terminal:
                result = self.repository.read_result(run_id)
                if result is not None:
                    return result
            await asyncio.sleep(interval)

    def _resolve_backend(self, engine: str) -> ExecutionBackend:
        return resolve_backend(engine, self.settings.engines)
