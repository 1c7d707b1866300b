"""Task runner: drives one run from ``created`` to a terminal state."""

from __future__ import annotations

import asyncio
import logging
import os
import time
from collections.abc import Callable
from pathlib import Path

from codebridge.orchestrator.backend.base import (
    BackendOptions,
    BackendResponse,
    ExecutionBackend,
)
from codebridge.orchestrator.errors import (
    ErrorCode,
    InvalidStateError,
    InvalidTransitionError,
    RequestValidationError,
    make_error,
)
from codebridge.orchestrator.models import (
    RunError,
    RunMode,
    RunRecord,
    RunResult,
    RunState,
    TaskRequest,
)
from codebridge.orchestrator.process import kill_after_grace
from codebridge.orchestrator.repository import RunRepository
from codebridge.orchestrator.session import SessionStateMachine

logger = logging.getLogger(__name__)

SUMMARY_MAX_CHARS = 2000

BackendResolver = Callable[[str], ExecutionBackend]


class TaskRunner:
    """Claims a run's request, executes it on its backend, and persists the result.

    The runner never retries: a failed result carries the backend's
    ``retryable`` hint and retrying is the caller's decision via resume.

    Timeouts are layered. The backend enforces ``constraints.timeout_ms`` on
    its own process; the runner waits ``timeout_grace_seconds`` longer and
    then declares ``TIMEOUT`` itself for a backend that overran its deadline.
    A backend process still alive after being asked to stop is SIGKILLed
    once ``stop_grace_seconds`` elapse.
    """

    def __init__(
        self,
        *,
        repository: RunRepository,
        state_machine: SessionStateMachine,
        backend_resolver: BackendResolver,
        timeout_grace_seconds: float = 5.0,
        stop_grace_seconds: float = 5.0,
        allowed_roots: tuple[str, ...] = (),
        owner_pid: int | None = None,
    ) -> None:
        self.repository = repository
        self.state_machine = state_machine
        self.backend_resolver = backend_resolver
        self.timeout_grace_seconds = timeout_grace_seconds
        self.stop_grace_seconds = stop_grace_seconds
        self.allowed_roots = allowed_roots
        self.owner_pid = owner_pid or os.getpid()

    async def process_run(self, run_id: str) -> RunResult | None:
        """Process ``run_id`` once.

        Returns the persisted result, or ``None`` when the run was finalized
        by someone else (for example ``stop``) while the backend was running.
        Raises ``InvalidStateError`` if the run is not ``created`` or its
        request was already claimed.
        """

        started = time.monotonic()
        record = self.repository.get_status(run_id)
        if record.state is not RunState.CREATED:
            raise InvalidStateError(
                f"Run {run_id} cannot be processed from state {record.state.value}",
            )

        if not self.repository.claim_request(run_id):
            if self.repository.has_claimed_request(run_id):
                raise InvalidStateError(f"Run {run_id} request was already claimed")
            self._enter_running(run_id)
            return self._finalize(
                record,
                started,
                BackendResponse(
                    output="",
                    pid=None,
                    exit_code=None,
                    session_id=None,
                    error=make_error(ErrorCode.REQUEST_INVALID, "No published request found"),
                ),
            )

        try:
            self._enter_running(run_id)
        except InvalidTransitionError:
            self.repository.requeue_claimed_request(run_id)
            raise

        try:
            response = await self._execute(record)
        except Exception as error:  # noqa: BLE001
            logger.exception("Run %s: backend raised unexpectedly", run_id)
            response = BackendResponse(
                output="",
                pid=None,
                exit_code=None,
                session_id=None,
                error=make_error(ErrorCode.BACKEND_ERROR, f"{type(error).__name__}: {error}"),
            )
        return self._finalize(record, started, response)

    def _enter_running(self, run_id: str) -> None:
        self.state_machine.transition(
            run_id,
            RunState.RUNNING,
            {"pid": self.owner_pid, "owner_pid": self.owner_pid},
        )

    async def _execute(self, record: RunRecord) -> BackendResponse:
        run_id = record.run_id
        try:
            request = self.repository.read_claimed_request(run_id)
        except (RequestValidationError, ValueError, TypeError, KeyError) as error:
            return _error_response(make_error(ErrorCode.REQUEST_INVALID, str(error)))

        workspace_error = self._check_workspace(request)
        if workspace_error is not None:
            return _error_response(workspace_error)

        try:
            backend = self.backend_resolver(request.engine)
        except ValueError as error:
            return _error_response(make_error(ErrorCode.REQUEST_INVALID, str(error)))

        spawned: list[int] = []
        late_stops: list[asyncio.Task[None]] = []

        def on_spawn(pid: int) -> None:
            spawned.append(pid)
            try:
                self.state_machine.attach_process(run_id, pid=pid)
            except InvalidTransitionError:
                logger.warning("Run %s finalized before pid %s attached; stopping it", run_id, pid)
                late_stops.append(
                    asyncio.get_running_loop().create_task(self._terminate(backend, run_id, pid)),
                )

        options = BackendOptions(
            timeout_ms=request.constraints.timeout_ms,
            cwd=request.workspace_path,
            model=request.model,
            log_dir=self.repository.workdir(run_id).logs_dir,
            on_spawn=on_spawn,
        )
        if request.mode is RunMode.RESUME and request.session_id:
            invocation = backend.send(request.session_id, request.message, options)
        else:
            invocation = backend.start(request, options)

        deadline = request.constraints.timeout_ms / 1000 + self.timeout_grace_seconds
        try:
            response = await asyncio.wait_for(invocation, timeout=deadline)
        except TimeoutError:
            logger.warning(
                "Run %s: backend exceeded %sms deadline",
                run_id,
                request.constraints.timeout_ms,
            )
            for pid in spawned:
                await self._terminate(backend, run_id, pid)
            response = BackendResponse(
                output="",
                pid=spawned[-1] if spawned else None,
                exit_code=None,
                session_id=None,
                error=make_error(
                    ErrorCode.TIMEOUT,
                    f"Backend did not finish within {request.constraints.timeout_ms}ms",
                ),
            )
        if late_stops:
            await asyncio.gather(*late_stops)
        return response

    def _check_workspace(self, request: TaskRequest) -> RunError | None:
        workspace = Path(request.workspace_path).resolve()
        roots = request.allowed_roots or self.allowed_roots
        if roots:
            resolved_roots = [Path(root).resolve() for root in roots]
            if any(root == Path(root.anchor) for root in resolved_roots):
                return make_error(
                    ErrorCode.WORKSPACE_INVALID,
                    "Filesystem root is not permitted as an allowed root",
                )
            if not any(workspace == root or root in workspace.parents for root in resolved_roots):
                return make_error(
                    ErrorCode.WORKSPACE_INVALID,
                    f"Workspace {workspace} is outside allowed roots: {', '.join(roots)}",
                )
        if not workspace.is_dir():
            return make_error(
                ErrorCode.WORKSPACE_NOT_FOUND,
                f"Workspace not found: {request.workspace_path}",
            )
        return None

    def _finalize(
        self,
        record: RunRecord,
        started: float,
        response: BackendResponse,
    ) -> RunResult | None:
        run_id = record.run_id
        target = RunState.FAILED if response.error is not None else RunState.COMPLETED
        patch: dict[str, object] = {}
        if response.session_id and not record.session_id:
            patch["session_id"] = response.session_id

        try:
            self.state_machine.transition(run_id, target, patch)
        except InvalidTransitionError as error:
            logger.warning("Run %s was finalized externally; dropping outcome (%s)", run_id, error)
            return None

        result = RunResult(
            run_id=run_id,
            status=target,
            output=response.output,
            summary=(
                response.error.message
                if response.error is not None
                else response.output[:SUMMARY_MAX_CHARS]
            ),
            session_id=response.session_id or record.session_id,
            duration_ms=int((time.monotonic() - started) * 1000),
            artifacts=self.repository.workdir(run_id).list_artifacts(),
            error=response.error,
            token_usage=response.token_usage,
        )
        self.repository.write_output(run_id, response.output)
        self.repository.write_result(result)
        if response.error is not None:
            logger.info(
                "Run %s failed: %s (%s, retryable=%s)",
                run_id,
                response.error.code,
                response.error.message,
                response.error.retryable,
            )
        else:
            logger.info("Run %s completed", run_id)
        return result

    async def _terminate(self, backend: ExecutionBackend, run_id: str, pid: int) -> None:
        await backend.stop(pid)
        if not await kill_after_grace(pid, self.stop_grace_seconds):
            logger.warning(
                "Run %s: pid %s ignored stop; killed after %.1fs",
                run_id,
                pid,
                self.stop_grace_seconds,
            )


def _error_response(error: RunError) -> BackendResponse:
    return BackendResponse(output="", pid=None, exit_code=None, session_id=None, error=error)
