"""Shared test fixtures."""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from codebridge.config import Settings
from codebridge.orchestrator.backend.base import BackendOptions, BackendResponse
from codebridge.orchestrator.models import RunError, TaskRequest, TokenUsage
from codebridge.orchestrator.repository import RunRepository
from codebridge.orchestrator.services import RunService
from codebridge.orchestrator.session import SessionStateMachine


class FakeBackend:
    """In-process ``ExecutionBackend`` with scripted responses."""

    def __init__(
        self,
        *,
        output: str = "done",
        session_id: str | None = "sess-123",
        delay: float = 0.0,
        error: RunError | None = None,
        raises: Exception | None = None,
        spawn_pid: int | None = None,
    ) -> None:
        self.output = output
        self.session_id = session_id
        self.delay = delay
        self.error = error
        self.raises = raises
        self.spawn_pid = spawn_pid
        self.calls: list[tuple[str, ...]] = []
        self.options: list[BackendOptions | None] = []
        self.stopped: list[int] = []

    async def start(
        self,
        request: TaskRequest,
        options: BackendOptions | None = None,
    ) -> BackendResponse:
        self.calls.append(("start", request.message))
        return await self._respond(options)

    async def send(
        self,
        session_id: str,
        message: str,
        options: BackendOptions | None = None,
    ) -> BackendResponse:
        self.calls.append(("send", session_id, message))
        return await self._respond(options)

    async def stop(self, pid: int) -> None:
        self.stopped.append(pid)

    async def _respond(self, options: BackendOptions | None) -> BackendResponse:
        self.options.append(options)
        if self.spawn_pid is not None and options is not None and options.on_spawn is not None:
            options.on_spawn(self.spawn_pid)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.raises is not None:
            raise self.raises
        return BackendResponse(
            output=self.output,
            pid=self.spawn_pid,
            exit_code=0 if self.error is None else 1,
            session_id=self.session_id if self.error is None else None,
            error=self.error,
            token_usage=TokenUsage(prompt_tokens=3, completion_tokens=5, total_tokens=8)
            if self.error is None
            else None,
        )


@pytest.fixture()
def runs_dir(tmp_path: Path) -> Path:
    return tmp_path / "runs"


@pytest.fixture()
def workspace(tmp_path: Path) -> Path:
    path = tmp_path / "workspace"
    path.mkdir()
    return path


@pytest.fixture()
def repository(runs_dir: Path) -> RunRepository:
    return RunRepository(runs_dir)


@pytest.fixture()
def state_machine(repository: RunRepository) -> SessionStateMachine:
    return SessionStateMachine(repository)


@pytest.fixture()
def fake_backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture()
def service(runs_dir: Path, fake_backend: FakeBackend) -> RunService:
    settings = Settings(runs_dir=runs_dir)
    settings.daemon.timeout_grace_seconds = 0.0
    settings.daemon.poll_interval_seconds = 0.01
    return RunService(settings, backend_resolver=lambda engine: fake_backend)


def make_request(workspace: Path, **overrides) -> TaskRequest:
    fields = {
        "task_id": "task-1",
        "intent": "coding",
        "workspace_path": str(workspace),
        "message": "Initial task",
        "engine": "claude-code",
    }
    fields.update(overrides)
    return TaskRequest(**fields)
