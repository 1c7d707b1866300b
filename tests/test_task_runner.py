from __future__ import annotations

import asyncio
import os
import time
from pathlib import Path

import allure
import pytest
from conftest import FakeBackend

from codebridge.config import Settings
from codebridge.orchestrator.contracts import read_request
from codebridge.orchestrator.errors import InvalidStateError
from codebridge.orchestrator.models import RunError, RunMode, RunState
from codebridge.orchestrator.services import RunService, SubmitTask

pytestmark = [
    allure.epic("Run Lifecycle"),
    allure.feature("Task Runner"),
]


def _submit(service: RunService, workspace: Path, **overrides) -> str:
    fields = {
        "intent": "coding",
        "workspace_path": str(workspace),
        "message": "Initial task",
        "engine": "claude-code",
    }
    fields.update(overrides)
    return service.submit(SubmitTask(**fields)).run_id


def test_new_run_completes_and_resume_keeps_original_workspace(
    service: RunService,
    fake_backend: FakeBackend,
    workspace: Path,
    tmp_path: Path,
    monkeypatch,
) -> None:
    run_id = _submit(service, workspace)

    result = asyncio.run(service.build_runner().process_run(run_id))

    assert result is not None
    assert result.status is RunState.COMPLETED
    assert result.session_id == "sess-123"
    assert result.output == "done"
    assert result.token_usage is not None
    assert result.token_usage.total_tokens == 8
    record = service.status(run_id)
    assert record.state is RunState.COMPLETED
    assert record.session_id == "sess-123"
    assert record.pid is None
    assert service.result(run_id) == result
    assert service.repository.workdir(run_id).output_path.read_text("utf-8") == "done"
    assert fake_backend.calls == [("start", "Initial task")]

    elsewhere = tmp_path / "elsewhere"
    elsewhere.mkdir()
    monkeypatch.chdir(elsewhere)
    resumed = service.resume(run_id, "Follow up")

    assert resumed.state is RunState.CREATED
    assert resumed.mode is RunMode.RESUME
    request = read_request(service.repository.workdir(run_id).request_path)
    assert request.mode is RunMode.RESUME
    assert request.session_id == "sess-123"
    assert request.message == "Follow up"
    assert request.workspace_path == str(workspace)

    follow_up = asyncio.run(service.build_runner().process_run(run_id))

    assert follow_up is not None
    assert follow_up.status is RunState.COMPLETED
    assert fake_backend.calls[-1] == ("send", "sess-123", "Follow up")
    assert fake_backend.options[-1].cwd == str(workspace)


def test_processing_a_non_created_run_fails_fast(service: RunService, workspace: Path) -> None:
    run_id = _submit(service, workspace)
    asyncio.run(service.build_runner().process_run(run_id))

    with pytest.raises(InvalidStateError, match="from state completed"):
        asyncio.run(service.build_runner().process_run(run_id))


def test_concurrent_processing_yields_exactly_one_terminal_transition(
    service: RunService,
    fake_backend: FakeBackend,
    workspace: Path,
) -> None:
    fake_backend.delay = 0.05
    run_id = _submit(service, workspace)
    runner = service.build_runner()

    async def scenario():
        return await asyncio.gather(
            runner.process_run(run_id),
            runner.process_run(run_id),
            return_exceptions=True,
        )

    outcomes = asyncio.run(scenario())

    results = [outcome for outcome in outcomes if not isinstance(outcome, BaseException)]
    errors = [outcome for outcome in outcomes if isinstance(outcome, BaseException)]
    assert len(results) == 1
    assert len(errors) == 1
    assert isinstance(errors[0], InvalidStateError)
    assert len(fake_backend.calls) == 1
    assert service.status(run_id).state is RunState.COMPLETED


def test_backend_exceeding_timeout_fails_with_retryable_timeout(
    service: RunService,
    fake_backend: FakeBackend,
    workspace: Path,
) -> None:
    fake_backend.delay = 5.0
    run_id = _submit(service, workspace, timeout_ms=50)

    result = asyncio.run(service.build_runner().process_run(run_id))

    assert result is not None
    assert result.status is RunState.FAILED
    assert result.error is not None
    assert result.error.code == "TIMEOUT"
    assert result.error.retryable is True
    record = service.status(run_id)
    assert record.state is RunState.FAILED
    assert record.pid is None


def test_timeout_grace_layers_on_top_of_backend_deadline(
    runs_dir: Path,
    fake_backend: FakeBackend,
    workspace: Path,
) -> None:
    service = RunService(Settings(runs_dir=runs_dir), backend_resolver=lambda engine: fake_backend)
    grace = service.settings.daemon.timeout_grace_seconds
    assert grace == 5.0

    fake_backend.delay = 0.3
    within_grace = _submit(service, workspace, timeout_ms=50)
    completed = asyncio.run(service.build_runner().process_run(within_grace))

    assert completed is not None
    assert completed.status is RunState.COMPLETED

    fake_backend.delay = 30.0
    overrun = _submit(service, workspace, timeout_ms=50)
    started = time.monotonic()
    timed_out = asyncio.run(service.build_runner().process_run(overrun))
    elapsed = time.monotonic() - started

    assert timed_out is not None
    assert timed_out.error is not None
    assert timed_out.error.code == "TIMEOUT"
    assert timed_out.error.retryable is True
    assert grace <= elapsed < grace + 5


def test_backend_error_keeps_its_retryable_hint(
    service: RunService,
    fake_backend: FakeBackend,
    workspace: Path,
) -> None:
    fake_backend.error = RunError(code="NETWORK_ERROR", message="rate limited", retryable=True)
    run_id = _submit(service, workspace)

    result = asyncio.run(service.build_runner().process_run(run_id))

    assert result is not None
    assert result.status is RunState.FAILED
    assert result.error == RunError(code="NETWORK_ERROR", message="rate limited", retryable=True)
    assert result.summary == "rate limited"


def test_backend_exception_becomes_failed_result(
    service: RunService,
    fake_backend: FakeBackend,
    workspace: Path,
) -> None:
    fake_backend.raises = RuntimeError("adapter bug")
    run_id = _submit(service, workspace)

    result = asyncio.run(service.build_runner().process_run(run_id))

    assert result is not None
    assert result.error is not None
    assert result.error.code == "BACKEND_ERROR"
    assert "adapter bug" in result.error.message
    assert service.status(run_id).state is RunState.FAILED


def test_missing_workspace_fails_without_calling_backend(
    service: RunService,
    fake_backend: FakeBackend,
    tmp_path: Path,
) -> None:
    run_id = _submit(service, tmp_path / "gone")

    result = asyncio.run(service.build_runner().process_run(run_id))

    assert result is not None
    assert result.error is not None
    assert result.error.code == "WORKSPACE_NOT_FOUND"
    assert result.error.retryable is False
    assert fake_backend.calls == []


def test_workspace_outside_allowed_roots_is_rejected(
    runs_dir: Path,
    fake_backend: FakeBackend,
    workspace: Path,
    tmp_path: Path,
) -> None:
    allowed = tmp_path / "allowed"
    allowed.mkdir()
    service = RunService(
        Settings(runs_dir=runs_dir, allowed_roots=(str(allowed),)),
        backend_resolver=lambda engine: fake_backend,
    )
    run_id = _submit(service, workspace)

    result = asyncio.run(service.build_runner().process_run(run_id))

    assert result is not None
    assert result.error is not None
    assert result.error.code == "WORKSPACE_INVALID"
    assert fake_backend.calls == []


def test_spawned_pid_replaces_runner_pid_while_running(
    service: RunService,
    fake_backend: FakeBackend,
    workspace: Path,
) -> None:
    fake_backend.spawn_pid = 424242
    fake_backend.delay = 0.05
    run_id = _submit(service, workspace)
    seen: list[tuple[int | None, int | None]] = []

    async def scenario():
        task = asyncio.create_task(service.build_runner().process_run(run_id))
        await asyncio.sleep(0.01)
        record = service.status(run_id)
        seen.append((record.pid, record.owner_pid))
        return await task

    result = asyncio.run(scenario())

    assert result is not None
    assert seen == [(424242, os.getpid())]
    assert service.status(run_id).pid is None


def test_resume_requires_terminal_state_and_session(
    service: RunService,
    fake_backend: FakeBackend,
    workspace: Path,
) -> None:
    run_id = _submit(service, workspace)

    with pytest.raises(InvalidStateError):
        service.resume(run_id, "too early")
    assert read_request(service.repository.workdir(run_id).request_path).message == "Initial task"

    fake_backend.session_id = None
    asyncio.run(service.build_runner().process_run(run_id))
    before = service.status(run_id)

    with pytest.raises(InvalidStateError, match="session_id"):
        service.resume(run_id, "Follow up")

    assert service.status(run_id) == before
    assert not service.repository.has_published_request(run_id)
