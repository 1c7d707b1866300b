from __future__ import annotations

import asyncio
import os
import signal
import subprocess
import sys
from pathlib import Path

import allure
import pytest
from conftest import make_request

from codebridge.orchestrator.errors import InvalidStateError
from codebridge.orchestrator.models import RunState
from codebridge.orchestrator.process import is_process_alive, kill_after_grace
from codebridge.orchestrator.reconciler import Reconciler
from codebridge.orchestrator.repository import RunRepository
from codebridge.orchestrator.runner import TaskRunner
from codebridge.orchestrator.session import SessionStateMachine

pytestmark = [
    allure.epic("Run Lifecycle"),
    allure.feature("Crash Reconciliation"),
]


def _running_run(
    repository: RunRepository,
    state_machine: SessionStateMachine,
    workspace: Path,
    *,
    pid: int,
) -> str:
    run_id = repository.create_run(make_request(workspace, session_id="sess-1"))
    assert repository.claim_request(run_id)
    state_machine.transition(run_id, RunState.RUNNING, {"pid": pid, "owner_pid": pid})
    return run_id


def test_dead_pid_is_marked_failed_with_non_retryable_orphaned(
    repository: RunRepository,
    state_machine: SessionStateMachine,
    workspace: Path,
) -> None:
    run_id = _running_run(repository, state_machine, workspace, pid=31337)
    reconciler = Reconciler(
        repository=repository,
        state_machine=state_machine,
        is_alive=lambda pid: False,
    )

    actions = reconciler.reconcile()

    assert [(action.run_id, action.action) for action in actions] == [(run_id, "marked_failed")]
    assert "31337" in actions[0].detail
    record = repository.get_status(run_id)
    assert record.state is RunState.FAILED
    assert record.pid is None
    assert record.session_id == "sess-1"
    result = repository.read_result(run_id)
    assert result is not None
    assert result.status is RunState.FAILED
    assert result.error is not None
    assert result.error.code == "ORPHANED"
    assert result.error.retryable is False

    runner = TaskRunner(
        repository=repository,
        state_machine=state_machine,
        backend_resolver=lambda engine: pytest.fail("backend must not be resolved"),
    )
    with pytest.raises(InvalidStateError):
        asyncio.run(runner.process_run(run_id))


def test_live_pid_and_terminal_runs_are_left_alone(
    repository: RunRepository,
    state_machine: SessionStateMachine,
    workspace: Path,
) -> None:
    live = _running_run(repository, state_machine, workspace, pid=os.getpid())
    done = _running_run(repository, state_machine, workspace, pid=os.getpid())
    state_machine.transition(done, RunState.COMPLETED)
    untouched = repository.create_run(make_request(workspace))

    actions = Reconciler(repository=repository, state_machine=state_machine).reconcile()

    assert actions == []
    assert repository.get_status(live).state is RunState.RUNNING
    assert repository.get_status(done).state is RunState.COMPLETED
    assert repository.has_published_request(untouched)


def test_claimed_but_unstarted_request_is_requeued(
    repository: RunRepository,
    state_machine: SessionStateMachine,
    workspace: Path,
) -> None:
    run_id = repository.create_run(make_request(workspace))
    assert repository.claim_request(run_id)

    actions = Reconciler(repository=repository, state_machine=state_machine).reconcile()

    assert [(action.run_id, action.action) for action in actions] == [(run_id, "requeued")]
    assert repository.has_published_request(run_id)
    assert not repository.has_claimed_request(run_id)
    assert repository.get_status(run_id).state is RunState.CREATED


def test_is_process_alive_probes_real_processes() -> None:
    finished = subprocess.Popen([sys.executable, "-c", "pass"])  # noqa: S603
    finished.wait(timeout=10)

    assert is_process_alive(os.getpid()) is True
    assert is_process_alive(finished.pid) is False
    assert is_process_alive(None) is False
    assert is_process_alive(0) is False


def test_kill_after_grace_escalates_to_sigkill() -> None:
    stubborn = subprocess.Popen(  # noqa: S603
        [
            sys.executable,
            "-c",
            "import signal, time; signal.signal(signal.SIGTERM, signal.SIG_IGN); time.sleep(30)",
        ],
    )
    try:
        os.kill(stubborn.pid, signal.SIGTERM)
        exited_in_grace = asyncio.run(kill_after_grace(stubborn.pid, 0.2))
        stubborn.wait(timeout=10)
    finally:
        if stubborn.poll() is None:
            stubborn.kill()
            stubborn.wait()

    assert exited_in_grace is False
    assert stubborn.returncode in (-signal.SIGKILL, -signal.SIGTERM)
