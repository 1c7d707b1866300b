from __future__ import annotations

import asyncio
import logging
from pathlib import Path

import allure
import pytest
from conftest import FakeBackend, make_request

from codebridge.orchestrator.daemon import Daemon
from codebridge.orchestrator.models import RunState
from codebridge.orchestrator.reconciler import Reconciler
from codebridge.orchestrator.repository import RunRepository
from codebridge.orchestrator.runner import TaskRunner
from codebridge.orchestrator.session import SessionStateMachine

pytestmark = [
    allure.epic("Run Lifecycle"),
    allure.feature("Polling Daemon"),
]


def _daemon(
    repository: RunRepository,
    state_machine: SessionStateMachine,
    backend: FakeBackend,
    **kwargs,
) -> Daemon:
    runner = TaskRunner(
        repository=repository,
        state_machine=state_machine,
        backend_resolver=lambda engine: backend,
    )
    return Daemon(
        repository=repository,
        runner=runner,
        reconciler=Reconciler(
            repository=repository,
            state_machine=state_machine,
            is_alive=lambda pid: False,
        ),
        poll_interval_seconds=0.01,
        **kwargs,
    )


def test_poll_once_dispatches_published_runs_once(
    repository: RunRepository,
    state_machine: SessionStateMachine,
    fake_backend: FakeBackend,
    workspace: Path,
) -> None:
    fake_backend.delay = 0.02
    published = repository.create_run(make_request(workspace, task_id="published"))
    claimed = repository.create_run(make_request(workspace, task_id="claimed"))
    assert repository.claim_request(claimed)
    daemon = _daemon(repository, state_machine, fake_backend)

    async def scenario():
        first = daemon.poll_once()
        in_flight = set(daemon.in_flight)
        second = daemon.poll_once()
        await daemon.drain()
        return first, in_flight, second

    first, in_flight, second = asyncio.run(scenario())

    assert first.dispatched == 1
    assert first.skipped_unpublished == 1
    assert in_flight == {published}
    assert second.dispatched == 0
    assert second.skipped_in_flight == 1
    assert daemon.in_flight == set()
    assert repository.get_status(published).state is RunState.COMPLETED
    assert repository.get_status(claimed).state is RunState.CREATED
    assert fake_backend.calls == [("start", "Initial task")]


def test_failed_runner_invocation_still_leaves_in_flight_set(
    repository: RunRepository,
    state_machine: SessionStateMachine,
    fake_backend: FakeBackend,
    workspace: Path,
    caplog: pytest.LogCaptureFixture,
) -> None:
    run_id = repository.create_run(make_request(workspace))
    daemon = _daemon(repository, state_machine, fake_backend)

    async def explode(run_id: str):
        raise RuntimeError("runner crashed")

    daemon.runner.process_run = explode

    async def scenario():
        daemon.poll_once()
        await daemon.drain()

    with caplog.at_level(logging.ERROR, logger="codebridge.orchestrator.daemon"):
        asyncio.run(scenario())

    assert daemon.in_flight == set()
    assert f"Error processing {run_id}" in caplog.text


def test_max_concurrent_defers_extra_runs_to_later_ticks(
    repository: RunRepository,
    state_machine: SessionStateMachine,
    fake_backend: FakeBackend,
    workspace: Path,
) -> None:
    fake_backend.delay = 0.02
    first = repository.create_run(make_request(workspace, task_id="a"))
    second = repository.create_run(make_request(workspace, task_id="b"))
    daemon = _daemon(repository, state_machine, fake_backend, max_concurrent=1)

    async def scenario():
        summary = daemon.poll_once()
        await daemon.drain()
        follow_up = daemon.poll_once()
        await daemon.drain()
        return summary, follow_up

    summary, follow_up = asyncio.run(scenario())

    assert summary.dispatched == 1
    assert summary.deferred_capacity == 1
    assert follow_up.dispatched == 1
    assert repository.get_status(first).state is RunState.COMPLETED
    assert repository.get_status(second).state is RunState.COMPLETED


def test_poll_loop_survives_tick_errors_and_reconciles_on_start(
    repository: RunRepository,
    state_machine: SessionStateMachine,
    fake_backend: FakeBackend,
    workspace: Path,
    caplog: pytest.LogCaptureFixture,
) -> None:
    orphan = repository.create_run(make_request(workspace, task_id="orphan"))
    assert repository.claim_request(orphan)
    state_machine.transition(orphan, RunState.RUNNING, {"pid": 31337, "owner_pid": 31337})
    daemon = _daemon(repository, state_machine, fake_backend)

    original_list_runs = repository.list_runs
    failures = {"remaining": 2}

    def flaky_list_runs():
        if failures["remaining"]:
            failures["remaining"] -= 1
            raise OSError("transient listing failure")
        return original_list_runs()

    async def scenario():
        actions = await daemon.start()
        repository.list_runs = flaky_list_runs
        fresh = repository.create_run(make_request(workspace, task_id="fresh"))
        for _ in range(200):
            if repository.get_status(fresh).state is RunState.COMPLETED:
                break
            await asyncio.sleep(0.01)
        await daemon.stop()
        await daemon.drain()
        return actions, fresh

    with caplog.at_level(logging.ERROR, logger="codebridge.orchestrator.daemon"):
        actions, fresh = asyncio.run(scenario())

    assert [(action.run_id, action.action) for action in actions] == [(orphan, "marked_failed")]
    assert repository.get_status(orphan).state is RunState.FAILED
    assert repository.get_status(fresh).state is RunState.COMPLETED
    assert "Poll tick failed" in caplog.text
    assert not daemon.running
