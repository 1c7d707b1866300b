from __future__ import annotations

from pathlib import Path

import allure
import pytest
from conftest import make_request

from codebridge.orchestrator.errors import InvalidStateError, InvalidTransitionError
from codebridge.orchestrator.models import RunMode, RunRecord, RunState
from codebridge.orchestrator.repository import RunRepository
from codebridge.orchestrator.session import SessionStateMachine

pytestmark = [
    allure.epic("Run Lifecycle"),
    allure.feature("Session State Machine"),
]


def _assert_pid_invariant(record: RunRecord) -> None:
    assert (record.pid is not None) == (record.state is RunState.RUNNING)
    if record.state is not RunState.RUNNING:
        assert record.owner_pid is None


def _create(repository: RunRepository, workspace: Path, **overrides) -> str:
    return repository.create_run(make_request(workspace, **overrides))


def test_happy_path_sets_and_clears_pid(
    repository: RunRepository,
    state_machine: SessionStateMachine,
    workspace: Path,
) -> None:
    run_id = _create(repository, workspace)
    _assert_pid_invariant(state_machine.get(run_id))

    running = state_machine.transition(
        run_id,
        RunState.RUNNING,
        {"pid": 4321, "owner_pid": 4321},
    )
    assert running.state is RunState.RUNNING
    assert running.pid == 4321
    _assert_pid_invariant(repository.get_status(run_id))

    completed = state_machine.transition(
        run_id,
        RunState.COMPLETED,
        {"session_id": "sess-123"},
    )
    persisted = repository.get_status(run_id)
    assert completed.state is RunState.COMPLETED
    assert persisted.session_id == "sess-123"
    assert persisted.updated_at >= running.updated_at
    _assert_pid_invariant(persisted)


def test_entering_running_requires_pid(
    repository: RunRepository,
    state_machine: SessionStateMachine,
    workspace: Path,
) -> None:
    run_id = _create(repository, workspace)

    with pytest.raises(InvalidTransitionError, match="requires a pid"):
        state_machine.transition(run_id, RunState.RUNNING)

    assert repository.get_status(run_id).state is RunState.CREATED


@pytest.mark.parametrize("target", [RunState.COMPLETED, RunState.FAILED, RunState.CREATED])
def test_created_run_only_moves_to_running(
    repository: RunRepository,
    state_machine: SessionStateMachine,
    workspace: Path,
    target: RunState,
) -> None:
    run_id = _create(repository, workspace)
    before = repository.get_status(run_id)

    with pytest.raises(InvalidTransitionError, match=f"created -> {target.value}"):
        state_machine.transition(run_id, target)

    assert repository.get_status(run_id) == before


def test_resume_from_running_is_rejected_and_is_an_invalid_state(
    repository: RunRepository,
    state_machine: SessionStateMachine,
    workspace: Path,
) -> None:
    run_id = _create(repository, workspace, session_id="sess-1")
    state_machine.transition(run_id, RunState.RUNNING, {"pid": 99, "owner_pid": 99})
    before = repository.get_status(run_id)

    with pytest.raises(InvalidStateError):
        state_machine.transition(run_id, RunState.CREATED, {"mode": RunMode.RESUME})

    assert repository.get_status(run_id) == before


def test_resume_without_session_id_leaves_record_unchanged(
    repository: RunRepository,
    state_machine: SessionStateMachine,
    workspace: Path,
) -> None:
    run_id = _create(repository, workspace)
    state_machine.transition(run_id, RunState.RUNNING, {"pid": 99, "owner_pid": 99})
    state_machine.transition(run_id, RunState.FAILED)
    before = repository.get_status(run_id)
    hook_calls: list[RunRecord] = []

    with pytest.raises(InvalidTransitionError, match="no backend session_id"):
        state_machine.transition(
            run_id,
            RunState.CREATED,
            {"message": "again", "mode": RunMode.RESUME},
            on_commit=hook_calls.append,
        )

    assert repository.get_status(run_id) == before
    assert hook_calls == []


def test_failing_commit_hook_leaves_record_unchanged(
    repository: RunRepository,
    state_machine: SessionStateMachine,
    workspace: Path,
) -> None:
    run_id = _create(repository, workspace)
    before = repository.get_status(run_id)

    def explode(current: RunRecord) -> None:
        assert current.state is RunState.CREATED
        raise OSError("disk full")

    with pytest.raises(OSError, match="disk full"):
        state_machine.transition(
            run_id,
            RunState.RUNNING,
            {"pid": 1, "owner_pid": 1},
            on_commit=explode,
        )

    assert repository.get_status(run_id) == before


def test_patch_rejects_unknown_fields(
    repository: RunRepository,
    state_machine: SessionStateMachine,
    workspace: Path,
) -> None:
    run_id = _create(repository, workspace)

    with pytest.raises(ValueError, match="state"):
        state_machine.transition(run_id, RunState.RUNNING, {"pid": 1, "state": "completed"})


def test_attach_process_replaces_pid_only_while_running(
    repository: RunRepository,
    state_machine: SessionStateMachine,
    workspace: Path,
) -> None:
    run_id = _create(repository, workspace)

    with pytest.raises(InvalidTransitionError, match="process attach"):
        state_machine.attach_process(run_id, pid=777)

    state_machine.transition(run_id, RunState.RUNNING, {"pid": 10, "owner_pid": 10})
    attached = state_machine.attach_process(run_id, pid=777, session_id="sess-9")

    assert attached.pid == 777
    assert attached.owner_pid == 10
    assert attached.session_id == "sess-9"

    finished = state_machine.transition(run_id, RunState.COMPLETED)
    assert finished.pid is None
    assert finished.owner_pid is None
    assert finished.session_id == "sess-9"
