"""Startup repair of runs left inconsistent by an unclean shutdown."""

from __future__ import annotations

import logging
from collections.abc import Callable

from codebridge.orchestrator.errors import ErrorCode, InvalidTransitionError, make_error
from codebridge.orchestrator.models import ReconcileAction, RunRecord, RunResult, RunState
from codebridge.orchestrator.process import is_process_alive
from codebridge.orchestrator.repository import RunRepository
from codebridge.orchestrator.session import SessionStateMachine

logger = logging.getLogger(__name__)

ACTION_MARKED_FAILED = "marked_failed"
ACTION_REQUEUED = "requeued"


class Reconciler:
    """Repairs crash residue before the daemon starts polling.

    A ``running`` run whose recorded pid is dead becomes ``failed`` with a
    non-retryable ``ORPHANED`` error: the attempted work's outcome is unknown.
    A ``running`` run whose pid is alive is left alone. A ``created`` run whose
    request was claimed but never flipped to ``running`` never reached its
    backend, so its request is re-published.
    """

    def __init__(
        self,
        *,
        repository: RunRepository,
        state_machine: SessionStateMachine,
        is_alive: Callable[[int | None], bool] = is_process_alive,
    ) -> None:
        self.repository = repository
        self.state_machine = state_machine
        self.is_alive = is_alive

    def reconcile(self) -> list[ReconcileAction]:
        actions: list[ReconcileAction] = []
        for record in self.repository.list_runs():
            if record.state is RunState.RUNNING:
                action = self._reconcile_running(record)
            elif record.state is RunState.CREATED:
                action = self._reconcile_created(record)
            else:
                action = None
            if action is not None:
                logger.warning(
                    "Reconciled %s: %s (%s)",
                    action.run_id,
                    action.action,
                    action.detail,
                )
                actions.append(action)
        return actions

    def _reconcile_running(self, record: RunRecord) -> ReconcileAction | None:
        if self.is_alive(record.pid):
            return None

        error = make_error(ErrorCode.ORPHANED)
        try:
            self.state_machine.transition(record.run_id, RunState.FAILED)
        except InvalidTransitionError:
            # Finalized concurrently by its own runner.
            return None

        detail = (
            f"pid {record.pid} no longer running"
            if record.pid is not None
            else "no pid recorded for running run"
        )
        self.repository.write_result(
            RunResult(
                run_id=record.run_id,
                status=RunState.FAILED,
                output="",
                summary=f"{error.message} ({detail})",
                session_id=record.session_id,
                duration_ms=0,
                artifacts=self.repository.workdir(record.run_id).list_artifacts(),
                error=error,
            ),
        )
        return ReconcileAction(
            run_id=record.run_id,
            action=ACTION_MARKED_FAILED,
            detail=f"Orphaned run: {detail}",
        )

    def _reconcile_created(self, record: RunRecord) -> ReconcileAction | None:
        if self.repository.has_published_request(record.run_id):
            return None
        if not self.repository.has_claimed_request(record.run_id):
            return None
        if not self.repository.requeue_claimed_request(record.run_id):
            return None
        return ReconcileAction(
            run_id=record.run_id,
            action=ACTION_REQUEUED,
            detail="Claimed request was never processed; re-published",
        )
