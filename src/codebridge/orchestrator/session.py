"""Run state machine: the only writer of persisted run state."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import replace
from typing import Any

from codebridge.common import utc_now
from codebridge.orchestrator.errors import InvalidTransitionError
from codebridge.orchestrator.models import RunRecord, RunState
from codebridge.orchestrator.repository import RunRepository

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[RunState, frozenset[RunState]] = {
    RunState.CREATED: frozenset({RunState.RUNNING}),
    RunState.RUNNING: frozenset({RunState.COMPLETED, RunState.FAILED}),
    RunState.COMPLETED: frozenset({RunState.CREATED}),
    RunState.FAILED: frozenset({RunState.CREATED}),
}

PATCHABLE_FIELDS = frozenset({"session_id", "pid", "owner_pid", "message", "mode"})


class SessionStateMachine:
    """Validates and applies run state transitions under the per-run lock."""

    def __init__(self, repository: RunRepository) -> None:
        self.repository = repository

    def get(self, run_id: str) -> RunRecord:
        return self.repository.get_status(run_id)

    def transition(
        self,
        run_id: str,
        target: RunState,
        patch: dict[str, Any] | None = None,
        *,
        on_commit: Callable[[RunRecord], None] | None = None,
    ) -> RunRecord:
        """Move ``run_id`` to ``target``, merging ``patch`` into the record.

        ``on_commit`` receives the pre-transition record under the run lock, after
        the transition is validated and before it is written; if it raises,
        nothing is written.

        Raises ``InvalidTransitionError`` without touching disk when the move is
        not in the allowed table, when a resume targets a run that never
        reported a backend session, or when entering ``running`` without a pid.
        """

        patch = dict(patch or {})
        unknown = set(patch) - PATCHABLE_FIELDS
        if unknown:
            raise ValueError(f"Unsupported run record fields in patch: {sorted(unknown)}")

        with self.repository.session_lock(run_id):
            current = self.repository.get_status(run_id)
            self.check_transition(current, target)
            if target is RunState.RUNNING and not patch.get("pid"):
                raise InvalidTransitionError(
                    run_id,
                    current.state.value,
                    target.value,
                    "entering running requires a pid",
                )

            if target is not RunState.RUNNING:
                patch["pid"] = None
                patch["owner_pid"] = None

            updated = replace(current, state=target, updated_at=utc_now(), **patch)
            if on_commit is not None:
                on_commit(current)
            self.repository.write_record(updated)

        logger.debug("Run %s: %s -> %s", run_id, current.state.value, target.value)
        return updated

    def check_transition(self, current: RunRecord, target: RunState) -> None:
        """Raise ``InvalidTransitionError`` if ``current`` cannot move to ``target``."""

        allowed = ALLOWED_TRANSITIONS.get(current.state, frozenset())
        if target not in allowed:
            raise InvalidTransitionError(
                current.run_id,
                current.state.value,
                target.value,
                "allowed: " + (", ".join(sorted(state.value for state in allowed)) or "none"),
            )
        if target is RunState.CREATED and not current.session_id:
            raise InvalidTransitionError(
                current.run_id,
                current.state.value,
                target.value,
                "run has no backend session_id to resume",
            )

    def attach_process(
        self,
        run_id: str,
        *,
        pid: int,
        session_id: str | None = None,
    ) -> RunRecord:
        """Record the backend process backing a ``running`` run."""

        with self.repository.session_lock(run_id):
            current = self.repository.get_status(run_id)
            if current.state is not RunState.RUNNING:
                raise InvalidTransitionError(
                    run_id,
                    current.state.value,
                    RunState.RUNNING.value,
                    "process attach requires a running run",
                )
            updated = replace(
                current,
                pid=pid,
                session_id=current.session_id or session_id,
                updated_at=utc_now(),
            )
            self.repository.write_record(updated)
        return updated
