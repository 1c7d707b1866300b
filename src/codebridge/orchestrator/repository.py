"""File-backed run store."""

from __future__ import annotations

import fcntl
import json
import logging
import os
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import replace
from pathlib import Path
from uuid import uuid4

from codebridge.common import utc_now
from codebridge.orchestrator.contracts import (
    read_record,
    read_request,
    read_result,
    write_record,
    write_request,
    write_result,
)
from codebridge.orchestrator.errors import RunNotFoundError
from codebridge.orchestrator.models import RunRecord, RunResult, RunState, TaskRequest
from codebridge.orchestrator.workdir import RunWorkdir

logger = logging.getLogger(__name__)


class RunRepository:
    """Run store backed by one directory per run under ``runs_dir``.

    Every write of the session record, request, and result goes through
    temp-file + rename, so concurrent readers never observe a torn file.
    """

    def __init__(self, runs_dir: Path) -> None:
        self.runs_dir = runs_dir.resolve()
        self.runs_dir.mkdir(parents=True, exist_ok=True)

    def create_run(self, request: TaskRequest) -> str:
        """Persist a new run in ``created`` state and publish its request."""

        run_id = new_run_id()
        workdir = self.workdir(run_id)
        workdir.materialize()

        write_request(workdir.request_path, replace(request, run_id=run_id))
        now = utc_now()
        write_record(
            workdir.session_path,
            RunRecord(
                run_id=run_id,
                task_id=request.task_id,
                intent=request.intent,
                workspace_path=request.workspace_path,
                message=request.message,
                engine=request.engine,
                mode=request.mode,
                state=RunState.CREATED,
                session_id=request.session_id,
                model=request.model,
                constraints=request.constraints,
                created_at=now,
                updated_at=now,
            ),
        )
        logger.debug("Created run %s (engine=%s)", run_id, request.engine)
        return run_id

    def get_status(self, run_id: str) -> RunRecord:
        session_path = self.workdir(run_id).session_path
        try:
            return read_record(session_path)
        except FileNotFoundError as error:
            raise RunNotFoundError(run_id) from error

    def list_runs(self) -> Iterator[RunRecord]:
        """Yield every readable run record; directories without a record are skipped."""

        with os.scandir(self.runs_dir) as entries:
            names = sorted(entry.name for entry in entries if entry.is_dir())
        for name in names:
            session_path = self.runs_dir / name / "session.json"
            try:
                yield read_record(session_path)
            except FileNotFoundError:
                continue
            except (ValueError, KeyError, TypeError, json.JSONDecodeError) as error:
                logger.warning("Skipping unreadable run record %s: %s", session_path, error)

    def get_run_dir(self, run_id: str) -> Path:
        """Resolve a run directory, rejecting ids that escape ``runs_dir``."""

        if not run_id or "\x00" in run_id:
            raise ValueError(f"Invalid run id: {run_id!r}")
        resolved = (self.runs_dir / run_id).resolve()
        if resolved.parent != self.runs_dir:
            raise ValueError(f"Run id escapes runs directory: {run_id!r}")
        return resolved

    def workdir(self, run_id: str) -> RunWorkdir:
        return RunWorkdir(self.get_run_dir(run_id))

    def write_record(self, record: RunRecord) -> None:
        """Rewrite the session record; callers must hold ``session_lock``."""

        write_record(self.workdir(record.run_id).session_path, record)

    @contextmanager
    def session_lock(self, run_id: str) -> Iterator[None]:
        """Cross-process exclusive lock around one run's read-check-write cycle."""

        workdir = self.workdir(run_id)
        if not workdir.base_dir.is_dir():
            raise RunNotFoundError(run_id)
        with workdir.lock_path.open("a") as handle:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)

    def has_published_request(self, run_id: str) -> bool:
        return self.workdir(run_id).request_path.is_file()

    def has_claimed_request(self, run_id: str) -> bool:
        return self.workdir(run_id).claimed_request_path.is_file()

    def publish_request(self, run_id: str, request: TaskRequest) -> None:
        write_request(self.workdir(run_id).request_path, replace(request, run_id=run_id))

    def claim_request(self, run_id: str) -> bool:
        """Atomically move the published request to the claimed marker.

        Returns ``False`` when there is no published request, including when a
        concurrent claimer won the rename.
        """

        workdir = self.workdir(run_id)
        try:
            os.rename(workdir.request_path, workdir.claimed_request_path)
        except FileNotFoundError:
            return False
        return True

    def read_claimed_request(self, run_id: str) -> TaskRequest:
        return read_request(self.workdir(run_id).claimed_request_path)

    def requeue_claimed_request(self, run_id: str) -> bool:
        """Re-publish a claimed request that was never processed."""

        workdir = self.workdir(run_id)
        if workdir.request_path.exists():
            return False
        try:
            os.rename(workdir.claimed_request_path, workdir.request_path)
        except FileNotFoundError:
            return False
        return True

    def write_result(self, result: RunResult) -> None:
        write_result(self.workdir(result.run_id).result_path, result)

    def read_result(self, run_id: str) -> RunResult | None:
        try:
            return read_result(self.workdir(run_id).result_path)
        except FileNotFoundError:
            return None

    def write_output(self, run_id: str, content: str) -> None:
        self.workdir(run_id).output_path.write_text(content, "utf-8")


def new_run_id() -> str:
    """Time-ordered, collision-resistant run id."""

    return f"run-{utc_now():%Y%m%d%H%M%S%f}-{uuid4().hex[:8]}"
