"""Polling daemon that dispatches newly submitted runs to the task runner."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from codebridge.orchestrator.models import ReconcileAction, RunState
from codebridge.orchestrator.reconciler import Reconciler
from codebridge.orchestrator.repository import RunRepository
from codebridge.orchestrator.runner import TaskRunner

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class PollSummary:
    """Counters for one poll tick."""

    dispatched: int = 0
    skipped_in_flight: int = 0
    skipped_unpublished: int = 0
    deferred_capacity: int = 0


class Daemon:
    """Single polling loop over the run store.

    ``in_flight`` is the only dedup structure: a run id is added before
    dispatch and removed when its runner invocation settles, whatever the
    outcome. It lives in this process only; a second daemon against the same
    store is not excluded.
    """

    def __init__(
        self,
        *,
        repository: RunRepository,
        runner: TaskRunner,
        reconciler: Reconciler,
        poll_interval_seconds: float = 2.0,
        max_concurrent: int = 4,
    ) -> None:
        self.repository = repository
        self.runner = runner
        self.reconciler = reconciler
        self.poll_interval_seconds = poll_interval_seconds
        self.max_concurrent = max_concurrent
        self.in_flight: set[str] = set()
        self._tasks: set[asyncio.Task[None]] = set()
        self._poll_task: asyncio.Task[None] | None = None
        self._stopped = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()

    async def start(self) -> list[ReconcileAction]:
        """Reconcile crash residue, then begin polling on a fixed interval."""

        if self.running:
            raise RuntimeError("Daemon is already running.")
        actions = self.reconciler.reconcile()
        if actions:
            logger.info("Reconciled %d run(s) before polling", len(actions))
        self._stopped.clear()
        self._poll_task = asyncio.get_running_loop().create_task(self._poll_loop())
        logger.info(
            "Watching %s (poll every %.2fs, max_concurrent %s)",
            self.repository.runs_dir,
            self.poll_interval_seconds,
            self.max_concurrent or "unbounded",
        )
        return actions

    async def stop(self) -> None:
        """Cancel the poll timer; in-flight runner invocations keep going."""

        if self._poll_task is not None:
            self._poll_task.cancel()
            try:
                await self._poll_task
            except asyncio.CancelledError:
                pass
            self._poll_task = None
        self._stopped.set()
        logger.info("Daemon stopped (%d run(s) still in flight)", len(self.in_flight))

    async def run_forever(self) -> None:
        """Poll until ``stop`` is called, then let dispatched runs settle."""

        await self.start()
        await self.wait_stopped()
        await self.drain()

    async def wait_stopped(self) -> None:
        await self._stopped.wait()

    async def drain(self) -> None:
        """Wait for every dispatched runner invocation to settle."""

        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _poll_loop(self) -> None:
        while True:
            try:
                self.poll_once()
            except Exception:  # noqa: BLE001
                logger.exception("Poll tick failed; retrying on next tick")
            await asyncio.sleep(self.poll_interval_seconds)

    def poll_once(self) -> PollSummary:
        """Dispatch every eligible ``created`` run without awaiting its runner."""

        summary = PollSummary()
        for record in self.repository.list_runs():
            if record.state is not RunState.CREATED:
                continue
            if record.run_id in self.in_flight:
                summary.skipped_in_flight += 1
                continue
            if not self.repository.has_published_request(record.run_id):
                summary.skipped_unpublished += 1
                continue
            if self.max_concurrent and len(self.in_flight) >= self.max_concurrent:
                summary.deferred_capacity += 1
                continue
            self._dispatch(record.run_id)
            summary.dispatched += 1
        return summary

    def _dispatch(self, run_id: str) -> None:
        self.in_flight.add(run_id)
        logger.info("Processing %s", run_id)
        task = asyncio.get_running_loop().create_task(self._process(run_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _process(self, run_id: str) -> None:
        try:
            await self.runner.process_run(run_id)
        except Exception:  # noqa: BLE001
            logger.exception("Error processing %s", run_id)
        else:
            logger.info("Settled %s", run_id)
        finally:
            self.in_flight.discard(run_id)
