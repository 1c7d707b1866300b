"""Backend interface for run execution."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from codebridge.orchestrator.models import RunError, TaskRequest, TokenUsage

DEFAULT_TIMEOUT_MS = 1_800_000


@dataclass(slots=True)
class BackendOptions:
    """Per-invocation execution options."""

    timeout_ms: int = DEFAULT_TIMEOUT_MS
    cwd: str | None = None
    model: str | None = None
    log_dir: Path | None = None
    on_spawn: Callable[[int], None] | None = None


@dataclass(slots=True)
class BackendResponse:
    """Execution outcome reported by a backend.

    A non-null ``error`` is authoritative regardless of ``exit_code``.
    """

    output: str
    pid: int | None
    exit_code: int | None
    session_id: str | None
    error: RunError | None = None
    token_usage: TokenUsage | None = None


class ExecutionBackend(Protocol):
    """Capability set implemented by one adapter per external agent."""

    async def start(
        self,
        request: TaskRequest,
        options: BackendOptions | None = None,
    ) -> BackendResponse:
        """Begin a fresh conversation; a successful response carries a session id."""

    async def send(
        self,
        session_id: str,
        message: str,
        options: BackendOptions | None = None,
    ) -> BackendResponse:
        """Continue the conversation identified by ``session_id``."""

    async def stop(self, pid: int) -> None:
        """Best-effort termination of the process backing the current invocation."""
