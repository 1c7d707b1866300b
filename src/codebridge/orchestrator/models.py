"""Domain models for run lifecycle, requests, and results."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class RunState(str, Enum):
    """Durable run lifecycle states."""

    CREATED = "created"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in {RunState.COMPLETED, RunState.FAILED}


class RunMode(str, Enum):
    """Whether a request starts a fresh backend conversation or continues one."""

    NEW = "new"
    RESUME = "resume"


SUPPORTED_INTENTS: tuple[str, ...] = ("coding", "refactor", "debug", "ops")
SUPPORTED_ENGINES: tuple[str, ...] = ("claude-code", "codex", "kimi-code", "opencode", "echo")


@dataclass(slots=True)
class TaskConstraints:
    """Execution limits attached to a request."""

    timeout_ms: int = 1_800_000
    allow_network: bool = True


@dataclass(slots=True)
class TaskRequest:
    """Pending instruction for a run, persisted as the request artifact."""

    task_id: str
    intent: str
    workspace_path: str
    message: str
    engine: str
    mode: RunMode = RunMode.NEW
    session_id: str | None = None
    model: str | None = None
    constraints: TaskConstraints = field(default_factory=TaskConstraints)
    allowed_roots: tuple[str, ...] = ()
    run_id: str | None = None


@dataclass(slots=True)
class RunRecord:
    """Persisted session/state record of a run."""

    run_id: str
    task_id: str
    intent: str
    workspace_path: str
    message: str
    engine: str
    mode: RunMode
    state: RunState
    created_at: datetime
    updated_at: datetime
    session_id: str | None = None
    pid: int | None = None
    owner_pid: int | None = None
    model: str | None = None
    constraints: TaskConstraints = field(default_factory=TaskConstraints)


@dataclass(slots=True)
class RunError:
    """Structured failure attached to a failed result."""

    code: str
    message: str
    retryable: bool
    suggestion: str | None = None


@dataclass(slots=True)
class TokenUsage:
    """Backend-reported token accounting."""

    prompt_tokens: int
    completion_tokens: int
    total_tokens: int


@dataclass(slots=True)
class RunResult:
    """Terminal outcome of one processing attempt."""

    run_id: str
    status: RunState
    output: str
    summary: str
    session_id: str | None
    duration_ms: int
    artifacts: list[str] = field(default_factory=list)
    error: RunError | None = None
    token_usage: TokenUsage | None = None


@dataclass(slots=True)
class ReconcileAction:
    """One repair performed by the reconciler, reported for operator visibility."""

    run_id: str
    action: str
    detail: str
