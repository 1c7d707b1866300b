"""Exception taxonomy and structured error-code catalog."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from codebridge.orchestrator.models import RunError


class CodebridgeError(RuntimeError):
    """Base class for errors surfaced synchronously to callers."""


class RunNotFoundError(CodebridgeError):
    """Unknown run id."""

    def __init__(self, run_id: str) -> None:
        super().__init__(f"Run not found: {run_id}")
        self.run_id = run_id


class InvalidStateError(CodebridgeError):
    """Operation attempted against a run in an incompatible state."""


class InvalidTransitionError(InvalidStateError):
    """State machine rejected a transition."""

    def __init__(self, run_id: str, current: str, target: str, reason: str | None = None) -> None:
        message = f"Invalid state transition for {run_id}: {current} -> {target}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message)
        self.run_id = run_id
        self.current = current
        self.target = target


class RequestValidationError(ValueError):
    """Submitted or claimed request does not satisfy the request schema."""

    def __init__(self, issues: list[str]) -> None:
        super().__init__("Invalid request: " + "; ".join(issues))
        self.issues = issues


class ErrorCode(str, Enum):
    """Codes persisted in failed results."""

    TIMEOUT = "TIMEOUT"
    ORPHANED = "ORPHANED"
    TASK_STOPPED = "TASK_STOPPED"
    ENGINE_CRASH = "ENGINE_CRASH"
    ENGINE_AUTH = "ENGINE_AUTH"
    ENGINE_NOT_FOUND = "ENGINE_NOT_FOUND"
    NETWORK_ERROR = "NETWORK_ERROR"
    BACKEND_ERROR = "BACKEND_ERROR"
    WORKSPACE_INVALID = "WORKSPACE_INVALID"
    WORKSPACE_NOT_FOUND = "WORKSPACE_NOT_FOUND"
    REQUEST_INVALID = "REQUEST_INVALID"


@dataclass(slots=True, frozen=True)
class ErrorCodeInfo:
    category: str
    retryable: bool
    message: str


ERROR_CODES: dict[ErrorCode, ErrorCodeInfo] = {
    ErrorCode.TIMEOUT: ErrorCodeInfo("engine", True, "Engine execution timed out"),
    ErrorCode.ORPHANED: ErrorCodeInfo(
        "internal",
        False,
        "Run orphaned: backing process died before the run finished",
    ),
    ErrorCode.TASK_STOPPED: ErrorCodeInfo("user", False, "Task stopped by operator"),
    ErrorCode.ENGINE_CRASH: ErrorCodeInfo("engine", True, "Engine process crashed"),
    ErrorCode.ENGINE_AUTH: ErrorCodeInfo("engine", False, "Engine authentication failed"),
    ErrorCode.ENGINE_NOT_FOUND: ErrorCodeInfo("engine", False, "Engine executable not found"),
    ErrorCode.NETWORK_ERROR: ErrorCodeInfo("network", True, "Network connection failed"),
    ErrorCode.BACKEND_ERROR: ErrorCodeInfo("engine", False, "Engine raised an unexpected error"),
    ErrorCode.WORKSPACE_INVALID: ErrorCodeInfo(
        "input",
        False,
        "Workspace path invalid or out of bounds",
    ),
    ErrorCode.WORKSPACE_NOT_FOUND: ErrorCodeInfo("input", False, "Workspace directory not found"),
    ErrorCode.REQUEST_INVALID: ErrorCodeInfo("input", False, "Invalid request format"),
}

_SUGGESTIONS: dict[ErrorCode, str] = {
    ErrorCode.TIMEOUT: "Resume the run or raise constraints.timeout_ms.",
    ErrorCode.ORPHANED: "Inspect the workspace before resuming; the outcome is unknown.",
    ErrorCode.ENGINE_AUTH: "Log in to the engine CLI and retry.",
    ErrorCode.ENGINE_NOT_FOUND: "Install the engine CLI or fix its command setting (see doctor).",
}


def make_error(code: ErrorCode, detail: str | None = None) -> RunError:
    """Build a structured run error with catalog defaults."""

    info = ERROR_CODES[code]
    return RunError(
        code=code.value,
        message=detail or info.message,
        retryable=info.retryable,
        suggestion=_SUGGESTIONS.get(code),
    )
