"""File-based contracts for run requests, session records, and results."""

from __future__ import annotations

import json
import os
from datetime import datetime
from pathlib import Path
from typing import Any
from uuid import uuid4

from codebridge.orchestrator.errors import RequestValidationError
from codebridge.orchestrator.models import (
    SUPPORTED_ENGINES,
    SUPPORTED_INTENTS,
    RunError,
    RunMode,
    RunRecord,
    RunResult,
    RunState,
    TaskConstraints,
    TaskRequest,
    TokenUsage,
)

# /var/folders is a macOS per-user temp root and stays allowed.
DANGEROUS_ROOTS: tuple[str, ...] = (
    "/",
    "/etc",
    "/usr",
    "/System",
    "/bin",
    "/sbin",
    "/var/run",
    "/var/root",
    "/var/db",
    "/var/spool",
)


def write_json_atomic(path: Path, payload: dict[str, Any]) -> None:
    """Persist JSON via temp file + rename so readers never observe a partial write."""

    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f"{path.name}.tmp-{os.getpid()}-{uuid4().hex[:8]}")
    try:
        with tmp_path.open("w", encoding="utf-8") as handle:
            handle.write(json.dumps(payload, ensure_ascii=False, indent=2, sort_keys=True))
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, path)
    finally:
        tmp_path.unlink(missing_ok=True)


def load_json(path: Path) -> dict[str, Any]:
    """Load JSON document and validate top-level object type."""

    payload = json.loads(path.read_text("utf-8"))
    if not isinstance(payload, dict):
        raise TypeError(f"Expected JSON object in {path}")
    return payload


def request_to_dict(request: TaskRequest) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "task_id": request.task_id,
        "intent": request.intent,
        "workspace_path": request.workspace_path,
        "message": request.message,
        "engine": request.engine,
        "mode": request.mode.value,
        "session_id": request.session_id,
        "constraints": {
            "timeout_ms": request.constraints.timeout_ms,
            "allow_network": request.constraints.allow_network,
        },
    }
    if request.model is not None:
        payload["model"] = request.model
    if request.allowed_roots:
        payload["allowed_roots"] = list(request.allowed_roots)
    if request.run_id is not None:
        payload["run_id"] = request.run_id
    return payload


def validate_request(raw: dict[str, Any]) -> TaskRequest:
    """Validate a raw request payload and build a typed request.

    All problems are collected and reported together in one
    ``RequestValidationError``.
    """

    issues: list[str] = []

    task_id = raw.get("task_id")
    if not isinstance(task_id, str) or not task_id.strip():
        issues.append("task_id: must be a non-empty string")

    intent = raw.get("intent")
    if intent not in SUPPORTED_INTENTS:
        issues.append(f"intent: must be one of {', '.join(SUPPORTED_INTENTS)}")

    message = raw.get("message")
    if not isinstance(message, str) or not message.strip():
        issues.append("message: must be a non-empty string")

    engine = raw.get("engine")
    if engine not in SUPPORTED_ENGINES:
        issues.append(f"engine: must be one of {', '.join(SUPPORTED_ENGINES)}")

    workspace_path = raw.get("workspace_path")
    if not isinstance(workspace_path, str) or not workspace_path:
        issues.append("workspace_path: must be a non-empty string")
    else:
        issues.extend(_workspace_issues(workspace_path))

    mode_raw = raw.get("mode", RunMode.NEW.value)
    try:
        mode = RunMode(mode_raw)
    except ValueError:
        issues.append("mode: must be 'new' or 'resume'")
        mode = RunMode.NEW

    session_id = raw.get("session_id")
    if session_id is not None and not isinstance(session_id, str):
        issues.append("session_id: must be a string or null")
    if mode is RunMode.RESUME and not session_id:
        issues.append("session_id: required when mode is 'resume'")

    model = raw.get("model")
    if model is not None and not isinstance(model, str):
        issues.append("model: must be a string")

    constraints = _parse_constraints(raw.get("constraints"), issues)

    allowed_roots_raw = raw.get("allowed_roots") or []
    if not isinstance(allowed_roots_raw, list) or not all(
        isinstance(root, str) for root in allowed_roots_raw
    ):
        issues.append("allowed_roots: must be an array of strings")
        allowed_roots_raw = []

    run_id = raw.get("run_id")
    if run_id is not None and not isinstance(run_id, str):
        issues.append("run_id: must be a string")

    if issues:
        raise RequestValidationError(issues)

    return TaskRequest(
        task_id=str(task_id),
        intent=str(intent),
        workspace_path=str(workspace_path),
        message=str(message),
        engine=str(engine),
        mode=mode,
        session_id=session_id,
        model=model,
        constraints=constraints,
        allowed_roots=tuple(allowed_roots_raw),
        run_id=run_id,
    )


def _parse_constraints(raw: object, issues: list[str]) -> TaskConstraints:
    if raw is None:
        return TaskConstraints()
    if not isinstance(raw, dict):
        issues.append("constraints: must be an object")
        return TaskConstraints()

    defaults = TaskConstraints()
    timeout_ms = raw.get("timeout_ms", defaults.timeout_ms)
    if isinstance(timeout_ms, bool) or not isinstance(timeout_ms, (int, float)) or timeout_ms <= 0:
        issues.append("constraints.timeout_ms: must be a positive number")
        timeout_ms = defaults.timeout_ms
    allow_network = raw.get("allow_network", defaults.allow_network)
    if not isinstance(allow_network, bool):
        issues.append("constraints.allow_network: must be a boolean")
        allow_network = defaults.allow_network
    return TaskConstraints(timeout_ms=int(timeout_ms), allow_network=allow_network)


def _workspace_issues(workspace_path: str) -> list[str]:
    if "\x00" in workspace_path:
        return ["workspace_path: must not contain null bytes"]
    resolved = os.path.abspath(workspace_path)
    for root in DANGEROUS_ROOTS:
        if resolved == root or (root != "/" and resolved.startswith(root + "/")):
            return [f"workspace_path: {resolved} is a disallowed root path"]
    return []


def write_request(path: Path, request: TaskRequest) -> None:
    write_json_atomic(path, request_to_dict(request))


def read_request(path: Path) -> TaskRequest:
    """Deserialize and validate a request artifact."""

    return validate_request(load_json(path))


def record_to_dict(record: RunRecord) -> dict[str, Any]:
    return {
        "run_id": record.run_id,
        "task_id": record.task_id,
        "intent": record.intent,
        "workspace_path": record.workspace_path,
        "message": record.message,
        "engine": record.engine,
        "mode": record.mode.value,
        "state": record.state.value,
        "session_id": record.session_id,
        "pid": record.pid,
        "owner_pid": record.owner_pid,
        "model": record.model,
        "constraints": {
            "timeout_ms": record.constraints.timeout_ms,
            "allow_network": record.constraints.allow_network,
        },
        "created_at": record.created_at.isoformat(),
        "updated_at": record.updated_at.isoformat(),
    }


def record_from_dict(raw: dict[str, Any]) -> RunRecord:
    constraints_raw = raw.get("constraints") or {}
    defaults = TaskConstraints()
    return RunRecord(
        run_id=str(raw["run_id"]),
        task_id=str(raw.get("task_id", "")),
        intent=str(raw.get("intent", "")),
        workspace_path=str(raw.get("workspace_path", "")),
        message=str(raw.get("message", "")),
        engine=str(raw.get("engine", "")),
        mode=RunMode(raw.get("mode", RunMode.NEW.value)),
        state=RunState(raw["state"]),
        session_id=raw.get("session_id"),
        pid=raw.get("pid"),
        owner_pid=raw.get("owner_pid"),
        model=raw.get("model"),
        constraints=TaskConstraints(
            timeout_ms=int(constraints_raw.get("timeout_ms", defaults.timeout_ms)),
            allow_network=bool(constraints_raw.get("allow_network", defaults.allow_network)),
        ),
        created_at=datetime.fromisoformat(raw["created_at"]),
        updated_at=datetime.fromisoformat(raw["updated_at"]),
    )


def write_record(path: Path, record: RunRecord) -> None:
    write_json_atomic(path, record_to_dict(record))


def read_record(path: Path) -> RunRecord:
    return record_from_dict(load_json(path))


def result_to_dict(result: RunResult) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "run_id": result.run_id,
        "status": result.status.value,
        "output": result.output,
        "summary": result.summary,
        "session_id": result.session_id,
        "duration_ms": result.duration_ms,
        "artifacts": list(result.artifacts),
        "token_usage": None,
    }
    if result.token_usage is not None:
        payload["token_usage"] = {
            "prompt_tokens": result.token_usage.prompt_tokens,
            "completion_tokens": result.token_usage.completion_tokens,
            "total_tokens": result.token_usage.total_tokens,
        }
    if result.error is not None:
        payload["error"] = {
            "code": result.error.code,
            "message": result.error.message,
            "retryable": result.error.retryable,
        }
        if result.error.suggestion is not None:
            payload["error"]["suggestion"] = result.error.suggestion
    return payload


def result_from_dict(raw: dict[str, Any]) -> RunResult:
    status = RunState(raw["status"])
    if not status.is_terminal:
        raise ValueError(f"result.status must be terminal, got {status.value!r}")
    error_raw = raw.get("error")
    usage_raw = raw.get("token_usage")
    error = None
    if isinstance(error_raw, dict):
        error = RunError(
            code=str(error_raw["code"]),
            message=str(error_raw.get("message", "")),
            retryable=bool(error_raw.get("retryable", False)),
            suggestion=error_raw.get("suggestion"),
        )
    if status is RunState.FAILED and error is None:
        raise ValueError("result.error is required when status is failed")
    token_usage = None
    if isinstance(usage_raw, dict):
        token_usage = TokenUsage(
            prompt_tokens=int(usage_raw["prompt_tokens"]),
            completion_tokens=int(usage_raw["completion_tokens"]),
            total_tokens=int(usage_raw["total_tokens"]),
        )
    return RunResult(
        run_id=str(raw["run_id"]),
        status=status,
        output=str(raw.get("output", "")),
        summary=str(raw.get("summary", "")),
        session_id=raw.get("session_id"),
        duration_ms=int(raw.get("duration_ms", 0)),
        artifacts=[str(item) for item in raw.get("artifacts", [])],
        error=error,
        token_usage=token_usage,
    )


def write_result(path: Path, result: RunResult) -> None:
    write_json_atomic(path, result_to_dict(result))


def read_result(path: Path) -> RunResult:
    return result_from_dict(load_json(path))
