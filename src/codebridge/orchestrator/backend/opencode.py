"""OpenCode CLI adapter."""

from __future__ import annotations

import os
from typing import Any

from codebridge.orchestrator.backend.base import BackendOptions, BackendResponse
from codebridge.orchestrator.backend.cli_backend import CliAgentBackend, iter_json_lines
from codebridge.orchestrator.models import TaskRequest, TokenUsage


class OpenCodeBackend(CliAgentBackend):
    """``opencode run --format json`` with ``-s <session>`` for follow-ups."""

    engine_name = "opencode"

    def __init__(self, *, command: str = "opencode", **kwargs) -> None:
        super().__init__(command=command, **kwargs)

    def build_start_args(self, request: TaskRequest, options: BackendOptions) -> list[str]:
        args = ["run", "--format", "json", "--dir", request.workspace_path]
        model = options.model or request.model
        if model:
            args.extend(["-m", model])
        args.append(request.message)
        return args

    def build_send_args(
        self,
        session_id: str,
        message: str,
        options: BackendOptions,
    ) -> list[str]:
        cwd = options.cwd or os.getcwd()
        return ["run", "--format", "json", "--dir", cwd, "-s", session_id, message]

    def parse_output(self, stdout: str, stderr: str, pid: int) -> BackendResponse:
        text_parts: list[str] = []
        session_id: str | None = None
        token_usage: TokenUsage | None = None
        for event in iter_json_lines(stdout):
            if session_id is None and isinstance(event.get("sessionID"), str):
                session_id = event["sessionID"]
            part = event.get("part")
            if not isinstance(part, dict):
                continue
            if event.get("type") == "text" and isinstance(part.get("text"), str):
                text_parts.append(part["text"])
            elif event.get("type") == "step_finish":
                token_usage = _step_usage(part.get("tokens")) or token_usage

        if text_parts or session_id or token_usage:
            output = "".join(text_parts)
        else:
            output = stdout.strip()
        return BackendResponse(
            output=output,
            pid=pid,
            exit_code=0,
            session_id=session_id,
            token_usage=token_usage,
        )


def _step_usage(tokens: Any) -> TokenUsage | None:
    if not isinstance(tokens, dict):
        return None
    prompt = _count(tokens.get("input"))
    completion = _count(tokens.get("output"))
    total = tokens.get("total")
    return TokenUsage(
        prompt_tokens=prompt,
        completion_tokens=completion,
        total_tokens=_count(total) if total is not None else prompt + completion,
    )


def _count(value: object) -> int:
    if isinstance(value, int) and not isinstance(value, bool) and value >= 0:
        return value
    return 0
