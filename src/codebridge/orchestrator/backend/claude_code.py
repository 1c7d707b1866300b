"""Claude Code CLI adapter."""

from __future__ import annotations

import re

from codebridge.orchestrator.backend.base import BackendOptions, BackendResponse
from codebridge.orchestrator.backend.cli_backend import CliAgentBackend, parse_json_object
from codebridge.orchestrator.models import TaskRequest
from codebridge.orchestrator.usage import usage_from_payload

PERMISSION_MODES = frozenset({"acceptEdits", "bypassPermissions", "default", "dontAsk", "plan"})

_SESSION_ID_PATTERN = re.compile(r'"session_id"\s*:\s*"([^"]+)"')


class ClaudeCodeBackend(CliAgentBackend):
    """``claude --print --output-format json`` with ``--resume`` for follow-ups."""

    engine_name = "claude-code"

    def __init__(
        self,
        *,
        command: str = "claude",
        permission_mode: str | None = None,
        **kwargs,
    ) -> None:
        super().__init__(command=command, **kwargs)
        self.permission_mode = permission_mode if permission_mode in PERMISSION_MODES else None

    def build_start_args(self, request: TaskRequest, options: BackendOptions) -> list[str]:
        args = [*self._permission_args(), "--print", "--output-format", "json"]
        model = options.model or request.model
        if model:
            args.extend(["--model", model])
        args.extend(["-p", request.message])
        return args

    def build_send_args(
        self,
        session_id: str,
        message: str,
        options: BackendOptions,
    ) -> list[str]:
        return [
            "--resume",
            session_id,
            *self._permission_args(),
            "--print",
            "--output-format",
            "json",
            "-p",
            message,
        ]

    def parse_output(self, stdout: str, stderr: str, pid: int) -> BackendResponse:
        payload = parse_json_object(stdout)
        result = payload.get("result") if payload else None
        session_id = payload.get("session_id") if payload else None
        if not isinstance(session_id, str):
            match = _SESSION_ID_PATTERN.search(stderr + stdout)
            session_id = match.group(1) if match else None
        return BackendResponse(
            output=result if isinstance(result, str) else stdout.strip(),
            pid=pid,
            exit_code=0,
            session_id=session_id,
            token_usage=usage_from_payload(payload),
        )

    def _permission_args(self) -> list[str]:
        if self.permission_mode is None:
            return []
        return ["--permission-mode", self.permission_mode]
