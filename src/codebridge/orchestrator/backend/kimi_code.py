"""Kimi Code CLI adapter."""

from __future__ import annotations

import os

from codebridge.orchestrator.backend.base import BackendOptions, BackendResponse
from codebridge.orchestrator.backend.cli_backend import CliAgentBackend, parse_json_object
from codebridge.orchestrator.models import TaskRequest
from codebridge.orchestrator.usage import extract_usage


class KimiCodeBackend(CliAgentBackend):
    """``kimi --print --output-format stream-json``.

    Kimi does not report a session id on stdout, so its runs cannot be resumed.
    """

    engine_name = "kimi-code"

    def __init__(self, *, command: str = "kimi", **kwargs) -> None:
        super().__init__(command=command, **kwargs)

    def build_start_args(self, request: TaskRequest, options: BackendOptions) -> list[str]:
        return [
            "--print",
            "--output-format",
            "stream-json",
            "-w",
            request.workspace_path,
            "-p",
            request.message,
        ]

    def build_send_args(
        self,
        session_id: str,
        message: str,
        options: BackendOptions,
    ) -> list[str]:
        return [
            "--print",
            "--output-format",
            "stream-json",
            "--session",
            session_id,
            "-w",
            options.cwd or os.getcwd(),
            "-p",
            message,
        ]

    def parse_output(self, stdout: str, stderr: str, pid: int) -> BackendResponse:
        payload = parse_json_object(stdout)
        content = payload.get("content") if payload else None
        if isinstance(content, list):
            output = "".join(
                part["text"]
                for part in content
                if isinstance(part, dict)
                and part.get("type") == "text"
                and isinstance(part.get("text"), str)
            )
        else:
            output = stdout.strip()
        return BackendResponse(
            output=output,
            pid=pid,
            exit_code=0,
            session_id=None,
            token_usage=extract_usage(stdout),
        )
