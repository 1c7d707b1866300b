"""Codex CLI adapter."""

from __future__ import annotations

import os
from typing import Any

from codebridge.orchestrator.backend.base import BackendOptions, BackendResponse
from codebridge.orchestrator.backend.cli_backend import CliAgentBackend, iter_json_lines
from codebridge.orchestrator.models import TaskRequest


class CodexBackend(CliAgentBackend):
    """``codex exec --json`` with ``resume <thread_id>`` for follow-ups."""

    engine_name = "codex"

    def __init__(self, *, command: str = "codex", **kwargs) -> None:
        super().__init__(command=command, **kwargs)

    def build_start_args(self, request: TaskRequest, options: BackendOptions) -> list[str]:
        args = ["exec", "--json", "--full-auto", "-C", request.workspace_path]
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
        return ["exec", "--json", "--full-auto", "-C", cwd, "resume", session_id, message]

    def parse_output(self, stdout: str, stderr: str, pid: int) -> BackendResponse:
        text_parts: list[str] = []
        session_id: str | None = None
        for event in iter_json_lines(stdout):
            event_type = event.get("type")
            if event_type == "thread.started" and session_id is None:
                session_id = _thread_id(event)
            elif event_type == "item.completed":
                text_parts.extend(_item_text(event.get("item")))
            elif event_type in {"message.completed", "response.completed"}:
                message = event.get("message") or event.get("response")
                text_parts.extend(_message_text(message))

        if text_parts or session_id:
            output = "".join(text_parts)
        else:
            output = stdout.strip()
        # Codex does not report token usage reliably.
        return BackendResponse(output=output, pid=pid, exit_code=0, session_id=session_id)


def _thread_id(event: dict[str, Any]) -> str | None:
    if isinstance(event.get("thread_id"), str):
        return event["thread_id"]
    thread = event.get("thread")
    if isinstance(thread, dict) and isinstance(thread.get("id"), str):
        return thread["id"]
    return None


def _item_text(item: object) -> list[str]:
    if not isinstance(item, dict):
        return []
    if item.get("type") == "agent_message" and isinstance(item.get("text"), str):
        return [item["text"]]
    if item.get("type") == "message":
        return _content_text(item.get("content"), kinds=("output_text", "text"))
    return []


def _message_text(message: object) -> list[str]:
    if not isinstance(message, dict):
        return []
    parts = _content_text(message.get("content"), kinds=("text",))
    if isinstance(message.get("output_text"), str):
        parts.append(message["output_text"])
    return parts


def _content_text(content: object, *, kinds: tuple[str, ...]) -> list[str]:
    if not isinstance(content, list):
        return []
    return [
        part["text"]
        for part in content
        if isinstance(part, dict)
        and part.get("type") in kinds
        and isinstance(part.get("text"), str)
    ]
