"""Engine name to backend adapter lookup."""

from __future__ import annotations

from codebridge.config import EngineSettings
from codebridge.orchestrator.backend.base import ExecutionBackend
from codebridge.orchestrator.backend.claude_code import ClaudeCodeBackend
from codebridge.orchestrator.backend.codex import CodexBackend
from codebridge.orchestrator.backend.echo_agent import EchoAgentBackend
from codebridge.orchestrator.backend.kimi_code import KimiCodeBackend
from codebridge.orchestrator.backend.opencode import OpenCodeBackend


class UnknownEngineError(ValueError):
    """Engine name has no registered adapter."""


def resolve_backend(engine: str, settings: EngineSettings | None = None) -> ExecutionBackend:
    """Build the adapter for ``engine``; adapters share no state."""

    settings = settings or EngineSettings()
    if engine == "claude-code":
        return ClaudeCodeBackend(
            command=settings.claude_command,
            permission_mode=settings.claude_permission_mode,
            max_output_bytes=settings.max_output_bytes,
        )
    if engine == "codex":
        return CodexBackend(
            command=settings.codex_command,
            max_output_bytes=settings.max_output_bytes,
        )
    if engine == "kimi-code":
        return KimiCodeBackend(
            command=settings.kimi_command,
            max_output_bytes=settings.max_output_bytes,
        )
    if engine == "opencode":
        return OpenCodeBackend(
            command=settings.opencode_command,
            max_output_bytes=settings.max_output_bytes,
        )
    if engine == "echo":
        return EchoAgentBackend(max_output_bytes=settings.max_output_bytes)
    raise UnknownEngineError(f"Unknown engine: {engine[:64]!r}")


def engine_executables(settings: EngineSettings | None = None) -> dict[str, str]:
    """Executable each engine adapter shells out to."""

    settings = settings or EngineSettings()
    return {
        "claude-code": settings.claude_command,
        "codex": settings.codex_command,
        "kimi-code": settings.kimi_command,
        "opencode": settings.opencode_command,
    }
