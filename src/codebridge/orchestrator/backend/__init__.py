"""Execution backend implementations."""

from codebridge.orchestrator.backend.base import (
    BackendOptions,
    BackendResponse,
    ExecutionBackend,
)
from codebridge.orchestrator.backend.cli_backend import CliAgentBackend
from codebridge.orchestrator.backend.registry import UnknownEngineError, resolve_backend

__all__ = [
    "BackendOptions",
    "BackendResponse",
    "CliAgentBackend",
    "ExecutionBackend",
    "UnknownEngineError",
    "resolve_backend",
]
