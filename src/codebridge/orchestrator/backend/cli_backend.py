"""Subprocess-based backend runner shared by CLI agent adapters."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import signal
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from codebridge.common import utc_now
from codebridge.orchestrator.backend.base import BackendOptions, BackendResponse
from codebridge.orchestrator.errors import ErrorCode, make_error
from codebridge.orchestrator.failure_classifier import backend_failure_error
from codebridge.orchestrator.models import TaskRequest
from codebridge.orchestrator.process import send_signal

logger = logging.getLogger(__name__)

DEFAULT_MAX_OUTPUT_BYTES = 10 * 1024 * 1024
_READ_CHUNK_BYTES = 64 * 1024
_EXTRA_BIN_DIRS = ("/opt/homebrew/bin", "/usr/local/bin", "/usr/bin")


@dataclass(slots=True)
class _Capture:
    limit: int
    stdout: bytearray = field(default_factory=bytearray)
    stderr: bytearray = field(default_factory=bytearray)
    total: int = 0
    overflow: bool = False


class CliAgentBackend:
    """Run one external agent CLI per invocation and parse its output.

    Subclasses supply argv construction and output parsing; process
    lifecycle, timeout, output cap and log capture live here.
    """

    engine_name = "cli"

    def __init__(
        self,
        *,
        command: str,
        max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES,
        kill_grace_seconds: float = 3.0,
    ) -> None:
        self.command = command
        self.max_output_bytes = max_output_bytes
        self.kill_grace_seconds = kill_grace_seconds

    async def start(
        self,
        request: TaskRequest,
        options: BackendOptions | None = None,
    ) -> BackendResponse:
        options = options or BackendOptions(
            timeout_ms=request.constraints.timeout_ms,
            cwd=request.workspace_path,
            model=request.model,
        )
        return await self._exec(self.build_start_args(request, options), options)

    async def send(
        self,
        session_id: str,
        message: str,
        options: BackendOptions | None = None,
    ) -> BackendResponse:
        options = options or BackendOptions()
        return await self._exec(self.build_send_args(session_id, message, options), options)

    async def stop(self, pid: int) -> None:
        send_signal(pid, signal.SIGTERM)

    def build_start_args(self, request: TaskRequest, options: BackendOptions) -> list[str]:
        raise NotImplementedError

    def build_send_args(
        self,
        session_id: str,
        message: str,
        options: BackendOptions,
    ) -> list[str]:
        raise NotImplementedError

    def parse_output(self, stdout: str, stderr: str, pid: int) -> BackendResponse:
        return BackendResponse(output=stdout.strip(), pid=pid, exit_code=0, session_id=None)

    async def _exec(self, args: list[str], options: BackendOptions) -> BackendResponse:
        try:
            process = await asyncio.create_subprocess_exec(
                self.command,
                *args,
                cwd=options.cwd or None,
                env=_merged_env(),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError:
            return BackendResponse(
                output="",
                pid=None,
                exit_code=None,
                session_id=None,
                error=make_error(
                    ErrorCode.ENGINE_NOT_FOUND,
                    f"{self.engine_name} command not found: {self.command}",
                ),
            )
        except OSError as error:
            return BackendResponse(
                output="",
                pid=None,
                exit_code=None,
                session_id=None,
                error=make_error(
                    ErrorCode.ENGINE_CRASH,
                    f"{self.engine_name} failed to start: {error}",
                ),
            )

        logger.debug("%s spawned pid %s", self.engine_name, process.pid)
        if options.on_spawn is not None:
            options.on_spawn(process.pid)

        capture = _Capture(limit=self.max_output_bytes)
        timeout_seconds = options.timeout_ms / 1000
        timed_out = False
        try:
            await asyncio.wait_for(self._communicate(process, capture), timeout=timeout_seconds)
        except TimeoutError:
            timed_out = True
            await self._terminate(process)
        except asyncio.CancelledError:
            await self._terminate(process)
            raise

        stdout = capture.stdout.decode("utf-8", errors="replace")
        stderr = capture.stderr.decode("utf-8", errors="replace")
        _write_logs(options.log_dir, self.engine_name, stdout=stdout, stderr=stderr)

        if timed_out:
            return BackendResponse(
                output=stdout,
                pid=process.pid,
                exit_code=process.returncode,
                session_id=None,
                error=make_error(
                    ErrorCode.TIMEOUT,
                    f"Process killed after {options.timeout_ms}ms",
                ),
            )
        if capture.overflow:
            return BackendResponse(
                output=stdout,
                pid=process.pid,
                exit_code=process.returncode,
                session_id=None,
                error=make_error(
                    ErrorCode.ENGINE_CRASH,
                    f"Engine output exceeded {self.max_output_bytes} bytes",
                ),
            )
        if process.returncode != 0:
            return BackendResponse(
                output=stdout,
                pid=process.pid,
                exit_code=process.returncode,
                session_id=None,
                error=backend_failure_error(
                    engine=self.engine_name,
                    exit_code=process.returncode,
                    stdout=stdout,
                    stderr=stderr,
                ),
            )
        return self.parse_output(stdout, stderr, process.pid)

    async def _communicate(self, process: asyncio.subprocess.Process, capture: _Capture) -> None:
        await asyncio.gather(
            self._drain(process, process.stdout, capture.stdout, capture),
            self._drain(process, process.stderr, capture.stderr, capture),
        )
        await process.wait()

    async def _drain(
        self,
        process: asyncio.subprocess.Process,
        stream: asyncio.StreamReader | None,
        sink: bytearray,
        capture: _Capture,
    ) -> None:
        if stream is None:
            return
        while chunk := await stream.read(_READ_CHUNK_BYTES):
            if capture.overflow:
                continue
            remaining = capture.limit - capture.total
            if len(chunk) > remaining:
                sink.extend(chunk[:remaining])
                capture.total = capture.limit
                capture.overflow = True
                if process.returncode is None:
                    try:
                        process.terminate()
                    except ProcessLookupError:
                        pass
                continue
            sink.extend(chunk)
            capture.total += len(chunk)

    async def _terminate(self, process: asyncio.subprocess.Process) -> None:
        if process.returncode is not None:
            return
        try:
            process.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(process.wait(), timeout=self.kill_grace_seconds)
        except TimeoutError:
            try:
                process.kill()
            except ProcessLookupError:
                return
            await process.wait()


def parse_json_object(output: str) -> dict[str, Any] | None:
    """Parse a whole-document JSON object, falling back to the last JSON line."""

    trimmed = output.strip()
    if not trimmed:
        return None
    try:
        payload = json.loads(trimmed)
    except json.JSONDecodeError:
        payload = None
    if isinstance(payload, dict):
        return payload

    for line in reversed(trimmed.splitlines()):
        line = line.strip()
        if not line.startswith("{"):
            continue
        try:
            candidate = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(candidate, dict):
            return candidate
    return None


def iter_json_lines(output: str) -> list[dict[str, Any]]:
    """Parse every JSON-object line of a JSONL stream, skipping the rest."""

    events: list[dict[str, Any]] = []
    for line in output.splitlines():
        line = line.strip()
        if not line.startswith("{"):
            continue
        try:
            event = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(event, dict):
            events.append(event)
    return events


def _merged_env() -> dict[str, str]:
    env = os.environ.copy()
    extra = list(_EXTRA_BIN_DIRS)
    home = env.get("HOME")
    if home:
        extra.append(os.path.join(home, ".local", "bin"))
        extra.append(os.path.join(home, ".npm-global", "bin"))
    parts = [part for part in env.get("PATH", "").split(os.pathsep) if part]
    env["PATH"] = os.pathsep.join(dict.fromkeys([*parts, *extra]))
    return env


def _write_logs(log_dir: Path | None, engine: str, *, stdout: str, stderr: str) -> None:
    if log_dir is None:
        return
    log_dir.mkdir(parents=True, exist_ok=True)
    stamp = f"{utc_now():%Y%m%dT%H%M%S%f}"
    (log_dir / f"{stamp}-{engine}-stdout.log").write_text(stdout, "utf-8")
    (log_dir / f"{stamp}-{engine}-stderr.log").write_text(stderr, "utf-8")
