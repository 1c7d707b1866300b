"""Environment diagnostics for configured engine executables and the run store."""

from __future__ import annotations

import os
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from uuid import uuid4

from codebridge.config import Settings
from codebridge.orchestrator.backend.registry import engine_executables


@dataclass(slots=True)
class EngineCheck:
    """Availability of one engine executable."""

    engine: str
    executable: str
    resolved_path: str | None
    version: str | None
    error: str | None

    @property
    def available(self) -> bool:
        return self.resolved_path is not None and self.error is None


@dataclass(slots=True)
class DoctorReport:
    """Diagnostics snapshot; informational only, never used for scheduling."""

    runs_dir: Path
    runs_dir_writable: bool
    runs_dir_error: str | None
    engines: list[EngineCheck]

    @property
    def healthy(self) -> bool:
        return self.runs_dir_writable and any(check.available for check in self.engines)


def run_doctor(settings: Settings, *, probe_timeout_seconds: int = 10) -> DoctorReport:
    writable, runs_dir_error = _check_runs_dir(settings.runs_dir)
    return DoctorReport(
        runs_dir=settings.runs_dir,
        runs_dir_writable=writable,
        runs_dir_error=runs_dir_error,
        engines=[
            check_engine(engine, executable, timeout_seconds=probe_timeout_seconds)
            for engine, executable in engine_executables(settings.engines).items()
        ],
    )


def check_engine(engine: str, executable: str, *, timeout_seconds: int = 10) -> EngineCheck:
    resolved = shutil.which(executable)
    if resolved is None:
        return EngineCheck(
            engine=engine,
            executable=executable,
            resolved_path=None,
            version=None,
            error=f"Executable not found in PATH: {executable}",
        )
    version, error = _probe_version(resolved, timeout_seconds=timeout_seconds)
    return EngineCheck(
        engine=engine,
        executable=executable,
        resolved_path=resolved,
        version=version,
        error=error,
    )


def _probe_version(executable: str, *, timeout_seconds: int) -> tuple[str | None, str | None]:
    try:
        completed = subprocess.run(  # noqa: S603
            [executable, "--version"],
            check=False,
            capture_output=True,
            text=True,
            timeout=timeout_seconds,
        )
    except subprocess.TimeoutExpired:
        return None, "Version probe timed out."
    except OSError as error:
        return None, f"Version probe failed to start: {error}"
    if completed.returncode != 0:
        return None, f"Version probe exit code={completed.returncode}"
    return _truncate(completed.stdout or completed.stderr), None


def _check_runs_dir(runs_dir: Path) -> tuple[bool, str | None]:
    try:
        runs_dir.mkdir(parents=True, exist_ok=True)
        probe = runs_dir / f".doctor-{os.getpid()}-{uuid4().hex[:8]}"
        probe.write_text("ok", "utf-8")
        probe.unlink()
    except OSError as error:
        return False, str(error)
    return True, None


def _truncate(value: str, *, limit: int = 120) -> str:
    compact = value.strip().replace("\n", " ")
    if len(compact) <= limit:
        return compact
    return compact[:limit] + "..."
