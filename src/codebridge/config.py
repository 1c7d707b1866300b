"""Runtime configuration for the run store, daemon, and engine adapters."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from codebridge.orchestrator.models import SUPPORTED_ENGINES


@dataclass(slots=True)
class DaemonSettings:
    """Polling loop and dispatch settings."""

    poll_interval_seconds: float = 2.0
    max_concurrent: int = 4
    timeout_grace_seconds: float = 5.0
    stop_grace_seconds: float = 5.0


@dataclass(slots=True)
class EngineSettings:
    """Engine adapter settings."""

    default_engine: str = "claude-code"
    default_timeout_ms: int = 1_800_000
    max_output_bytes: int = 10 * 1024 * 1024
    claude_command: str = "claude"
    claude_permission_mode: str | None = None
    codex_command: str = "codex"
    kimi_command: str = "kimi"
    opencode_command: str = "opencode"


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    runs_dir: Path = Path(".runs")
    allowed_roots: tuple[str, ...] = ()
    daemon: DaemonSettings = field(default_factory=DaemonSettings)
    engines: EngineSettings = field(default_factory=EngineSettings)

    @classmethod
    def from_env(cls, runs_dir: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local use."""

        permission_mode = os.getenv("CODEBRIDGE_CLAUDE_PERMISSION_MODE", "").strip()
        return cls(
            runs_dir=runs_dir or Path(os.getenv("CODEBRIDGE_RUNS_DIR", ".runs")),
            allowed_roots=_split_csv(os.getenv("CODEBRIDGE_ALLOWED_ROOTS", "")),
            daemon=DaemonSettings(
                poll_interval_seconds=float(
                    os.getenv("CODEBRIDGE_POLL_INTERVAL_SECONDS", "2.0"),
                ),
                max_concurrent=int(os.getenv("CODEBRIDGE_MAX_CONCURRENT", "4")),
                timeout_grace_seconds=float(
                    os.getenv("CODEBRIDGE_TIMEOUT_GRACE_SECONDS", "5.0"),
                ),
                stop_grace_seconds=float(os.getenv("CODEBRIDGE_STOP_GRACE_SECONDS", "5.0")),
            ),
            engines=EngineSettings(
                default_engine=os.getenv("CODEBRIDGE_DEFAULT_ENGINE", "claude-code"),
                default_timeout_ms=int(os.getenv("CODEBRIDGE_DEFAULT_TIMEOUT_MS", "1800000")),
                max_output_bytes=int(
                    os.getenv("CODEBRIDGE_MAX_OUTPUT_BYTES", str(10 * 1024 * 1024)),
                ),
                claude_command=os.getenv("CODEBRIDGE_CLAUDE_COMMAND", "claude"),
                claude_permission_mode=permission_mode or None,
                codex_command=os.getenv("CODEBRIDGE_CODEX_COMMAND", "codex"),
                kimi_command=os.getenv("CODEBRIDGE_KIMI_COMMAND", "kimi"),
                opencode_command=os.getenv("CODEBRIDGE_OPENCODE_COMMAND", "opencode"),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for out-of-range values."""

        if self.daemon.poll_interval_seconds <= 0:
            raise ValueError("CODEBRIDGE_POLL_INTERVAL_SECONDS must be > 0.")
        if self.daemon.max_concurrent < 0:
            raise ValueError("CODEBRIDGE_MAX_CONCURRENT must be >= 0 (0 means unbounded).")
        if self.daemon.timeout_grace_seconds < 0:
            raise ValueError("CODEBRIDGE_TIMEOUT_GRACE_SECONDS must be >= 0.")
        if self.daemon.stop_grace_seconds < 0:
            raise ValueError("CODEBRIDGE_STOP_GRACE_SECONDS must be >= 0.")
        if self.engines.default_engine not in SUPPORTED_ENGINES:
            raise ValueError(
                f"CODEBRIDGE_DEFAULT_ENGINE must be one of {', '.join(SUPPORTED_ENGINES)}, "
                f"got {self.engines.default_engine!r}.",
            )
        if self.engines.default_timeout_ms <= 0:
            raise ValueError("CODEBRIDGE_DEFAULT_TIMEOUT_MS must be > 0.")
        if self.engines.max_output_bytes <= 0:
            raise ValueError("CODEBRIDGE_MAX_OUTPUT_BYTES must be > 0.")
        for root in self.allowed_roots:
            if os.path.abspath(root) == os.sep:
                raise ValueError("CODEBRIDGE_ALLOWED_ROOTS must not contain the filesystem root.")


def _split_csv(raw: str) -> tuple[str, ...]:
    values: list[str] = []
    for part in raw.split(","):
        normalized = part.strip()
        if normalized and normalized not in values:
            values.append(normalized)
    return tuple(values)
