"""Per-run directory layout helpers."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

REQUEST_FILE = "request.json"
CLAIMED_REQUEST_FILE = "request.processing.json"
SESSION_FILE = "session.json"
RESULT_FILE = "result.json"
OUTPUT_FILE = "output.txt"
LOCK_FILE = ".session.lock"


@dataclass(slots=True, frozen=True)
class RunWorkdir:
    """Deterministic file layout of one run directory."""

    base_dir: Path

    @property
    def request_path(self) -> Path:
        return self.base_dir / REQUEST_FILE

    @property
    def claimed_request_path(self) -> Path:
        return self.base_dir / CLAIMED_REQUEST_FILE

    @property
    def session_path(self) -> Path:
        return self.base_dir / SESSION_FILE

    @property
    def result_path(self) -> Path:
        return self.base_dir / RESULT_FILE

    @property
    def output_path(self) -> Path:
        return self.base_dir / OUTPUT_FILE

    @property
    def lock_path(self) -> Path:
        return self.base_dir / LOCK_FILE

    @property
    def logs_dir(self) -> Path:
        return self.base_dir / "logs"

    @property
    def context_dir(self) -> Path:
        return self.base_dir / "context"

    @property
    def artifacts_dir(self) -> Path:
        return self.base_dir / "artifacts"

    def materialize(self) -> None:
        """Create the run directory and its subdirectories."""

        for directory in (self.base_dir, self.logs_dir, self.context_dir, self.artifacts_dir):
            directory.mkdir(parents=True, exist_ok=True)

    def list_artifacts(self) -> list[str]:
        if not self.artifacts_dir.is_dir():
            return []
        return sorted(
            str(path.relative_to(self.base_dir))
            for path in self.artifacts_dir.rglob("*")
            if path.is_file()
        )
