"""Local deterministic agent for backend integration tests and dry runs."""

from __future__ import annotations

import argparse
import json
import signal
import sys
import time
from uuid import uuid4

from codebridge.orchestrator.backend.base import BackendOptions, BackendResponse
from codebridge.orchestrator.backend.cli_backend import CliAgentBackend, parse_json_object
from codebridge.orchestrator.models import TaskRequest
from codebridge.orchestrator.usage import usage_from_payload


class EchoAgentBackend(CliAgentBackend):
    """Runs this module as a subprocess through the regular CLI backend path."""

    engine_name = "echo"

    def __init__(
        self,
        *,
        command: str = sys.executable,
        sleep_seconds: float = 0.0,
        exit_code: int = 0,
        ignore_sigterm: bool = False,
        **kwargs,
    ) -> None:
        super().__init__(command=command, **kwargs)
        self.sleep_seconds = sleep_seconds
        self.exit_code = exit_code
        self.ignore_sigterm = ignore_sigterm

    def build_start_args(self, request: TaskRequest, options: BackendOptions) -> list[str]:
        return [*self._base_args(), "--message", request.message]

    def build_send_args(
        self,
        session_id: str,
        message: str,
        options: BackendOptions,
    ) -> list[str]:
        return [*self._base_args(), "--session-id", session_id, "--message", message]

    def parse_output(self, stdout: str, stderr: str, pid: int) -> BackendResponse:
        payload = parse_json_object(stdout) or {}
        session_id = payload.get("session_id")
        return BackendResponse(
            output=str(payload.get("result", stdout.strip())),
            pid=pid,
            exit_code=0,
            session_id=session_id if isinstance(session_id, str) else None,
            token_usage=usage_from_payload(payload),
        )

    def _base_args(self) -> list[str]:
        args = ["-m", "codebridge.orchestrator.backend.echo_agent"]
        if self.sleep_seconds:
            args.extend(["--sleep", str(self.sleep_seconds)])
        if self.exit_code:
            args.extend(["--exit-code", str(self.exit_code)])
        if self.ignore_sigterm:
            args.append("--ignore-sigterm")
        return args


def main(argv: list[str] | None = None) -> int:
    """Echo the message back as a Claude-style JSON document."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--message", required=True)
    parser.add_argument("--session-id", default=None)
    parser.add_argument("--sleep", type=float, default=0.0)
    parser.add_argument("--exit-code", type=int, default=0)
    parser.add_argument("--ignore-sigterm", action="store_true")
    args = parser.parse_args(argv)

    if args.ignore_sigterm:
        signal.signal(signal.SIGTERM, signal.SIG_IGN)
    print("echo agent ready", file=sys.stderr, flush=True)
    if args.sleep > 0:
        time.sleep(args.sleep)
    if args.exit_code:
        print(f"echo agent failing with exit code {args.exit_code}", file=sys.stderr)
        return args.exit_code

    words = len(args.message.split())
    payload = {
        "result": f"echo: {args.message}",
        "session_id": args.session_id or f"echo-{uuid4().hex[:12]}",
        "usage": {"input_tokens": words, "output_tokens": words + 1},
    }
    print(json.dumps(payload))
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
