"""OS process liveness and termination helpers."""

from __future__ import annotations

import asyncio
import os
import signal
import time

_POLL_SECONDS = 0.1


def is_process_alive(pid: int | None) -> bool:
    """Probe ``pid`` with signal 0; a missing or non-positive pid counts as dead."""

    if pid is None or pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def send_signal(pid: int, signum: int) -> bool:
    """Best-effort signal delivery; returns ``False`` when the process is gone."""

    try:
        os.kill(pid, signum)
    except ProcessLookupError:
        return False
    except PermissionError:
        return False
    return True


async def wait_for_exit(pid: int, timeout_seconds: float) -> bool:
    """Poll until ``pid`` exits or ``timeout_seconds`` elapses."""

    deadline = time.monotonic() + max(0.0, timeout_seconds)
    while True:
        if not is_process_alive(pid):
            return True
        if time.monotonic() >= deadline:
            return False
        await asyncio.sleep(_POLL_SECONDS)


async def kill_after_grace(pid: int, grace_seconds: float) -> bool:
    """Wait out the grace window, then SIGKILL ``pid`` if it is still alive.

    Returns ``True`` if the process exited on its own within the window.
    """

    if await wait_for_exit(pid, grace_seconds):
        return True
    send_signal(pid, signal.SIGKILL)
    await wait_for_exit(pid, 2.0)
    return False
