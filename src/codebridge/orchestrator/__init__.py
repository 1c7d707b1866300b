"""Run orchestrator for file-based dispatch to external coding agents.

Why not Celery / RQ / a database queue?
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
The hard part here is not queuing, it is the boundary between a durable run
record and a long-lived external agent process (claude, codex, kimi, opencode) that may
outlive or be outlived by whoever started it.  Responsibilities no generic
queue covers:

- Per-run directories with JSON request / session / result contracts that
  any process on the host can read without a broker.
- A small state machine guarded by a per-run ``flock`` so CLI ``stop`` and
  ``resume`` can race the daemon safely.
- Crash reconciliation by probing recorded process ids.
- Agent-specific failure classification from exit codes and stderr.

The store is a directory tree on one machine; the daemon is a single asyncio
loop.  A broker would add an operational dependency without removing any of
the above.
"""
