"""Deterministic backend failure classification into run error codes."""

from __future__ import annotations

from dataclasses import dataclass

from codebridge.orchestrator.errors import ErrorCode, make_error
from codebridge.orchestrator.models import RunError

_ACCESS_OR_AUTH_PATTERNS: tuple[str, ...] = (
    "unauthorized",
    "forbidden",
    "invalid api key",
    "authentication",
    "not logged in",
    "please log in",
    "login required",
)
_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "rate limit",
    "429",
    "please retry",
    "try again later",
)
_NETWORK_PATTERNS: tuple[str, ...] = (
    "temporarily unavailable",
    "temporary failure",
    "connection reset",
    "connection refused",
    "network error",
    "could not resolve host",
    "econnreset",
    "etimedout",
)


@dataclass(slots=True)
class BackendFailureClassification:
    """Normalized failure classification result."""

    code: ErrorCode
    reason_code: str
    matched_rule: str
    matched_pattern: str | None


def classify_backend_failure(
    *,
    engine: str,
    exit_code: int | None,
    stdout: str,
    stderr: str,
) -> BackendFailureClassification:
    """Classify a non-timeout backend failure."""

    haystack = f"{stderr}\n{stdout}".lower()

    pattern = _first_match(haystack, _ACCESS_OR_AUTH_PATTERNS)
    if pattern is not None:
        return BackendFailureClassification(
            code=ErrorCode.ENGINE_AUTH,
            reason_code=f"{engine}_access_or_auth",
            matched_rule="access_or_auth",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _RATE_LIMIT_PATTERNS)
    if pattern is not None:
        return BackendFailureClassification(
            code=ErrorCode.NETWORK_ERROR,
            reason_code=f"{engine}_rate_limited",
            matched_rule="rate_limit",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _NETWORK_PATTERNS)
    if pattern is not None:
        return BackendFailureClassification(
            code=ErrorCode.NETWORK_ERROR,
            reason_code=f"{engine}_network",
            matched_rule="network",
            matched_pattern=pattern,
        )

    return BackendFailureClassification(
        code=ErrorCode.ENGINE_CRASH,
        reason_code=f"{engine}_exit_{exit_code}",
        matched_rule="fallback_crash",
        matched_pattern=None,
    )


def backend_failure_error(
    *,
    engine: str,
    exit_code: int | None,
    stdout: str,
    stderr: str,
) -> RunError:
    """Build the structured error for a failed backend process."""

    classified = classify_backend_failure(
        engine=engine,
        exit_code=exit_code,
        stdout=stdout,
        stderr=stderr,
    )
    detail = stderr.strip()[-2000:] or f"Process exited with code {exit_code}"
    return make_error(classified.code, detail)


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
