"""Usage extraction helpers for backend output streams."""

from __future__ import annotations

import re
from typing import Any

from codebridge.orchestrator.models import TokenUsage

_JSON_PROMPT_TOKENS = re.compile(r'"(?:prompt|input)_tokens"\s*:\s*(\d+)', re.IGNORECASE)
_JSON_COMPLETION_TOKENS = re.compile(
    r'"(?:completion|output)_tokens"\s*:\s*(\d+)',
    re.IGNORECASE,
)


def usage_from_payload(payload: dict[str, Any] | None) -> TokenUsage | None:
    """Read ``usage.input_tokens``/``usage.output_tokens`` from a parsed JSON payload."""

    if not payload:
        return None
    usage = payload.get("usage")
    if not isinstance(usage, dict):
        return None
    prompt = usage.get("input_tokens", usage.get("prompt_tokens"))
    completion = usage.get("output_tokens", usage.get("completion_tokens"))
    if not _is_count(prompt) or not _is_count(completion):
        return None
    return TokenUsage(
        prompt_tokens=prompt,
        completion_tokens=completion,
        total_tokens=prompt + completion,
    )


def extract_usage(text: str) -> TokenUsage | None:
    """Best-effort regex extraction when no structured payload is available."""

    prompt = _extract_int(_JSON_PROMPT_TOKENS, text)
    completion = _extract_int(_JSON_COMPLETION_TOKENS, text)
    if prompt is None or completion is None:
        return None
    return TokenUsage(
        prompt_tokens=prompt,
        completion_tokens=completion,
        total_tokens=prompt + completion,
    )


def _is_count(value: object) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value >= 0


def _extract_int(pattern: re.Pattern[str], text: str) -> int | None:
    match = pattern.search(text)
    if match is None:
        return None
    return int(match.group(1))
