"""Utility helpers for the Claude runner."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from typing import Any, Mapping

_SANITIZED_VARS = {
    "PYTHONHOME",
    "PYTHONPATH",
    "VIRTUAL_ENV",
    "PIP_RESPECT_VIRTUALENV",
}

_NONINTERACTIVE_VARS = {
    "CLAUDE_NONINTERACTIVE": "1",
    "CI": "1",
}

_COST_KEYS = ("total_cost_usd", "cost_usd", "total_cost")


def sanitize_environment(additional: Mapping[str, str] | None = None) -> dict[str, str]:
    """Return a sanitized, non-interactive environment for subprocess execution."""

    env = dict(os.environ)
    for key in _SANITIZED_VARS:
        env.pop(key, None)
    env.update(_NONINTERACTIVE_VARS)
    if additional:
        env.update(additional)
    return env


def estimate_tokens(text: str) -> int:
    """Rough token estimate used when the CLI does not report usage."""

    return len(text) // 4


@dataclass(slots=True)
class Envelope:
    """Terminal JSON document printed by ``claude --output-format json``."""

    result: str
    session_id: str | None
    cost: float | None
    is_error: bool
    parsed: bool
    payload: dict[str, Any]


def parse_envelope(raw: str) -> Envelope:
    """Parse the final CLI output, falling back to the raw text when it is not JSON."""

    text = raw.strip()
    try:
        document = json.loads(text)
    except json.JSONDecodeError:
        document = None

    if not isinstance(document, dict):
        return Envelope(result=text, session_id=None, cost=None, is_error=False, parsed=False, payload={})

    result = document.get("result")
    if result is None:
        result = document.get("message")
    if result is None:
        result = ""
    elif not isinstance(result, str):
        result = json.dumps(result)

    cost: float | None = None
    for key in _COST_KEYS:
        value = document.get(key)
        if isinstance(value, (int, float)):
            cost = float(value)
            break

    session_id = document.get("session_id")
    return Envelope(
        result=result,
        session_id=session_id if isinstance(session_id, str) and session_id else None,
        cost=cost,
        is_error=bool(document.get("is_error", False)),
        parsed=True,
        payload=document,
    )


INPUT_COST_PER_MILLION = 15.0
OUTPUT_COST_PER_MILLION = 75.0


def estimate_cost(input_tokens: int, output_tokens: int) -> float:
    """Dollar estimate used when the CLI does not report a cost."""

    return (input_tokens * INPUT_COST_PER_MILLION + output_tokens * OUTPUT_COST_PER_MILLION) / 1_000_000
