"""Size-bounded text helpers for log lines and prompts."""

from __future__ import annotations

import json
from typing import Any

TRUNCATION_MARK = "...<truncated>"


def to_bounded_json(payload: Any, max_len: int = 8000) -> str:
    """Render a payload for a DEBUG log line; never raises."""
    try:
        rendered = json.dumps(payload, ensure_ascii=False)
    except (TypeError, ValueError):
        rendered = repr(payload)
    return rendered if len(rendered) <= max_len else rendered[:max_len] + TRUNCATION_MARK


def bounded_text(text: str, max_len: int) -> str:
    """Cut free text to `max_len` characters with a visible marker."""
    return text if len(text) <= max_len else f"{text[:max_len]}\n{TRUNCATION_MARK}"
