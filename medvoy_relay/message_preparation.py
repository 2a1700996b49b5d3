"""Turn validation and system prompt handling."""

from __future__ import annotations

import logging
import re
from datetime import datetime
from pathlib import Path
from typing import Any

from .config import RelayConfig
from .errors import InvalidRequestError

LOG = logging.getLogger(__name__)

_TODAY_TOKEN_RE = re.compile(r"\{\s*today\s*\}")
_TURN_ROLES = {"system", "user", "assistant", "tool"}
_TURN_KEYS = ("role", "content", "tool_calls", "tool_call_id", "name")

DEFAULT_SYSTEM_PROMPT = (
    "You are a medical travel concierge. Help patients compare procedures, "
    "destinations, hospitals and travel options. Today is {today}."
)


def _format_today(now: datetime) -> str:
    """Format the date used for `{today}` replacement."""
    return f"{now:%A}, {now:%B} {now.day}, {now.year}"


def replace_today_tokens(text: str, now: datetime | None = None) -> str:
    """Replace `{today}` placeholder tokens inside prompt text."""
    return _TODAY_TOKEN_RE.sub(_format_today(now or datetime.now()), text)


def load_system_prompt(cfg: RelayConfig) -> str:
    """Resolve the configured prompt text: inline, file, or built-in default."""
    if cfg.system_prompt:
        return cfg.system_prompt
    if cfg.system_prompt_file:
        path = Path(cfg.system_prompt_file)
        try:
            return path.read_text(encoding="utf-8")
        except OSError as exc:
            LOG.warning("system_prompt_file unreadable path=%s error=%s, using default prompt", path, exc)
    return DEFAULT_SYSTEM_PROMPT


def system_turn(prompt: str) -> dict[str, Any]:
    return {"role": "system", "content": replace_today_tokens(prompt)}


def _assistant_call_ids(turn: dict[str, Any]) -> set[str]:
    ids: set[str] = set()
    for tc in turn.get("tool_calls") or []:
        if isinstance(tc, dict) and isinstance(tc.get("id"), str):
            ids.add(tc["id"])
    return ids


def prepare_turns(messages: Any) -> list[dict[str, Any]]:
    """Validate client-supplied history and keep only relay-relevant keys.

    The history must be non-empty, end with a user turn, and every tool turn
    must answer a call of the assistant turn right before its tool block.
    """
    if not isinstance(messages, list) or not messages:
        raise InvalidRequestError("Messages array is required")

    turns: list[dict[str, Any]] = []
    open_call_ids: set[str] = set()
    for position, msg in enumerate(messages):
        if not isinstance(msg, dict):
            raise InvalidRequestError(f"messages[{position}] must be an object")
        role = msg.get("role")
        if role not in _TURN_ROLES:
            raise InvalidRequestError(f"messages[{position}] has unsupported role {role!r}")

        if role == "tool":
            if msg.get("tool_call_id") not in open_call_ids:
                raise InvalidRequestError(
                    f"messages[{position}] tool turn does not answer a preceding assistant tool call"
                )
        elif role == "assistant":
            open_call_ids = _assistant_call_ids(msg)
        else:
            open_call_ids = set()

        turns.append({key: msg[key] for key in _TURN_KEYS if key in msg})

    if turns[-1]["role"] != "user":
        raise InvalidRequestError("The last message must come from the user")
    return turns


def latest_user_text(turns: list[dict[str, Any]]) -> str:
    """Return the latest user message text."""
    for turn in reversed(turns):
        if turn.get("role") != "user":
            continue
        content = turn.get("content")
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            parts = [
                item["text"]
                for item in content
                if isinstance(item, dict) and isinstance(item.get("text"), str)
            ]
            if parts:
                return "\n".join(parts)
    return ""
