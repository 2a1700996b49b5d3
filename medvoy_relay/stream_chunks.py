"""Helpers for reading upstream chat-completion streams and framing client events."""

from __future__ import annotations

import codecs
import json
import uuid
from dataclasses import dataclass, field
from typing import Any

from .errors import ToolArgumentsError, UnsupportedToolCallError

DONE_MARKER = "[DONE]"
DONE_FRAME = b"data: [DONE]\n\n"


class SSELineDecoder:
    """Reassemble SSE lines from arbitrarily split byte chunks.

    Network reads do not align to line terminators (or even to UTF-8
    character boundaries), so the decoder keeps the trailing partial line
    until the next `feed` or the final `flush`.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    def feed(self, chunk: bytes | str) -> list[str]:
        """Add one network chunk and return the lines it completed."""
        text = chunk if isinstance(chunk, str) else self._decoder.decode(chunk)
        if not text:
            return []
        self._buffer += text
        lines = self._buffer.split("\n")
        self._buffer = lines.pop()
        return [line[:-1] if line.endswith("\r") else line for line in lines]

    def flush(self) -> list[str]:
        """Return the unterminated tail once the body is exhausted."""
        tail = self._buffer + self._decoder.decode(b"", final=True)
        self._buffer = ""
        tail = tail.rstrip("\r")
        return [tail] if tail else []


def data_payload(line: str) -> str | None:
    """Return the payload of a `data:` line, or None for other SSE lines."""
    if not line.startswith("data:"):
        return None
    return line[5:].strip()


@dataclass
class ToolFragment:
    """One streamed fragment of a tool invocation."""

    index: int
    call_id: str | None = None
    name: str | None = None
    arguments_chunk: str | None = None


@dataclass
class StreamDelta:
    """Normalized content of one upstream chunk's primary choice."""

    text: str | None = None
    tool_fragments: list[ToolFragment] = field(default_factory=list)
    finish_reason: str | None = None

    @property
    def is_heartbeat(self) -> bool:
        return not self.text and not self.tool_fragments


def pick_primary_choice(chunk: dict[str, Any]) -> dict[str, Any] | None:
    """Return the primary choice (index 0 if present) from an upstream chunk."""
    choices = chunk.get("choices")
    if not isinstance(choices, list) or not choices:
        return None

    for choice in choices:
        if isinstance(choice, dict) and choice.get("index") == 0:
            return choice

    first = choices[0]
    return first if isinstance(first, dict) else None


def parse_stream_delta(chunk: dict[str, Any]) -> StreamDelta:
    """Extract text and tool-call fragments from one decoded upstream chunk."""
    choice = pick_primary_choice(chunk) or {}
    delta = choice.get("delta")
    if not isinstance(delta, dict):
        delta = {}

    content = delta.get("content")
    text = content if isinstance(content, str) and content else None

    fragments: list[ToolFragment] = []
    raw_tool_calls = delta.get("tool_calls")
    if isinstance(raw_tool_calls, list):
        for position, tc_delta in enumerate(raw_tool_calls):
            if not isinstance(tc_delta, dict):
                continue
            index = tc_delta.get("index")
            if not isinstance(index, int):
                index = position
            fn_delta = tc_delta.get("function")
            fn_delta = fn_delta if isinstance(fn_delta, dict) else {}
            name = fn_delta.get("name")
            arguments = fn_delta.get("arguments")
            fragments.append(
                ToolFragment(
                    index=index,
                    call_id=tc_delta.get("id") if isinstance(tc_delta.get("id"), str) else None,
                    name=name if isinstance(name, str) and name else None,
                    arguments_chunk=arguments if isinstance(arguments, str) else None,
                )
            )

    finish_reason = choice.get("finish_reason")
    return StreamDelta(
        text=text,
        tool_fragments=fragments,
        finish_reason=finish_reason if isinstance(finish_reason, str) else None,
    )


@dataclass
class ResolvedToolCall:
    """A completed tool call with parsed arguments."""

    call_id: str
    name: str
    arguments: dict[str, Any]
    raw_arguments: str

    def as_openai_tool_call(self) -> dict[str, Any]:
        """Render as an assistant-turn `tool_calls` entry."""
        return {
            "id": self.call_id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.raw_arguments},
        }


class ToolCallAccumulator:
    """Collects the fragments of the single tool call of one assistant turn."""

    def __init__(self) -> None:
        self.index: int | None = None
        self.call_id: str | None = None
        self.name = ""
        self.arguments_buffer = ""

    @property
    def active(self) -> bool:
        return self.index is not None

    def feed(self, fragment: ToolFragment) -> None:
        """Merge one fragment; arguments are appended in arrival order."""
        if self.index is None:
            self.index = fragment.index
        elif fragment.index != self.index:
            raise UnsupportedToolCallError(
                f"second tool call index={fragment.index} while index={self.index} is open"
            )

        if fragment.call_id and not self.call_id:
            self.call_id = fragment.call_id
        if fragment.name and not self.name:
            self.name = fragment.name
        if fragment.arguments_chunk:
            self.arguments_buffer += fragment.arguments_chunk

    def complete(self) -> ResolvedToolCall:
        """Parse the accumulated call; raises ToolArgumentsError when incomplete."""
        if not self.name:
            raise ToolArgumentsError("tool call fragments carried no function name")

        raw = self.arguments_buffer.strip() or "{}"
        try:
            arguments = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ToolArgumentsError(f"tool arguments for {self.name} are not valid JSON: {exc}") from exc
        if not isinstance(arguments, dict):
            raise ToolArgumentsError(f"tool arguments for {self.name} must be a JSON object")

        return ResolvedToolCall(
            call_id=self.call_id or f"call_{uuid.uuid4().hex}",
            name=self.name,
            arguments=arguments,
            raw_arguments=raw,
        )


def sse_data(payload: dict[str, Any]) -> bytes:
    """Encode one SSE `data:` event."""
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n".encode("utf-8")


def sse_comment(text: str) -> bytes:
    """Encode one SSE comment/heartbeat event."""
    return f": {text}\n\n".encode("utf-8")


def text_event(content: str) -> bytes:
    return sse_data({"type": "text", "content": content})


def options_event(options: list[Any]) -> bytes:
    return sse_data({"type": "options", "options": options})
