"""Streaming tool-call relay for one chat request.

One `ToolCallRelay` serves one client request. It forwards the first
upstream stream's text, accumulates at most one tool call, resolves it
against a capability endpoint, emits an `options` event and relays a second
upstream stream that sees the tool result. Every path that got past the
first upstream open ends with exactly one `[DONE]` frame.
"""

from __future__ import annotations

import contextlib
import enum
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, AsyncGenerator

import httpx

from .errors import CapabilityError, RelayRequestError, ToolArgumentsError, UnsupportedToolCallError
from .fallbacks import FallbackContext, build_fallback_chain, run_fallback_chain
from .message_preparation import system_turn
from .stream_chunks import (
    DONE_FRAME,
    ResolvedToolCall,
    ToolCallAccumulator,
    ToolFragment,
    options_event,
    parse_stream_delta,
    text_event,
)
from .tool_registry import ToolRegistry
from .upstream import UpstreamClient, UpstreamStream

LOG = logging.getLogger(__name__)


class RelayPhase(enum.Enum):
    STREAMING_TEXT = "streaming_text"
    ACCUMULATING_TOOL = "accumulating_tool"
    RESOLVING = "resolving"
    RESTREAMING = "restreaming"
    DONE = "done"


@dataclass
class RelayState:
    """Mutable per-request relay state."""

    phase: RelayPhase = RelayPhase.STREAMING_TEXT
    accumulator: ToolCallAccumulator = field(default_factory=ToolCallAccumulator)
    text_fragments: int = 0
    first_stream_text: list[str] = field(default_factory=list)
    options_emitted: bool = False
    tool_path_abandoned: bool = False
    first_finish_reason: str | None = None


class ToolCallRelay:
    """Drive one request through both upstream streams and the capability call."""

    def __init__(
        self,
        *,
        upstream: UpstreamClient,
        registry: ToolRegistry,
        system_prompt: str,
        model: str,
        restream_tools: str = "omit",
        apology_message: str,
        stream_interrupted_message: str | None = None,
        relay_id: str | None = None,
        conversation_id: str | None = None,
    ) -> None:
        self.upstream = upstream
        self.registry = registry
        self.system_prompt = system_prompt
        self.model = model
        self.restream_tools = restream_tools
        self.apology_message = apology_message
        self.stream_interrupted_message = stream_interrupted_message or apology_message
        self.relay_id = relay_id or f"relay-{uuid.uuid4().hex[:12]}"
        self.conversation_id = conversation_id
        self.state = RelayState()
        self.turns: list[dict[str, Any]] = []
        self._first_stream: UpstreamStream | None = None
        self._started = time.monotonic()

    @property
    def _log_extra(self) -> dict[str, Any]:
        return {"relay_id": self.relay_id, "conversation_id": self.conversation_id}

    def _payload(self, turns: list[dict[str, Any]], *, with_tools: bool) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": self.model,
            "messages": [system_turn(self.system_prompt), *turns],
        }
        tools = self.registry.get_openai_tools() if with_tools else []
        if tools:
            payload["tools"] = tools
        return payload

    async def open(self, turns: list[dict[str, Any]]) -> None:
        """Open the first upstream stream.

        Raises `RelayRequestError` subclasses while nothing was sent to the
        client, so the caller can still answer with a plain HTTP error.
        """
        self.turns = list(turns)
        self._first_stream = await self.upstream.open_stream(
            self._payload(self.turns, with_tools=True),
            trace_id=f"{self.relay_id}:first",
        )
        LOG.info("relay opened turns=%s", len(self.turns), extra=self._log_extra)

    def _text(self, content: str) -> bytes:
        self.state.text_fragments += 1
        return text_event(content)

    async def events(self) -> AsyncGenerator[bytes, None]:
        """Yield encoded SSE frames; the last one is always `[DONE]`."""
        try:
            async with contextlib.aclosing(self._frames()) as frames:
                async for frame in frames:
                    yield frame
        except Exception:
            LOG.exception("relay failed unexpectedly phase=%s", self.state.phase.value, extra=self._log_extra)
        finally:
            if self._first_stream is not None:
                await self._first_stream.aclose()

        self.state.phase = RelayPhase.DONE
        LOG.info(
            "relay done text_fragments=%s options=%s elapsed=%.3fs",
            self.state.text_fragments,
            self.state.options_emitted,
            time.monotonic() - self._started,
            extra=self._log_extra,
        )
        yield DONE_FRAME

    async def _frames(self) -> AsyncGenerator[bytes, None]:
        async with contextlib.aclosing(self._stream_first()) as frames:
            async for frame in frames:
                yield frame

        call = self._resolve_call()
        if call is None:
            return

        self.state.phase = RelayPhase.RESOLVING
        try:
            outcome = await self.registry.call_tool(call.name, call.arguments)
        except CapabilityError as exc:
            LOG.warning("capability failed tool=%s error=%s", call.name, exc, extra=self._log_extra)
            async with contextlib.aclosing(self._run_fallbacks(call, exc)) as frames:
                async for frame in frames:
                    yield frame
            return

        yield options_event(outcome.options)
        self.state.options_emitted = True

        self.state.phase = RelayPhase.RESTREAMING
        async with contextlib.aclosing(self._restream(call, outcome.result)) as frames:
            async for frame in frames:
                yield frame

    async def _stream_first(self) -> AsyncGenerator[bytes, None]:
        stream = self._first_stream
        if stream is None:
            raise RuntimeError("relay events requested before open()")

        try:
            async with contextlib.aclosing(stream.chunks()) as chunks:
                async for chunk in chunks:
                    delta = parse_stream_delta(chunk)
                    if delta.finish_reason:
                        self.state.first_finish_reason = delta.finish_reason
                    if delta.is_heartbeat:
                        continue
                    if delta.tool_fragments:
                        self._feed_fragments(delta.tool_fragments)
                    if delta.text:
                        self.state.first_stream_text.append(delta.text)
                        yield self._text(delta.text)
        except httpx.HTTPError as exc:
            LOG.warning(
                "upstream stream interrupted text_fragments=%s error=%s",
                self.state.text_fragments,
                exc,
                extra=self._log_extra,
            )
            self.state.tool_path_abandoned = True
            if self.state.text_fragments == 0:
                yield self._text(self.stream_interrupted_message)
            return
        LOG.info(
            "first stream finished reason=%s tool_call=%s",
            self.state.first_finish_reason or "-",
            self.state.accumulator.active,
            extra=self._log_extra,
        )

    def _feed_fragments(self, fragments: list[ToolFragment]) -> None:
        if self.state.tool_path_abandoned:
            return
        for fragment in fragments:
            try:
                self.state.accumulator.feed(fragment)
            except UnsupportedToolCallError as exc:
                LOG.error("abandoning tool path: %s", exc, extra=self._log_extra)
                self.state.tool_path_abandoned = True
                return
        self.state.phase = RelayPhase.ACCUMULATING_TOOL

    def _resolve_call(self) -> ResolvedToolCall | None:
        accumulator = self.state.accumulator
        if self.state.tool_path_abandoned or not accumulator.active:
            return None
        try:
            call = accumulator.complete()
        except ToolArgumentsError as exc:
            LOG.error(
                "tool call dropped name=%s error=%s raw=%s",
                accumulator.name or "-",
                exc,
                accumulator.arguments_buffer[:500],
                extra=self._log_extra,
            )
            return None
        LOG.info("tool call resolved name=%s id=%s", call.name, call.call_id, extra=self._log_extra)
        return call

    async def _run_fallbacks(self, call: ResolvedToolCall, error: Exception) -> AsyncGenerator[bytes, None]:
        cap = self.registry.resolve(call.name)
        chain = build_fallback_chain(cap.on_failure if cap is not None else [])
        ctx = FallbackContext(
            upstream=self.upstream,
            capability_client=self.registry.client,
            model=self.model,
            system_prompt=self.system_prompt,
            turns=self.turns,
            call=call,
            error=error,
            apology_message=self.apology_message,
            trace_id=self.relay_id,
        )
        async with contextlib.aclosing(run_fallback_chain(chain, ctx)) as texts:
            async for text in texts:
                yield self._text(text)

    def _continuation_turns(self, call: ResolvedToolCall, result: Any) -> list[dict[str, Any]]:
        assistant_turn = {
            "role": "assistant",
            "content": "".join(self.state.first_stream_text) or None,
            "tool_calls": [call.as_openai_tool_call()],
        }
        tool_turn = ToolRegistry.format_tool_message(call.name, call.call_id, result)
        return [*self.turns, assistant_turn, tool_turn]

    async def _restream(self, call: ResolvedToolCall, result: Any) -> AsyncGenerator[bytes, None]:
        payload = self._payload(
            self._continuation_turns(call, result),
            with_tools=self.restream_tools == "redeclare",
        )
        try:
            async with contextlib.aclosing(
                self.upstream.stream_text(payload, trace_id=f"{self.relay_id}:restream")
            ) as texts:
                async for text in texts:
                    yield self._text(text)
        except (RelayRequestError, httpx.HTTPError) as exc:
            LOG.error("second upstream stream failed error=%s", exc, extra=self._log_extra)
