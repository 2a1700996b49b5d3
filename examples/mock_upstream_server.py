"""Mock chat-completions gateway for local relay runs.

The first turn answers with a short text followed by one tool call whose
arguments arrive in several fragments. Once a tool result is in the history
it streams a short summary of that result.

    uvicorn examples.mock_upstream_server:app --port 10000
"""

from __future__ import annotations

import asyncio
import json
import uuid
from datetime import datetime, timezone
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import StreamingResponse

app = FastAPI(title="mock-upstream")

_TOOL_ARGUMENTS = {
    "get_cost_estimate": {"procedure": "knee replacement", "country": "Thailand"},
    "generate_hospital_options": {"procedure": "knee replacement", "country": "Thailand", "priceRange": "mid-range"},
    "search_flights": {"origin": "London", "destination": "Bangkok", "departureDate": "2026-11-02"},
}


def _pick_tool(text: str, tools: list[dict[str, Any]]) -> str | None:
    names = [tool.get("function", {}).get("name") for tool in tools]
    lowered = text.lower()
    for keyword, name in (("flight", "search_flights"), ("hospital", "generate_hospital_options"), ("cost", "get_cost_estimate")):
        if keyword in lowered and name in names:
            return name
    return None


def _split(text: str, parts: int) -> list[str]:
    step = max(1, len(text) // parts)
    return [text[i : i + step] for i in range(0, len(text), step)]


@app.post("/v1/chat/completions")
async def chat_completions(request: Request) -> StreamingResponse:
    payload = await request.json()
    messages: list[dict[str, Any]] = payload.get("messages") or []
    tools: list[dict[str, Any]] = payload.get("tools") or []
    model = payload.get("model") or "demo-model"

    last_user = next((m for m in reversed(messages) if m.get("role") == "user"), {})
    last_tool = next((m for m in reversed(messages) if m.get("role") == "tool"), None)
    completion_id = f"chatcmpl-{uuid.uuid4().hex}"
    created = int(datetime.now(timezone.utc).timestamp())

    def frame(delta: dict[str, Any], finish_reason: str | None = None) -> str:
        chunk = {
            "id": completion_id,
            "object": "chat.completion.chunk",
            "created": created,
            "model": model,
            "choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}],
        }
        return f"data: {json.dumps(chunk)}\n\n"

    async def gen():
        if last_tool is not None:
            summary = f"Here is what I found: {last_tool.get('content', '')[:200]}"
            for piece in _split(summary, 4):
                yield frame({"content": piece})
                await asyncio.sleep(0.05)
            yield frame({}, "stop")
            yield "data: [DONE]\n\n"
            return

        tool_name = _pick_tool(str(last_user.get("content") or ""), tools)
        yield frame({"role": "assistant", "content": "Let me check options for you."})
        if tool_name is None:
            yield frame({"content": " Could you tell me the procedure and destination?"}, "stop")
            yield "data: [DONE]\n\n"
            return

        call_id = f"call_{uuid.uuid4().hex}"
        yield frame({"tool_calls": [{"index": 0, "id": call_id, "type": "function", "function": {"name": tool_name}}]})
        for piece in _split(json.dumps(_TOOL_ARGUMENTS[tool_name]), 3):
            await asyncio.sleep(0.05)
            yield frame({"tool_calls": [{"index": 0, "function": {"arguments": piece}}]})
        yield frame({}, "tool_calls")
        yield "data: [DONE]\n\n"

    return StreamingResponse(gen(), media_type="text/event-stream")
