import asyncio
import json
from pathlib import Path
from typing import Any

import httpx
import pytest
import yaml
from fastapi.testclient import TestClient

from medvoy_relay.app import create_app
from medvoy_relay.chat_handlers import stream_with_keepalive

CAPABILITY_URL = "http://caps.test/flight-search"


def _chunk(delta: dict[str, Any]) -> str:
    return "data: " + json.dumps({"choices": [{"index": 0, "delta": delta}]}) + "\n\n"


def _write_config(tmp_path: Path, **overrides: Any) -> str:
    raw: dict[str, Any] = {
        "service_base_url": "http://127.0.0.1:10001",
        "upstream_base_url": "http://upstream.test",
        "upstream_api_key": "test-key",
        "stream_keepalive_seconds": 0,
        "capabilities": [
            {
                "name": "search_flights",
                "description": "Search flights",
                "url": CAPABILITY_URL,
                "result_key": "flights",
                "options_format": "flights",
            }
        ],
    }
    raw.update(overrides)
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump(raw), encoding="utf-8")
    return str(path)


def _client(tmp_path: Path, handler, **overrides: Any) -> TestClient:
    app = create_app(
        _write_config(tmp_path, **overrides),
        transport=httpx.MockTransport(handler),
        watch_config=False,
    )
    return TestClient(app)


def _events(body: str) -> list[str]:
    return [block for block in body.split("\n\n") if block]


def _flight_handler(request: httpx.Request) -> httpx.Response:
    if str(request.url) == CAPABILITY_URL:
        return httpx.Response(
            200,
            json={
                "flights": [
                    {
                        "id": "flight-1",
                        "airline": "Emirates",
                        "logo": "🛫",
                        "origin": "London",
                        "destination": "Bangkok",
                        "price": 912,
                        "duration": "11h",
                        "stops": "Direct",
                        "departureTime": "08:00",
                        "arrivalTime": "19:00",
                        "bookingUrl": "https://www.google.com/travel/flights?q=London+to+Bangkok",
                    }
                ]
            },
        )
    payload = json.loads(request.content)
    if payload["messages"][-1]["role"] == "tool":
        body = _chunk({"content": "Emirates flies direct."}) + "data: [DONE]\n\n"
    else:
        body = (
            _chunk({"content": "Searching flights."})
            + _chunk({"tool_calls": [{"index": 0, "id": "call_1", "function": {"name": "search_flights"}}]})
            + _chunk({"tool_calls": [{"index": 0, "function": {"arguments": '{"origin":"London",'}}]})
            + _chunk({"tool_calls": [{"index": 0, "function": {"arguments": '"destination":"Bangkok"}'}}]})
            + "data: [DONE]\n\n"
        )
    return httpx.Response(200, content=body.encode("utf-8"), headers={"content-type": "text/event-stream"})


@pytest.mark.parametrize("path", ["/relay", "/functions/v1/medvoy-chat"])
def test_relay_streams_sse_events(tmp_path: Path, path: str) -> None:
    with _client(tmp_path, _flight_handler) as client:
        response = client.post(path, json={"messages": [{"role": "user", "content": "Flights London to Bangkok?"}]})

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    assert response.headers["cache-control"] == "no-cache"
    assert response.headers["x-accel-buffering"] == "no"

    events = _events(response.text)
    assert events[-1] == "data: [DONE]"
    decoded = [json.loads(event[len("data: ") :]) for event in events[:-1]]
    assert decoded[0] == {"type": "text", "content": "Searching flights."}
    assert decoded[1]["type"] == "options"
    assert decoded[1]["options"] == [
        {
            "id": "flight-1",
            "title": "Emirates 🛫",
            "description": "London → Bangkok • 11h • Direct",
            "price": "$912",
            "imageUrl": "https://images.unsplash.com/photo-1436491865332-7a61a109cc05?w=400",
            "badge": "Direct",
            "details": "Depart: 08:00 • Arrive: 19:00",
            "bookingUrl": "https://www.google.com/travel/flights?q=London+to+Bangkok",
        }
    ]
    assert decoded[2] == {"type": "text", "content": "Emirates flies direct."}


@pytest.mark.parametrize(
    ("upstream_status", "status", "message"),
    [
        (429, 429, "Rate limit exceeded. Please try again in a moment."),
        (402, 402, "AI service credits exhausted. Please contact support."),
        (500, 500, "AI service error"),
    ],
)
def test_first_call_rejection_returns_json_error(tmp_path: Path, upstream_status: int, status: int, message: str) -> None:
    def handler(_request: httpx.Request) -> httpx.Response:
        return httpx.Response(upstream_status, text="upstream says no")

    with _client(tmp_path, handler) as client:
        response = client.post("/relay", json={"messages": [{"role": "user", "content": "hi"}]})

    assert response.status_code == status
    assert response.json() == {"error": message}


def test_unreachable_upstream_returns_502(tmp_path: Path) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    with _client(tmp_path, handler) as client:
        response = client.post("/relay", json={"messages": [{"role": "user", "content": "hi"}]})

    assert response.status_code == 502
    assert response.json() == {"error": "AI service unavailable"}


def test_missing_upstream_key_returns_not_configured(tmp_path: Path) -> None:
    def handler(_request: httpx.Request) -> httpx.Response:
        raise AssertionError("upstream must not be called")

    with _client(tmp_path, handler, upstream_api_key=None) as client:
        response = client.post("/relay", json={"messages": [{"role": "user", "content": "hi"}]})

    assert response.status_code == 500
    assert response.json() == {"error": "AI service not configured"}


@pytest.mark.parametrize(
    "body",
    [
        {"messages": []},
        {"messages": "hello"},
        {"conversationId": "c-1"},
        {"messages": [{"role": "narrator", "content": "hi"}]},
        {"messages": [{"role": "user", "content": "hi"}, {"role": "tool", "tool_call_id": "x", "content": "{}"}]},
    ],
)
def test_invalid_messages_return_400(tmp_path: Path, body: dict[str, Any]) -> None:
    with _client(tmp_path, _flight_handler) as client:
        response = client.post("/relay", json=body)

    assert response.status_code == 400
    assert isinstance(response.json()["error"], str)


def test_non_json_body_returns_400(tmp_path: Path) -> None:
    with _client(tmp_path, _flight_handler) as client:
        response = client.post("/relay", content=b"not json", headers={"content-type": "application/json"})

    assert response.status_code == 400
    assert response.json() == {"error": "Request body must be valid JSON"}


def test_cors_preflight_allows_browser_client_headers(tmp_path: Path) -> None:
    with _client(tmp_path, _flight_handler) as client:
        response = client.options(
            "/functions/v1/medvoy-chat",
            headers={
                "Origin": "https://medvoy.example",
                "Access-Control-Request-Method": "POST",
                "Access-Control-Request-Headers": "authorization, x-client-info, apikey, content-type",
            },
        )

    assert response.status_code == 200
    assert response.headers["access-control-allow-origin"] == "*"


def test_healthz_lists_capabilities(tmp_path: Path) -> None:
    with _client(tmp_path, _flight_handler) as client:
        response = client.get("/healthz")

    assert response.status_code == 200
    body = response.json()
    assert body["service"] == "medvoy-relay"
    assert body["upstream_configured"] is True
    assert body["capabilities"] == [{"name": "search_flights", "url": CAPABILITY_URL, "fallbacks": []}]


class _FakeRequest:
    """Reports a disconnect once `is_disconnected` has been asked `connected_polls` times."""

    def __init__(self, connected_polls: int) -> None:
        self.connected_polls = connected_polls
        self.polls = 0

    async def is_disconnected(self) -> bool:
        self.polls += 1
        return self.polls > self.connected_polls


def test_slow_relay_is_interleaved_with_keepalive_comments() -> None:
    async def _slow_source():
        yield b"data: a\n\n"
        await asyncio.sleep(0.2)
        yield b"data: b\n\n"

    async def _run() -> list[bytes]:
        return [frame async for frame in stream_with_keepalive(_slow_source(), keepalive_seconds=0.02)]

    out = asyncio.run(_run())

    assert out[0] == b"data: a\n\n"
    assert out[-1] == b"data: b\n\n"
    assert set(out[1:-1]) == {b": keepalive\n\n"}


def test_client_disconnect_stops_forwarding_and_closes_relay() -> None:
    closed: list[bool] = []

    async def _stalled_source():
        try:
            yield b"data: a\n\n"
            await asyncio.sleep(30)
            yield b"data: never\n\n"
        finally:
            closed.append(True)

    async def _run() -> list[bytes]:
        frames = stream_with_keepalive(_stalled_source(), keepalive_seconds=0.02, request=_FakeRequest(connected_polls=1))
        return await asyncio.wait_for(_drain(frames), timeout=5)

    async def _drain(frames) -> list[bytes]:
        return [frame async for frame in frames]

    out = asyncio.run(_run())

    assert out == [b"data: a\n\n"]
    assert closed == [True]
