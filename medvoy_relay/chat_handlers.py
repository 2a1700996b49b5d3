"""Helpers for the relay HTTP endpoints."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import time
from typing import Any, AsyncGenerator

from fastapi import Request
from fastapi.responses import JSONResponse, StreamingResponse

from .errors import RelayRequestError
from .stream_chunks import sse_comment

LOG = logging.getLogger(__name__)


# Disables caching and reverse-proxy buffering of the event stream.
_SSE_HEADERS = {"Cache-Control": "no-cache", "Connection": "keep-alive", "X-Accel-Buffering": "no"}


def build_sse_response(frames: AsyncGenerator[bytes, None]) -> StreamingResponse:
    return StreamingResponse(frames, media_type="text/event-stream", headers=dict(_SSE_HEADERS))


def build_error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=status_code)


async def _cancel_pending(task: asyncio.Task[Any]) -> None:
    if task.done():
        return
    task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await task


async def stream_with_keepalive(
    source: AsyncGenerator[bytes, None],
    *,
    keepalive_seconds: float,
    request: Request | None = None,
) -> AsyncGenerator[bytes, None]:
    """Forward relay frames and emit SSE heartbeats while the relay waits.

    A client disconnect cancels the pending read and closes `source`, which
    aborts the upstream read or capability call in progress.
    """
    started = time.monotonic()
    heartbeat = keepalive_seconds > 0
    # Without heartbeats we still wake up to notice disconnects.
    wait_seconds = keepalive_seconds if heartbeat else 0.5

    async def _client_gone() -> bool:
        if request is None or not await request.is_disconnected():
            return False
        LOG.info("client disconnected, aborting relay elapsed=%.3fs", time.monotonic() - started)
        return True

    frames = source.__aiter__()
    try:
        while True:
            next_item = asyncio.ensure_future(frames.__anext__())
            try:
                while not next_item.done():
                    if await _client_gone():
                        await _cancel_pending(next_item)
                        return
                    done, _ = await asyncio.wait({next_item}, timeout=wait_seconds)
                    if done:
                        break
                    if await _client_gone():
                        await _cancel_pending(next_item)
                        return
                    if heartbeat:
                        yield sse_comment("keepalive")
                yield next_item.result()
            except StopAsyncIteration:
                return
            except BaseException:
                await _cancel_pending(next_item)
                raise
    finally:
        cleanup_cancelled = False
        try:
            await asyncio.shield(source.aclose())
        except asyncio.CancelledError:
            cleanup_cancelled = True
        except Exception:
            LOG.debug("relay source close failed", exc_info=True)
        LOG.debug("relay response finished after %.3fs", time.monotonic() - started)
        if cleanup_cancelled:
            raise asyncio.CancelledError


async def handle_relay_request(request: Request, service: Any) -> JSONResponse | StreamingResponse:
    """Open a relay for one chat request and wrap it as an SSE response.

    Errors raised before the first frame become a JSON `{error}` body with
    the matching status code.
    """
    try:
        payload = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return build_error_response(400, "Request body must be valid JSON")

    try:
        frames = await service.open_relay(payload)
    except RelayRequestError as exc:
        if exc.status_code >= 500:
            LOG.error("relay request failed status=%s error=%s", exc.status_code, exc)
        else:
            LOG.info("relay request rejected status=%s error=%s", exc.status_code, exc)
        return build_error_response(exc.status_code, exc.public_message)
    except Exception:
        LOG.exception("relay request failed")
        return build_error_response(500, "Internal server error")

    return build_sse_response(
        stream_with_keepalive(
            frames,
            keepalive_seconds=float(service.cfg.stream_keepalive_seconds or 0),
            request=request,
        )
    )
