"""Client wrapper for the upstream OpenAI-compatible chat-completions gateway."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import time
from typing import Any, AsyncGenerator

import httpx

from .config import RelayConfig
from .errors import ConfigurationError, UpstreamRejectedError, UpstreamUnavailableError
from .json_helpers import to_bounded_json
from .stream_chunks import DONE_MARKER, SSELineDecoder, data_payload, parse_stream_delta

LOG = logging.getLogger(__name__)


async def _aclose_quietly(*resources: Any) -> None:
    """Close httpx responses/clients without letting cleanup errors escape.

    Cleanup is shielded so a cancelled request still releases its socket;
    the cancellation is re-raised afterwards.
    """
    cleanup_cancelled = False
    for resource in resources:
        if resource is None:
            continue
        try:
            await asyncio.shield(resource.aclose())
        except asyncio.CancelledError:
            cleanup_cancelled = True
        except Exception:
            LOG.debug("upstream cleanup failed resource=%s", type(resource).__name__, exc_info=True)
    if cleanup_cancelled:
        raise asyncio.CancelledError


class UpstreamStream:
    """One open upstream SSE response, read exactly once."""

    def __init__(self, client: httpx.AsyncClient, response: httpx.Response, *, trace_id: str) -> None:
        self._client = client
        self._response = response
        self._trace_id = trace_id
        self._started = time.monotonic()
        self._closed = False
        self.chunk_count = 0

    async def _lines(self) -> AsyncGenerator[str, None]:
        decoder = SSELineDecoder()
        async for raw in self._response.aiter_bytes():
            for line in decoder.feed(raw):
                yield line
        for line in decoder.flush():
            yield line

    def _decode(self, payload: str) -> dict[str, Any] | None:
        try:
            chunk = json.loads(payload)
        except json.JSONDecodeError:
            LOG.warning("skipping malformed upstream frame trace=%s payload=%s", self._trace_id, payload[:200])
            return None
        if not isinstance(chunk, dict):
            LOG.warning("skipping non-object upstream frame trace=%s", self._trace_id)
            return None
        return chunk

    async def chunks(self) -> AsyncGenerator[dict[str, Any], None]:
        """Yield decoded chunk objects until `[DONE]` or end of body."""
        try:
            async with contextlib.aclosing(self._lines()) as lines:
                async for line in lines:
                    payload = data_payload(line)
                    if not payload:
                        continue
                    if payload == DONE_MARKER:
                        LOG.debug(
                            "upstream stream done marker trace=%s elapsed=%.3fs chunks=%s",
                            self._trace_id,
                            time.monotonic() - self._started,
                            self.chunk_count,
                        )
                        return
                    chunk = self._decode(payload)
                    if chunk is None:
                        continue
                    self.chunk_count += 1
                    yield chunk
            LOG.debug("upstream body ended without done marker trace=%s", self._trace_id)
        finally:
            await self.aclose()

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        await _aclose_quietly(self._response, self._client)
        LOG.debug(
            "upstream stream closed trace=%s elapsed=%.3fs chunks=%s",
            self._trace_id,
            time.monotonic() - self._started,
            self.chunk_count,
        )


class UpstreamClient:
    """Thin async HTTP client for the upstream completion source."""

    def __init__(self, cfg: RelayConfig, *, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.cfg = cfg
        self._transport = transport
        self._timeout = httpx.Timeout(
            connect=cfg.upstream_connect_timeout_seconds,
            read=cfg.upstream_read_timeout_seconds,
            write=60.0,
            pool=10.0,
        )

    def _ensure_configured(self) -> str:
        """Return the base URL or raise when credentials are missing."""
        base_url = (self.cfg.upstream_base_url or "").strip()
        if not base_url or not self.cfg.upstream_api_key:
            LOG.error("upstream_base_url or upstream_api_key is not configured")
            raise ConfigurationError("upstream gateway is not configured")
        return base_url.rstrip("/")

    def _headers(self) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.cfg.upstream_api_key}",
            "Connection": "close",
        }

    def _build_client(self, base_url: str) -> httpx.AsyncClient:
        """Create a fresh HTTP client for one upstream stream."""
        return httpx.AsyncClient(base_url=base_url, timeout=self._timeout, transport=self._transport)

    def _can_retry(self, attempt: int) -> bool:
        retries = int(self.cfg.upstream_connect_retries or 0)
        return retries < 0 or attempt <= retries

    def _retry_interval_seconds(self) -> float:
        return max(0.0, int(self.cfg.upstream_retry_interval_ms or 0) / 1000.0)

    async def open_stream(self, payload: dict[str, Any], *, trace_id: str = "-") -> UpstreamStream:
        """POST a streaming completion and return once response headers are in.

        Raises `ConfigurationError`, `UpstreamRejectedError` or
        `UpstreamUnavailableError`; nothing has been relayed at that point.
        """
        base_url = self._ensure_configured()
        req_payload = {**payload, "stream": True}
        path = self.cfg.upstream_chat_path
        attempt = 1
        while True:
            LOG.debug(
                "upstream stream start trace=%s attempt=%s path=%s payload=%s",
                trace_id,
                attempt,
                path,
                to_bounded_json(req_payload),
            )
            client = self._build_client(base_url)
            try:
                response = await client.send(
                    client.build_request("POST", path, headers=self._headers(), json=req_payload),
                    stream=True,
                )
            except httpx.TransportError as exc:
                await _aclose_quietly(client)
                if not self._can_retry(attempt):
                    raise UpstreamUnavailableError(f"upstream transport failure: {exc}") from exc
                LOG.warning("upstream connect failed trace=%s attempt=%s error=%s", trace_id, attempt, exc)
            except BaseException:
                await _aclose_quietly(client)
                raise
            else:
                if response.status_code < 400:
                    return UpstreamStream(client, response, trace_id=trace_id)

                try:
                    body = (await response.aread()).decode("utf-8", errors="replace")
                except httpx.HTTPError:
                    body = ""
                finally:
                    await _aclose_quietly(response, client)
                LOG.error("upstream rejected trace=%s status=%s body=%s", trace_id, response.status_code, body[:500])
                if response.status_code < 500 or not self._can_retry(attempt):
                    raise UpstreamRejectedError(response.status_code, body)

            retry_delay = self._retry_interval_seconds()
            if retry_delay > 0:
                await asyncio.sleep(retry_delay)
            attempt += 1

    async def stream_text(self, payload: dict[str, Any], *, trace_id: str = "-") -> AsyncGenerator[str, None]:
        """Open a stream and yield only its text fragments."""
        stream = await self.open_stream(payload, trace_id=trace_id)
        warned = False
        async with contextlib.aclosing(stream.chunks()) as chunks:
            async for chunk in chunks:
                delta = parse_stream_delta(chunk)
                if delta.tool_fragments and not warned:
                    LOG.warning("ignoring tool-call fragments in text-only stream trace=%s", trace_id)
                    warned = True
                if delta.text:
                    yield delta.text
