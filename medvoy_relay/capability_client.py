"""HTTP client for capability endpoints (cost, hospital and flight lookups)."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from .errors import CapabilityError
from .json_helpers import to_bounded_json

LOG = logging.getLogger(__name__)


class CapabilityClient:
    """Posts flat JSON argument objects and returns the decoded JSON reply.

    Every call uses its own short-lived HTTP client, so a request that is
    still running after a config reload never touches a closed pool.
    """

    def __init__(
        self,
        *,
        default_api_key: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._default_api_key = default_api_key
        self._transport = transport

    def _headers(self, api_key: str | None) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        key = api_key or self._default_api_key
        if key:
            headers["Authorization"] = f"Bearer {key}"
        return headers

    async def post_json(
        self,
        url: str,
        body: dict[str, Any],
        *,
        api_key: str | None = None,
        timeout_seconds: float = 30.0,
    ) -> Any:
        """POST `body` and return parsed JSON; any failure becomes CapabilityError."""
        response = await self._post(url, body, api_key=api_key, timeout_seconds=timeout_seconds)
        try:
            return response.json()
        except ValueError as exc:
            raise CapabilityError(f"{url} returned a non-JSON body") from exc

    async def post_text(
        self,
        url: str,
        body: dict[str, Any],
        *,
        api_key: str | None = None,
        timeout_seconds: float = 30.0,
    ) -> str:
        """POST `body` and return the raw response text."""
        response = await self._post(url, body, api_key=api_key, timeout_seconds=timeout_seconds)
        return response.text

    async def _post(
        self,
        url: str,
        body: dict[str, Any],
        *,
        api_key: str | None,
        timeout_seconds: float,
    ) -> httpx.Response:
        if LOG.isEnabledFor(logging.DEBUG):
            LOG.debug("capability request url=%s body=%s", url, to_bounded_json(body))
        try:
            async with httpx.AsyncClient(transport=self._transport, timeout=timeout_seconds) as client:
                response = await client.post(url, json=body, headers=self._headers(api_key))
        except httpx.HTTPError as exc:
            raise CapabilityError(f"{url} unreachable: {exc}") from exc

        if not response.is_success:
            raise CapabilityError(f"{url} returned HTTP {response.status_code}: {response.text[:300]}")
        return response
