"""Capability registry and dispatch.

The registry turns configured capabilities into OpenAI tool declarations and
resolves a completed tool call to one HTTP capability endpoint.
"""

from __future__ import annotations

import copy
import json
import logging
from dataclasses import dataclass
from typing import Any

import httpx

from .capability_client import CapabilityClient
from .config import CapabilityConfig, RelayConfig
from .errors import CapabilityError
from .json_helpers import to_bounded_json
from .options import normalize_options

LOG = logging.getLogger(__name__)


@dataclass
class CapabilityOutcome:
    """Successful capability call: the raw result and its normalized options."""

    name: str
    result: Any
    options: list[Any]


class ToolRegistry:
    """Owns the tool declarations and the capability HTTP client."""

    def __init__(self, cfg: RelayConfig, *, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.cfg = cfg
        self._capabilities: dict[str, CapabilityConfig] = {cap.name: cap for cap in cfg.capabilities}
        self._tool_cache = [self._tool_declaration(cap) for cap in cfg.capabilities]
        self.client = CapabilityClient(default_api_key=cfg.capability_api_key, transport=transport)
        if self._capabilities:
            LOG.info(
                "capabilities registered count=%s tools=%s",
                len(self._capabilities),
                ", ".join(sorted(self._capabilities)),
            )

    @staticmethod
    def _tool_declaration(cap: CapabilityConfig) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": cap.name,
                "description": cap.description,
                "parameters": cap.parameters,
            },
        }

    def get_openai_tools(self) -> list[dict[str, Any]]:
        """Return a deep copy of the OpenAI tool definitions."""
        return copy.deepcopy(self._tool_cache)

    def resolve(self, name: str) -> CapabilityConfig | None:
        return self._capabilities.get(name)

    def get_health(self) -> dict[str, Any]:
        return {
            "ok": True,
            "capabilities": [
                {"name": cap.name, "url": cap.url, "fallbacks": [step.kind for step in cap.on_failure]}
                for cap in self._capabilities.values()
            ],
        }

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> CapabilityOutcome:
        """Dispatch one tool call to its capability endpoint."""
        cap = self.resolve(name)
        if cap is None:
            raise CapabilityError(f"Unknown tool '{name}'")

        body = {**arguments, **cap.extra_body}
        LOG.info("dispatching capability call tool=%s url=%s timeout=%s", name, cap.url, cap.timeout_seconds)
        if LOG.isEnabledFor(logging.DEBUG):
            LOG.debug("capability call args tool=%s args=%s", name, to_bounded_json(body))

        result = await self.client.post_json(
            cap.url,
            body,
            api_key=cap.api_key,
            timeout_seconds=cap.timeout_seconds,
        )
        options = normalize_options(result, options_format=cap.options_format, result_key=cap.result_key)

        LOG.info("capability call finished tool=%s options=%s", name, len(options))
        if LOG.isEnabledFor(logging.DEBUG):
            LOG.debug("capability call result tool=%s result=%s", name, to_bounded_json(result))
        return CapabilityOutcome(name=name, result=result, options=options)

    @staticmethod
    def format_tool_message(tool_name: str, tool_call_id: str, result: Any) -> dict[str, Any]:
        """Format one OpenAI `role=tool` message for upstream continuation."""
        return {
            "role": "tool",
            "tool_call_id": tool_call_id,
            "name": tool_name,
            "content": json.dumps(result, ensure_ascii=False),
        }
