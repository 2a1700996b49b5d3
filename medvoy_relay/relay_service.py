"""Relay service runtime: config-bound clients and per-request relays."""

from __future__ import annotations

import logging
import uuid
from typing import Any, AsyncGenerator

import httpx

from .config import RelayConfig
from .errors import InvalidRequestError
from .message_preparation import load_system_prompt, prepare_turns
from .relay import ToolCallRelay
from .tool_registry import ToolRegistry
from .upstream import UpstreamClient

LOG = logging.getLogger(__name__)


class RelayService:
    """Runtime container for the upstream client and the capability registry."""

    def __init__(self, cfg: RelayConfig, *, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._transport = transport
        self.cfg = cfg
        self.registry = ToolRegistry(cfg, transport=transport)
        self.upstream = UpstreamClient(cfg, transport=transport)
        self.system_prompt = load_system_prompt(cfg)

    def reload(self, new_cfg: RelayConfig) -> None:
        """Swap integrations for new requests.

        Requests already streaming keep the clients they captured when they
        were opened.
        """
        if new_cfg.cors_allow_origins != self.cfg.cors_allow_origins:
            # CORSMiddleware is built once in create_app.
            LOG.warning(
                "cors_allow_origins changed to %s; keeping %s until restart",
                new_cfg.cors_allow_origins,
                self.cfg.cors_allow_origins,
            )
        registry = ToolRegistry(new_cfg, transport=self._transport)
        upstream = UpstreamClient(new_cfg, transport=self._transport)
        system_prompt = load_system_prompt(new_cfg)

        self.cfg = new_cfg
        self.registry = registry
        self.upstream = upstream
        self.system_prompt = system_prompt

    def get_health(self) -> dict[str, Any]:
        return {
            "upstream_configured": bool(self.cfg.upstream_base_url and self.cfg.upstream_api_key),
            "model": self.cfg.upstream_model,
            **self.registry.get_health(),
        }

    def create_relay(self, conversation_id: str | None = None) -> ToolCallRelay:
        return ToolCallRelay(
            upstream=self.upstream,
            registry=self.registry,
            system_prompt=self.system_prompt,
            model=self.cfg.upstream_model,
            restream_tools=self.cfg.restream_tools or "omit",
            apology_message=self.cfg.apology_message,
            stream_interrupted_message=self.cfg.stream_interrupted_message,
            relay_id=f"relay-{uuid.uuid4().hex[:12]}",
            conversation_id=conversation_id,
        )

    async def open_relay(self, request_payload: Any) -> AsyncGenerator[bytes, None]:
        """Validate one request, open its first upstream stream, return its frames.

        Raises `RelayRequestError` subclasses before any frame exists.
        """
        if not isinstance(request_payload, dict):
            raise InvalidRequestError("Request body must be a JSON object")
        turns = prepare_turns(request_payload.get("messages"))

        conversation_id = request_payload.get("conversationId")
        if not isinstance(conversation_id, str) or not conversation_id:
            conversation_id = None

        relay = self.create_relay(conversation_id)
        LOG.info(
            "relay request turns=%s model=%s",
            len(turns),
            relay.model,
            extra={"relay_id": relay.relay_id, "conversation_id": conversation_id},
        )
        await relay.open(turns)
        return relay.events()
