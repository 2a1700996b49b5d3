"""HTTP application for medvoy-relay.

Exposes the streaming chat relay used by the MedVoy browser client:
- `POST /relay` (and the legacy `/functions/v1/medvoy-chat` path),
- `GET /healthz`.
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import sys
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import NoReturn
from urllib.parse import urlparse

import httpx
import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from .chat_handlers import handle_relay_request
from .config import config_path_from_env, load_config
from .config_reload import ConfigReloadWatcher
from .logging_utils import setup_logging
from .relay_service import RelayService

LOG = logging.getLogger(__name__)

SERVICE_NAME = "medvoy-relay"
_CORS_ALLOW_HEADERS = ["authorization", "x-client-info", "apikey", "content-type"]


def _service_bind_addr(base_url: str) -> tuple[str, int]:
    url = urlparse(base_url)
    if url.hostname is None or url.port is None:
        raise ValueError(f"service_base_url needs an explicit host and port: {base_url!r}")
    return url.hostname, url.port


def create_app(
    config_path: str | None = None,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
    watch_config: bool = True,
) -> FastAPI:
    """Create and configure the FastAPI application instance.

    `transport` is handed to every outbound httpx client (tests inject a
    `MockTransport` here).
    """
    cfg = load_config(config_path)
    setup_logging(cfg.logging)
    service = RelayService(cfg, transport=transport)
    config_file = Path(config_path_from_env(config_path))

    async def apply_config(path: Path) -> None:
        new_cfg = load_config(str(path))
        setup_logging(new_cfg.logging)
        service.reload(new_cfg)

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        """Start and stop the config watcher."""
        watcher_task: asyncio.Task[None] | None = None
        if watch_config:
            watcher = ConfigReloadWatcher(config_file=config_file, on_reload=apply_config)
            watcher_task = asyncio.create_task(watcher.run_forever())
        try:
            yield
        finally:
            if watcher_task is not None:
                watcher_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await watcher_task

    app = FastAPI(title=SERVICE_NAME, version="0.1.0", lifespan=lifespan)
    app.state.service = service
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cfg.cors_allow_origins,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=_CORS_ALLOW_HEADERS,
    )

    @app.get("/healthz")
    async def healthz() -> JSONResponse:
        """Return service status and configured capabilities."""
        return JSONResponse(
            {
                "service": SERVICE_NAME,
                "timestamp": datetime.now(timezone.utc).isoformat(),
                **service.get_health(),
            }
        )

    @app.post("/relay")
    async def relay(request: Request):
        return await handle_relay_request(request, service)

    @app.post("/functions/v1/medvoy-chat")
    async def medvoy_chat(request: Request):
        """Path kept for browser clients built against the hosted function."""
        return await handle_relay_request(request, service)

    return app


def _abort(message: str, code: int = 2) -> NoReturn:
    sys.stderr.write(f"medvoy-relay: {message}\n")
    raise SystemExit(code)


def main() -> None:
    """Console entry point: validate configuration, then serve with uvicorn."""
    parser = argparse.ArgumentParser(prog=SERVICE_NAME, description="MedVoy streaming chat relay")
    parser.add_argument("--config", metavar="PATH", help="config YAML (default: $MEDVOY_RELAY_CONFIG or config.yaml)")
    config_path = parser.parse_args().config

    try:
        cfg = load_config(config_path)
        bind_host, bind_port = _service_bind_addr(cfg.service_base_url)
    except ValidationError as exc:
        _abort(f"configuration is invalid:\n{exc}")
    except Exception as exc:
        _abort(f"cannot read configuration: {exc}")

    try:
        app = create_app(config_path)
    except Exception as exc:
        _abort(f"startup failed: {exc}")

    if not (cfg.upstream_base_url and cfg.upstream_api_key):
        LOG.warning(
            "upstream gateway not configured; requests will fail until "
            "MEDVOY_RELAY_UPSTREAM_BASE_URL and MEDVOY_RELAY_UPSTREAM_API_KEY are set"
        )

    uvicorn.run(app, host=bind_host, port=bind_port)


if __name__ == "__main__":
    main()
