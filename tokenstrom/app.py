"""HTTP application for the tokenstrom relay.

Exposes the streaming relay, a demo-only stream, a non-streaming query
endpoint and a credential probe. Config edits are picked up at runtime.
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import os
import sys
from contextlib import asynccontextmanager
from pathlib import Path
from urllib.parse import urlparse

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from .chat_handlers import handle_query_request, handle_stream_request
from .config import DEFAULT_CONFIG_PATH, load_config
from .config_reload import ConfigReloadWatcher
from .logging_utils import setup_logging
from .relay_service import RelayService

LOG = logging.getLogger(__name__)


def _service_bind_addr(service_base_url: str) -> tuple[str, int]:
    """Parse bind host/port from service_base_url."""
    parsed = urlparse(service_base_url)
    if not parsed.hostname or parsed.port is None:
        raise ValueError("service_base_url must include host and port, e.g. http://127.0.0.1:8080")
    return parsed.hostname, parsed.port


def create_app(config_path: str | None = None, *, watch_config: bool = True) -> FastAPI:
    """Create and configure the FastAPI application instance."""
    cfg = load_config(config_path)
    setup_logging(cfg.logging)
    service = RelayService(cfg)

    config_file = Path(config_path or os.getenv("TOKENSTROM_CONFIG") or DEFAULT_CONFIG_PATH)
    reload_task: asyncio.Task[None] | None = None

    async def apply_config(path: Path) -> None:
        new_cfg = load_config(str(path))
        setup_logging(new_cfg.logging)
        await service.reload(new_cfg)

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        """Application startup/shutdown lifecycle."""
        nonlocal reload_task
        if watch_config and config_file.exists():
            watcher = ConfigReloadWatcher(config_file=config_file, on_reload=apply_config)
            reload_task = asyncio.create_task(watcher.run_forever())
        try:
            yield
        finally:
            if reload_task:
                reload_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await reload_task

    app = FastAPI(title="tokenstrom", version="0.1.0", lifespan=lifespan)
    app.state.service = service

    @app.get("/healthz")
    async def healthz() -> JSONResponse:
        return JSONResponse(service.health())

    @app.get("/v1/relay/check-api-key")
    async def check_api_key() -> JSONResponse:
        """Report whether an upstream credential is configured, never the value."""
        return JSONResponse({"hasApiKey": service.upstream.has_credential})

    @app.post("/v1/relay/stream")
    async def relay_stream(request: Request):
        return await handle_stream_request(request=request, service=service)

    @app.post("/v1/relay/demo-stream")
    async def relay_demo_stream(request: Request):
        """Same event stream as /v1/relay/stream, served entirely by the demo generator."""
        return await handle_stream_request(request=request, service=service, force_demo=True)

    @app.post("/v1/relay/query")
    async def relay_query(request: Request):
        return await handle_query_request(request=request, service=service)

    return app


def main() -> None:
    """CLI entry point that validates configuration and runs uvicorn."""

    def fail(message: str, exit_code: int = 2) -> None:
        """Print startup error and terminate process."""
        print(f"ERROR: {message}", file=sys.stderr)
        raise SystemExit(exit_code)

    parser = argparse.ArgumentParser(description="tokenstrom streaming completion relay")
    parser.add_argument("--config", default=None, help="Path to config YAML")
    args = parser.parse_args()

    try:
        cfg = load_config(args.config)
    except ValidationError as exc:
        missing = []
        for err in exc.errors():
            if err.get("type") == "missing":
                location = ".".join(str(x) for x in err.get("loc", []))
                missing.append(location)
        if missing:
            fail(
                "Configuration incomplete. Missing required fields: "
                + ", ".join(sorted(set(missing)))
                + ". Provide --config <file> or set env vars "
                + "(TOKENSTROM_UPSTREAM_BASE_URL)."
            )
        fail(f"Invalid configuration: {exc}")
    except Exception as exc:
        fail(f"Failed to load configuration: {exc}")

    try:
        app = create_app(args.config)
    except Exception as exc:
        fail(f"Failed to create app: {exc}")

    try:
        host, port = _service_bind_addr(cfg.service_base_url)
        uvicorn.run(app, host=host, port=port)
    except Exception as exc:
        fail(f"Server failed to start: {exc}", exit_code=1)


if __name__ == "__main__":
    main()
