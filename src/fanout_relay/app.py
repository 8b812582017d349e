# app.py -- FastAPI application and process entry point
# Builds the registry and dispatcher once at startup, closes every client on shutdown.
# Entry point: `python -m fanout_relay` or `fanout-relay` CLI.

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exception_handlers import http_exception_handler
from fastapi.responses import PlainTextResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import __version__
from .config import ConfigError, config
from .connection import close_all
from .dispatch import Dispatcher
from .registry import ConnectionRegistry

log = logging.getLogger(__name__)

ENDPOINTS = ("/ws", "/send", "/metrics")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Create shared state on startup, close client connections on shutdown."""
    config.validate()

    registry = ConnectionRegistry()
    app.state.registry = registry
    app.state.dispatcher = Dispatcher(
        registry,
        config.secret,
        send_timeout=config.send_timeout,
        log_payloads=config.log_payloads,
    )

    log.info(
        "Socket server started (port=%d endpoints=%s)", config.port, ",".join(ENDPOINTS)
    )
    yield

    closed = await close_all(registry)
    log.info("Socket server stopped (%d client(s) closed)", closed)


app = FastAPI(title="Fan-out Relay", version=__version__, lifespan=lifespan)


@app.exception_handler(StarletteHTTPException)
async def not_found_handler(request: Request, exc: StarletteHTTPException):
    # Unknown path and wrong method on a known path are both plain 404s
    if exc.status_code in (404, 405):
        return PlainTextResponse("Not Found", status_code=404)
    return await http_exception_handler(request, exc)


from .api.routes import router  # noqa: E402

app.include_router(router)


def main() -> None:
    level = getattr(logging, config.log_level, None)
    if not isinstance(level, int):
        level = logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)-7s %(name)s  %(message)s",
        datefmt="%H:%M:%S",
    )
    try:
        config.validate()
    except ConfigError as e:
        log.critical("Refusing to start: %s", e)
        raise SystemExit(1) from e
    uvicorn.run(
        "fanout_relay.app:app",
        host=config.host,
        port=config.port,
        log_level=logging.getLevelName(level).lower(),
    )


if __name__ == "__main__":
    main()
