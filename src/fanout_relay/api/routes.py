# routes.py -- HTTP and WebSocket endpoints
# /ws for subscribers, /send for the trusted publisher, /metrics for status.

from __future__ import annotations

from fastapi import APIRouter, Depends, Request, WebSocket
from fastapi.responses import PlainTextResponse
from starlette.requests import HTTPConnection

from ..connection import Connection
from ..dispatch import AuthorizationError, DecodeError, Dispatcher
from ..registry import ConnectionRegistry

router = APIRouter()


def get_registry(connection: HTTPConnection) -> ConnectionRegistry:
    """FastAPI dependency: get the ConnectionRegistry from app.state (HTTP or WebSocket)."""
    registry = getattr(connection.app.state, "registry", None)
    if registry is None:
        raise RuntimeError("Connection registry not initialized")
    return registry


def get_dispatcher(request: Request) -> Dispatcher:
    """FastAPI dependency: get the Dispatcher from app.state."""
    dispatcher = getattr(request.app.state, "dispatcher", None)
    if dispatcher is None:
        raise RuntimeError("Dispatcher not initialized")
    return dispatcher


def _origin(request: Request) -> str | None:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded
    return request.client.host if request.client else None


@router.get("/metrics")
def metrics(registry: ConnectionRegistry = Depends(get_registry)) -> dict:
    """Number of currently open client connections."""
    return {"connectedClients": registry.size()}


@router.post("/send")
async def send(request: Request, dispatcher: Dispatcher = Depends(get_dispatcher)):
    """Broadcast the JSON body to every connected client."""
    # Authorize before the body is read
    try:
        dispatcher.authorize(request.headers.get("authorization"), origin=_origin(request))
    except AuthorizationError:
        return PlainTextResponse("Unauthorized", status_code=401)

    body = await request.body()
    try:
        await dispatcher.dispatch(body)
    except DecodeError:
        return PlainTextResponse("Bad Request", status_code=400)
    return PlainTextResponse("OK")


@router.websocket("/ws")
async def websocket_endpoint(
    websocket: WebSocket, registry: ConnectionRegistry = Depends(get_registry)
) -> None:
    """Subscriber connection. Inbound messages are ignored."""
    await Connection(websocket, registry).serve()
