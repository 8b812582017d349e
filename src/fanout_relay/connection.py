# connection.py -- One WebSocket client and its lifecycle
# CONNECTING -> OPEN -> CLOSED. Entering OPEN registers the connection,
# entering CLOSED unregisters it, each exactly once.

from __future__ import annotations

import asyncio
import enum
import logging

from fastapi import WebSocket
from starlette.websockets import WebSocketDisconnect

from .registry import ConnectionRegistry

log = logging.getLogger(__name__)

CLOSE_NORMAL = 1000
CLOSE_GOING_AWAY = 1001
CLOSE_INTERNAL_ERROR = 1011


class ConnectionState(enum.Enum):
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"


class Connection:
    """A registered WebSocket client. Hashes by identity."""

    def __init__(self, websocket: WebSocket, registry: ConnectionRegistry) -> None:
        self.websocket = websocket
        self.state = ConnectionState.CONNECTING
        self._registry = registry

    def __repr__(self) -> str:
        return f"<Connection {id(self):#x} {self.state.value}>"

    @property
    def is_open(self) -> bool:
        return self.state is ConnectionState.OPEN

    async def open(self) -> int:
        """Accept the handshake and register. Returns the new client count."""
        if self.state is not ConnectionState.CONNECTING:
            raise RuntimeError(f"cannot open connection in state {self.state.value}")
        await self.websocket.accept()
        self.state = ConnectionState.OPEN
        count = self._registry.add(self)
        log.info("Client connected (%d total)", count)
        return count

    async def send(self, message: str) -> None:
        if self.state is not ConnectionState.OPEN:
            raise RuntimeError(f"cannot send on connection in state {self.state.value}")
        await self.websocket.send_text(message)

    async def close(
        self,
        code: int = CLOSE_NORMAL,
        reason: str | None = None,
        *,
        peer_initiated: bool = False,
    ) -> bool:
        """Move to CLOSED and unregister. Returns False if already closed."""
        if self.state is ConnectionState.CLOSED:
            return False
        was_open = self.state is ConnectionState.OPEN
        self.state = ConnectionState.CLOSED
        count = self._registry.remove(self)
        if was_open:
            log.info("Client disconnected (%d total)", count)

        if not peer_initiated:
            try:
                await self.websocket.close(code=code, reason=reason)
            except (WebSocketDisconnect, RuntimeError, OSError) as e:
                # Transport already gone; nothing left to notify.
                log.debug("Close frame not sent to %r: %s", self, e)
        return True

    async def serve(self) -> None:
        """Open, then drain inbound messages until the peer goes away.

        Inbound messages are accepted and discarded. The connection is
        closed on every exit path.
        """
        await self.open()
        peer_initiated = False
        try:
            while self.is_open:
                message = await self.websocket.receive()
                if message["type"] == "websocket.disconnect":
                    peer_initiated = True
                    break
        except WebSocketDisconnect:
            peer_initiated = True
        finally:
            await self.close(peer_initiated=peer_initiated)


async def close_all(
    registry: ConnectionRegistry,
    code: int = CLOSE_GOING_AWAY,
    reason: str | None = "server shutdown",
) -> int:
    """Close every registered connection. Returns how many were closed."""
    members = registry.snapshot()
    if not members:
        return 0
    results = await asyncio.gather(*(conn.close(code, reason) for conn in members))
    return sum(1 for closed in results if closed)
