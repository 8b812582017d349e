# conftest.py -- Shared test fixtures

from __future__ import annotations

import asyncio
import time

import pytest
from fastapi.testclient import TestClient

from fanout_relay.config import config
from fanout_relay.connection import Connection
from fanout_relay.registry import ConnectionRegistry

SECRET = "s3cret"


class FakeWebSocket:
    """Minimal mock for fastapi.WebSocket."""

    def __init__(
        self,
        *,
        fail_on_send: bool = False,
        fail_on_close: bool = False,
        send_delay: float = 0.0,
    ) -> None:
        self.accepted = False
        self.messages: list[str] = []
        self.closed_with: tuple[int, str | None] | None = None
        self.inbound: asyncio.Queue[dict] = asyncio.Queue()
        self._fail_on_send = fail_on_send
        self._fail_on_close = fail_on_close
        self._send_delay = send_delay

    async def accept(self) -> None:
        self.accepted = True

    async def send_text(self, data: str) -> None:
        if self._send_delay:
            await asyncio.sleep(self._send_delay)
        if self._fail_on_send:
            raise RuntimeError("connection closed")
        self.messages.append(data)

    async def close(self, code: int = 1000, reason: str | None = None) -> None:
        if self._fail_on_close:
            raise RuntimeError("connection closed")
        self.closed_with = (code, reason)

    async def receive(self) -> dict:
        return await self.inbound.get()


class CountingRegistry(ConnectionRegistry):
    """Registry that records how often add/remove were called."""

    def __init__(self) -> None:
        super().__init__()
        self.adds = 0
        self.removes = 0

    def add(self, handle):
        self.adds += 1
        return super().add(handle)

    def remove(self, handle):
        self.removes += 1
        return super().remove(handle)


@pytest.fixture
def registry() -> CountingRegistry:
    return CountingRegistry()


@pytest.fixture
def open_connection(registry: CountingRegistry):
    """Factory: open a Connection over a FakeWebSocket in the registry."""

    async def _open(**kwargs) -> Connection:
        conn = Connection(FakeWebSocket(**kwargs), registry)
        await conn.open()
        return conn

    return _open


@pytest.fixture
def relay_client(monkeypatch) -> TestClient:
    """TestClient with lifespan running and a known secret."""
    monkeypatch.setattr(config, "secret", SECRET)
    monkeypatch.setattr(config, "send_timeout", 1.0)
    from fanout_relay.app import app

    with TestClient(app) as client:
        yield client


def auth(secret: str = SECRET) -> dict:
    return {"Authorization": f"Bearer {secret}"}


def wait_for_clients(client: TestClient, expected: int, timeout: float = 2.0) -> int:
    """Poll /metrics until the count settles on expected (or time runs out)."""
    deadline = time.monotonic() + timeout
    while True:
        count = client.get("/metrics").json()["connectedClients"]
        if count == expected or time.monotonic() > deadline:
            return count
        time.sleep(0.01)
