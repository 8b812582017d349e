# dispatch.py -- Authorize, decode, re-encode and fan out one publish request
# The encoded message is built once and shared by every recipient. A failed
# send closes that one connection and never reaches the publisher.

from __future__ import annotations

import asyncio
import json
import logging
import secrets
import sys
from dataclasses import dataclass
from typing import Any

from starlette.websockets import WebSocketDisconnect

from .connection import CLOSE_INTERNAL_ERROR, Connection
from .registry import ConnectionRegistry

log = logging.getLogger(__name__)


class RelayError(Exception):
    """Base class for dispatch errors."""


class AuthorizationError(RelayError):
    """Presented credential does not match the configured secret."""


class DecodeError(RelayError):
    """Publish body is not valid JSON."""


class DeliveryError(RelayError):
    """Sending to a single connection failed."""


@dataclass
class DispatchResult:
    recipients: int
    delivered: int = 0
    failed: int = 0


def _reject_constant(name: str) -> Any:
    raise ValueError(f"non-standard JSON constant {name}")


def _int_digit_limit() -> int:
    # 0 means unlimited; interpreters without the limit have no getter
    getter = getattr(sys, "get_int_max_str_digits", None)
    return getter() if getter else 0


def _parse_int(literal: str) -> int:
    limit = _int_digit_limit()
    digits = len(literal.lstrip("-"))
    if limit and digits > limit:
        raise ValueError(f"integer literal too long ({digits} digits, maximum {limit})")
    return int(literal)


def decode(body: bytes) -> Any:
    """Parse a JSON document. Any value shape is accepted.

    Integer literals longer than the interpreter's int digit limit are
    rejected, as are NaN and Infinity.
    """
    try:
        return json.loads(body, parse_int=_parse_int, parse_constant=_reject_constant)
    except (ValueError, RecursionError) as e:
        # json.JSONDecodeError and UnicodeDecodeError are both ValueErrors
        raise DecodeError(str(e) or type(e).__name__) from e


def encode(value: Any) -> str:
    """Canonical compact JSON text for transmission."""
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False, allow_nan=False)


class Dispatcher:
    """Broadcasts authorized publish requests to every registered connection."""

    def __init__(
        self,
        registry: ConnectionRegistry,
        secret: str,
        *,
        send_timeout: float = 5.0,
        log_payloads: bool = False,
    ) -> None:
        if not secret:
            raise ValueError("secret must not be empty")
        self.registry = registry
        self.send_timeout = send_timeout
        self.log_payloads = log_payloads
        self._expected = f"Bearer {secret}".encode("utf-8")

    def authorize(self, credential: str | None, origin: str | None = None) -> None:
        """Check the Authorization header value. Raises AuthorizationError."""
        # Starlette decodes header values as latin-1; recover the raw bytes.
        presented = (credential or "").encode("latin-1", errors="replace")
        if credential is None or not secrets.compare_digest(presented, self._expected):
            log.warning("Unauthorized send attempt (origin=%s)", origin or "unknown")
            raise AuthorizationError("invalid credential")

    async def dispatch(self, body: bytes) -> DispatchResult:
        """Decode, encode once, deliver. Raises DecodeError on malformed input."""
        try:
            payload = decode(body)
            try:
                message = encode(payload)
            except ValueError as e:
                # e.g. 1e400 decodes to inf, which has no JSON form
                raise DecodeError(str(e)) from e
        except DecodeError as e:
            log.warning("Failed to parse message: %s", e)
            raise
        result = await self.fan_out(message)
        if self.log_payloads:
            log.info(
                "Message sent to clients (clients=%d delivered=%d failed=%d payload=%s)",
                result.recipients,
                result.delivered,
                result.failed,
                message,
            )
        else:
            log.info(
                "Message sent to clients (clients=%d delivered=%d failed=%d bytes=%d)",
                result.recipients,
                result.delivered,
                result.failed,
                len(message.encode("utf-8")),
            )
        return result

    async def fan_out(self, message: str) -> DispatchResult:
        """Send message to a snapshot of the registry, isolating failures."""
        members = self.registry.snapshot()
        result = DispatchResult(recipients=len(members))
        if not members:
            return result
        outcomes = await asyncio.gather(*(self._deliver(conn, message) for conn in members))
        result.delivered = sum(1 for ok in outcomes if ok)
        result.failed = result.recipients - result.delivered
        return result

    async def _deliver(self, conn: Connection, message: str) -> bool:
        try:
            try:
                await asyncio.wait_for(conn.send(message), timeout=self.send_timeout)
            except asyncio.TimeoutError as e:
                raise DeliveryError(f"send timed out after {self.send_timeout}s") from e
            except (WebSocketDisconnect, RuntimeError, OSError) as e:
                raise DeliveryError(str(e) or type(e).__name__) from e
        except DeliveryError as e:
            log.warning("Delivery to %r failed: %s", conn, e)
            try:
                await asyncio.wait_for(
                    conn.close(CLOSE_INTERNAL_ERROR, "delivery failed"), timeout=self.send_timeout
                )
            except asyncio.TimeoutError:
                log.debug("Close frame to %r timed out", conn)
            return False
        return True
