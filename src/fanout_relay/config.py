# config.py -- All configuration from environment variables
# Loads .env file if present, then reads os.environ.
# SECRET is mandatory; validate() is called before serving starts.

from __future__ import annotations

import logging
import os
from pathlib import Path

from dotenv import load_dotenv

log = logging.getLogger(__name__)

# Walk up from config.py to find .env (supports both src layout and installed)
_project_root = Path(__file__).resolve().parent.parent.parent
load_dotenv(_project_root / ".env")
# Also try cwd (Docker WORKDIR or wherever the user runs from)
load_dotenv(override=False)


class ConfigError(Exception):
    """Raised when the process cannot start with the current environment."""


def _safe_int(
    name: str, default: int, min_val: int | None = None, max_val: int | None = None
) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        val = int(raw)
    except (ValueError, TypeError):
        log.warning("Invalid integer for %s=%r, using default %d", name, raw, default)
        return default
    if min_val is not None and val < min_val:
        log.warning("%s=%d below minimum %d, using %d", name, val, min_val, min_val)
        return min_val
    if max_val is not None and val > max_val:
        log.warning("%s=%d above maximum %d, using %d", name, val, max_val, max_val)
        return max_val
    return val


def _safe_float(name: str, default: float, min_val: float | None = None) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        val = float(raw)
    except (ValueError, TypeError):
        log.warning("Invalid number for %s=%r, using default %s", name, raw, default)
        return default
    if val != val:  # NaN
        log.warning("Invalid number for %s=%r, using default %s", name, raw, default)
        return default
    if min_val is not None and val < min_val:
        log.warning("%s=%s below minimum %s, using %s", name, val, min_val, min_val)
        return min_val
    return val


class Config:
    # Web server
    host: str = os.getenv("HOST", "0.0.0.0")
    port: int = _safe_int("PORT", 8080, min_val=1, max_val=65535)

    # Publisher credential (Authorization: Bearer <secret>)
    secret: str = os.getenv("SECRET", "")

    # Per-client send bound, seconds
    send_timeout: float = _safe_float("SEND_TIMEOUT", 5.0, min_val=0.01)

    # Logging
    log_level: str = os.getenv("LOG_LEVEL", "INFO").upper()
    log_payloads: bool = os.getenv("LOG_PAYLOADS", "false").lower() == "true"

    def validate(self) -> None:
        if not self.secret:
            raise ConfigError("SECRET env var is missing")


config = Config()
