"""Environment-driven settings for the store service."""

from __future__ import annotations

import logging
import os
import secrets
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

_THIS_FILE = Path(__file__).resolve()
_DEFAULT_DB_PATH = (_THIS_FILE.parent / ".." / ".." / "db" / "store.db").resolve()


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"Ignoring invalid {name}={raw!r}; using {default}")
        return default


@dataclass
class Settings:
    db_path: str = str(_DEFAULT_DB_PATH)
    host: str = "0.0.0.0"
    port: int = 8000
    token_secret: str = ""
    token_ttl_seconds: int = 3600
    pool_size: int = 5
    busy_timeout_ms: int = 10000
    log_dir: str = "logs"
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        if not self.token_secret:
            # Tokens issued with a generated secret do not survive a restart.
            self.token_secret = secrets.token_urlsafe(32)

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from ``STORE_*``, ``HOST`` and ``PORT`` variables."""
        secret = os.environ.get("STORE_TOKEN_SECRET", "")
        if not secret:
            logger.warning("STORE_TOKEN_SECRET not set; generated a per-process secret.")
        return cls(
            db_path=os.environ.get("STORE_DB_PATH", str(_DEFAULT_DB_PATH)),
            host=os.environ.get("HOST", "0.0.0.0"),
            port=_env_int("PORT", 8000),
            token_secret=secret,
            token_ttl_seconds=_env_int("STORE_TOKEN_TTL_SECONDS", 3600),
            pool_size=max(1, _env_int("STORE_POOL_SIZE", 5)),
            busy_timeout_ms=_env_int("STORE_BUSY_TIMEOUT_MS", 10000),
            log_dir=os.environ.get("STORE_LOG_DIR", "logs"),
            log_level=os.environ.get("STORE_LOG_LEVEL", "INFO").upper(),
        )
