"""
Runtime configuration for the messenger client.

Values come from the environment (optionally a .env file in the working
directory). The server URL can also be stored in the local database with
`set-server`; the environment wins when both are present.
"""

import os
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from ratchet.double_ratchet import SkippedKeyCache

DEFAULT_HOME = Path.home() / ".ratchet-messenger"
DEFAULT_HTTP_TIMEOUT = 30.0


@dataclass
class Settings:
    data_dir: Path
    server_url: Optional[str] = None
    passphrase: Optional[str] = None
    log_level: str = "WARNING"
    http_timeout: float = DEFAULT_HTTP_TIMEOUT
    max_cached_keys: int = SkippedKeyCache.DEFAULT_MAX_ENTRIES

    @property
    def db_path(self) -> Path:
        return self.data_dir / "messenger.db"

    @classmethod
    def from_env(cls) -> 'Settings':
        load_dotenv()
        return cls(
            data_dir=Path(os.getenv("RATCHET_HOME", str(DEFAULT_HOME))).expanduser(),
            server_url=os.getenv("RATCHET_SERVER_URL") or None,
            passphrase=os.getenv("RATCHET_PASSPHRASE") or None,
            log_level=os.getenv("RATCHET_LOG_LEVEL", "WARNING").upper(),
            http_timeout=float(os.getenv("RATCHET_HTTP_TIMEOUT", DEFAULT_HTTP_TIMEOUT)),
            max_cached_keys=int(os.getenv("RATCHET_MAX_CACHED_KEYS", SkippedKeyCache.DEFAULT_MAX_ENTRIES)),
        )


def normalize_server_url(url: str) -> str:
    """
    Validate and normalize a relay URL.

    Raises:
        ValueError: If the URL is not http(s)
    """
    url = url.strip()
    if not url.startswith(("http://", "https://")):
        raise ValueError("Invalid URL format. Must start with http:// or https://")
    return url.rstrip("/")


def configure_logging(level: str = "WARNING"):
    logging.basicConfig(
        level=getattr(logging, level, logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
