"""
Runtime configuration.

Settings are read from the environment, after an optional ``.env`` file has
been loaded with python-dotenv. Every knob has a default except the Supabase
credentials and the owner id, which only the commands that talk to the
backend need.
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, TypeVar, Union

from dotenv import load_dotenv

from ..core.models import DEFAULT_LANGUAGE, validate_language
from .log_utils import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class Settings:
    supabase_url: Optional[str] = None
    supabase_key: Optional[str] = None
    bucket: str = "letters"
    table: str = "scans"
    backend_url: Optional[str] = None
    owner_id: Optional[str] = None
    language: str = DEFAULT_LANGUAGE
    free_scan_limit: int = 3
    poll_interval: float = 5.0
    poll_timeout: float = 10.0
    upload_timeout: float = 30.0
    backend_timeout: float = 15.0
    target_bytes: int = 1024 * 1024
    max_width: int = 1200
    upload_attempts: int = 2
    reply_webhook_url: Optional[str] = None
    reply_webhook_token: Optional[str] = None

    def require_supabase(self) -> None:
        """Raise ValueError unless the Supabase URL and key are both set."""
        missing = [
            name for name, value in (
                ("SUPABASE_URL", self.supabase_url),
                ("SUPABASE_KEY", self.supabase_key),
            )
            if not value
        ]
        if missing:
            raise ValueError(f"{', '.join(missing)} environment variable not set")

    def require_owner(self) -> str:
        if not self.owner_id:
            raise ValueError("DOCUSCAN_OWNER_ID environment variable not set")
        return self.owner_id


def _read(name: str, cast: Callable[[str], T], default: T) -> T:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return cast(raw.strip())
    except ValueError:
        raise ValueError(f"Invalid value for {name}: {raw!r}")


def _positive(cast: Callable[[str], T]) -> Callable[[str], T]:
    def parse(raw: str) -> T:
        value = cast(raw)
        if value <= 0:
            raise ValueError(raw)
        return value
    return parse


def load_settings(env_file: Optional[Union[str, Path]] = None) -> Settings:
    """
    Load settings from the environment.

    Args:
        env_file: Optional path to a dotenv file. When None, python-dotenv
            searches for a ``.env`` file from the working directory upwards.
    """
    if env_file is not None:
        if not Path(env_file).is_file():
            raise ValueError(f"Env file not found: {env_file}")
        load_dotenv(env_file, override=False)
    else:
        load_dotenv(override=False)

    language = _read("DOCUSCAN_LANGUAGE", str, DEFAULT_LANGUAGE)
    try:
        validate_language(language)
    except ValueError:
        raise ValueError(f"Invalid value for DOCUSCAN_LANGUAGE: {language!r}")

    settings = Settings(
        supabase_url=os.getenv("SUPABASE_URL") or None,
        supabase_key=os.getenv("SUPABASE_KEY") or None,
        bucket=_read("DOCUSCAN_BUCKET", str, "letters"),
        table=_read("DOCUSCAN_TABLE", str, "scans"),
        backend_url=os.getenv("DOCUSCAN_BACKEND_URL") or None,
        owner_id=os.getenv("DOCUSCAN_OWNER_ID") or None,
        language=language,
        free_scan_limit=_read("DOCUSCAN_FREE_SCAN_LIMIT", _positive(int), 3),
        poll_interval=_read("DOCUSCAN_POLL_INTERVAL", _positive(float), 5.0),
        poll_timeout=_read("DOCUSCAN_POLL_TIMEOUT", _positive(float), 10.0),
        upload_timeout=_read("DOCUSCAN_UPLOAD_TIMEOUT", _positive(float), 30.0),
        backend_timeout=_read("DOCUSCAN_BACKEND_TIMEOUT", _positive(float), 15.0),
        target_bytes=_read("DOCUSCAN_TARGET_BYTES", _positive(int), 1024 * 1024),
        max_width=_read("DOCUSCAN_MAX_WIDTH", _positive(int), 1200),
        upload_attempts=_read("DOCUSCAN_UPLOAD_ATTEMPTS", _positive(int), 2),
        reply_webhook_url=os.getenv("DOCUSCAN_REPLY_WEBHOOK_URL") or None,
        reply_webhook_token=os.getenv("DOCUSCAN_REPLY_WEBHOOK_TOKEN") or None,
    )
    logger.debug("Loaded settings: bucket=%s table=%s backend=%s",
                 settings.bucket, settings.table, settings.backend_url)
    return settings
