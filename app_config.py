from __future__ import annotations

import logging
import os
import re
import secrets
from dataclasses import dataclass

from dotenv import load_dotenv

from image_storage import DEFAULT_MAX_UPLOAD_BYTES

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GameConfig:
    db_path: str = "nano_banana.db"
    supabase_url: str = ""
    supabase_key: str = ""
    supabase_bucket: str = "submissions"
    upload_dir: str = "uploads"
    public_base_url: str = ""
    max_upload_bytes: int = DEFAULT_MAX_UPLOAD_BYTES
    long_poll_seconds: float = 25
    log_file: str = "nano_banana.log"
    log_max_bytes: int = 2 * 1024 * 1024
    host: str = "127.0.0.1"
    port: int = 8040
    is_prod: bool = False
    secret_key: str = ""


def _env_flag(name: str, default: str = "False") -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "t")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring non-numeric %s=%r", name, raw)
        return default


def load_config() -> GameConfig:
    """Read the environment (and a ``.env`` file when present)."""
    load_dotenv()
    return GameConfig(
        db_path=os.getenv("NANO_BANANA_DB", "nano_banana.db"),
        supabase_url=os.getenv("SUPABASE_URL", "").strip(),
        supabase_key=os.getenv("SUPABASE_KEY", "").strip(),
        supabase_bucket=os.getenv("SUPABASE_BUCKET", "submissions").strip() or "submissions",
        upload_dir=os.getenv("UPLOAD_DIR", "uploads"),
        public_base_url=os.getenv("PUBLIC_BASE_URL", "").strip(),
        max_upload_bytes=_env_int("MAX_UPLOAD_BYTES", DEFAULT_MAX_UPLOAD_BYTES),
        long_poll_seconds=_env_int("LONG_POLL_SECONDS", 25),
        log_file=os.getenv("LOG_FILE", "nano_banana.log"),
        log_max_bytes=_env_int("LOG_MAX_BYTES", 2 * 1024 * 1024),
        host=os.getenv("HOST", "127.0.0.1"),
        port=_env_int("PORT", 8040),
        is_prod=_env_flag("IS_PROD"),
        secret_key=os.getenv("SECRET_KEY", "") or secrets.token_hex(32),
    )


def validate_runtime_config(config: GameConfig) -> list[str]:
    warnings: list[str] = []
    if bool(config.supabase_url) ^ bool(config.supabase_key):
        warnings.append(
            "SUPABASE_URL and SUPABASE_KEY must both be set to use the hosted store; "
            "falling back to local SQLite."
        )

    if config.supabase_url and not re.match(r"^https?://", config.supabase_url, re.IGNORECASE):
        warnings.append("SUPABASE_URL should start with http:// or https://.")

    if config.public_base_url and not re.match(
        r"^https?://", config.public_base_url, re.IGNORECASE
    ):
        warnings.append("PUBLIC_BASE_URL should start with http:// or https://.")

    if config.max_upload_bytes <= 0:
        warnings.append("MAX_UPLOAD_BYTES should be greater than 0.")

    if config.long_poll_seconds <= 0:
        warnings.append("LONG_POLL_SECONDS should be greater than 0.")

    if config.log_max_bytes <= 0:
        warnings.append("LOG_MAX_BYTES should be greater than 0.")

    if warnings:
        for warning in warnings:
            logger.warning("Config warning: %s", warning)
    else:
        logger.info("Runtime configuration checks passed.")
    return warnings
