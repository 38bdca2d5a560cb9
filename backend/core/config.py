"""Runtime settings.

Values come from the environment (optionally a `.env` file) so deployments
can tune the engine without code changes.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from functools import lru_cache
from typing import List, Optional

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger("uvicorn.error")

DEFAULT_MAX_UPLOAD_BYTES = 20 * 1024 * 1024
DEFAULT_WORKERS = 2

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


@dataclass(frozen=True)
class Settings:
    derive_jitter: bool = False
    seed: Optional[int] = None
    max_upload_bytes: int = DEFAULT_MAX_UPLOAD_BYTES
    workers: int = DEFAULT_WORKERS
    cors_origins: tuple = ("*",)


def _env(key: str, default: Optional[str] = None) -> Optional[str]:
    value = os.getenv(key)
    if value is None:
        return default
    return value.strip() or default


def _env_bool(key: str, default: bool) -> bool:
    raw = _env(key)
    if raw is None:
        return default
    lowered = raw.lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    logger.warning("Ignoring invalid boolean %s=%r, using %s", key, raw, default)
    return default


def _env_int(key: str, default: Optional[int], minimum: Optional[int] = None) -> Optional[int]:
    raw = _env(key)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning("Ignoring invalid integer %s=%r, using %s", key, raw, default)
        return default
    if minimum is not None and value < minimum:
        logger.warning("%s=%d is below %d, using %s", key, value, minimum, default)
        return default
    return value


def _env_list(key: str, default: List[str]) -> List[str]:
    raw = _env(key)
    if raw is None:
        return default
    items = [part.strip() for part in raw.split(",") if part.strip()]
    return items or default


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return settings resolved from the environment (cached)."""
    return Settings(
        derive_jitter=_env_bool("POINTCLOUD_DERIVE_JITTER", False),
        seed=_env_int("POINTCLOUD_SEED", None),
        max_upload_bytes=_env_int("POINTCLOUD_MAX_UPLOAD_BYTES", DEFAULT_MAX_UPLOAD_BYTES, minimum=1),
        workers=_env_int("POINTCLOUD_WORKERS", DEFAULT_WORKERS, minimum=1),
        cors_origins=tuple(_env_list("POINTCLOUD_CORS_ORIGINS", ["*"])),
    )
