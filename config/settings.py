"""Environment-driven service settings."""

from __future__ import annotations

import logging
import math
import os
import re
from dataclasses import dataclass

from dotenv import find_dotenv, load_dotenv

logger = logging.getLogger(__name__)

DEFAULT_REDIS_ADDR = "localhost:6379"
DEFAULT_CACHE_BACKEND = "redis"
DEFAULT_CACHE_TTL_SECONDS = 6 * 60 * 60
DEFAULT_YTDLP_CMD = "yt-dlp"
DEFAULT_YTDLP_TIMEOUT_SECONDS = 15.0
DEFAULT_MAX_CONCURRENCY = 8
DEFAULT_SERVER_HOST = "0.0.0.0"
DEFAULT_SERVER_PORT = 8080
DEFAULT_LOG_LEVEL = "INFO"

CACHE_BACKENDS = {"redis", "memory", "none"}

_DURATION_PART_RE = re.compile(r"(\d+(?:\.\d+)?)(ns|us|µs|ms|s|m|h)")
_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}


@dataclass(frozen=True)
class Settings:
    redis_addr: str = DEFAULT_REDIS_ADDR
    redis_password: str | None = None
    redis_db: int = 0
    cache_backend: str = DEFAULT_CACHE_BACKEND
    cache_ttl_seconds: float = DEFAULT_CACHE_TTL_SECONDS
    ytdlp_cmd: str = DEFAULT_YTDLP_CMD
    ytdlp_timeout_seconds: float = DEFAULT_YTDLP_TIMEOUT_SECONDS
    max_concurrency: int = DEFAULT_MAX_CONCURRENCY
    server_host: str = DEFAULT_SERVER_HOST
    server_port: int = DEFAULT_SERVER_PORT
    log_level: str = DEFAULT_LOG_LEVEL


def parse_duration(value: str) -> float:
    """Parse ``"15s"``, ``"1h30m"``, ``"250ms"`` or bare seconds into seconds.

    Raises ``ValueError`` for anything else.
    """
    text = (value or "").strip()
    if not text:
        raise ValueError("empty duration")
    try:
        seconds = float(text)
    except ValueError:
        pass
    else:
        if not math.isfinite(seconds):
            raise ValueError(f"invalid duration: {value!r}")
        return seconds
    total = 0.0
    pos = 0
    for match in _DURATION_PART_RE.finditer(text):
        if match.start() != pos:
            raise ValueError(f"invalid duration: {value!r}")
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    if pos != len(text) or pos == 0:
        raise ValueError(f"invalid duration: {value!r}")
    return total


def _env_or_default(name, default):
    value = os.environ.get(name)
    return value if value else default


def _env_duration(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if not raw:
        return default
    try:
        seconds = parse_duration(raw)
    except ValueError:
        logger.warning("Ignoring %s=%r: not a duration; using %ss", name, raw, default)
        return default
    if seconds <= 0:
        logger.warning("Ignoring %s=%r: must be positive; using %ss", name, raw, default)
        return default
    return seconds


def _env_int(name: str, default: int, *, minimum: int | None = None) -> int:
    raw = os.environ.get(name)
    if not raw:
        return default
    try:
        value = int(raw.strip())
    except ValueError:
        logger.warning("Ignoring %s=%r: not an integer; using %s", name, raw, default)
        return default
    if minimum is not None and value < minimum:
        logger.warning("Ignoring %s=%r: must be >= %s; using %s", name, raw, minimum, default)
        return default
    return value


def load_settings(*, dotenv: bool = True) -> Settings:
    """Build ``Settings`` from the process environment.

    When ``dotenv`` is true the nearest ``.env`` file at or above the working
    directory is loaded first; variables already set in the environment win.
    """
    if dotenv:
        dotenv_path = find_dotenv(usecwd=True)
        if dotenv_path:
            load_dotenv(dotenv_path)
        else:
            logger.info("No .env file found, relying on system environment variables")

    cache_backend = _env_or_default("CACHE_BACKEND", DEFAULT_CACHE_BACKEND).strip().lower()
    if cache_backend not in CACHE_BACKENDS:
        logger.warning(
            "Ignoring CACHE_BACKEND=%r: expected one of %s; using %s",
            cache_backend,
            sorted(CACHE_BACKENDS),
            DEFAULT_CACHE_BACKEND,
        )
        cache_backend = DEFAULT_CACHE_BACKEND

    return Settings(
        redis_addr=_env_or_default("REDIS_ADDR", DEFAULT_REDIS_ADDR),
        redis_password=os.environ.get("REDIS_PASSWORD") or None,
        redis_db=_env_int("REDIS_DB", 0, minimum=0),
        cache_backend=cache_backend,
        cache_ttl_seconds=_env_duration("CACHE_TTL", DEFAULT_CACHE_TTL_SECONDS),
        ytdlp_cmd=_env_or_default("YTDLP_CMD", DEFAULT_YTDLP_CMD),
        ytdlp_timeout_seconds=_env_duration("YTDLP_TIMEOUT", DEFAULT_YTDLP_TIMEOUT_SECONDS),
        max_concurrency=_env_int("MAX_CONCURRENCY", DEFAULT_MAX_CONCURRENCY, minimum=1),
        server_host=_env_or_default("SERVER_HOST", DEFAULT_SERVER_HOST),
        server_port=_env_int("SERVER_PORT", DEFAULT_SERVER_PORT, minimum=1),
        log_level=_env_or_default("LOG_LEVEL", DEFAULT_LOG_LEVEL).strip().upper(),
    )
