"""Runtime configuration read from the environment (and ``.env`` via python-dotenv)."""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass

from dotenv import load_dotenv

log = logging.getLogger(__name__)


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        log.warning("Ignoring non-integer %s=%r, using %s", name, raw, default)
        return default


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        log.warning("Ignoring non-numeric %s=%r, using %s", name, raw, default)
        return default


@dataclass(frozen=True)
class Settings:
    token: str = ""
    max_queue_size: int = 100
    default_volume: int = 50
    inactivity_timeout: float = 300.0
    empty_channel_timeout: float = 120.0
    play_confirm_timeout: float = 15.0
    join_timeout: float = 20.0
    advance_retry_delay: float = 0.5
    metrics_port: int = 9090
    web_port: int | None = None
    log_level: str = "INFO"
    cookiefile: str | None = None

    @classmethod
    def from_env(cls) -> Settings:
        load_dotenv()
        return cls(
            token=os.getenv("DISCORD_TOKEN", ""),
            max_queue_size=_int_env("MAX_QUEUE_SIZE", 100),
            default_volume=max(0, min(200, _int_env("DEFAULT_VOLUME", 50))),
            inactivity_timeout=_float_env("INACTIVITY_TIMEOUT", 300.0),
            empty_channel_timeout=_float_env("EMPTY_CHANNEL_TIMEOUT", 120.0),
            play_confirm_timeout=_float_env("PLAY_CONFIRM_TIMEOUT", 15.0),
            join_timeout=_float_env("JOIN_TIMEOUT", 20.0),
            advance_retry_delay=_float_env("ADVANCE_RETRY_DELAY", 0.5),
            metrics_port=_int_env("METRICS_PORT", 9090),
            web_port=_int_env("WEB_PORT", 0) or None,
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            cookiefile=os.getenv("YTDL_COOKIEFILE") or None,
        )
