"""Configuration loader.

Reads environment variables and `.env` to configure the service.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

# Load variables from a .env file if present (project root).
load_dotenv(dotenv_path=Path(__file__).resolve().parents[1] / ".env")


def _get_env(name: str, default: Optional[str] = None) -> Optional[str]:
    return os.environ.get(name, default)


def _parse_int(value: Optional[str], default: int) -> int:
    try:
        return int(value) if value is not None else default
    except ValueError:
        return default


def _parse_float(value: Optional[str], default: float) -> float:
    try:
        return float(value) if value is not None else default
    except ValueError:
        return default


def _get_list(name: str) -> List[str]:
    raw = _get_env(name, "") or ""
    return [s.strip() for s in raw.split(",") if s.strip()]


# ---- State store -------------------------------------------------------------

# SQLite connection string: "sqlite:///path/to/monitor.db" or a bare path.
DATABASE_URL: str = _get_env("DATABASE_URL", "sqlite:///monitor.db") or ""

# Logging level: DEBUG, INFO, WARNING, ERROR.
LOG_LEVEL: str = _get_env("LOG_LEVEL", "INFO")

# ---- Fetching ----------------------------------------------------------------

SITE_URL: str = _get_env("SITE_URL", "http://steamrmt.com/skinbuy.html")

USER_AGENT: str = _get_env(
    "USER_AGENT",
    "Mozilla/5.0 (compatible; SkinMonitor/1.0; +https://github.com/)",
)

# Seconds between two poll cycles.
POLL_INTERVAL_SECONDS: int = _parse_int(_get_env("POLL_INTERVAL_SECONDS"), 300)

FETCH_TIMEOUT_SECONDS: float = _parse_float(_get_env("FETCH_TIMEOUT_SECONDS"), 30.0)

# ---- Mobile push (FCM) -------------------------------------------------------

FCM_SERVER_KEY: Optional[str] = _get_env("FCM_SERVER_KEY")
FCM_ENDPOINT: str = _get_env("FCM_ENDPOINT", "https://fcm.googleapis.com/fcm/send")

# Each registration id becomes a match-all mobile subscription on startup.
FCM_REGISTRATION_IDS: List[str] = _get_list("FCM_REGISTRATION_IDS")

# ---- Browser push (Web Push / VAPID) -----------------------------------------

VAPID_PRIVATE_KEY: Optional[str] = _get_env("VAPID_PRIVATE_KEY")
VAPID_CLAIM_SUBJECT: str = _get_env("VAPID_CLAIM_SUBJECT", "mailto:admin@example.com")

# Optional JSON file with subscriptions to seed into the registry.
SUBSCRIPTIONS_FILE: Optional[str] = _get_env("SUBSCRIPTIONS_FILE")

# ---- Dispatch ----------------------------------------------------------------

# Retries after the first attempt; a message is tried MAX_DISPATCH_RETRIES + 1 times.
MAX_DISPATCH_RETRIES: int = _parse_int(_get_env("MAX_DISPATCH_RETRIES"), 3)

DISPATCH_TIMEOUT_SECONDS: float = _parse_float(_get_env("DISPATCH_TIMEOUT_SECONDS"), 10.0)
BACKOFF_BASE_SECONDS: float = _parse_float(_get_env("BACKOFF_BASE_SECONDS"), 1.0)
BACKOFF_MAX_SECONDS: float = _parse_float(_get_env("BACKOFF_MAX_SECONDS"), 60.0)

# Worker threads per channel.
DISPATCH_WORKERS: int = _parse_int(_get_env("DISPATCH_WORKERS"), 4)

# Token bucket per channel: refill rate (tokens/second) and burst capacity.
MOBILE_PUSH_RATE: float = _parse_float(_get_env("MOBILE_PUSH_RATE"), 5.0)
MOBILE_PUSH_BURST: int = _parse_int(_get_env("MOBILE_PUSH_BURST"), 10)
WEB_PUSH_RATE: float = _parse_float(_get_env("WEB_PUSH_RATE"), 5.0)
WEB_PUSH_BURST: int = _parse_int(_get_env("WEB_PUSH_BURST"), 10)

# ---- Deduplication -----------------------------------------------------------

DEDUP_TTL_SECONDS: float = _parse_float(_get_env("DEDUP_TTL_SECONDS"), 3600.0)
DEDUP_MAX_ENTRIES: int = _parse_int(_get_env("DEDUP_MAX_ENTRIES"), 10000)

# ---- Error reporting ---------------------------------------------------------

# Leave unset to disable Sentry; nothing else changes.
SENTRY_DSN: Optional[str] = _get_env("SENTRY_DSN")


# ---- Validation --------------------------------------------------------------

def sqlite_path(url: str = "") -> str:
    """Strip the sqlite:/// scheme from a connection string."""
    url = url or DATABASE_URL
    for prefix in ("sqlite:///", "sqlite://"):
        if url.startswith(prefix):
            return url[len(prefix):] or ":memory:"
    return url


def validate() -> None:
    """Validate required configuration parameters."""
    if not DATABASE_URL:
        raise RuntimeError("DATABASE_URL must be set. See .env.example for details.")
    if not (FCM_SERVER_KEY or VAPID_PRIVATE_KEY):
        raise RuntimeError(
            "At least one delivery channel must be configured "
            "(FCM_SERVER_KEY and/or VAPID_PRIVATE_KEY)."
        )
    if POLL_INTERVAL_SECONDS <= 0:
        raise RuntimeError("POLL_INTERVAL_SECONDS must be positive.")
    if MAX_DISPATCH_RETRIES < 0:
        raise RuntimeError("MAX_DISPATCH_RETRIES must not be negative.")
    if DISPATCH_TIMEOUT_SECONDS <= 0 or DISPATCH_WORKERS <= 0:
        raise RuntimeError("DISPATCH_TIMEOUT_SECONDS and DISPATCH_WORKERS must be positive.")
    if min(MOBILE_PUSH_RATE, WEB_PUSH_RATE) <= 0 or min(MOBILE_PUSH_BURST, WEB_PUSH_BURST) <= 0:
        raise RuntimeError("Push rate limits must be positive.")
    if DEDUP_TTL_SECONDS <= 0 or DEDUP_MAX_ENTRIES <= 0:
        raise RuntimeError("DEDUP_TTL_SECONDS and DEDUP_MAX_ENTRIES must be positive.")


__all__ = [
    # Store
    "DATABASE_URL",
    "LOG_LEVEL",
    # Fetching
    "SITE_URL",
    "USER_AGENT",
    "POLL_INTERVAL_SECONDS",
    "FETCH_TIMEOUT_SECONDS",
    # Channels
    "FCM_SERVER_KEY",
    "FCM_ENDPOINT",
    "FCM_REGISTRATION_IDS",
    "VAPID_PRIVATE_KEY",
    "VAPID_CLAIM_SUBJECT",
    "SUBSCRIPTIONS_FILE",
    # Dispatch
    "MAX_DISPATCH_RETRIES",
    "DISPATCH_TIMEOUT_SECONDS",
    "BACKOFF_BASE_SECONDS",
    "BACKOFF_MAX_SECONDS",
    "DISPATCH_WORKERS",
    "MOBILE_PUSH_RATE",
    "MOBILE_PUSH_BURST",
    "WEB_PUSH_RATE",
    "WEB_PUSH_BURST",
    # Dedup
    "DEDUP_TTL_SECONDS",
    "DEDUP_MAX_ENTRIES",
    # Error reporting
    "SENTRY_DSN",
    # Helpers
    "sqlite_path",
    "validate",
]
