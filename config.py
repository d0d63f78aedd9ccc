"""Centralized configuration for the TruckBook bot.

All secrets must come from environment variables.
This module loads .env for LOCAL development only.
In production, prefer real environment variables.
"""

from __future__ import annotations

import os
from dataclasses import dataclass

from dotenv import load_dotenv

# override=False keeps real environment variables ahead of a stray .env file
load_dotenv(override=False)


def get_startup_info() -> str:
    """
    Get one-line startup info for logging.
    Returns: "Python X.Y.Z | git:abc1234 | api:http://..."
    """
    import sys
    import subprocess

    python_ver = f"{sys.version_info.major}.{sys.version_info.minor}.{sys.version_info.micro}"

    # Try to get git commit (safe to fail)
    try:
        git_sha = subprocess.check_output(
            ["git", "rev-parse", "--short", "HEAD"],
            stderr=subprocess.DEVNULL,
            timeout=2
        ).decode().strip()
    except (OSError, subprocess.SubprocessError):
        git_sha = "unknown"

    return f"Python {python_ver} | git:{git_sha} | api:{API_BASE_URL}"


def _require_env(name: str) -> str:
    val = os.getenv(name, "").strip()
    if not val:
        raise RuntimeError(
            f"❌ Required environment variable '{name}' is missing or empty. "
            f"Set it in your .env or server environment."
        )
    return val


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise RuntimeError(
            f"❌ Environment variable '{name}' must be an integer, got: {raw}"
        ) from e


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise RuntimeError(
            f"❌ Environment variable '{name}' must be a number, got: {raw}"
        ) from e


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name, "").strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "on")


# =============================================================================
# Telegram
# =============================================================================

def get_bot_token() -> str:
    """BOT_TOKEN is only required when the bot actually starts."""
    return _require_env("BOT_TOKEN")


_admins_raw = os.getenv("ADMINS", "").strip()
ADMINS = [int(x.strip()) for x in _admins_raw.split(",") if x.strip().isdigit()]

REDIS_URL = os.getenv("REDIS_URL", "").strip()


# =============================================================================
# Backend API
# =============================================================================
API_BASE_URL = os.getenv("API_BASE_URL", "http://localhost:5000/api/v1").strip().rstrip("/")

HTTP_TOTAL_TIMEOUT = _env_float("HTTP_TOTAL_TIMEOUT", 30.0)


# =============================================================================
# Booking workflow
# =============================================================================
AREA_LOAD_LIMIT = _env_int("AREA_LOAD_LIMIT", 500)
AREA_QUERY_LIMIT = _env_int("AREA_QUERY_LIMIT", 50)
LOOKUP_DEBOUNCE_SECONDS = _env_float("LOOKUP_DEBOUNCE_SECONDS", 0.3)
PAYMENT_TIMEOUT_SECONDS = _env_float("PAYMENT_TIMEOUT_SECONDS", 45.0)

# Off by default: a failed quote blocks submission instead of pricing at a default
FARE_FALLBACK_ENABLED = _env_bool("FARE_FALLBACK_ENABLED", False)
DEFAULT_FARE = _env_float("DEFAULT_FARE", 500.0)
DEFAULT_DISTANCE_KM = _env_float("DEFAULT_DISTANCE_KM", 10.0)

DEFAULT_POST_CODE = os.getenv("DEFAULT_POST_CODE", "1000").strip()
DEFAULT_COUNTRY = os.getenv("DEFAULT_COUNTRY", "Bangladesh").strip()
CURRENCY_SYMBOL = os.getenv("CURRENCY_SYMBOL", "৳").strip()


@dataclass(frozen=True)
class WorkflowSettings:
    """Knobs of one booking workflow instance."""

    area_load_limit: int = AREA_LOAD_LIMIT
    area_query_limit: int = AREA_QUERY_LIMIT
    lookup_debounce_seconds: float = LOOKUP_DEBOUNCE_SECONDS
    payment_timeout_seconds: float = PAYMENT_TIMEOUT_SECONDS
    fare_fallback_enabled: bool = FARE_FALLBACK_ENABLED
    default_fare: float = DEFAULT_FARE
    default_distance_km: float = DEFAULT_DISTANCE_KM
    default_post_code: str = DEFAULT_POST_CODE
    default_country: str = DEFAULT_COUNTRY


def get_workflow_settings() -> WorkflowSettings:
    return WorkflowSettings()
