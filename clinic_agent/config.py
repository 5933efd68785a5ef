"""Centralized configuration for the clinic scheduling agent.

Secret resolution order (per variable):
  1. Environment variable / ``.env`` file  (local dev)
  2. AWS SSM Parameter Store SecureString  (when ``AWS_EXECUTION_ENV`` is set)

The SSM paths follow the convention ``/clinic-agent/<VARIABLE_NAME>``.
"""

from __future__ import annotations

import logging
import os

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

# ── Feature flag: running on AWS? ────────────────────────────────────
_ON_AWS = bool(os.getenv("AWS_EXECUTION_ENV"))


# ── Secret resolution ────────────────────────────────────────────────

def _get_ssm_parameter(name: str) -> str | None:
    """Fetch a SecureString from SSM Parameter Store.

    Returns ``None`` if the parameter does not exist or boto3 is
    unavailable.  Errors are logged but never raised so that local-dev
    fallback still works.
    """
    try:
        import boto3  # noqa: PLC0415 — lazy import to avoid boto3 dep in tests

        ssm = boto3.client("ssm")
        resp = ssm.get_parameter(Name=f"/clinic-agent/{name}", WithDecryption=True)
        return resp["Parameter"]["Value"]
    except Exception:
        logger.debug("SSM lookup for %s failed (expected locally)", name)
        return None


def _require_env(name: str) -> str:
    """Return a config value from env-var or SSM, or raise a clear error."""
    value = os.getenv(name)
    if value and not value.startswith("your_"):
        return value

    if _ON_AWS:
        ssm_value = _get_ssm_parameter(name)
        if ssm_value:
            return ssm_value

    raise OSError(
        f"Missing required configuration: {name}. "
        f"Set it in .env (local) or SSM Parameter Store /clinic-agent/{name} (AWS)."
    )


def _optional_env(name: str, default: str = "") -> str:
    """Like ``_require_env`` but falls back to *default* instead of raising."""
    value = os.getenv(name)
    if value:
        return value
    if _ON_AWS:
        ssm_value = _get_ssm_parameter(name)
        if ssm_value:
            return ssm_value
    return default


# ── LLM ─────────────────────────────────────────────────────────────
ANTHROPIC_API_KEY: str = _require_env("ANTHROPIC_API_KEY")
MODEL_NAME: str = os.getenv("MODEL_NAME", "claude-sonnet-4-5")
MODEL_TIMEOUT_SECONDS: float = float(os.getenv("MODEL_TIMEOUT_SECONDS", "60"))

# ── Database ────────────────────────────────────────────────────────
DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///clinic_agent.db")

# ── Google Calendar (OAuth2 refresh-token grant) ────────────────────
GOOGLE_CLIENT_ID: str = _optional_env("GOOGLE_CLIENT_ID")
GOOGLE_CLIENT_SECRET: str = _optional_env("GOOGLE_CLIENT_SECRET")
GOOGLE_REFRESH_TOKEN: str = _optional_env("GOOGLE_REFRESH_TOKEN")
GOOGLE_CALENDAR_BASE_URL: str = "https://www.googleapis.com/calendar/v3"
GOOGLE_TOKEN_URL: str = "https://oauth2.googleapis.com/token"

# ── WhatsApp (Evolution API) ────────────────────────────────────────
EVOLUTION_API_URL: str = _optional_env("EVOLUTION_API_URL", "http://localhost:8080")
EVOLUTION_API_KEY: str = _optional_env("EVOLUTION_API_KEY")
EVOLUTION_INSTANCE_NAME: str = os.getenv("EVOLUTION_INSTANCE_NAME", "clinic")

# ── Clinic ──────────────────────────────────────────────────────────
TIMEZONE: str = os.getenv("TIMEZONE", "America/Sao_Paulo")
CLINIC_NAME: str = os.getenv("CLINIC_NAME", "Smile Dental Clinic")
BOT_NAME: str = os.getenv("BOT_NAME", "Sofia")
CLINIC_PHONE: str = os.getenv("CLINIC_PHONE", "")
CLINIC_ADDRESS: str = os.getenv("CLINIC_ADDRESS", "")
ATTENDANT_PHONE: str = os.getenv("ATTENDANT_PHONE", "")

# ── Intake / scheduler cadence ──────────────────────────────────────
DEBOUNCE_SECONDS: float = float(os.getenv("DEBOUNCE_SECONDS", "10"))
REMINDER_INTERVAL_MINUTES: int = int(os.getenv("REMINDER_INTERVAL_MINUTES", "5"))

# ── Server ──────────────────────────────────────────────────────────
SERVER_HOST: str = os.getenv("SERVER_HOST", "0.0.0.0")
SERVER_PORT: int = int(os.getenv("SERVER_PORT", "8000"))
CORS_ORIGINS: list[str] = os.getenv(
    "CORS_ORIGINS",
    "http://localhost:3000,http://localhost:5173",
).split(",")
