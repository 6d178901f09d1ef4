from __future__ import annotations

import logging
import os
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator


logger = logging.getLogger(__name__)

PLAN_PRICE_ENV = {
    "ai-starter": "STRIPE_PRICE_AI_STARTER",
    "ai-professional": "STRIPE_PRICE_AI_PROFESSIONAL",
    "ai-enterprise": "STRIPE_PRICE_AI_ENTERPRISE",
    "hybrid-starter": "STRIPE_PRICE_HYBRID_STARTER",
    "hybrid-professional": "STRIPE_PRICE_HYBRID_PROFESSIONAL",
    "hybrid-enterprise": "STRIPE_PRICE_HYBRID_ENTERPRISE",
}


def _getenv(env: Mapping[str, str], name: str) -> Optional[str]:
    value = env.get(name)
    if value is None:
        return None
    value = value.strip()
    return value if value else None


class Settings(BaseModel):
    """
    Process configuration, read once from the environment at startup.

    Field names match the environment variable names. Everything without a
    default is required: the process refuses to start without it.
    """

    ENVIRONMENT: str = "development"

    MONGO_URI: str
    MONGO_DB: str = "transcription_service"
    MONGO_TRANSACTIONS: bool = False

    STRIPE_SECRET_KEY: str
    STRIPE_WEBHOOK_SECRET: str
    STRIPE_PRICE_IDS: Dict[str, str] = Field(default_factory=dict)

    FIREBASE_PROJECT_ID: str
    FIREBASE_CLIENT_EMAIL: str
    FIREBASE_PRIVATE_KEY: str

    SPEECHMATICS_API_KEY: Optional[str] = None
    SPEECHMATICS_API_URL: str = "https://asr.api.speechmatics.com/v2"

    LEDGER_LOG_PATH: Path = Path("logs/ledger.log")
    AUTH_COOKIE_NAME: str = "auth-token"
    AUTH_COOKIE_MAX_AGE_SECONDS: int = Field(default=60 * 60 * 24 * 5, gt=0)

    TRANSCRIPT_INLINE_LIMIT_BYTES: int = Field(default=900_000, gt=0)
    VENDOR_POLL_INTERVAL_SECONDS: float = Field(default=5.0, gt=0)
    VENDOR_MAX_POLLS: int = Field(default=120, gt=0)
    JOB_PROCESS_RETRIES: int = Field(default=3, ge=1)
    STUCK_JOB_MINUTES: int = Field(default=30, gt=0)
    LOW_WALLET_THRESHOLD: Decimal = Decimal("5.00")

    RATE_LIMIT_ENABLED: bool = True
    CORS_ORIGINS: str = ""
    PUBLIC_APP_URL: str = Field(default="", description="Base URL that public share links point at.")

    @field_validator("FIREBASE_PRIVATE_KEY")
    @classmethod
    def _unescape_private_key(cls, value: str) -> str:
        # Keys pasted into env files usually carry literal "\n" sequences.
        return value.replace("\\n", "\n")

    @property
    def cors_origins(self) -> List[str]:
        return [origin.strip() for origin in self.CORS_ORIGINS.split(",") if origin.strip()]

    @property
    def speechmatics_enabled(self) -> bool:
        return bool(self.SPEECHMATICS_API_KEY)

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if env is None else env
        raw: Dict[str, Any] = {}
        for name in cls.model_fields:
            if name == "STRIPE_PRICE_IDS":
                continue
            value = _getenv(env, name)
            if value is not None:
                raw[name] = value
        raw["STRIPE_PRICE_IDS"] = {
            plan_id: price
            for plan_id, var in PLAN_PRICE_ENV.items()
            if (price := _getenv(env, var)) is not None
        }
        return cls.model_validate(raw)


def load_settings(env: Optional[Mapping[str, str]] = None) -> Settings:
    """
    Validate configuration eagerly. A missing or malformed required
    variable is fatal: every problem is logged and the process exits.
    """
    try:
        settings = Settings.from_env(env)
    except ValidationError as exc:
        for error in exc.errors():
            name = ".".join(str(part) for part in error["loc"])
            if error["type"] == "missing":
                logger.critical("Missing required environment variable: %s", name)
            else:
                logger.critical("Invalid environment variable %s: %s", name, error["msg"])
        raise SystemExit(1) from exc

    if not settings.speechmatics_enabled:
        logger.warning(
            "SPEECHMATICS_API_KEY is not set; new AI/hybrid jobs will wait in pending-transcription"
        )
    missing_prices = sorted(set(PLAN_PRICE_ENV) - set(settings.STRIPE_PRICE_IDS))
    if missing_prices:
        logger.warning("No Stripe price configured for plans: %s", ", ".join(missing_prices))
    return settings
