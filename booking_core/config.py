from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Annotated, Dict, List, Literal, Optional

from pydantic import SecretStr, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

_PROJECT_ROOT = Path(__file__).resolve().parents[1]
_ENV_PATH = _PROJECT_ROOT / ".env"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=str(_ENV_PATH),
        env_ignore_empty=True,
        extra="ignore",
    )

    PROJECT_NAME: str = "Tour Booking Core"
    VERSION: str = "1.0.0"

    # Provider selection
    BOOKING_PROVIDER: Literal["memory", "acuity", "peek"] = "memory"
    PROVIDER_TIMEOUT_SECONDS: float = 10.0
    ACUITY_API_URL: str = "https://acuityscheduling.com/api/v1"
    ACUITY_USER_ID: str = ""
    ACUITY_API_KEY: SecretStr = SecretStr("")
    # Tour id to appointment type id, e.g. "prague-castle-tour:101,food-tour:102"
    ACUITY_APPOINTMENT_TYPES: Annotated[Dict[str, str], NoDecode] = {}
    ACUITY_GROUP_SIZE_FIELD_ID: int = 1
    ACUITY_SPECIAL_REQUESTS_FIELD_ID: int = 2
    PEEK_API_URL: str = "https://api.peek.com/v2"
    PEEK_API_KEY: SecretStr = SecretStr("")

    # Catalog and business rules
    CATALOG_PATH: Optional[Path] = None
    TIMEZONE: str = "Europe/Prague"
    CURRENCY: str = "EUR"
    MIN_NOTICE_HOURS: float = 2.0
    MAX_ADVANCE_DAYS: Optional[int] = None
    BULK_MAX_DAYS: int = 30
    PRICING_OPTION_GROUP_SIZES: Annotated[List[int], NoDecode] = [1, 2, 4, 6, 8]
    REFUND_PROCESSING_TIME: str = "3-5 business days"

    # Request integrity
    SITE_ORIGIN: str = "http://localhost:3000"
    ALLOWED_ORIGINS: Annotated[List[str], NoDecode] = []
    ENFORCE_ORIGIN: bool = True
    TRUST_FORWARDED_FOR: bool = False

    # Sessions
    SESSION_SECRET: SecretStr = SecretStr("insecure-development-session-secret")
    SESSION_TTL_SECONDS: int = 24 * 60 * 60
    SESSION_COOKIE_SECURE: bool = False

    # Rate limits (attempts per window)
    BOOKING_RATE_LIMIT: int = 10
    BOOKING_RATE_WINDOW_SECONDS: int = 15 * 60
    CANCEL_RATE_LIMIT: int = 5
    CANCEL_RATE_WINDOW_SECONDS: int = 15 * 60
    IDEMPOTENCY_TTL_SECONDS: int = 24 * 60 * 60

    # Health classification
    MONITOR_MAX_EVENTS: int = 1000
    HEALTH_WINDOW_MINUTES: int = 30
    DEGRADED_ERROR_RATE: float = 20.0
    UNHEALTHY_ERROR_RATE: float = 50.0
    DEGRADED_DURATION_MS: float = 5000.0
    UNHEALTHY_DURATION_MS: float = 10000.0

    # Alerting
    ALERT_ERROR_RATE: float = 25.0
    ALERT_DURATION_MS: float = 3000.0
    ALERT_CONSECUTIVE_FAILURES: int = 5
    ALERT_COOLDOWN_SECONDS: int = 5 * 60
    ALERT_WEBHOOK_URL: Optional[str] = None

    @field_validator("ALLOWED_ORIGINS", mode="before")
    @classmethod
    def assemble_allowed_origins(cls, v: str | List[str]) -> List[str]:
        if isinstance(v, str) and not v.startswith("["):
            return [i.strip() for i in v.split(",") if i.strip()]
        elif isinstance(v, list):
            return v
        return []

    @field_validator("PRICING_OPTION_GROUP_SIZES", mode="before")
    @classmethod
    def assemble_group_sizes(cls, v: str | List[int]) -> List[int]:
        if isinstance(v, str) and not v.startswith("["):
            return [int(i) for i in v.split(",") if i.strip()]
        return v

    @field_validator("ACUITY_APPOINTMENT_TYPES", mode="before")
    @classmethod
    def assemble_appointment_types(cls, v: str | Dict[str, str]) -> Dict[str, str]:
        if isinstance(v, str) and not v.startswith("{"):
            pairs = (i.split(":", 1) for i in v.split(",") if ":" in i)
            return {tour.strip(): type_id.strip() for tour, type_id in pairs if tour.strip()}
        return v

    @property
    def allowed_origins(self) -> List[str]:
        return [self.SITE_ORIGIN, *self.ALLOWED_ORIGINS]


@lru_cache
def get_settings() -> Settings:
    return Settings()
