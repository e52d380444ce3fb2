from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import field_validator, model_validator
from typing import Any, ClassVar, Optional
from pathlib import Path
import os


class Settings(BaseSettings):
    API_V1_STR: str = "/api/v1"

    # JWT configuration (provide a fallback for local development)
    SECRET_KEY: str = "fallback_secret_for_dev_only"
    ALGORITHM: str = "HS256"

    # Database URL
    # Use an absolute path so running the app from different directories
    # (e.g., repo root or backend/) always resolves the same DB file.
    BASE_DIR: ClassVar[Path] = Path(__file__).resolve().parents[2]
    SQLALCHEMY_DATABASE_URL: str = f"sqlite:///{BASE_DIR / 'marketplace.db'}"

    # Redis connection URL for the change feed
    REDIS_URL: str = "redis://localhost:6379/0"
    WS_BUS_ENABLED: bool = False

    # Bid lifecycle
    BID_EXPIRY_MINUTES: int = 30
    # Optional per-tier override; falls back to BID_EXPIRY_MINUTES when unset
    PRIORITY_BID_EXPIRY_MINUTES: Optional[int] = None
    BID_MIN_ETA_MINUTES: int = 15
    BID_MAX_ETA_MINUTES: int = 480
    BID_NEAR_EXPIRY_SECONDS: int = 300
    BID_EXPIRY_SWEEP_SECONDS: int = 60

    # Change-feed reconnection policy
    REALTIME_MAX_RECONNECT_ATTEMPTS: int = 5
    REALTIME_BACKOFF_BASE_SECONDS: float = 1.0
    REALTIME_BACKOFF_MAX_SECONDS: float = 30.0

    # Payment gateway base URL
    PAYMENT_GATEWAY_URL: str = "https://example.com"
    PAYMENT_GATEWAY_TIMEOUT: float = 10.0

    LOG_LEVEL: str = "INFO"

    @field_validator("PAYMENT_GATEWAY_URL", "REDIS_URL", mode="before")
    def strip_whitespace(cls, v: Any) -> Any:
        if isinstance(v, str):
            return v.strip()
        return v

    @field_validator("PRIORITY_BID_EXPIRY_MINUTES", mode="before")
    def blank_as_none(cls, v: Any) -> Any:
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @model_validator(mode="after")
    def check_eta_bounds(cls, values: "Settings") -> "Settings":
        if values.BID_MIN_ETA_MINUTES > values.BID_MAX_ETA_MINUTES:
            raise ValueError("BID_MIN_ETA_MINUTES must not exceed BID_MAX_ETA_MINUTES")
        if values.BID_EXPIRY_MINUTES <= 0:
            raise ValueError("BID_EXPIRY_MINUTES must be positive")
        return values

    model_config = SettingsConfigDict(
        extra="ignore",
        case_sensitive=True,
    )


def load_settings() -> "Settings":
    return Settings(_env_file=os.getenv("ENV_FILE", str(Path(__file__).resolve().parents[3] / ".env")))


settings = load_settings()
