# ==================================================================================
# config.py: environment-driven settings (pydantic-settings, .env aware)
# ==================================================================================
import logging
import sys
from typing import Optional

from pydantic import ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    # ------------------------
    # TENANT
    # ------------------------
    COMPANY_ID: Optional[str] = None

    # ------------------------
    # DATABASE
    # ------------------------
    # Unset means the in-memory store (local dev only, nothing survives a restart)
    DATABASE_URL: Optional[str] = None

    # ------------------------
    # IDENTITY
    # ------------------------
    SECRET_KEY: str = "change-me"
    ALGORITHM: str = "HS256"
    IDENTITY_HEADER: str = "x-user-token"

    # ------------------------
    # MEMBERSHIP WORKFLOW
    # ------------------------
    REQUIRE_APPROVAL: bool = True
    DEFAULT_GRANT_DAYS: int = 7

    # ------------------------
    # HTTP / RUNTIME
    # ------------------------
    CORS_ORIGINS: list[str] = ["http://localhost:3000", "http://127.0.0.1:3000"]
    ENVIRONMENT: str = "development"  # 'development' | 'production'
    LOG_LEVEL: str = "INFO"

    @property
    def IS_PRODUCTION(self) -> bool:
        return self.ENVIRONMENT.lower() == "production"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


def load_settings() -> Settings:
    try:
        return Settings()
    except ValidationError as e:
        logger.error("Environment configuration error, missing or invalid settings:\n%s", e)
        sys.exit(1)


settings = load_settings()
