import logging
from functools import lru_cache

from dotenv import load_dotenv
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load environment variables from .env file
load_dotenv()


def _split(raw: str) -> frozenset[str]:
    return frozenset(part.strip().lower() for part in raw.split(",") if part.strip())


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # ---- DB ----
    DATABASE_URL: str = "sqlite+aiosqlite:///./halls.db"
    DB_ECHO: bool = False

    # ---- Reservation ledger ----
    SLOT_MINUTES: int = 15
    CLAIM_HOLD_SECONDS: int = 120
    SWEEP_INTERVAL_SECONDS: int = 60

    # ---- Roles (comma separated) ----
    AUTO_APPROVE_ROLES: str = "faculty"
    STAFF_ROLES: str = "admin"
    BOOKING_ROLES: str = "student,faculty,admin"

    # ---- Mail ----
    SMTP_HOST: str | None = None
    SMTP_PORT: int = 587
    SMTP_USERNAME: str | None = None
    SMTP_PASSWORD: str | None = None
    SMTP_USE_SSL: bool = False
    SENDER_EMAIL: str = "halls@localhost"
    CLIENT_URL: str = "http://localhost:3000"

    # ---- Web ----
    CORS_ORIGINS: str = "*"
    LOG_LEVEL: str = "INFO"

    @property
    def auto_approve_roles(self) -> frozenset[str]:
        return _split(self.AUTO_APPROVE_ROLES)

    @property
    def staff_roles(self) -> frozenset[str]:
        return _split(self.STAFF_ROLES)

    @property
    def booking_roles(self) -> frozenset[str]:
        return _split(self.BOOKING_ROLES)

    @property
    def cors_origins(self) -> list[str]:
        return [origin.strip() for origin in self.CORS_ORIGINS.split(",") if origin.strip()]


@lru_cache
def get_settings() -> Settings:
    return Settings()


def configure_logging(level: str | None = None) -> None:
    """Install one stream handler on the root logger."""
    logging.basicConfig(
        level=(level or get_settings().LOG_LEVEL).upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
