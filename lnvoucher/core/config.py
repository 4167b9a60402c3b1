from pathlib import Path

from dotenv import load_dotenv
from pydantic_settings import BaseSettings, SettingsConfigDict

BASE_DIR = Path(__file__).resolve().parent.parent.parent  # project root
ENV_PATH = BASE_DIR / ".env"

# Load .env into the process environment before Settings reads it
load_dotenv(dotenv_path=ENV_PATH)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        extra="ignore",
        case_sensitive=False,
    )

    DATABASE_URL: str = "postgresql+asyncpg://localhost/lnvoucher"
    SQL_ECHO: bool = False

    # hex string; empty means an ephemeral key (dev only)
    ENCRYPTION_KEY: str = ""

    JWT_SECRET: str = "change-me"
    JWT_ALG: str = "HS256"

    LOG_LEVEL: str = "INFO"
    CORS_ORIGINS: list[str] = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]

    VOUCHER_MAX_UNCLAIMED_PER_WALLET: int = 1000
    VOUCHER_DEFAULT_EXPIRY_ID: str = "24h"
    VOUCHER_CLEANUP_INTERVAL_SECONDS: int = 300
    VOUCHER_STRICT_WALLET_CAP: bool = True

    BLINK_API_URL: str = "https://api.blink.sv/graphql"
    BLINK_STAGING_API_URL: str = "https://api.staging.blink.sv/graphql"
    BLINK_TIMEOUT_SECONDS: int = 15

    # absolute base for LNURL callback urls; empty means derive from the request
    PUBLIC_BASE_URL: str = ""


settings = Settings()
