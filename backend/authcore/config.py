"""Application configuration management"""

from functools import lru_cache
from pathlib import Path
from urllib.parse import quote_plus

from pydantic_settings import BaseSettings

# Base directory: backend/
_BASE_DIR = Path(__file__).resolve().parent.parent

_DEFAULT_SECRET_KEY = "dev-secret-key-change-in-production-use-openssl-rand-hex-32"
_DEFAULT_INTERNAL_API_KEY = "dev-internal-key"


class Settings(BaseSettings):
    """Application settings with environment variable support"""

    # Application
    APP_NAME: str = "Credential Authority"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    ENVIRONMENT: str = "development"

    # Server
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    WORKERS: int = 4

    # Database (PostgreSQL)
    DATABASE_URL: str = ""
    POSTGRES_HOST: str = "localhost"
    POSTGRES_PORT: int = 5432
    POSTGRES_DB: str = "authcore_db"
    POSTGRES_USER: str = "authcore"
    POSTGRES_PASSWORD: str = "authcore"
    DATABASE_POOL_SIZE: int = 30
    DATABASE_MAX_OVERFLOW: int = 20

    # Signing
    SECRET_KEY: str = _DEFAULT_SECRET_KEY
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 15
    REFRESH_TOKEN_EXPIRE_DAYS: int = 7

    # Expired refresh tokens are kept this long before the sweep deletes them
    REFRESH_TOKEN_RETENTION_DAYS: int = 30

    # Audit ledger
    AUDIT_HASH_ALGORITHM: str = "sha256"
    AUDIT_INTEGRITY_VERSION: str = "1.0"
    AUDIT_APPEND_MAX_RETRIES: int = 5

    # Batch scans
    CLEANUP_BATCH_SIZE: int = 500
    CLEANUP_INTERVAL_SECONDS: float = 3600.0
    VERIFY_BATCH_SIZE: int = 500

    # Internal RPC
    INTERNAL_API_KEY: str = _DEFAULT_INTERNAL_API_KEY

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FILE: str = ""

    # Database initialization discipline
    DB_INIT_MODE: str = "migrate"  # migrate | create_all | off
    DB_REQUIRE_HEAD: bool = True

    class Config:
        env_file = ".env"
        case_sensitive = True

    def get_log_file(self) -> str:
        p = self.LOG_FILE
        if not p or p.startswith(".."):
            return str(_BASE_DIR.parent / "logs" / "authcore.log")
        return p

    def get_database_url(self) -> str:
        """
        Resolve database URL.

        Priority:
          1) Explicit DATABASE_URL
          2) Construct from POSTGRES_* parts with safe URL encoding
        """
        if self.DATABASE_URL:
            return self.DATABASE_URL

        user = quote_plus(self.POSTGRES_USER)
        password = quote_plus(self.POSTGRES_PASSWORD)
        return (
            f"postgresql://{user}:{password}"
            f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        )

    def validate_security_settings(self) -> None:
        """
        Validate runtime security defaults in production.

        Raises:
            ValueError: If insecure defaults are detected.
        """
        if self.ENVIRONMENT.lower() != "production":
            return

        insecure_secret_markers = {
            "",
            _DEFAULT_SECRET_KEY,
            "change-me",
        }

        if self.SECRET_KEY in insecure_secret_markers or len(self.SECRET_KEY) < 32:
            raise ValueError(
                "Insecure SECRET_KEY for production. Use a strong key (e.g. `openssl rand -hex 32`)."
            )

        if self.INTERNAL_API_KEY in {"", _DEFAULT_INTERNAL_API_KEY} or len(self.INTERNAL_API_KEY) < 24:
            raise ValueError(
                "Insecure INTERNAL_API_KEY for production. Set a long random key before startup."
            )


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()


settings = get_settings()
