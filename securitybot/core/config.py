"""Process settings loaded from environment variables (CI inputs, credentials, service endpoints)."""

from functools import lru_cache
from typing import Literal

from pydantic import SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Allowed URL schemes for DATABASE_URL (module-level so validators can use it).
VALID_DATABASE_URL_PREFIXES = (
    "postgresql://",
    "postgresql+psycopg2://",
    "postgres://",
    "postgres+psycopg2://",
    "sqlite://",
)


def _validate_http_url(name: str, v: str) -> str:
    if not v or not v.strip():
        raise ValueError(f"{name} must be set and non-empty")
    s = v.strip().lower()
    if not (s.startswith("http://") or s.startswith("https://")):
        raise ValueError(f"{name} must use http or https")
    return v.strip().rstrip("/")


class Settings(BaseSettings):
    """Validated process settings from env and optional .env file."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
    )

    APP_ENV: Literal["dev", "prod"] = "dev"
    DEBUG: bool = False
    API_V1_PREFIX: str = "/api/v1"

    # Only used when false_positives.storage is "database".
    DATABASE_URL: str = "sqlite:///./securitybot.db"

    # Path to the YAML bot configuration (checks, severities, limits).
    CONFIG_PATH: str = "config/securitybot-config.yml"

    # Invocation inputs provided by the CI runner.
    GITHUB_REPOSITORY: str | None = None
    GITHUB_EVENT_PATH: str | None = None
    GITHUB_EVENT_NAME: str | None = None
    PR_NUMBER: int | None = None

    # GitHub API access
    GITHUB_TOKEN: SecretStr | None = None
    GITHUB_API_URL: str = "https://api.github.com"
    GITHUB_REQUEST_TIMEOUT_SEC: float = 30.0
    # Shared secret for POST /api/v1/events/github (HMAC-SHA256 signature check).
    GITHUB_WEBHOOK_SECRET: SecretStr | None = None
    CHECK_RUN_NAME: str = "Security Review"

    # Analysis providers
    OPENAI_API_KEY: SecretStr | None = None
    OPENAI_BASE_URL: str = "https://api.openai.com/v1"
    OLLAMA_BASE_URL: str = "http://localhost:11434"

    # Report delivery attempts before the run fails with PublishError.
    PUBLISH_MAX_ATTEMPTS: int = 3

    @field_validator("DATABASE_URL")
    @classmethod
    def validate_database_url(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("DATABASE_URL must be set and non-empty")
        if not any(v.startswith(prefix) for prefix in VALID_DATABASE_URL_PREFIXES):
            raise ValueError(
                "DATABASE_URL must be a PostgreSQL or SQLite URL (e.g. postgresql:// or sqlite:///)"
            )
        return v.strip()

    @field_validator("GITHUB_API_URL")
    @classmethod
    def validate_github_api_url(cls, v: str) -> str:
        return _validate_http_url("GITHUB_API_URL", v)

    @field_validator("OPENAI_BASE_URL")
    @classmethod
    def validate_openai_base_url(cls, v: str) -> str:
        return _validate_http_url("OPENAI_BASE_URL", v)

    @field_validator("OLLAMA_BASE_URL")
    @classmethod
    def validate_ollama_base_url(cls, v: str) -> str:
        return _validate_http_url("OLLAMA_BASE_URL", v)

    @field_validator("GITHUB_REPOSITORY")
    @classmethod
    def validate_github_repository(cls, v: str | None) -> str | None:
        if v is None or not v.strip():
            return None
        owner, sep, name = v.strip().partition("/")
        if not sep or not owner or not name or "/" in name:
            raise ValueError("GITHUB_REPOSITORY must look like 'owner/name'")
        return v.strip()

    @field_validator("GITHUB_REQUEST_TIMEOUT_SEC")
    @classmethod
    def validate_github_timeout(cls, v: float) -> float:
        if v <= 0 or v > 120:
            raise ValueError(
                "GITHUB_REQUEST_TIMEOUT_SEC must be greater than 0 and at most 120"
            )
        return v

    @field_validator("PUBLISH_MAX_ATTEMPTS")
    @classmethod
    def validate_publish_attempts(cls, v: int) -> int:
        if v < 1 or v > 10:
            raise ValueError("PUBLISH_MAX_ATTEMPTS must be between 1 and 10")
        return v


@lru_cache
def get_settings() -> Settings:
    """Return cached settings instance (safe to call from dependencies)."""
    return Settings()


settings = get_settings()
