from __future__ import annotations

import os

APP_VERSION = "1.4.0"

_DEFAULT_SECRET_KEYS = frozenset({"change-me-in-production", ""})


def _flag(name: str, default: str = "") -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


class Settings:
    PROJECT_NAME: str = "Manual Service Bundler"
    API_V1_PREFIX: str = "/api/v1"

    ENVIRONMENT: str = os.getenv("ENVIRONMENT", "production")
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
    ALLOWED_ORIGINS: list[str] = [
        o.strip()
        for o in os.getenv("ALLOWED_ORIGINS", "http://localhost:5173").split(",")
        if o.strip()
    ]

    POSTGRES_HOST: str = os.getenv("POSTGRES_HOST", "localhost")
    POSTGRES_PORT: str = os.getenv("POSTGRES_PORT", "5432")
    POSTGRES_DB: str = os.getenv("POSTGRES_DB", "manual_services")
    POSTGRES_USER: str = os.getenv("POSTGRES_USER", "manual_services")
    POSTGRES_PASSWORD: str = os.getenv("POSTGRES_PASSWORD", "manual_services")

    RESET_DB: bool = _flag("RESET_DB")

    # Used to sign export download links
    SECRET_KEY: str = os.getenv("SECRET_KEY", "change-me-in-production")

    # Camunda 8 Web Modeler target (transfer is disabled if the client id is empty)
    CAMUNDA_CONSOLE_CLIENT_ID: str = os.getenv("CAMUNDA_CONSOLE_CLIENT_ID", "")
    CAMUNDA_CONSOLE_CLIENT_SECRET: str = os.getenv("CAMUNDA_CONSOLE_CLIENT_SECRET", "")
    CAMUNDA_OAUTH_URL: str = os.getenv(
        "CAMUNDA_OAUTH_URL", "https://login.cloud.camunda.io/oauth/token"
    )
    CAMUNDA_CONSOLE_OAUTH_AUDIENCE: str = os.getenv(
        "CAMUNDA_CONSOLE_OAUTH_AUDIENCE", "api.cloud.camunda.io"
    )
    CAMUNDA_MODELER_API_URL: str = os.getenv(
        "CAMUNDA_MODELER_API_URL", "https://modeler.cloud.camunda.io/api/v1"
    )
    CAMUNDA_MODELER_UI_URL: str = os.getenv("CAMUNDA_MODELER_UI_URL", "https://modeler.camunda.io")
    CAMUNDA_TARGET_PROJECT_NAME: str = os.getenv(
        "CAMUNDA_TARGET_PROJECT_NAME", "Manual Service Models"
    )

    TRANSFER_MAX_ATTEMPTS: int = int(os.getenv("TRANSFER_MAX_ATTEMPTS", "3"))
    TRANSFER_BACKOFF_SECONDS: float = float(os.getenv("TRANSFER_BACKOFF_SECONDS", "1.0"))
    # 240 requests/minute upstream limit
    TRANSFER_PACING_SECONDS: float = float(os.getenv("TRANSFER_PACING_SECONDS", "0.3"))
    TOKEN_EXPIRY_MARGIN_SECONDS: int = int(os.getenv("TOKEN_EXPIRY_MARGIN_SECONDS", "60"))
    TRANSFER_RATE_LIMIT: str = os.getenv("TRANSFER_RATE_LIMIT", "5/minute")

    BLOB_STORAGE_ROOT: str = os.getenv("BLOB_STORAGE_ROOT", "./var/blobs")
    EXPORTS_BUCKET: str = os.getenv("EXPORTS_BUCKET", "exports")
    TEMPLATES_BUCKET: str = os.getenv("TEMPLATES_BUCKET", "form_templates")
    SIGNED_URL_TTL_SECONDS: int = int(os.getenv("SIGNED_URL_TTL_SECONDS", "3600"))
    PUBLIC_BASE_URL: str = os.getenv("PUBLIC_BASE_URL", "http://localhost:8000")

    DESCRIPTION_MAX_CHARS: int = int(os.getenv("DESCRIPTION_MAX_CHARS", "400"))

    # Text generation is optional; drafting and assessment answer 503 without a key
    ANTHROPIC_API_KEY: str = os.getenv("ANTHROPIC_API_KEY", "")
    ANTHROPIC_API_URL: str = os.getenv("ANTHROPIC_API_URL", "https://api.anthropic.com/v1/messages")
    ANTHROPIC_MODEL: str = os.getenv("ANTHROPIC_MODEL", "claude-sonnet-4-5")
    ANTHROPIC_MAX_TOKENS: int = int(os.getenv("ANTHROPIC_MAX_TOKENS", "2000"))

    @property
    def database_url(self) -> str:
        return (
            f"postgresql+asyncpg://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        )

    @property
    def camunda_configured(self) -> bool:
        return bool(self.CAMUNDA_CONSOLE_CLIENT_ID and self.CAMUNDA_CONSOLE_CLIENT_SECRET)


settings = Settings()
