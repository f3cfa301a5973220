import logging
from pydantic_settings import BaseSettings
from pydantic import model_validator, ConfigDict
from functools import lru_cache

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Environment: "development" or "production"
    environment: str = "development"

    # Config / pacing-signal / metrics backend
    backend_url: str = "http://localhost:8080/api"
    backend_api_key: str = ""
    http_timeout_seconds: float = 30.0

    # Shared secret the external scheduler sends with every run trigger
    cron_secret: str = ""

    # PRODUCTION | PREVIEW | IDEMPOTENCY_TEST
    default_run_mode: str = "PRODUCTION"

    # Transport limits for the uploaded run report
    report_chunk_size: int = 500
    run_log_mutation_cap: int = 50

    log_level: str = "INFO"

    @model_validator(mode="before")
    @classmethod
    def _strip_backend_url(cls, values: dict) -> dict:
        """Backend URLs are joined with "/config", "/metrics"… so drop a trailing slash."""
        if not isinstance(values, dict):
            return values
        url = values.get("backend_url") or ""
        if url.endswith("/"):
            values["backend_url"] = url.rstrip("/")
        return values

    @model_validator(mode="after")
    def _validate_production_settings(self) -> "Settings":
        """Enforce that the scheduler secret and backend are set when running in production."""
        if self.default_run_mode.upper() not in ("PRODUCTION", "PREVIEW", "IDEMPOTENCY_TEST"):
            raise ValueError(
                f"DEFAULT_RUN_MODE must be PRODUCTION, PREVIEW or IDEMPOTENCY_TEST, got {self.default_run_mode!r}"
            )
        if self.report_chunk_size <= 0:
            raise ValueError("REPORT_CHUNK_SIZE must be a positive number of rows")
        if self.is_production:
            if not self.cron_secret:
                raise ValueError(
                    "CRON_SECRET must be set in production. "
                    "Generate one with: python -c \"import secrets; print(secrets.token_hex(32))\""
                )
            if not self.backend_url or "localhost" in self.backend_url:
                raise ValueError("BACKEND_URL must point at the config backend in production.")
            if not self.backend_api_key:
                logger.warning("BACKEND_API_KEY is empty in production; backend calls are unauthenticated.")
        return self

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"


@lru_cache
def get_settings() -> Settings:
    return Settings()
