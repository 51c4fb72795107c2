"""Application Configuration — environment-driven settings via pydantic-settings.

Invariants:
    - DATABASE_URL has no default: a missing store URL is a fatal startup error
    - Unknown keys in .env are rejected (extra="forbid"), never silently ignored
    - load_settings() is the single entry point; the runner calls it once per process
    - describe() enumerates every recognized option with secrets masked

Design Decisions:
    - pydantic-settings over raw os.environ: validation, type coercion, .env file support
    - Rate-limit store failure policy is an explicit option (RATE_LIMIT_FAIL_OPEN),
      default open: a store blip should not take the whole API down
"""

from typing import Literal

from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from sqlalchemy.engine import make_url
from sqlalchemy.exc import ArgumentError


class ConfigurationError(Exception):
    """Missing, malformed, or unknown configuration; fatal at startup."""


class Settings(BaseSettings):
    """Application settings from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="forbid",
    )

    # Listener
    host: str = "0.0.0.0"
    port: int = Field(8000, ge=1, le=65535)
    environment: str = "development"

    # Storage
    database_url: str

    @field_validator("database_url", mode="before")
    @classmethod
    def convert_postgres_url(cls, v: str) -> str:
        """Hosting platforms hand out postgresql:// but asyncpg needs postgresql+asyncpg://."""
        if isinstance(v, str) and v.startswith("postgresql://"):
            return v.replace("postgresql://", "postgresql+asyncpg://", 1)
        if isinstance(v, str) and v.startswith("postgres://"):
            return v.replace("postgres://", "postgresql+asyncpg://", 1)
        return v

    @field_validator("database_url")
    @classmethod
    def require_parseable_url(cls, v: str) -> str:
        try:
            make_url(v)
        except ArgumentError as e:
            raise ValueError(f"not a database URL: {e}") from e
        return v

    database_pool_size: int = 20
    database_max_overflow: int = 10
    database_connect_timeout_seconds: float = Field(10.0, gt=0)
    storage_probe_interval_seconds: float = Field(30.0, ge=0)

    # Rate limiting
    rate_limit_window_seconds: int = Field(60, gt=0)
    rate_limit_max_requests: int = Field(100, gt=0)
    rate_limit_fail_open: bool = True
    trust_forwarded_for: bool = False
    trusted_proxy_hops: int = Field(1, ge=1)

    # API
    cors_origins: list[str] = ["http://localhost:5173"]

    # Observability
    log_level: str = "INFO"
    log_format: Literal["json", "text"] = "json"
    log_destination: str = "stderr"

    def describe(self) -> dict[str, str]:
        """Every recognized option and its effective value (passwords masked)."""
        out = {}
        for name in type(self).model_fields:
            value = getattr(self, name)
            if name == "database_url":
                value = make_url(value).render_as_string(hide_password=True)
            out[name.upper()] = str(value)
        return out


def load_settings(**overrides) -> Settings:
    """Build Settings, turning validation failures into ConfigurationError."""
    try:
        return Settings(**overrides)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']).upper() or 'SETTINGS'}: {err['msg']}"
            for err in e.errors()
        )
        raise ConfigurationError(f"Invalid configuration: {problems}") from e

