"""crm-audit — Configuration.

Configuration is loaded from:
    1. Built-in defaults (this file)
    2. Environment variables prefixed with CRM_AUDIT_ (nested with ``__``)
    3. User config:     ~/.crm-audit/config.yaml
    4. Explicit file:   ``Settings.load(config_file=...)``

Top-level blocks present in a YAML file take precedence over the
environment for that block.

All settings are immutable after load.  Call ``Settings.load()`` once at
startup and pass the instance to ``ExecutionService.from_settings()``.
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated, Literal

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# ---------------------------------------------------------------------------
# Sub-configuration blocks
# ---------------------------------------------------------------------------


class RemoteConfig(BaseModel):
    base_url: str = "https://api.hubapi.com"
    access_token: str | None = Field(
        default=None,
        description="Private app access token. Also settable via CRM_AUDIT_REMOTE__ACCESS_TOKEN.",
    )
    account_id: str = Field(
        default="default",
        description="Remote account (portal) id. Unit of lock scoping.",
    )
    environment: Literal["production", "sandbox"] = "production"
    timeout_seconds: Annotated[float, Field(gt=0, le=300)] = Field(
        default=30.0,
        description="Per-call timeout applied to every remote request.",
    )


class RateLimitConfig(BaseModel):
    """Token bucket shared by forward execution and rollback."""

    max_tokens: Annotated[int, Field(ge=1, le=10_000)] = 100
    refill_interval_ms: Annotated[int, Field(ge=1, le=3_600_000)] = 10_000
    max_concurrent: Annotated[int, Field(ge=1, le=100)] = 10


class RetryConfig(BaseModel):
    """Backoff applied when the remote platform answers 429."""

    max_retries: Annotated[int, Field(ge=0, le=10)] = 3
    base_delay_seconds: Annotated[float, Field(ge=0, le=300)] = 10.0
    max_delay_seconds: Annotated[float, Field(ge=0, le=600)] = 30.0
    jitter_seconds: Annotated[float, Field(ge=0, le=60)] = 1.0


class ExecutionConfig(BaseModel):
    output_directory: Path = Path("./audit-reports")
    continue_on_error: bool = False
    dry_run: bool = False
    lock_ttl_seconds: Annotated[int, Field(ge=1, le=86_400)] = Field(
        default=3600,
        description="Lifetime of the execution lock. Bounds the damage of a crashed holder.",
    )


class RetentionConfig(BaseModel):
    retention_days: Annotated[int, Field(ge=0, le=3650)] = 30
    max_size_mb: Annotated[float, Field(ge=0)] = 100.0


class LoggingConfig(BaseModel):
    level: Literal["debug", "info", "warning", "error", "critical"] = "info"
    format: Literal["json", "console"] = "console"
    file: Path | None = None
    mask_pii_in_logs: bool = True


# ---------------------------------------------------------------------------
# Root settings
# ---------------------------------------------------------------------------


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="CRM_AUDIT_",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    remote: RemoteConfig = Field(default_factory=RemoteConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    execution: ExecutionConfig = Field(default_factory=ExecutionConfig)
    retention: RetentionConfig = Field(default_factory=RetentionConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @field_validator("execution", mode="before")
    @classmethod
    def expand_output_directory(cls, v: object) -> object:
        if isinstance(v, dict) and isinstance(v.get("output_directory"), str):
            v["output_directory"] = Path(v["output_directory"]).expanduser()
        return v

    @classmethod
    def load(cls, config_file: Path | None = None) -> "Settings":
        """Load settings from file + environment variables."""
        data: dict[str, object] = {}

        candidates = [Path.home() / ".crm-audit" / "config.yaml"]
        if config_file:
            candidates.append(config_file)

        for path in candidates:
            if path.exists():
                with path.open() as f:
                    loaded = yaml.safe_load(f) or {}
                    data.update(loaded)

        return cls(**data)

    @property
    def executions_directory(self) -> Path:
        return self.execution.output_directory / "executions"


# Module-level settings cache, replaced by ``override_settings()`` in tests.
_settings: Settings | None = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings.load()
    return _settings


def override_settings(settings: Settings) -> None:
    """Replace the cached settings. Used in tests."""
    global _settings
    _settings = settings
