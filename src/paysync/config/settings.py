"""Application configuration schema and validation."""

from typing import Literal

from pydantic import Field, PostgresDsn, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class AppConfig(BaseSettings):
    """Application configuration loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    env: Literal["dev", "staging", "prod"] = Field(
        ...,
        description="Application environment",
    )
    db_dsn: PostgresDsn = Field(
        ...,
        description="PostgreSQL database connection string",
    )
    db_pool_min: int = Field(
        default=2,
        ge=1,
        description="Minimum database connection pool size",
    )
    db_pool_max: int = Field(
        default=10,
        ge=1,
        description="Maximum database connection pool size",
    )
    provider: Literal["dodo", "stripe"] = Field(
        default="dodo",
        description="Payment provider whose catalog is mirrored",
    )
    dodo_api_key: SecretStr = Field(
        default=SecretStr(""),
        description="Dodo Payments API key",
    )
    dodo_mode: Literal["test", "live"] = Field(
        default="test",
        description="Dodo Payments environment",
    )
    dodo_base_url: str = Field(
        default="",
        description="Override for the Dodo API base URL (derived from dodo_mode when empty)",
    )
    stripe_secret: SecretStr = Field(
        default=SecretStr(""),
        description="Stripe secret key",
    )
    webhook_secret: SecretStr = Field(
        default=SecretStr(""),
        description="Shared secret used to verify inbound provider webhooks",
    )
    webhook_signature_header: str = Field(
        default="x-dodo-signature",
        description="Request header carrying the webhook signature",
    )
    webhook_server_port: int = Field(
        default=8080,
        ge=1,
        le=65535,
        description="Port the webhook server listens on",
    )
    webhook_path: str = Field(
        default="/webhooks/payments",
        description="Route for inbound provider webhooks",
    )
    provider_timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        le=60,
        description="Total timeout for a single provider HTTP call",
    )
    min_charge_amount: int = Field(
        default=100,
        ge=0,
        description="Smallest chargeable donation amount in minor units",
    )
    creation_lock: Literal["local", "advisory"] = Field(
        default="advisory",
        description="Lock guarding first-time creation of provider artifacts",
    )
    log_level: str = Field(
        default="INFO",
        description="Logging level",
    )

    @field_validator("db_pool_max")
    @classmethod
    def validate_pool_max(cls, v: int, info) -> int:
        """Ensure pool_max >= pool_min."""
        if "db_pool_min" in info.data and v < info.data["db_pool_min"]:
            raise ValueError("db_pool_max must be >= db_pool_min")
        return v

    @field_validator("webhook_path")
    @classmethod
    def validate_webhook_path(cls, v: str) -> str:
        """Webhook route must be absolute."""
        if not v.startswith("/"):
            raise ValueError("webhook_path must start with '/'")
        return v


_config: AppConfig | None = None


def get_config() -> AppConfig:
    """Get or create the singleton AppConfig instance."""
    global _config
    if _config is None:
        _config = AppConfig()
    return _config
