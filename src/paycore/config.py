"""Runtime configuration loaded from environment variables.

Secrets are not read here; they come from SSM Parameter Store through
``paycore.services.ssm_service``.
"""

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Process-wide settings.

    Each field is read from the upper-cased environment variable of the
    same name; ``table_prefix`` comes from ``DYNAMODB_TABLE_PREFIX``.
    Empty variables count as unset.
    """

    model_config = SettingsConfigDict(
        case_sensitive=False,
        env_ignore_empty=True,
        extra="ignore",
        populate_by_name=True,
    )

    environment: str = Field(default="dev", description="SSM path segment")
    table_prefix: str = Field(
        default="",
        validation_alias="DYNAMODB_TABLE_PREFIX",
        description="Defaults to payments-{environment}",
    )
    log_level: str = "INFO"

    idempotency_ttl_hours: int = Field(default=24, ge=1)

    gateway_timeout_seconds: float = Field(default=30.0, gt=0)
    gateway_max_attempts: int = Field(default=3, ge=1)
    gateway_initial_backoff_seconds: float = Field(default=1.0, ge=0)

    webhook_queue_name: str = "payment-webhook-events"
    webhook_dlq_name: str = "payment-webhook-events-dlq"
    webhook_max_attempts: int = Field(default=3, ge=1)
    webhook_consumer_workers: int = Field(default=4, ge=1)
    webhook_signature_insecure: bool = Field(
        default=False, description="Accept unsigned webhooks when no key is configured"
    )

    def model_post_init(self, __context: object) -> None:
        if not self.table_prefix:
            self.table_prefix = f"payments-{self.environment}"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get the process settings, read once from the environment."""
    return Settings()
