"""Configuration management for crmhooks."""

import logging
import warnings
from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """crmhooks configuration loaded from environment variables.

    All settings can be overridden via environment variables with
    the CRMHOOKS_ prefix. For example:
        CRMHOOKS_QUEUE_BATCH_SIZE=25
        CRMHOOKS_FALLBACK_DELIVERY_ENABLED=false

    Delivery Notes:
        - Subscription-level timeout/retry values always win over the defaults here;
          the defaults only apply when a subscription is created without them.
        - The synchronous fallback on enqueue failure can send duplicates if the
          store recovers mid-request; disable it where that is unacceptable.
    """

    # Environment
    env: Literal["development", "production", "test"] = Field(
        default="development",
        description="Environment: development, production, or test",
    )

    # Queue processing
    queue_batch_size: int = Field(
        default=10,
        ge=1,
        le=500,
        description="Maximum queued deliveries claimed per processor tick",
    )
    queue_max_concurrency: int | None = Field(
        default=None,
        ge=1,
        le=100,
        description=(
            "Maximum concurrent HTTP deliveries within one batch. "
            "Defaults to queue_batch_size when not set."
        ),
    )

    # Subscription defaults
    default_timeout_seconds: int = Field(
        default=30,
        ge=1,
        le=300,
        description="HTTP timeout for new subscriptions",
    )
    default_max_retries: int = Field(
        default=3,
        ge=0,
        le=20,
        description="Additional attempts after the first for new subscriptions",
    )
    default_retry_delay_seconds: int = Field(
        default=60,
        ge=1,
        description="Base retry delay for new subscriptions (doubles each attempt)",
    )
    retry_max_delay_seconds: int = Field(
        default=3600,
        ge=1,
        description="Upper bound on the computed backoff delay",
    )

    # Attempt log
    response_body_max_chars: int = Field(
        default=10000,
        ge=0,
        description="Response bodies are truncated to this length before storage",
    )
    error_message_max_chars: int = Field(
        default=500,
        ge=0,
        description="Length of the response excerpt kept in a queue row's last_error",
    )

    # Degraded mode
    fallback_delivery_enabled: bool = Field(
        default=True,
        description="Deliver inline (single attempt) when enqueueing fails",
    )

    # Subscription health
    failure_auto_disable_threshold: int = Field(
        default=10,
        ge=0,
        description=(
            "Deactivate a subscription once its failure_count reaches this value. "
            "0 disables auto-deactivation."
        ),
    )

    # Retention
    queue_retention_days: int = Field(
        default=7,
        ge=1,
        description="Completed and dead-letter queue rows older than this are purged",
    )
    delivery_log_retention_days: int = Field(
        default=30,
        ge=1,
        description="Delivery attempt records older than this are purged",
    )

    # Logging
    log_level: str = Field(
        default="INFO",
        description="Logging level",
    )
    log_format: Literal["json", "text"] = Field(
        default="json",
        description="Log output format",
    )

    # CORS Configuration
    cors_enabled: bool = Field(
        default=False,
        description="Enable CORS middleware on the operator API",
    )
    cors_allow_origins: list[str] = Field(
        default_factory=list,
        description="List of allowed CORS origins",
    )

    model_config = {
        "env_prefix": "CRMHOOKS_",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "env_nested_delimiter": "__",
    }

    @model_validator(mode="after")
    def validate_retry_delays(self) -> "Settings":
        """The backoff cap must not be smaller than the base delay."""
        if self.retry_max_delay_seconds < self.default_retry_delay_seconds:
            raise ValueError(
                f"retry_max_delay_seconds ({self.retry_max_delay_seconds}) must be at least "
                f"default_retry_delay_seconds ({self.default_retry_delay_seconds})"
            )
        return self

    @model_validator(mode="after")
    def warn_fallback_in_production(self) -> "Settings":
        """Warn when inline fallback delivery is left on in production."""
        if self.env == "production" and self.fallback_delivery_enabled:
            warnings.warn(
                "Fallback delivery is enabled in production. An enqueue failure will "
                "deliver inline on the mutation path. Set "
                "CRMHOOKS_FALLBACK_DELIVERY_ENABLED=false to disable.",
                UserWarning,
                stacklevel=2,
            )
            logger.warning("Inline fallback delivery enabled in production")
        return self

    @property
    def effective_max_concurrency(self) -> int:
        """Concurrency bound for one batch (always an int)."""
        if self.queue_max_concurrency is None:
            return self.queue_batch_size
        return self.queue_max_concurrency


# Global settings instance
settings = Settings()
