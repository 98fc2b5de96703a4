"""
Site Status — Configuration via environment variables.
"""

import logging
from datetime import timedelta

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)

DEFAULT_AUDIT_TTL_DAYS = 30


class Settings(BaseSettings):
    """All settings read from env / .env file."""

    # Database
    database_url: str = Field(
        default="sqlite+aiosqlite:///./site-status.db",
        description="Async SQLAlchemy DB URL (database name included)",
    )

    # Message broker (RabbitMQ)
    rabbitmq_username: str = Field(default="guest")
    rabbitmq_password: str = Field(default="guest")
    rabbitmq_host: str = Field(default="localhost")
    rabbitmq_port: int = Field(default=5672)
    rabbitmq_vhost: str = Field(default="/")
    audit_tasks_queue_name: str = Field(default="audit-tasks")

    @property
    def amqp_url(self) -> str:
        vhost = "" if self.rabbitmq_vhost == "/" else self.rabbitmq_vhost.lstrip("/")
        return (
            f"amqp://{self.rabbitmq_username}:{self.rabbitmq_password}"
            f"@{self.rabbitmq_host}:{self.rabbitmq_port}/{vhost}"
        )

    # PageSpeed Insights
    pagespeed_api_key: str = Field(default="", description="Google PSI API key")
    pagespeed_api_base_url: str = Field(
        default="https://www.googleapis.com/pagespeedonline/v5/runPagespeed",
    )

    # GitHub
    github_api_base_url: str = Field(default="https://api.github.com")
    github_client_id: str = Field(default="", description="GitHub OAuth app client id")
    github_client_secret: str = Field(default="", description="GitHub OAuth app client secret")

    # Audit retention
    audit_ttl_days: int = Field(default=DEFAULT_AUDIT_TTL_DAYS)
    audit_purge_interval_secs: int = Field(default=3600)

    # Backpressure after a PSI rate limit
    rate_limit_pause_secs: int = Field(default=60)

    # Read side
    sites_cache_ttl_secs: int = Field(default=300)

    log_level: str = Field(default="INFO")

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    @field_validator("audit_ttl_days", mode="before")
    @classmethod
    def _valid_ttl(cls, value):
        try:
            days = int(value)
        except (TypeError, ValueError):
            days = 0
        if days <= 0:
            logger.warning(
                "Invalid AUDIT_TTL_DAYS value: %r. Using default value of %d.",
                value, DEFAULT_AUDIT_TTL_DAYS,
            )
            return DEFAULT_AUDIT_TTL_DAYS
        return days

    @property
    def audit_ttl(self) -> timedelta:
        return timedelta(days=self.audit_ttl_days)


settings = Settings()
