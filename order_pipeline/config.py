"""
Order Pipeline — configuration

Every setting is read from the environment once at process start.
The idempotency TTL is checked against the queue's retry horizon so a
redelivery can never outlive its dedup record.
"""

import math
import os

from pydantic import BaseModel, model_validator

# Upstash backoff: min(86400, e^(2.5 * n)) seconds before attempt n.
MAX_BACKOFF_SECONDS = 86400


def retry_horizon_seconds(retries: int) -> int:
    """Worst-case seconds between the first delivery and the last retry."""
    return sum(
        min(MAX_BACKOFF_SECONDS, math.ceil(math.exp(2.5 * n)))
        for n in range(1, retries + 1)
    )


def _env_bool(name: str, default: str = "false") -> bool:
    return os.environ.get(name, default).strip().lower() in ("1", "true", "yes", "on")


class Settings(BaseModel):
    database_url: str
    redis_url: str = "redis://localhost:6379"

    qstash_url: str = "https://qstash.upstash.io"
    qstash_token: str | None = None
    current_signing_key: str | None = None
    next_signing_key: str | None = None
    webhook_base_url: str = "http://localhost:8000"
    default_retries: int = 3

    dedup_ttl_seconds: int = 3600
    dev_mode: bool = False
    webhook_timeout_seconds: float = 30.0
    low_stock_threshold: int = 5

    smtp_host: str | None = None
    smtp_port: int = 587
    smtp_user: str | None = None
    smtp_pass: str | None = None
    email_from: str = "noreply@ecommerce-store.com"

    log_level: str = "INFO"

    @model_validator(mode="after")
    def _check_startup_requirements(self) -> "Settings":
        horizon = retry_horizon_seconds(self.default_retries)
        if self.dedup_ttl_seconds < horizon:
            raise ValueError(
                f"DEDUP_TTL_SECONDS={self.dedup_ttl_seconds} is shorter than the "
                f"retry horizon of {horizon}s for {self.default_retries} retries"
            )
        if not self.dev_mode and not self.qstash_token:
            raise ValueError("QSTASH_TOKEN is required outside development mode")
        if not self.dev_mode and not self.signing_keys_configured:
            raise ValueError(
                "QSTASH_CURRENT_SIGNING_KEY and QSTASH_NEXT_SIGNING_KEY are "
                "required outside development mode"
            )
        return self

    @property
    def signing_keys_configured(self) -> bool:
        return bool(self.current_signing_key and self.next_signing_key)

    @property
    def smtp_configured(self) -> bool:
        return bool(self.smtp_host and self.smtp_user and self.smtp_pass)

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=os.environ["DATABASE_URL"],
            redis_url=os.environ.get("REDIS_URL", "redis://localhost:6379"),
            qstash_url=os.environ.get("QSTASH_URL", "https://qstash.upstash.io"),
            qstash_token=os.environ.get("QSTASH_TOKEN"),
            current_signing_key=os.environ.get("QSTASH_CURRENT_SIGNING_KEY"),
            next_signing_key=os.environ.get("QSTASH_NEXT_SIGNING_KEY"),
            webhook_base_url=os.environ.get(
                "QSTASH_WEBHOOK_BASE_URL", "http://localhost:8000"
            ),
            default_retries=int(os.environ.get("QSTASH_DEFAULT_RETRIES", "3")),
            dedup_ttl_seconds=int(os.environ.get("DEDUP_TTL_SECONDS", "3600")),
            dev_mode=_env_bool("PIPELINE_DEV_MODE"),
            webhook_timeout_seconds=float(
                os.environ.get("WEBHOOK_TIMEOUT_SECONDS", "30")
            ),
            low_stock_threshold=int(os.environ.get("LOW_STOCK_THRESHOLD", "5")),
            smtp_host=os.environ.get("SMTP_HOST"),
            smtp_port=int(os.environ.get("SMTP_PORT", "587")),
            smtp_user=os.environ.get("SMTP_USER"),
            smtp_pass=os.environ.get("SMTP_PASS"),
            email_from=os.environ.get("EMAIL_FROM", "noreply@ecommerce-store.com"),
            log_level=os.environ.get("LOG_LEVEL", "INFO"),
        )
