"""
Settings loading and validation
"""

import pytest
from pydantic import ValidationError

from order_pipeline.config import Settings, retry_horizon_seconds

pytestmark = [pytest.mark.unit]

PRODUCTION = {
    "database_url": "sqlite+aiosqlite://",
    "qstash_token": "t",
    "current_signing_key": "cur",
    "next_signing_key": "nxt",
}


def test_retry_horizon_grows_with_retries():
    assert retry_horizon_seconds(0) == 0
    assert retry_horizon_seconds(1) == 13
    assert retry_horizon_seconds(3) == 13 + 149 + 1809


def test_retry_horizon_caps_each_backoff_at_one_day():
    assert retry_horizon_seconds(10) - retry_horizon_seconds(9) == 86400


def test_default_ttl_covers_default_retries():
    settings = Settings(**PRODUCTION)
    assert settings.dedup_ttl_seconds >= retry_horizon_seconds(settings.default_retries)


def test_ttl_shorter_than_retry_horizon_is_rejected():
    with pytest.raises(ValidationError, match="retry horizon"):
        Settings(**PRODUCTION, dedup_ttl_seconds=60)


def test_token_required_outside_dev_mode():
    with pytest.raises(ValidationError, match="QSTASH_TOKEN"):
        Settings(**{**PRODUCTION, "qstash_token": None})
    assert Settings(database_url="sqlite+aiosqlite://", dev_mode=True).qstash_token is None


@pytest.mark.parametrize("missing", ["current_signing_key", "next_signing_key"])
def test_signing_keys_required_outside_dev_mode(missing):
    with pytest.raises(ValidationError, match="SIGNING_KEY"):
        Settings(**{**PRODUCTION, missing: None})


def test_dev_mode_starts_without_signing_keys():
    settings = Settings(database_url="sqlite+aiosqlite://", qstash_token="t", dev_mode=True)
    assert not settings.signing_keys_configured


def test_from_env(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "postgresql+asyncpg://u:p@db/shop")
    monkeypatch.setenv("QSTASH_TOKEN", "tok")
    monkeypatch.setenv("QSTASH_CURRENT_SIGNING_KEY", "cur")
    monkeypatch.setenv("QSTASH_NEXT_SIGNING_KEY", "nxt")
    monkeypatch.setenv("QSTASH_DEFAULT_RETRIES", "2")
    monkeypatch.setenv("DEDUP_TTL_SECONDS", "7200")
    monkeypatch.setenv("PIPELINE_DEV_MODE", "yes")

    settings = Settings.from_env()

    assert settings.database_url == "postgresql+asyncpg://u:p@db/shop"
    assert settings.default_retries == 2
    assert settings.dedup_ttl_seconds == 7200
    assert settings.dev_mode is True
    assert settings.signing_keys_configured
    assert not settings.smtp_configured
