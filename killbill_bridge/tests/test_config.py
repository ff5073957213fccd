"""Tests for environment driven configuration."""
from __future__ import annotations

from datetime import timedelta

import pytest

from killbill_bridge.app.billing.config import (
    DEFAULT_SUPPORTED_CURRENCIES,
    load_billing_client_config,
    load_billing_settings,
    load_database_config,
)
from killbill_bridge.app.billing.exceptions import ConfigurationError
from killbill_bridge.mail import load_email_config


def test_billing_settings_defaults():
    settings = load_billing_settings(env={})

    assert settings.supported_currencies == DEFAULT_SUPPORTED_CURRENCIES
    assert settings.fail_window == timedelta(days=5)
    assert settings.decline_reminder_lead == timedelta(days=2)
    assert settings.event_max_retries == 3
    assert settings.webhook_secret is None
    assert settings.process_events_inline is False
    assert settings.account_key_prefix == "crowdchurn"


def test_billing_settings_from_env():
    settings = load_billing_settings(
        env={
            "BILLING_SUPPORTED_CURRENCIES": "usd, eur,USD,sek",
            "BILLING_FX_RATES": '{"eur": 0.9, "SEK": 10.5}',
            "BILLING_FAIL_WINDOW_DAYS": "7",
            "BILLING_DECLINE_REMINDER_LEAD_DAYS": "1.5",
            "KILLBILL_WEBHOOK_SECRET": "hook",
            "BILLING_PROCESS_EVENTS_INLINE": "yes",
        }
    )

    assert settings.supported_currencies == ("USD", "EUR", "SEK")
    assert settings.fx_rates == {"EUR": 0.9, "SEK": 10.5}
    assert settings.fail_window == timedelta(days=7)
    assert settings.decline_reminder_lead == timedelta(hours=36)
    assert settings.webhook_secret == "hook"
    assert settings.process_events_inline is True


@pytest.mark.parametrize(
    "env",
    [
        {"BILLING_FX_RATES": "[1, 2]"},
        {"BILLING_FX_RATES": "{broken"},
        {"BILLING_FAIL_WINDOW_DAYS": "1", "BILLING_DECLINE_REMINDER_LEAD_DAYS": "2"},
        {"BILLING_EVENT_MAX_RETRIES": "many"},
    ],
)
def test_invalid_billing_settings(env):
    with pytest.raises(ValueError):
        load_billing_settings(env=env)


def test_client_config_requires_instance_url():
    with pytest.raises(ConfigurationError):
        load_billing_client_config(env={})

    config = load_billing_client_config(env={"KILLBILL_URL": "http://kb.test/", "KILLBILL_MAX_READ_ATTEMPTS": "0"})
    assert config.instance_url == "http://kb.test"
    assert config.max_read_attempts == 1


def test_database_config_rounds_timeout_up():
    config = load_database_config(env={"DB_NAME": "ledger", "DB_CONNECT_TIMEOUT": "2.1"})

    assert config.connect_timeout == 3
    assert config.psycopg2_kwargs()["dbname"] == "ledger"
    assert config.asyncpg_kwargs()["database"] == "ledger"
    assert config.asyncpg_kwargs()["timeout"] == 3

    with pytest.raises(ValueError):
        load_database_config(env={"DB_CONNECT_TIMEOUT": "-1"})


def test_email_config_defaults():
    config = load_email_config(env={})

    assert config.provider_name == "dev"
    assert config.support_email == config.from_email
    assert config.max_attempts == 3


def test_email_config_from_env():
    config = load_email_config(
        env={
            "EMAIL_PROVIDER": " SMTP ",
            "SMTP_PORT": "465",
            "SMTP_TIMEOUT": "0",
            "SUPPORT_EMAIL": "help@example.com",
            "APP_BASE_URL": "https://app.test/",
        }
    )

    assert config.provider_name == "smtp"
    assert config.smtp_port == 465
    assert config.smtp_timeout == 1.0
    assert config.support_email == "help@example.com"
    assert config.subscription_url("ext_1") == "https://app.test/subscriptions/ext_1"
