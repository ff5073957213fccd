"""Billing platform configuration helpers."""
from __future__ import annotations

import json
import math
import os
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Dict, Mapping, Optional, Tuple

from .exceptions import ConfigurationError
from .models import MerchantAccount

DEFAULT_SUPPORTED_CURRENCIES: Tuple[str, ...] = ("USD", "EUR", "GBP", "JPY", "AUD", "CAD", "CHF")


@dataclass(frozen=True)
class BillingClientConfig:
    """Connection settings for one billing platform tenant."""

    instance_url: str
    username: Optional[str] = None
    password: Optional[str] = None
    api_key: Optional[str] = None
    api_secret: Optional[str] = None
    timeout_seconds: float = 30.0
    max_read_attempts: int = 3
    backoff_seconds: float = 0.5
    account_key_prefix: str = "crowdchurn"


@dataclass(frozen=True)
class BillingSettings:
    """Application-level billing behaviour."""

    catalog_name: str = "crowdchurn-catalog"
    supported_currencies: Tuple[str, ...] = DEFAULT_SUPPORTED_CURRENCIES
    fx_rates: Dict[str, float] = field(default_factory=dict)
    fx_url: Optional[str] = None
    fx_cache_seconds: float = 3600.0
    fail_window: timedelta = timedelta(days=5)
    decline_reminder_lead: timedelta = timedelta(days=2)
    event_max_retries: int = 3
    event_retry_backoff_seconds: float = 5.0
    webhook_secret: Optional[str] = None
    admin_token: Optional[str] = None
    process_events_inline: bool = False
    dead_letters_enabled: bool = False
    account_key_prefix: str = "crowdchurn"


@dataclass(frozen=True)
class DatabaseConfig:
    """PostgreSQL connection settings shared by psycopg2 and asyncpg."""

    host: str = "127.0.0.1"
    port: int = 5432
    database: str = "billing_db"
    user: str = "billing_user"
    password: str = "billing_pass"
    connect_timeout: int = 5

    def psycopg2_kwargs(self) -> Dict[str, object]:
        return {
            "host": self.host,
            "port": self.port,
            "dbname": self.database,
            "user": self.user,
            "password": self.password,
            "connect_timeout": self.connect_timeout,
        }

    def asyncpg_kwargs(self) -> Dict[str, object]:
        return {
            "host": self.host,
            "port": self.port,
            "database": self.database,
            "user": self.user,
            "password": self.password,
            "timeout": self.connect_timeout,
        }


def env_bool(value: Optional[str], *, default: bool) -> bool:
    if value is None:
        return default
    lowered = value.strip().lower()
    if lowered in {"1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off"}:
        return False
    return default


def env_int(value: Optional[str], *, default: int) -> int:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Expected integer value, got {value!r}") from exc


def env_float(value: Optional[str], *, default: float) -> float:
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Expected float value, got {value!r}") from exc


def _first_present(*values: Optional[str]) -> Optional[str]:
    for value in values:
        if value is not None and value.strip():
            return value.strip()
    return None


def _parse_fx_rates(raw: Optional[str]) -> Dict[str, float]:
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValueError("BILLING_FX_RATES must be a JSON object of currency to rate") from exc
    if not isinstance(parsed, dict):
        raise ValueError("BILLING_FX_RATES must be a JSON object of currency to rate")
    return {str(code).upper(): float(rate) for code, rate in parsed.items()}


def load_billing_client_config(
    merchant_account: Optional[MerchantAccount] = None,
    env: Optional[Mapping[str, str]] = None,
) -> BillingClientConfig:
    """Resolve :class:`BillingClientConfig` for ``merchant_account``.

    Values stored on the merchant account win; environment variables fill the
    gaps. A missing instance URL is a configuration error and is never retried.
    """

    env_mapping = os.environ if env is None else env
    account = merchant_account

    instance_url = _first_present(
        account.killbill_instance_url if account else None,
        env_mapping.get("KILLBILL_URL"),
    )
    if not instance_url:
        raise ConfigurationError("Kill Bill instance URL not configured")

    return BillingClientConfig(
        instance_url=instance_url.rstrip("/"),
        username=_first_present(account.killbill_username if account else None, env_mapping.get("KILLBILL_USER")),
        password=_first_present(account.killbill_password if account else None, env_mapping.get("KILLBILL_PASSWORD")),
        api_key=_first_present(account.killbill_api_key if account else None, env_mapping.get("KILLBILL_API_KEY")),
        api_secret=_first_present(
            account.killbill_api_secret if account else None, env_mapping.get("KILLBILL_API_SECRET")
        ),
        timeout_seconds=max(0.1, env_float(env_mapping.get("KILLBILL_TIMEOUT_SECONDS"), default=30.0)),
        max_read_attempts=max(1, env_int(env_mapping.get("KILLBILL_MAX_READ_ATTEMPTS"), default=3)),
        backoff_seconds=max(0.0, env_float(env_mapping.get("KILLBILL_RETRY_BACKOFF"), default=0.5)),
        account_key_prefix=(env_mapping.get("BILLING_ACCOUNT_PREFIX") or "crowdchurn").strip(),
    )


def load_billing_settings(env: Optional[Mapping[str, str]] = None) -> BillingSettings:
    """Load :class:`BillingSettings` from environment variables."""

    env_mapping = os.environ if env is None else env

    currencies_raw = env_mapping.get("BILLING_SUPPORTED_CURRENCIES")
    if currencies_raw:
        supported = tuple(
            dict.fromkeys(code.strip().upper() for code in currencies_raw.split(",") if code.strip())
        )
    else:
        supported = DEFAULT_SUPPORTED_CURRENCIES

    fail_window_days = env_float(env_mapping.get("BILLING_FAIL_WINDOW_DAYS"), default=5.0)
    reminder_lead_days = env_float(env_mapping.get("BILLING_DECLINE_REMINDER_LEAD_DAYS"), default=2.0)
    if reminder_lead_days > fail_window_days:
        raise ValueError("BILLING_DECLINE_REMINDER_LEAD_DAYS must not exceed BILLING_FAIL_WINDOW_DAYS")

    return BillingSettings(
        catalog_name=(env_mapping.get("BILLING_CATALOG_NAME") or "crowdchurn-catalog").strip(),
        supported_currencies=supported,
        fx_rates=_parse_fx_rates(env_mapping.get("BILLING_FX_RATES")),
        fx_url=env_mapping.get("BILLING_FX_URL") or None,
        fx_cache_seconds=max(0.0, env_float(env_mapping.get("BILLING_FX_CACHE_SECONDS"), default=3600.0)),
        fail_window=timedelta(days=fail_window_days),
        decline_reminder_lead=timedelta(days=reminder_lead_days),
        event_max_retries=max(0, env_int(env_mapping.get("BILLING_EVENT_MAX_RETRIES"), default=3)),
        event_retry_backoff_seconds=max(
            0.0, env_float(env_mapping.get("BILLING_EVENT_RETRY_BACKOFF"), default=5.0)
        ),
        webhook_secret=env_mapping.get("KILLBILL_WEBHOOK_SECRET") or None,
        admin_token=env_mapping.get("BILLING_ADMIN_TOKEN") or None,
        process_events_inline=env_bool(env_mapping.get("BILLING_PROCESS_EVENTS_INLINE"), default=False),
        dead_letters_enabled=env_bool(env_mapping.get("BILLING_DEAD_LETTERS_ENABLED"), default=False),
        account_key_prefix=(env_mapping.get("BILLING_ACCOUNT_PREFIX") or "crowdchurn").strip(),
    )


def load_database_config(env: Optional[Mapping[str, str]] = None) -> DatabaseConfig:
    """Load :class:`DatabaseConfig` from ``DB_*`` environment variables."""

    env_mapping = os.environ if env is None else env
    connect_timeout = env_float(env_mapping.get("DB_CONNECT_TIMEOUT"), default=5.0)
    if connect_timeout < 0:
        raise ValueError("DB_CONNECT_TIMEOUT must be non-negative")

    return DatabaseConfig(
        host=env_mapping.get("DB_HOST", "127.0.0.1"),
        port=env_int(env_mapping.get("DB_PORT"), default=5432),
        database=env_mapping.get("DB_NAME", "billing_db"),
        user=env_mapping.get("DB_USER", "billing_user"),
        password=env_mapping.get("DB_PASSWORD", "billing_pass"),
        connect_timeout=int(math.ceil(connect_timeout)),
    )


__all__ = [
    "BillingClientConfig",
    "BillingSettings",
    "DEFAULT_SUPPORTED_CURRENCIES",
    "DatabaseConfig",
    "env_bool",
    "env_float",
    "env_int",
    "load_database_config",
    "load_billing_client_config",
    "load_billing_settings",
]
