"""Settings for billing notification email."""
from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping, Optional

from ..app.billing.config import env_bool, env_float, env_int

DEFAULT_FROM_EMAIL = "billing@example.com"


@dataclass(frozen=True)
class EmailConfig:
    """Delivery settings plus the links and addresses quoted in billing email."""

    provider_name: str = "dev"
    from_email: str = DEFAULT_FROM_EMAIL
    smtp_host: str = "localhost"
    smtp_port: int = 587
    smtp_username: Optional[str] = None
    smtp_password: Optional[str] = None
    smtp_use_tls: bool = True
    smtp_timeout: float = 30.0
    app_base_url: str = "http://localhost:5173"
    support_email: str = DEFAULT_FROM_EMAIL
    max_attempts: int = 3
    backoff_seconds: float = 2.0

    def subscription_url(self, external_id: str) -> str:
        return f"{self.app_base_url}/subscriptions/{external_id}"


def load_email_config(env: Optional[Mapping[str, str]] = None) -> EmailConfig:
    """Load :class:`EmailConfig` from environment variables.

    ``SUPPORT_EMAIL`` defaults to the sender address and is used as the
    Reply-To of every billing message.
    """

    env_mapping = os.environ if env is None else env
    from_email = (env_mapping.get("FROM_EMAIL") or DEFAULT_FROM_EMAIL).strip()

    return EmailConfig(
        provider_name=(env_mapping.get("EMAIL_PROVIDER") or "dev").strip().lower() or "dev",
        from_email=from_email,
        smtp_host=env_mapping.get("SMTP_HOST") or "localhost",
        smtp_port=env_int(env_mapping.get("SMTP_PORT"), default=587),
        smtp_username=env_mapping.get("SMTP_USER") or None,
        smtp_password=env_mapping.get("SMTP_PASS") or None,
        smtp_use_tls=env_bool(env_mapping.get("SMTP_USE_TLS"), default=True),
        smtp_timeout=max(1.0, env_float(env_mapping.get("SMTP_TIMEOUT"), default=30.0)),
        app_base_url=(env_mapping.get("APP_BASE_URL") or "http://localhost:5173").rstrip("/"),
        support_email=(env_mapping.get("SUPPORT_EMAIL") or from_email).strip(),
        max_attempts=max(1, env_int(env_mapping.get("EMAIL_MAX_ATTEMPTS"), default=3)),
        backoff_seconds=max(0.0, env_float(env_mapping.get("EMAIL_RETRY_BACKOFF"), default=2.0)),
    )


__all__ = ["EmailConfig", "load_email_config"]
