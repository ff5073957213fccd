"""Delivery backends for billing notification email."""
from __future__ import annotations

import logging
import smtplib
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Dict, Optional

from .config import EmailConfig

logger = logging.getLogger(__name__)

SMTPS_PORT = 465


@dataclass(frozen=True)
class OutboundEmail:
    """A rendered billing email addressed to one subscriber."""

    to: str
    subject: str
    text_body: str
    html_body: str
    category: str
    reply_to: Optional[str] = None


class EmailProvider:
    name = "base"

    def __init__(self, *, from_email: str) -> None:
        self.from_email = from_email

    def send(self, message: OutboundEmail) -> None:
        raise NotImplementedError

    def describe(self) -> Dict[str, str]:
        return {"email_provider": self.name, "email_sender": self.from_email}


class DevPrintProvider(EmailProvider):
    """Logs billing email instead of delivering it."""

    name = "dev"

    def send(self, message: OutboundEmail) -> None:
        logger.info(
            "Dev billing email %s to %s: %s",
            message.category,
            message.to,
            message.subject,
            extra={"email_sender": self.from_email, "email_reply_to": message.reply_to},
        )


class SMTPProvider(EmailProvider):
    """Delivers multipart billing email over SMTP.

    Port 465 connects with implicit TLS; any other port upgrades with
    STARTTLS when ``use_tls`` is set.
    """

    name = "smtp"

    def __init__(
        self,
        *,
        from_email: str,
        host: str,
        port: int,
        username: Optional[str] = None,
        password: Optional[str] = None,
        use_tls: bool = True,
        timeout: float = 30.0,
    ) -> None:
        super().__init__(from_email=from_email)
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.use_tls = use_tls
        self.timeout = timeout

    def build_message(self, message: OutboundEmail) -> str:
        mime = MIMEMultipart("alternative")
        mime["From"] = self.from_email
        mime["To"] = message.to
        mime["Subject"] = message.subject
        mime["X-Billing-Category"] = message.category
        if message.reply_to:
            mime["Reply-To"] = message.reply_to
        mime.attach(MIMEText(message.text_body, "plain", "utf-8"))
        mime.attach(MIMEText(message.html_body, "html", "utf-8"))
        return mime.as_string()

    def _connect(self) -> smtplib.SMTP:
        if self.port == SMTPS_PORT:
            return smtplib.SMTP_SSL(self.host, self.port, timeout=self.timeout)
        client = smtplib.SMTP(self.host, self.port, timeout=self.timeout)
        if self.use_tls:
            client.starttls()
        return client

    def send(self, message: OutboundEmail) -> None:
        payload = self.build_message(message)
        with self._connect() as client:
            if self.username and self.password:
                client.login(self.username, self.password)
            client.sendmail(self.from_email, [message.to], payload)


def create_email_provider(config: EmailConfig) -> EmailProvider:
    if config.provider_name == "smtp":
        return SMTPProvider(
            from_email=config.from_email,
            host=config.smtp_host,
            port=config.smtp_port,
            username=config.smtp_username,
            password=config.smtp_password,
            use_tls=config.smtp_use_tls,
            timeout=config.smtp_timeout,
        )
    if config.provider_name != "dev":
        logger.warning("Unknown EMAIL_PROVIDER %r; billing email will only be logged", config.provider_name)
    return DevPrintProvider(from_email=config.from_email)


__all__ = ["DevPrintProvider", "EmailProvider", "OutboundEmail", "SMTPProvider", "create_email_provider"]
