"""Billing notification email delivery."""

from .config import EmailConfig, load_email_config
from .providers import DevPrintProvider, EmailProvider, OutboundEmail, SMTPProvider, create_email_provider
from .renderer import CARD_DECLINED, SUBSCRIPTION_RESTARTED, render_subject_body

__all__ = [
    "CARD_DECLINED",
    "DevPrintProvider",
    "EmailConfig",
    "EmailProvider",
    "OutboundEmail",
    "SMTPProvider",
    "SUBSCRIPTION_RESTARTED",
    "create_email_provider",
    "load_email_config",
    "render_subject_body",
]
