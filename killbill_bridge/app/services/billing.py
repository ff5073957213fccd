"""Application wiring for the billing reconciliation service."""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime
from functools import lru_cache
from typing import Any, Callable, Dict, Mapping, Optional

from ...mail import (
    CARD_DECLINED,
    SUBSCRIPTION_RESTARTED,
    EmailConfig,
    EmailProvider,
    OutboundEmail,
    create_email_provider,
    load_email_config,
    render_subject_body,
)
from ..billing.catalog import CatalogBuilder
from ..billing.config import BillingSettings, load_billing_settings
from ..billing.currency import CurrencyResolver
from ..billing.dispatcher import DispatchOutcome, EventDispatcher, event_from_payload
from ..billing.fx import FxRateSource, HttpFxRateSource, StaticFxRateSource
from ..billing.gateway import GatewayFactory, Transport
from ..billing.invoices import InvoiceEventProcessor
from ..billing.models import (
    BillingAuditEvent,
    InboundEvent,
    Purchase,
    ResubscriptionReason,
    Subscription,
)
from ..billing.reconciler import SubscriptionReconciler
from ..billing.repository import PostgresBillingRepository
from ..billing.service import BillingRepository, CatalogService

logger = logging.getLogger("billing")

DECLINE_REMINDER_JOB = "decline_reminder"
UNSUBSCRIBE_AND_FAIL_JOB = "unsubscribe_and_fail"

_REASON_TEXT = {
    ResubscriptionReason.PAYMENT_ISSUE_RESOLVED: "your payment issue has been resolved",
}


class LoggingBillingEventLogger:
    """Event logger forwarding billing audit events to logging."""

    def log(self, event: BillingAuditEvent) -> None:
        logger.info(
            "Billing event %s subscription=%s metadata=%s",
            event.event_type.value,
            event.subscription_id,
            event.metadata,
        )


class EmailBillingNotifier:
    """Sends card-declined and restart emails to the subscriber."""

    def __init__(
        self,
        repository: BillingRepository,
        *,
        provider: Optional[EmailProvider] = None,
        config: Optional[EmailConfig] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._repository = repository
        self._config = config or load_email_config()
        self._provider = provider or create_email_provider(self._config)
        self._sleep = sleep

    def _context(self, subscription: Subscription) -> Dict[str, Any]:
        product = self._repository.get_product(subscription.product_id)
        return {
            "recipient_name": subscription.full_name or "there",
            "product_name": product.name if product else "your",
            "manage_url": self._config.subscription_url(subscription.external_id),
            "support_email": self._config.support_email,
        }

    def _send(self, template: str, subscription: Subscription, context: Dict[str, Any]) -> bool:
        recipient = subscription.email
        if not recipient:
            logger.info(
                "Skipping billing email without recipient",
                extra={"subscription_id": subscription.subscription_id, "email_template": template},
            )
            return False

        subject, text_body, html_body = render_subject_body(template, context)
        message = OutboundEmail(
            to=recipient,
            subject=subject,
            text_body=text_body,
            html_body=html_body,
            category=template,
            reply_to=self._config.support_email,
        )
        attempts = max(1, self._config.max_attempts)
        backoff = max(0.0, self._config.backoff_seconds)

        for attempt in range(1, attempts + 1):
            try:
                self._provider.send(message)
            except Exception:
                logger.exception(
                    "Failed to send billing email",
                    extra={
                        "subscription_id": subscription.subscription_id,
                        "email_template": template,
                        "email_attempt": attempt,
                        "email_attempts": attempts,
                    },
                )
                if attempt >= attempts:
                    break
                if backoff > 0:
                    self._sleep(backoff * attempt)
                continue

            logger.info(
                "Billing email dispatched",
                extra={
                    "subscription_id": subscription.subscription_id,
                    "email_template": template,
                    "email_provider": self._provider.describe(),
                },
            )
            return True
        return False

    def notify_card_declined(self, subscription: Subscription, invoice_id: Optional[str]) -> None:
        context = self._context(subscription)
        context["invoice_suffix"] = f" (invoice {invoice_id})" if invoice_id else ""
        self._send(CARD_DECLINED, subscription, context)

    def notify_subscription_restarted(self, subscription: Subscription, reason: ResubscriptionReason) -> None:
        context = self._context(subscription)
        context["reason_text"] = _REASON_TEXT.get(reason, reason.value.replace("_", " "))
        self._send(SUBSCRIPTION_RESTARTED, subscription, context)


class RepositoryDunningScheduler:
    """Persists dunning follow-ups to the scheduled jobs table."""

    def __init__(self, repository: PostgresBillingRepository) -> None:
        self._repository = repository

    def schedule_decline_reminder(self, subscription: Subscription, invoice_id: str, run_at: datetime) -> None:
        job_id = self._repository.schedule_job(
            DECLINE_REMINDER_JOB, subscription.subscription_id, run_at, invoice_id=invoice_id
        )
        logger.info(
            "Scheduled decline reminder %s for subscription %s at %s",
            job_id,
            subscription.external_id,
            run_at.isoformat(),
        )

    def schedule_unsubscribe_and_fail(self, subscription: Subscription, run_at: datetime) -> None:
        job_id = self._repository.schedule_job(UNSUBSCRIBE_AND_FAIL_JOB, subscription.subscription_id, run_at)
        logger.info(
            "Scheduled unsubscribe-and-fail %s for subscription %s at %s",
            job_id,
            subscription.external_id,
            run_at.isoformat(),
        )


class LoggingSubscriptionHooks:
    def handle_purchase_success(self, subscription: Subscription, purchase: Purchase) -> None:
        logger.info(
            "Recurring charge settled for subscription %s purchase=%s amount=%s %s",
            subscription.external_id,
            purchase.purchase_id,
            purchase.price_cents,
            purchase.currency,
        )


class LoggingPaymentEventHandler:
    """Records payment, refund and chargeback notifications."""

    def handle_payment_event(self, event: InboundEvent, subscription: Optional[Subscription]) -> None:
        subscription_id = subscription.subscription_id if subscription else None
        if event.event_type == "PAYMENT_CHARGEBACK":
            logger.warning(
                "Chargeback received for payment %s",
                event.object_id,
                extra={"subscription_id": subscription_id, "account_id": event.account_id},
            )
            return
        logger.info(
            "Payment event %s for payment %s",
            event.event_type,
            event.object_id,
            extra={"subscription_id": subscription_id, "account_id": event.account_id},
        )


@dataclass
class BillingComponents:
    settings: BillingSettings
    repository: PostgresBillingRepository
    gateways: GatewayFactory
    resolver: CurrencyResolver
    catalog: CatalogService
    reconciler: SubscriptionReconciler
    invoices: InvoiceEventProcessor
    dispatcher: EventDispatcher
    event_logger: LoggingBillingEventLogger

    def handle_webhook_payload(self, payload: Mapping[str, Any]) -> DispatchOutcome:
        return self.dispatcher.handle(event_from_payload(payload))


def build_fx_source(settings: BillingSettings) -> FxRateSource:
    if settings.fx_url:
        return HttpFxRateSource(settings.fx_url, cache_seconds=settings.fx_cache_seconds)
    return StaticFxRateSource(settings.fx_rates)


def build_billing_components(
    *,
    settings: Optional[BillingSettings] = None,
    repository: Optional[PostgresBillingRepository] = None,
    env: Optional[Mapping[str, str]] = None,
    transport: Optional[Transport] = None,
    email_provider: Optional[EmailProvider] = None,
) -> BillingComponents:
    settings = settings or load_billing_settings(env)
    repository = repository or PostgresBillingRepository()
    event_logger = LoggingBillingEventLogger()
    gateways = GatewayFactory(repository.get_merchant_account, env=env, transport=transport)
    resolver = CurrencyResolver(build_fx_source(settings), settings.supported_currencies)
    notifier = EmailBillingNotifier(
        repository,
        provider=email_provider,
        config=load_email_config(env),
    )

    reconciler = SubscriptionReconciler(repository, gateways, notifier, event_logger)
    invoices = InvoiceEventProcessor(
        repository,
        gateways,
        notifier,
        RepositoryDunningScheduler(repository),
        LoggingSubscriptionHooks(),
        event_logger,
        fail_window=settings.fail_window,
        decline_reminder_lead=settings.decline_reminder_lead,
    )
    dispatcher = EventDispatcher(
        repository,
        reconciler,
        invoices,
        LoggingPaymentEventHandler(),
        gateways,
        account_key_prefix=settings.account_key_prefix,
    )
    catalog = CatalogService(
        repository=repository,
        builder=CatalogBuilder(resolver, catalog_name=settings.catalog_name),
        gateways=gateways,
        event_logger=event_logger,
    )
    return BillingComponents(
        settings=settings,
        repository=repository,
        gateways=gateways,
        resolver=resolver,
        catalog=catalog,
        reconciler=reconciler,
        invoices=invoices,
        dispatcher=dispatcher,
        event_logger=event_logger,
    )


@lru_cache(maxsize=1)
def get_billing_components() -> BillingComponents:
    return build_billing_components()


def handle_webhook_payload(payload: Mapping[str, Any]) -> DispatchOutcome:
    """Entry point used by the event queue worker."""

    return get_billing_components().handle_webhook_payload(payload)


__all__ = [
    "BillingComponents",
    "EmailBillingNotifier",
    "LoggingBillingEventLogger",
    "LoggingPaymentEventHandler",
    "LoggingSubscriptionHooks",
    "RepositoryDunningScheduler",
    "build_billing_components",
    "build_fx_source",
    "get_billing_components",
    "handle_webhook_payload",
]
