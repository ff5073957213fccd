"""Invoice and payment notifications from the billing platform."""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional
from uuid import uuid4

from .external import ExternalInvoice, ExternalPayment, InvoiceStatus
from .gateway import AuditContext, BillingGateway, GatewayFactory
from .models import (
    BillingAuditEvent,
    BillingAuditEventType,
    Purchase,
    PurchaseState,
    Subscription,
)
from .service import (
    BillingEventLogger,
    BillingNotifier,
    BillingRepository,
    DunningScheduler,
    SubscriptionHooks,
)

logger = logging.getLogger("billing")

DEFAULT_CREDIT_DESCRIPTION = "Credit applied via CrowdChurn"
INVOICE_AUDIT = AuditContext(reason="CrowdChurn invoice handling")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def pay_outstanding_invoice(
    gateway: BillingGateway,
    invoice_id: str,
    *,
    payment_method_id: Optional[str] = None,
    audit: Optional[AuditContext] = None,
) -> Optional[ExternalPayment]:
    """Charge the invoice's open balance; ``None`` when missing or already settled."""

    invoice = gateway.get_invoice(invoice_id)
    if invoice is None or invoice.balance_cents <= 0:
        return None
    return gateway.pay_invoice(invoice, payment_method_id=payment_method_id, audit=audit)


class InvoiceEventProcessor:
    """Applies invoice outcomes to internal purchases and notifications.

    Lookups that fail while resolving the subscription behind an invoice are
    logged and treated as nothing to do. Fetching the invoice itself is not
    best-effort: transient platform errors propagate so the job is retried.
    """

    def __init__(
        self,
        repository: BillingRepository,
        gateways: GatewayFactory,
        notifier: BillingNotifier,
        scheduler: DunningScheduler,
        hooks: SubscriptionHooks,
        event_logger: BillingEventLogger,
        *,
        fail_window: timedelta = timedelta(days=5),
        decline_reminder_lead: timedelta = timedelta(days=2),
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        if decline_reminder_lead > fail_window:
            raise ValueError("decline_reminder_lead must not exceed fail_window")
        self._repository = repository
        self._gateways = gateways
        self._notifier = notifier
        self._scheduler = scheduler
        self._hooks = hooks
        self._event_logger = event_logger
        self._fail_window = fail_window
        self._decline_reminder_lead = decline_reminder_lead
        self._clock = clock

    def process_invoice_notification(
        self, invoice_id: str, *, merchant_account_id: Optional[str] = None
    ) -> Optional[ExternalInvoice]:
        gateway = self._gateways.for_merchant_account(merchant_account_id)
        invoice = gateway.get_invoice(invoice_id)
        if invoice is None:
            logger.info("Invoice %s not found on billing platform", invoice_id)
            return None
        if invoice.draft:
            logger.debug("Ignoring draft invoice %s", invoice.invoice_id)
            return invoice

        if invoice.committed and not invoice.paid:
            logger.info("Processing unpaid invoice %s", invoice.invoice_id)
            subscription = self.find_subscription_for_invoice(invoice, gateway)
            if subscription is not None and subscription.alive:
                self._notifier.notify_card_declined(subscription, invoice.invoice_id)
        elif invoice.paid:
            logger.info("Processing paid invoice %s", invoice.invoice_id)
            subscription = self.find_subscription_for_invoice(invoice, gateway)
            if subscription is not None:
                self.sync_invoice_with_purchase(invoice, subscription)
        return invoice

    def find_subscription_for_invoice(
        self, invoice: ExternalInvoice, gateway: BillingGateway
    ) -> Optional[Subscription]:
        subscription_ids = invoice.subscription_ids()
        if not subscription_ids:
            return None
        external_id = subscription_ids[0]
        try:
            subscription = self._repository.get_subscription_by_external_id(external_id)
            if subscription is not None:
                return subscription
            external = gateway.get_subscription_by_id(external_id)
            if external is None or not external.external_key:
                return None
            return self._repository.get_subscription_by_external_id(external.external_key)
        except Exception:
            logger.exception(
                "Error finding subscription for invoice %s",
                invoice.invoice_id,
                extra={"killbill_subscription_id": external_id},
            )
            return None

    def _find_or_create_purchase(self, invoice: ExternalInvoice, subscription: Subscription) -> Optional[Purchase]:
        try:
            existing = self._repository.get_purchase_by_transaction(invoice.invoice_id)
            if existing is not None:
                return existing
            return self._repository.create_purchase(
                Purchase(
                    purchase_id=f"pur_{uuid4().hex}",
                    subscription_id=subscription.subscription_id,
                    transaction_id=invoice.invoice_id,
                    price_cents=invoice.amount_cents,
                    currency=invoice.currency.lower(),
                )
            )
        except Exception:
            logger.exception(
                "Error creating purchase for invoice %s",
                invoice.invoice_id,
                extra={"subscription_id": subscription.subscription_id},
            )
            return None

    def sync_invoice_with_purchase(
        self, invoice: ExternalInvoice, subscription: Subscription
    ) -> Optional[Purchase]:
        """Mark the invoice's purchase successful exactly once."""

        if not (invoice.committed and invoice.paid):
            return None

        purchase = self._find_or_create_purchase(invoice, subscription)
        if purchase is None or not purchase.in_progress:
            return purchase

        now = self._clock()

        def mark_successful(current: Purchase) -> Optional[Purchase]:
            if not current.in_progress:
                return None
            return current.model_copy(
                update={
                    "state": PurchaseState.SUCCESSFUL,
                    "price_cents": invoice.amount_cents,
                    "succeeded_at": now,
                    "updated_at": now,
                }
            )

        updated = self._repository.apply_purchase_change(purchase.purchase_id, mark_successful)
        if updated is None:
            return self._repository.get_purchase_by_transaction(invoice.invoice_id)

        self._hooks.handle_purchase_success(subscription, updated)
        self._event_logger.log(
            BillingAuditEvent(
                event_type=BillingAuditEventType.PURCHASE_SUCCEEDED,
                subscription_id=subscription.subscription_id,
                metadata={"invoice_id": invoice.invoice_id, "purchase_id": updated.purchase_id},
            )
        )
        return updated

    def handle_payment_failed(self, subscription: Subscription, invoice_id: str) -> bool:
        """Notify the customer and schedule dunning; ``False`` when the subscription is not alive."""

        if not subscription.alive:
            return False

        now = self._clock()
        self._notifier.notify_card_declined(subscription, invoice_id)
        self._scheduler.schedule_decline_reminder(
            subscription, invoice_id, now + self._fail_window - self._decline_reminder_lead
        )
        self._scheduler.schedule_unsubscribe_and_fail(subscription, now + self._fail_window)
        self._event_logger.log(
            BillingAuditEvent(
                event_type=BillingAuditEventType.PAYMENT_FAILED,
                subscription_id=subscription.subscription_id,
                metadata={"invoice_id": invoice_id},
            )
        )
        logger.info(
            "Invoice payment failed for subscription %s, invoice %s",
            subscription.external_id,
            invoice_id,
        )
        return True

    def retry_invoice_payment(
        self,
        invoice_id: str,
        payment_method_id: Optional[str] = None,
        *,
        merchant_account_id: Optional[str] = None,
        audit: Optional[AuditContext] = None,
    ) -> Optional[ExternalPayment]:
        gateway = self._gateways.for_merchant_account(merchant_account_id)
        return pay_outstanding_invoice(
            gateway, invoice_id, payment_method_id=payment_method_id, audit=audit or INVOICE_AUDIT
        )

    def create_invoice_for_subscription(
        self,
        subscription: Subscription,
        target_date: Optional[str] = None,
        *,
        audit: Optional[AuditContext] = None,
    ) -> Optional[ExternalInvoice]:
        gateway = self._gateways.for_subscription(subscription)
        external = gateway.get_subscription_by_external_key(subscription.external_id)
        if external is None or not external.account_id:
            return None
        return gateway.trigger_invoice(
            external.account_id,
            target_date=target_date or self._clock().date().isoformat(),
            audit=audit or INVOICE_AUDIT,
        )

    def void_invoice(
        self,
        invoice_id: str,
        *,
        merchant_account_id: Optional[str] = None,
        audit: Optional[AuditContext] = None,
    ) -> Optional[ExternalInvoice]:
        gateway = self._gateways.for_merchant_account(merchant_account_id)
        invoice = gateway.get_invoice(invoice_id)
        if invoice is None:
            return None
        gateway.void_invoice(invoice_id, audit=audit or INVOICE_AUDIT)
        return invoice.model_copy(update={"status": InvoiceStatus.VOID})

    def add_credit_to_invoice(
        self,
        invoice_id: str,
        amount_cents: int,
        description: Optional[str] = None,
        *,
        merchant_account_id: Optional[str] = None,
        audit: Optional[AuditContext] = None,
    ) -> Optional[ExternalInvoice]:
        if amount_cents <= 0:
            raise ValueError("amount_cents must be positive")
        gateway = self._gateways.for_merchant_account(merchant_account_id)
        invoice = gateway.get_invoice(invoice_id)
        if invoice is None or not invoice.account_id:
            return None
        gateway.add_credit(
            invoice.account_id,
            amount_cents,
            invoice.currency,
            invoice_id=invoice_id,
            description=description or DEFAULT_CREDIT_DESCRIPTION,
            audit=audit or INVOICE_AUDIT,
        )
        return invoice

    def get_invoice_payments(
        self, invoice_id: str, *, merchant_account_id: Optional[str] = None
    ) -> List[ExternalPayment]:
        return self._gateways.for_merchant_account(merchant_account_id).get_invoice_payments(invoice_id)


__all__ = ["InvoiceEventProcessor", "pay_outstanding_invoice"]
