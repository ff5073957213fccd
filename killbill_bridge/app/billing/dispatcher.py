"""Routes inbound billing platform notifications to their handlers."""
from __future__ import annotations

import json
import logging
import re
from enum import Enum
from typing import Any, Dict, FrozenSet, Mapping, Optional

from .exceptions import ConfigurationError
from .gateway import GatewayFactory
from .invoices import InvoiceEventProcessor
from .models import InboundEvent, Subscription, parse_optional_datetime
from .reconciler import SubscriptionReconciler
from .service import BillingRepository, PaymentEventHandler

logger = logging.getLogger("billing")

# Per-delivery identifiers, most specific first.
DELIVERY_ID_FIELDS = ("userToken", "paymentTransactionId", "invoicePaymentId")

SUBSCRIPTION_EVENT_TYPES: FrozenSet[str] = frozenset(
    {
        "SUBSCRIPTION_CREATION",
        "SUBSCRIPTION_PHASE",
        "SUBSCRIPTION_CHANGE",
        "SUBSCRIPTION_CANCEL",
        "SUBSCRIPTION_UNCANCEL",
        "SUBSCRIPTION_BCD_CHANGE",
    }
)

INVOICE_EVENT_TYPES: FrozenSet[str] = frozenset(
    {
        "INVOICE_CREATION",
        "INVOICE_ADJUSTMENT",
        "INVOICE_NOTIFICATION",
        "INVOICE_PAYMENT_SUCCESS",
        "INVOICE_PAYMENT_FAILED",
    }
)

PAYMENT_EVENT_TYPES: FrozenSet[str] = frozenset(
    {
        "PAYMENT_SUCCESS",
        "PAYMENT_FAILED",
        "PAYMENT_REFUND",
        "PAYMENT_CHARGEBACK",
    }
)


class EventCategory(str, Enum):
    SUBSCRIPTION = "subscription"
    INVOICE = "invoice"
    PAYMENT = "payment"
    UNCLASSIFIED = "unclassified"


class DispatchOutcome(str, Enum):
    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"


def classify(event_type: Optional[str]) -> EventCategory:
    if event_type in SUBSCRIPTION_EVENT_TYPES:
        return EventCategory.SUBSCRIPTION
    if event_type in INVOICE_EVENT_TYPES:
        return EventCategory.INVOICE
    if event_type in PAYMENT_EVENT_TYPES:
        return EventCategory.PAYMENT
    return EventCategory.UNCLASSIFIED


def _metadata(payload: Mapping[str, Any]) -> Dict[str, Any]:
    raw = payload.get("metaData")
    if isinstance(raw, dict):
        return raw
    if isinstance(raw, str) and raw.strip():
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            return {}
        return parsed if isinstance(parsed, dict) else {}
    return {}


def event_from_payload(payload: Mapping[str, Any]) -> InboundEvent:
    """Normalize a webhook body; fields missing at the top level are read from ``metaData``."""

    meta = _metadata(payload)

    def field(name: str) -> Optional[str]:
        value = payload.get(name)
        if value in (None, ""):
            value = meta.get(name)
        return None if value in (None, "") else str(value)

    event_type = field("eventType")
    if not event_type:
        raise ValueError("eventType missing from billing event payload")

    return InboundEvent(
        event_type=event_type.upper(),
        object_id=field("objectId"),
        object_type=field("objectType"),
        account_id=field("accountId"),
        external_key=field("externalKey"),
        effective_date=parse_optional_datetime(field("effectiveDate")),
        new_plan=field("newPlan"),
        new_phase=field("newPhase"),
        delivery_id=next((value for value in map(field, DELIVERY_ID_FIELDS) if value), None),
        payload=dict(payload),
    )


class EventDispatcher:
    """Classifies events, skips ones already processed, and routes the rest."""

    def __init__(
        self,
        repository: BillingRepository,
        reconciler: SubscriptionReconciler,
        invoices: InvoiceEventProcessor,
        payments: PaymentEventHandler,
        gateways: GatewayFactory,
        *,
        account_key_prefix: str = "crowdchurn",
    ) -> None:
        self._repository = repository
        self._reconciler = reconciler
        self._invoices = invoices
        self._payments = payments
        self._gateways = gateways
        self._account_key_pattern = re.compile(rf"^{re.escape(account_key_prefix)}_(.+)$")

    def handle(self, event: InboundEvent) -> DispatchOutcome:
        dedup_key = event.dedup_key
        if dedup_key is not None and self._repository.has_processed_event(dedup_key):
            logger.info("Skipping duplicate billing event %s", dedup_key)
            return DispatchOutcome.DUPLICATE

        category = classify(event.event_type)
        if category == EventCategory.SUBSCRIPTION:
            handled = self._handle_subscription_event(event)
        elif category == EventCategory.INVOICE:
            handled = self._handle_invoice_event(event)
        elif category == EventCategory.PAYMENT:
            handled = self._handle_payment_event(event)
        else:
            logger.info("Unhandled billing event type: %s", event.event_type)
            return DispatchOutcome.IGNORED

        if not handled:
            return DispatchOutcome.IGNORED
        if dedup_key is not None:
            self._repository.mark_event_processed(event)
        return DispatchOutcome.PROCESSED

    # -- subscription lookups -------------------------------------------

    def find_subscription(self, identifier: Optional[str]) -> Optional[Subscription]:
        if not identifier:
            return None
        return self._repository.get_subscription_by_external_id(
            identifier
        ) or self._repository.find_subscription_by_purchase_transaction(identifier)

    def _subscription_for_account_key(self, key: Optional[str]) -> Optional[Subscription]:
        match = self._account_key_pattern.match(key or "")
        if match is None:
            return None
        identity = match.group(1)
        subscription = self._repository.find_alive_subscription_for_user(identity)
        if subscription is None:
            # Accounts for users without an external id are keyed by subscription id.
            candidate = self._repository.get_subscription(identity)
            if candidate is not None and candidate.alive:
                subscription = candidate
        return subscription

    def find_subscription_by_account(self, event: InboundEvent) -> Optional[Subscription]:
        for key in (event.account_id, event.external_key):
            subscription = self._subscription_for_account_key(key)
            if subscription is not None:
                return subscription

        if not event.account_id:
            return None
        # Opaque account ids are resolved against the default instance only.
        try:
            account = self._gateways.default().get_account(event.account_id)
        except ConfigurationError as exc:
            logger.warning(
                "Cannot resolve billing account %s: %s",
                event.account_id,
                exc,
                extra={"event_type": event.event_type},
            )
            return None
        if account is None:
            return None
        return self._subscription_for_account_key(account.external_key)

    # -- routing ---------------------------------------------------------

    def _handle_subscription_event(self, event: InboundEvent) -> bool:
        subscription = self.find_subscription(event.external_key or event.object_id)
        if subscription is None:
            logger.info(
                "No subscription for billing event %s",
                event.event_type,
                extra={"object_id": event.object_id, "external_key": event.external_key},
            )
            return False

        event_type = event.event_type
        if event_type == "SUBSCRIPTION_CREATION":
            self._reconciler.handle_creation(subscription, event)
        elif event_type == "SUBSCRIPTION_CANCEL":
            self._reconciler.handle_cancellation(subscription, event)
        elif event_type == "SUBSCRIPTION_UNCANCEL":
            self._reconciler.handle_uncancellation(subscription, event)
        elif event_type == "SUBSCRIPTION_CHANGE":
            self._reconciler.handle_change(subscription, event)
        elif event_type == "SUBSCRIPTION_PHASE":
            self._reconciler.handle_phase(subscription, event)
        else:
            logger.info("Billing cycle day changed for subscription %s", subscription.external_id)
        return True

    def _handle_invoice_event(self, event: InboundEvent) -> bool:
        subscription = self.find_subscription_by_account(event)
        if subscription is None:
            logger.info(
                "No subscription for billing account on %s",
                event.event_type,
                extra={"account_id": event.account_id, "object_id": event.object_id},
            )
            return False

        event_type = event.event_type
        if event_type == "INVOICE_PAYMENT_SUCCESS" and event.object_id:
            self._invoices.process_invoice_notification(
                event.object_id, merchant_account_id=subscription.merchant_account_id
            )
        elif event_type == "INVOICE_PAYMENT_FAILED" and event.object_id:
            self._invoices.handle_payment_failed(subscription, event.object_id)
        else:
            logger.info("Invoice event %s for invoice %s", event_type, event.object_id)
        return True

    def _handle_payment_event(self, event: InboundEvent) -> bool:
        subscription = self.find_subscription_by_account(event)
        self._payments.handle_payment_event(event, subscription)
        return True


__all__ = [
    "DispatchOutcome",
    "EventCategory",
    "EventDispatcher",
    "INVOICE_EVENT_TYPES",
    "PAYMENT_EVENT_TYPES",
    "SUBSCRIPTION_EVENT_TYPES",
    "DELIVERY_ID_FIELDS",
    "classify",
    "event_from_payload",
]
