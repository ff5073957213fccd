"""Collaborator protocols and the catalog sync service."""
from __future__ import annotations

import logging
import sys
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional, Protocol

from .catalog import CatalogBuilder, CatalogDocument
from .exceptions import NotFound
from .gateway import AuditContext, GatewayFactory
from .models import (
    BillingAuditEvent,
    BillingAuditEventType,
    InboundEvent,
    MerchantAccount,
    Product,
    Purchase,
    ResubscriptionReason,
    Subscription,
)

logger = logging.getLogger("billing")

SubscriptionChange = Callable[[Subscription], Optional[Subscription]]
PurchaseChange = Callable[[Purchase], Optional[Purchase]]


class BillingRepository(Protocol):
    """Persistence operations required by billing reconciliation.

    ``apply_*_change`` runs ``change`` against the freshly locked row and
    persists the returned copy. ``change`` returns ``None`` when the row
    already reflects the target state, in which case nothing is written and
    ``None`` is returned.
    """

    def get_product(self, product_id: str) -> Optional[Product]:
        ...

    def get_merchant_account(self, merchant_account_id: str) -> Optional[MerchantAccount]:
        ...

    def get_subscription(self, subscription_id: str) -> Optional[Subscription]:
        ...

    def get_subscription_by_external_id(self, external_id: str) -> Optional[Subscription]:
        ...

    def find_alive_subscription_for_user(self, user_external_id: str) -> Optional[Subscription]:
        ...

    def find_subscription_by_purchase_transaction(self, transaction_id: str) -> Optional[Subscription]:
        ...

    def apply_subscription_change(self, subscription_id: str, change: SubscriptionChange) -> Optional[Subscription]:
        ...

    def get_purchase_by_transaction(self, transaction_id: str) -> Optional[Purchase]:
        ...

    def create_purchase(self, purchase: Purchase) -> Purchase:
        """Insert ``purchase`` unless one exists for its transaction id; return the stored row."""

    def apply_purchase_change(self, purchase_id: str, change: PurchaseChange) -> Optional[Purchase]:
        ...

    def has_processed_event(self, dedup_key: str) -> bool:
        ...

    def mark_event_processed(self, event: InboundEvent) -> None:
        ...


class BillingNotifier(Protocol):
    """Dispatches billing related notifications to end users."""

    def notify_card_declined(self, subscription: Subscription, invoice_id: Optional[str]) -> None:
        ...

    def notify_subscription_restarted(self, subscription: Subscription, reason: ResubscriptionReason) -> None:
        ...


class DunningScheduler(Protocol):
    """Schedules follow-up work after a failed recurring charge."""

    def schedule_decline_reminder(self, subscription: Subscription, invoice_id: str, run_at: datetime) -> None:
        ...

    def schedule_unsubscribe_and_fail(self, subscription: Subscription, run_at: datetime) -> None:
        ...


class BillingEventLogger(Protocol):
    """Captures structured billing audit events."""

    def log(self, event: BillingAuditEvent) -> None:
        ...


class SubscriptionHooks(Protocol):
    """Business rules the owning application runs when a charge settles."""

    def handle_purchase_success(self, subscription: Subscription, purchase: Purchase) -> None:
        ...


class PaymentEventHandler(Protocol):
    """Handles payment, refund and chargeback notifications."""

    def handle_payment_event(self, event: InboundEvent, subscription: Optional[Subscription]) -> None:
        ...


_dataclass_kwargs = {"slots": True} if sys.version_info >= (3, 10) else {}


@dataclass(**_dataclass_kwargs)
class CatalogService:
    """Builds a product's catalog and uploads it to the billing platform."""

    repository: BillingRepository
    builder: CatalogBuilder
    gateways: GatewayFactory
    event_logger: BillingEventLogger

    def _product(self, product_id: str) -> Product:
        product = self.repository.get_product(product_id)
        if product is None:
            raise NotFound(f"Product {product_id} not found", detail={"product_id": product_id})
        return product

    def preview(self, product_id: str) -> str:
        return self.builder.generate_catalog_xml(self._product(product_id))

    def sync_product(
        self,
        product_id: str,
        *,
        merchant_account_id: Optional[str] = None,
        audit: Optional[AuditContext] = None,
    ) -> CatalogDocument:
        product = self._product(product_id)
        document = self.builder.build_catalog(product)
        gateway = self.gateways.for_merchant_account(merchant_account_id)
        gateway.upload_catalog(
            document.to_xml(),
            audit=audit or AuditContext(reason="catalog_sync", comment=f"product {product.product_id}"),
        )
        logger.info(
            "Uploaded catalog for product %s with %d plans",
            product.product_id,
            len(document.plans),
            extra={"product_id": product.product_id, "currencies": ",".join(document.currencies)},
        )
        self.event_logger.log(
            BillingAuditEvent(
                event_type=BillingAuditEventType.CATALOG_UPLOADED,
                metadata={
                    "product_id": product.product_id,
                    "plans": ",".join(plan.name for plan in document.plans),
                },
            )
        )
        return document


__all__ = [
    "BillingEventLogger",
    "BillingNotifier",
    "BillingRepository",
    "CatalogService",
    "DunningScheduler",
    "PaymentEventHandler",
    "PurchaseChange",
    "SubscriptionChange",
    "SubscriptionHooks",
]
