"""Billing reconciliation between internal subscriptions and Kill Bill."""

from .catalog import CatalogBuilder, CatalogDocument, plan_name_for
from .currency import CurrencyResolver
from .dispatcher import DispatchOutcome, EventDispatcher, classify, event_from_payload
from .exceptions import (
    BillingError,
    ConfigurationError,
    FxRateUnavailable,
    NotFound,
    TransientError,
    ValidationError,
    is_retryable,
)
from .gateway import AuditContext, BillingGateway, CancelPolicy, GatewayFactory
from .invoices import InvoiceEventProcessor
from .models import (
    BillingAuditEvent,
    BillingAuditEventType,
    InboundEvent,
    Product,
    Purchase,
    Subscription,
    SubscriptionStatus,
)
from .reconciler import SubscriptionReconciler
from .service import (
    BillingEventLogger,
    BillingNotifier,
    BillingRepository,
    CatalogService,
    DunningScheduler,
    PaymentEventHandler,
    SubscriptionHooks,
)

__all__ = [
    "AuditContext",
    "BillingAuditEvent",
    "BillingAuditEventType",
    "BillingError",
    "BillingEventLogger",
    "BillingGateway",
    "BillingNotifier",
    "BillingRepository",
    "CancelPolicy",
    "CatalogBuilder",
    "CatalogDocument",
    "CatalogService",
    "ConfigurationError",
    "CurrencyResolver",
    "DispatchOutcome",
    "DunningScheduler",
    "EventDispatcher",
    "FxRateUnavailable",
    "GatewayFactory",
    "InboundEvent",
    "InvoiceEventProcessor",
    "NotFound",
    "PaymentEventHandler",
    "Product",
    "Purchase",
    "Subscription",
    "SubscriptionHooks",
    "SubscriptionReconciler",
    "SubscriptionStatus",
    "TransientError",
    "ValidationError",
    "classify",
    "event_from_payload",
    "is_retryable",
    "plan_name_for",
]
