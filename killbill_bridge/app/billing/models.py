"""Domain models for the billing system."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, FrozenSet, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PricingMode(str, Enum):
    """Per-product policy governing how prices are quoted across currencies."""

    LEGACY = "legacy"
    GROSS = "gross"
    MULTI_CURRENCY = "multi_currency"

    @classmethod
    def coerce(cls, value: object) -> "PricingMode":
        """Map ``None`` and unrecognized values to :attr:`LEGACY`."""

        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return cls.LEGACY


class Recurrence(str, Enum):
    """Recurrence values stored on internal prices and subscriptions."""

    WEEKLY = "weekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    BIANNUALLY = "biannually"
    YEARLY = "yearly"
    EVERY_TWO_YEARS = "every_two_years"


class BillingPeriod(str, Enum):
    """Billing periods understood by the billing platform catalog."""

    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"
    QUARTERLY = "QUARTERLY"
    ANNUAL = "ANNUAL"
    NO_BILLING_PERIOD = "NO_BILLING_PERIOD"

    @classmethod
    def from_recurrence(cls, recurrence: Optional[Recurrence]) -> "BillingPeriod":
        return _RECURRENCE_TO_PERIOD.get(recurrence, cls.MONTHLY)

    def to_recurrence(self) -> Recurrence:
        return _PERIOD_TO_RECURRENCE.get(self, Recurrence.MONTHLY)


_RECURRENCE_TO_PERIOD: Dict[Optional[Recurrence], BillingPeriod] = {
    Recurrence.MONTHLY: BillingPeriod.MONTHLY,
    Recurrence.YEARLY: BillingPeriod.ANNUAL,
    Recurrence.QUARTERLY: BillingPeriod.QUARTERLY,
    Recurrence.WEEKLY: BillingPeriod.WEEKLY,
}

_PERIOD_TO_RECURRENCE: Dict[BillingPeriod, Recurrence] = {
    period: recurrence for recurrence, period in _RECURRENCE_TO_PERIOD.items() if recurrence
}


class PriceType(str, Enum):
    """Whether a price buys or rents the product."""

    BUY = "buy"
    RENT = "rent"


class Price(BaseModel):
    """An explicit price row attached to a product."""

    price_id: str
    product_id: str
    currency: str = Field(min_length=3, max_length=3)
    price_cents: int = Field(ge=0)
    recurrence: Optional[Recurrence] = None
    price_type: PriceType = PriceType.BUY
    deleted_at: Optional[datetime] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("currency")
    @classmethod
    def _lower_currency(cls, value: str) -> str:
        return value.lower()

    @property
    def alive(self) -> bool:
        return self.deleted_at is None

    @property
    def is_buy(self) -> bool:
        return self.price_type == PriceType.BUY


class Product(BaseModel):
    """Read-only view of a product as needed for catalog and price resolution."""

    product_id: str
    name: str
    price_cents: int = Field(default=0, ge=0)
    price_currency_type: str = Field(default="usd", min_length=3, max_length=3)
    pricing_mode: PricingMode = PricingMode.LEGACY
    free_trial_duration_in_days: Optional[int] = None
    prices: Tuple[Price, ...] = ()
    updated_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("price_currency_type")
    @classmethod
    def _lower_currency(cls, value: str) -> str:
        return value.lower()

    @field_validator("pricing_mode", mode="before")
    @classmethod
    def _coerce_pricing_mode(cls, value: object) -> PricingMode:
        return PricingMode.coerce(value)

    @property
    def has_free_trial(self) -> bool:
        return bool(self.free_trial_duration_in_days) and self.free_trial_duration_in_days > 0

    def recurring_buy_prices(self) -> List[Price]:
        """Alive buy prices that carry a recurrence, in stored order."""

        return [price for price in self.prices if price.alive and price.is_buy and price.recurrence]

    def explicit_price(self, currency: str, recurrence: Optional[Recurrence]) -> Optional[Price]:
        currency = currency.lower()
        for price in self.recurring_buy_prices():
            if price.currency == currency and (recurrence is None or price.recurrence == recurrence):
                return price
        return None


class SubscriptionStatus(str, Enum):
    """Internal subscription lifecycle state."""

    PENDING = "pending"
    ACTIVE = "active"
    CANCELLED = "cancelled"
    BLOCKED = "blocked"

    def can_transition_to(self, target: "SubscriptionStatus") -> bool:
        return target == self or target in _ALLOWED_TRANSITIONS[self]


_ALLOWED_TRANSITIONS: Dict[SubscriptionStatus, FrozenSet[SubscriptionStatus]] = {
    SubscriptionStatus.PENDING: frozenset({SubscriptionStatus.ACTIVE}),
    SubscriptionStatus.ACTIVE: frozenset({SubscriptionStatus.CANCELLED, SubscriptionStatus.BLOCKED}),
    SubscriptionStatus.CANCELLED: frozenset({SubscriptionStatus.ACTIVE}),
    SubscriptionStatus.BLOCKED: frozenset({SubscriptionStatus.ACTIVE}),
}


class InvalidTransition(ValueError):
    """Raised when a subscription status change is not permitted."""


class ResubscriptionReason(str, Enum):
    PAYMENT_ISSUE_RESOLVED = "payment_issue_resolved"


class Subscription(BaseModel):
    """Internal subscription fields read and written by billing reconciliation."""

    subscription_id: str
    external_id: str
    product_id: str
    user_external_id: Optional[str] = None
    email: Optional[str] = None
    full_name: Optional[str] = None
    merchant_account_id: Optional[str] = None
    recurrence: Recurrence = Recurrence.MONTHLY
    billing_currency: Optional[str] = "usd"
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    cancelled_at: Optional[datetime] = None
    cancel_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    deactivated_at: Optional[datetime] = None
    free_trial_ends_at: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("billing_currency")
    @classmethod
    def _lower_currency(cls, value: Optional[str]) -> Optional[str]:
        return value.lower() if value else None

    @property
    def alive(self) -> bool:
        if self.status in {SubscriptionStatus.CANCELLED, SubscriptionStatus.BLOCKED}:
            return False
        return self.cancelled_at is None and self.failed_at is None and self.deactivated_at is None

    def in_free_trial(self, now: Optional[datetime] = None) -> bool:
        if self.free_trial_ends_at is None:
            return False
        return (now or _utcnow()) < self.free_trial_ends_at

    def transition(self, target: SubscriptionStatus, **changes: object) -> "Subscription":
        """Return a copy moved to ``target``, validating the transition table."""

        if not self.status.can_transition_to(target):
            raise InvalidTransition(
                f"Subscription {self.subscription_id} cannot move from {self.status.value} to {target.value}"
            )
        return self.model_copy(update={"status": target, "updated_at": _utcnow(), **changes})


class PurchaseState(str, Enum):
    IN_PROGRESS = "in_progress"
    SUCCESSFUL = "successful"
    FAILED = "failed"


class Purchase(BaseModel):
    """A charge recorded against a subscription, keyed by the invoice it settles."""

    purchase_id: str
    subscription_id: str
    transaction_id: str
    charge_processor_id: str = "killbill"
    price_cents: int = Field(default=0, ge=0)
    currency: str = "usd"
    state: PurchaseState = PurchaseState.IN_PROGRESS
    succeeded_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @property
    def in_progress(self) -> bool:
        return self.state == PurchaseState.IN_PROGRESS


class MerchantAccount(BaseModel):
    """Billing platform credentials scoped to a seller's merchant account."""

    merchant_account_id: str
    killbill_instance_url: Optional[str] = None
    killbill_username: Optional[str] = None
    killbill_password: Optional[str] = None
    killbill_api_key: Optional[str] = None
    killbill_api_secret: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class InboundEvent(BaseModel):
    """Normalized webhook notification from the billing platform."""

    event_type: str
    object_id: Optional[str] = None
    object_type: Optional[str] = None
    account_id: Optional[str] = None
    external_key: Optional[str] = None
    effective_date: Optional[datetime] = None
    new_plan: Optional[str] = None
    new_phase: Optional[str] = None
    delivery_id: Optional[str] = None
    payload: Dict[str, object] = Field(default_factory=dict)
    received_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @property
    def dedup_key(self) -> Optional[str]:
        """Ledger key for this delivery; ``None`` when the platform sent no delivery id.

        Unkeyed events are not ledgered. Their handlers converge on the stored
        state, so a repeated cancel after an uncancel is applied again.
        """

        if not self.delivery_id:
            return None
        return f"{self.event_type}:{self.object_id or '-'}:{self.delivery_id}"


class BillingAuditEventType(str, Enum):
    """Audit event categories emitted by the billing subsystem."""

    SUBSCRIPTION_CREATED = "subscription_created"
    SUBSCRIPTION_CANCELLED = "subscription_cancelled"
    SUBSCRIPTION_CANCEL_SCHEDULED = "subscription_cancel_scheduled"
    SUBSCRIPTION_REACTIVATED = "subscription_reactivated"
    SUBSCRIPTION_DEACTIVATED = "subscription_deactivated"
    SUBSCRIPTION_PLAN_CHANGED = "subscription_plan_changed"
    PURCHASE_SUCCEEDED = "purchase_succeeded"
    PAYMENT_FAILED = "payment_failed"
    FREE_TRIAL_ENDED = "free_trial_ended"
    CATALOG_UPLOADED = "catalog_uploaded"
    EVENT_DEAD_LETTERED = "event_dead_lettered"


class BillingAuditEvent(BaseModel):
    """Structured audit event for analytics and operators."""

    event_type: BillingAuditEventType
    subscription_id: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)


def parse_optional_datetime(value: object) -> Optional[datetime]:
    """Parse ISO-8601 strings and naive datetimes into aware UTC datetimes."""

    if not value:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, str):
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    raise TypeError("Unsupported datetime value")
