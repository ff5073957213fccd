"""Views over billing platform resources as returned by its JSON API."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .currency import to_cents
from .models import BillingPeriod, Recurrence, parse_optional_datetime


class ExternalSubscriptionState(str, Enum):
    ACTIVE = "ACTIVE"
    CANCELLED = "CANCELLED"
    BLOCKED = "BLOCKED"
    PENDING = "PENDING"
    EXPIRED = "EXPIRED"


class InvoiceStatus(str, Enum):
    DRAFT = "DRAFT"
    COMMITTED = "COMMITTED"
    VOID = "VOID"


class PaymentStatus(str, Enum):
    SUCCESS = "SUCCESS"
    PENDING = "PENDING"
    PAYMENT_FAILURE = "PAYMENT_FAILURE"


class _ExternalModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True, extra="ignore")


class ExternalAccount(_ExternalModel):
    account_id: str = Field(alias="accountId")
    external_key: Optional[str] = Field(default=None, alias="externalKey")
    email: Optional[str] = None
    name: Optional[str] = None
    currency: Optional[str] = None


class ExternalSubscription(_ExternalModel):
    subscription_id: str = Field(alias="subscriptionId")
    account_id: Optional[str] = Field(default=None, alias="accountId")
    bundle_id: Optional[str] = Field(default=None, alias="bundleId")
    external_key: Optional[str] = Field(default=None, alias="externalKey")
    start_date: Optional[datetime] = Field(default=None, alias="startDate")
    charged_through_date: Optional[datetime] = Field(default=None, alias="chargedThroughDate")
    cancelled_date: Optional[datetime] = Field(default=None, alias="cancelledDate")
    plan_name: Optional[str] = Field(default=None, alias="planName")
    product_name: Optional[str] = Field(default=None, alias="productName")
    billing_period: Optional[str] = Field(default=None, alias="billingPeriod")
    phase_type: Optional[str] = Field(default=None, alias="phaseType")
    price_list: Optional[str] = Field(default=None, alias="priceList")
    reported_state: Optional[str] = Field(default=None, alias="state")

    @field_validator("start_date", "charged_through_date", "cancelled_date", mode="before")
    @classmethod
    def _parse_dates(cls, value: object) -> Optional[datetime]:
        return parse_optional_datetime(value)

    def state_at(self, now: datetime) -> ExternalSubscriptionState:
        if self.cancelled_date is not None and self.cancelled_date <= now:
            return ExternalSubscriptionState.CANCELLED
        if self.start_date is not None and self.start_date > now:
            return ExternalSubscriptionState.PENDING
        try:
            return ExternalSubscriptionState((self.reported_state or "ACTIVE").upper())
        except ValueError:
            return ExternalSubscriptionState.ACTIVE

    @property
    def state(self) -> ExternalSubscriptionState:
        return self.state_at(datetime.now(timezone.utc))

    @property
    def next_billing_date(self) -> Optional[datetime]:
        return self.charged_through_date

    @property
    def recurrence(self) -> Recurrence:
        try:
            return BillingPeriod((self.billing_period or "").upper()).to_recurrence()
        except ValueError:
            return Recurrence.MONTHLY


class ExternalInvoiceItem(_ExternalModel):
    invoice_item_id: Optional[str] = Field(default=None, alias="invoiceItemId")
    invoice_id: Optional[str] = Field(default=None, alias="invoiceId")
    account_id: Optional[str] = Field(default=None, alias="accountId")
    subscription_id: Optional[str] = Field(default=None, alias="subscriptionId")
    plan_name: Optional[str] = Field(default=None, alias="planName")
    phase_name: Optional[str] = Field(default=None, alias="phaseName")
    item_type: Optional[str] = Field(default=None, alias="itemType")
    description: Optional[str] = None
    amount: float = 0.0
    currency: str = "USD"

    @property
    def amount_cents(self) -> int:
        return to_cents(self.amount, self.currency)


class ExternalInvoice(_ExternalModel):
    invoice_id: str = Field(alias="invoiceId")
    account_id: Optional[str] = Field(default=None, alias="accountId")
    invoice_number: Optional[str] = Field(default=None, alias="invoiceNumber")
    invoice_date: Optional[str] = Field(default=None, alias="invoiceDate")
    target_date: Optional[str] = Field(default=None, alias="targetDate")
    currency: str = "USD"
    status: InvoiceStatus = InvoiceStatus.DRAFT
    amount: float = 0.0
    balance: float = 0.0
    credit_adj: float = Field(default=0.0, alias="creditAdj")
    refund_adj: float = Field(default=0.0, alias="refundAdj")
    items: List[ExternalInvoiceItem] = Field(default_factory=list)

    @field_validator("invoice_number", mode="before")
    @classmethod
    def _stringify_number(cls, value: object) -> Optional[str]:
        return None if value is None else str(value)

    @property
    def amount_cents(self) -> int:
        return to_cents(self.amount, self.currency)

    @property
    def balance_cents(self) -> int:
        return to_cents(self.balance, self.currency)

    @property
    def committed(self) -> bool:
        return self.status == InvoiceStatus.COMMITTED

    @property
    def draft(self) -> bool:
        return self.status == InvoiceStatus.DRAFT

    @property
    def voided(self) -> bool:
        return self.status == InvoiceStatus.VOID

    @property
    def paid(self) -> bool:
        return self.balance_cents <= 0 and self.committed

    def subscription_ids(self) -> List[str]:
        return [item.subscription_id for item in self.items if item.subscription_id]


class ExternalPaymentTransaction(_ExternalModel):
    transaction_id: Optional[str] = Field(default=None, alias="transactionId")
    transaction_type: Optional[str] = Field(default=None, alias="transactionType")
    status: Optional[str] = None
    amount: Optional[float] = None
    currency: Optional[str] = None


class ExternalPayment(_ExternalModel):
    payment_id: str = Field(alias="paymentId")
    account_id: Optional[str] = Field(default=None, alias="accountId")
    payment_number: Optional[str] = Field(default=None, alias="paymentNumber")
    payment_external_key: Optional[str] = Field(default=None, alias="paymentExternalKey")
    target_invoice_id: Optional[str] = Field(default=None, alias="targetInvoiceId")
    purchased_amount: float = Field(default=0.0, alias="purchasedAmount")
    refunded_amount: float = Field(default=0.0, alias="refundedAmount")
    currency: str = "USD"
    payment_method_id: Optional[str] = Field(default=None, alias="paymentMethodId")
    transactions: List[ExternalPaymentTransaction] = Field(default_factory=list)

    @field_validator("payment_number", mode="before")
    @classmethod
    def _stringify_number(cls, value: object) -> Optional[str]:
        return None if value is None else str(value)

    @property
    def amount_cents(self) -> int:
        return to_cents(self.purchased_amount, self.currency)

    @property
    def refunded_amount_cents(self) -> int:
        return to_cents(self.refunded_amount, self.currency)

    @property
    def status(self) -> PaymentStatus:
        if not self.transactions:
            return PaymentStatus.PAYMENT_FAILURE
        raw = self.transactions[-1].status
        try:
            return PaymentStatus(raw) if raw else PaymentStatus.PENDING
        except ValueError:
            return PaymentStatus.PAYMENT_FAILURE

    @property
    def successful(self) -> bool:
        return self.status == PaymentStatus.SUCCESS

    @property
    def pending(self) -> bool:
        return self.status == PaymentStatus.PENDING

    @property
    def failed(self) -> bool:
        return self.status == PaymentStatus.PAYMENT_FAILURE

    @property
    def fully_refunded(self) -> bool:
        return self.refunded_amount_cents >= self.amount_cents

    @property
    def transaction_id(self) -> Optional[str]:
        return self.transactions[-1].transaction_id if self.transactions else None


class BlockingState(_ExternalModel):
    """Account-level blocking state used to pause and resume billing."""

    state_name: str = Field(alias="stateName")
    service: str
    is_block_change: bool = Field(default=False, alias="isBlockChange")
    is_block_entitlement: bool = Field(default=False, alias="isBlockEntitlement")
    is_block_billing: bool = Field(default=False, alias="isBlockBilling")

    @classmethod
    def paused(cls, service: str) -> "BlockingState":
        return cls(stateName="PAUSED", service=service, isBlockEntitlement=True, isBlockBilling=True)

    @classmethod
    def active(cls, service: str) -> "BlockingState":
        return cls(stateName="ACTIVE", service=service)


__all__ = [
    "BlockingState",
    "ExternalAccount",
    "ExternalInvoice",
    "ExternalInvoiceItem",
    "ExternalPayment",
    "ExternalPaymentTransaction",
    "ExternalSubscription",
    "ExternalSubscriptionState",
    "InvoiceStatus",
    "PaymentStatus",
]
