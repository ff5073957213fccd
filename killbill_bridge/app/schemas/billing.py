"""API schemas for billing endpoints."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..billing.catalog import CatalogDocument
from ..billing.external import ExternalSubscription
from ..billing.models import Subscription


class KillbillEventPayload(BaseModel):
    """Webhook body posted by the billing platform's notification plugin."""

    event_type: Optional[str] = Field(default=None, alias="eventType")
    object_type: Optional[str] = Field(default=None, alias="objectType")
    object_id: Optional[str] = Field(default=None, alias="objectId")
    account_id: Optional[str] = Field(default=None, alias="accountId")
    external_key: Optional[str] = Field(default=None, alias="externalKey")
    meta_data: Optional[Any] = Field(default=None, alias="metaData")

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class EventAcceptedResponse(BaseModel):
    status: str
    event_type: Optional[str] = Field(default=None, alias="eventType")
    outcome: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)


class CatalogSyncResponse(BaseModel):
    product_id: str = Field(alias="productId")
    catalog_name: str = Field(alias="catalogName")
    effective_date: str = Field(alias="effectiveDate")
    currencies: List[str]
    plans: List[str]

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_document(cls, product_id: str, document: CatalogDocument) -> "CatalogSyncResponse":
        return cls(
            product_id=product_id,
            catalog_name=document.name,
            effective_date=document.effective_date,
            currencies=list(document.currencies),
            plans=[plan.name for plan in document.plans],
        )


class SubscriptionSyncResponse(BaseModel):
    subscription_id: str = Field(alias="subscriptionId")
    external_id: str = Field(alias="externalId")
    found: bool
    state: Optional[str] = None
    next_billing_date: Optional[datetime] = Field(default=None, alias="nextBillingDate")
    status: str
    alive: bool

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_sync(
        cls, subscription: Subscription, external: Optional[ExternalSubscription]
    ) -> "SubscriptionSyncResponse":
        return cls(
            subscription_id=subscription.subscription_id,
            external_id=subscription.external_id,
            found=external is not None,
            state=external.state.value if external else None,
            next_billing_date=external.next_billing_date if external else None,
            status=subscription.status.value,
            alive=subscription.alive,
        )
