"""API routes exposing billing reconciliation."""
from __future__ import annotations

import logging
import secrets
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, Response, status

from ..billing.exceptions import BillingError, NotFound
from ..schemas.billing import (
    CatalogSyncResponse,
    EventAcceptedResponse,
    KillbillEventPayload,
    SubscriptionSyncResponse,
)
from ..services.billing import get_billing_components

logger = logging.getLogger("billing")

router = APIRouter(prefix="/api/billing", tags=["billing"])


def _tokens_match(expected: Optional[str], provided: Optional[str]) -> bool:
    if not expected or not provided:
        return False
    return secrets.compare_digest(expected.encode("utf-8"), provided.encode("utf-8"))


def require_admin_token(
    admin_token: Optional[str] = Header(None, alias="X-Billing-Admin-Token"),
) -> None:
    expected = get_billing_components().settings.admin_token
    if not expected:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Billing admin endpoints are disabled")
    if not _tokens_match(expected, admin_token):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid billing admin token")


@router.post(
    "/killbill/events",
    response_model=EventAcceptedResponse,
    response_model_by_alias=True,
    status_code=status.HTTP_202_ACCEPTED,
)
def receive_killbill_event(
    payload: KillbillEventPayload,
    request: Request,
    webhook_secret: Optional[str] = Header(None, alias="X-Killbill-Webhook-Secret"),
) -> EventAcceptedResponse:
    components = get_billing_components()
    expected = components.settings.webhook_secret
    if expected and not _tokens_match(expected, webhook_secret):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid webhook secret")

    body = payload.to_payload()
    queue = getattr(request.app.state, "billing_event_queue", None)
    if queue is not None and not components.settings.process_events_inline:
        if queue.put_nowait(body):
            return EventAcceptedResponse(status="queued", event_type=payload.event_type)
        logger.warning("Billing event queue closed; processing %s inline", payload.event_type)

    try:
        outcome = components.handle_webhook_payload(body)
    except BillingError as exc:
        raise exc.to_http_exception() from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return EventAcceptedResponse(status="processed", event_type=payload.event_type, outcome=outcome.value)


@router.get(
    "/products/{product_id}/catalog",
    dependencies=[Depends(require_admin_token)],
    response_class=Response,
)
def preview_catalog(product_id: str) -> Response:
    try:
        catalog_xml = get_billing_components().catalog.preview(product_id)
    except BillingError as exc:
        raise exc.to_http_exception() from exc
    return Response(content=catalog_xml, media_type="application/xml")


@router.post(
    "/products/{product_id}/catalog/sync",
    dependencies=[Depends(require_admin_token)],
    response_model=CatalogSyncResponse,
    response_model_by_alias=True,
)
def sync_catalog(product_id: str, merchant_account_id: Optional[str] = None) -> CatalogSyncResponse:
    try:
        document = get_billing_components().catalog.sync_product(
            product_id, merchant_account_id=merchant_account_id
        )
    except BillingError as exc:
        raise exc.to_http_exception() from exc
    return CatalogSyncResponse.from_document(product_id, document)


@router.post(
    "/subscriptions/{subscription_id}/sync",
    dependencies=[Depends(require_admin_token)],
    response_model=SubscriptionSyncResponse,
    response_model_by_alias=True,
)
def sync_subscription(subscription_id: str) -> SubscriptionSyncResponse:
    components = get_billing_components()
    try:
        subscription = components.repository.get_subscription(subscription_id)
        if subscription is None:
            raise NotFound(
                f"Subscription {subscription_id} not found", detail={"subscription_id": subscription_id}
            )
        external = components.reconciler.sync_subscription_with_killbill(subscription)
    except BillingError as exc:
        raise exc.to_http_exception() from exc
    refreshed = components.repository.get_subscription(subscription_id) or subscription
    return SubscriptionSyncResponse.from_sync(refreshed, external)
