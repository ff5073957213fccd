"""REST client for the Kill Bill billing platform."""
from __future__ import annotations

import base64
import json
import logging
import socket
import time
from dataclasses import dataclass, field
from enum import Enum
from threading import Lock
from typing import Any, Callable, Dict, List, Mapping, Optional
from urllib import error as urllib_error, parse as urllib_parse, request as urllib_request

from .catalog import DEFAULT_PRICE_LIST, extract_billing_period, extract_product_name, parse_available_plans
from .config import BillingClientConfig, load_billing_client_config
from .currency import resolve_account_currency, to_decimal
from .exceptions import ConfigurationError, NotFound, TransientError, ValidationError
from .external import (
    BlockingState,
    ExternalAccount,
    ExternalInvoice,
    ExternalPayment,
    ExternalSubscription,
)
from .models import MerchantAccount, Product, Subscription

logger = logging.getLogger(__name__)

API_ROOT = "/1.0/kb"
DEFAULT_AUDIT_COMMENT = "Automated via CrowdChurn"


class CancelPolicy(str, Enum):
    IMMEDIATE = "IMMEDIATE"
    END_OF_TERM = "END_OF_TERM"


@dataclass(frozen=True)
class AuditContext:
    """Actor, reason and comment recorded by the platform for every mutation."""

    actor: str = "crowdchurn"
    reason: Optional[str] = "CrowdChurn billing"
    comment: Optional[str] = DEFAULT_AUDIT_COMMENT

    def headers(self) -> Dict[str, str]:
        headers = {"X-Killbill-CreatedBy": self.actor}
        if self.reason:
            headers["X-Killbill-Reason"] = self.reason
        if self.comment:
            headers["X-Killbill-Comment"] = self.comment
        return headers


@dataclass(frozen=True)
class HttpResponse:
    status: int
    body: bytes = b""
    headers: Mapping[str, str] = field(default_factory=dict)

    def json(self) -> Any:
        if not self.body:
            return None
        return json.loads(self.body.decode("utf-8"))

    def header(self, name: str) -> Optional[str]:
        lowered = name.lower()
        for key, value in self.headers.items():
            if key.lower() == lowered:
                return value
        return None


Transport = Callable[[urllib_request.Request, float], HttpResponse]


def urllib_transport(request: urllib_request.Request, timeout: float) -> HttpResponse:
    """Default transport; HTTP error statuses are returned, not raised."""

    try:
        with urllib_request.urlopen(request, timeout=timeout) as response:
            return HttpResponse(response.status, response.read(), dict(response.headers))
    except urllib_error.HTTPError as exc:
        body = exc.read() if exc.fp is not None else b""
        return HttpResponse(exc.code, body or b"", dict(exc.headers or {}))
    except (urllib_error.URLError, socket.timeout, TimeoutError, ConnectionError) as exc:
        raise TransientError(f"Kill Bill request failed: {exc}") from exc


def _error_message(response: HttpResponse) -> str:
    try:
        payload = response.json()
    except (ValueError, UnicodeDecodeError):
        payload = None
    if isinstance(payload, dict) and payload.get("message"):
        return str(payload["message"])
    return f"Kill Bill responded with HTTP {response.status}"


def raise_for_status(response: HttpResponse, *, method: str, path: str) -> None:
    """Map platform HTTP statuses onto the billing error taxonomy."""

    code = response.status
    if code < 400:
        return
    message = _error_message(response)
    detail = {"method": method, "path": path, "http_status": code}
    if code == 404:
        raise NotFound(message, detail=detail)
    if code in (401, 403):
        raise ConfigurationError(message, detail=detail)
    if code in (400, 409, 422):
        raise ValidationError(message, detail=detail)
    if code >= 500 or code == 429:
        raise TransientError(message, detail=detail)
    raise ValidationError(message, detail=detail)


class BillingGateway:
    """Thin wrapper over the platform's REST API for one tenant.

    Lookups return ``None`` when the platform has no record. Reads are
    retried in-process on transient failures; mutations are not, and rely on
    lookup-before-create to stay idempotent when the caller's job is re-run.
    """

    def __init__(
        self,
        config: BillingClientConfig,
        *,
        transport: Optional[Transport] = None,
        audit: Optional[AuditContext] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config
        self._transport = transport or urllib_transport
        self._audit = audit or AuditContext()
        self._sleep = sleep

    # -- transport -------------------------------------------------------

    def _headers(self, audit: Optional[AuditContext], *, content_type: Optional[str]) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if content_type:
            headers["Content-Type"] = content_type
        if self.config.api_key:
            headers["X-Killbill-ApiKey"] = self.config.api_key
        if self.config.api_secret:
            headers["X-Killbill-ApiSecret"] = self.config.api_secret
        if self.config.username:
            token = f"{self.config.username}:{self.config.password or ''}".encode("utf-8")
            headers["Authorization"] = "Basic " + base64.b64encode(token).decode("ascii")
        if audit is not None:
            headers.update(audit.headers())
        return headers

    def _url(self, path: str, params: Optional[Mapping[str, Any]] = None) -> str:
        url = f"{self.config.instance_url}{path}"
        if params:
            query = {key: _query_value(value) for key, value in params.items() if value is not None}
            if query:
                url = f"{url}?{urllib_parse.urlencode(query)}"
        return url

    def _send(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Mapping[str, Any]] = None,
        body: Any = None,
        audit: Optional[AuditContext] = None,
        content_type: Optional[str] = "application/json",
    ) -> HttpResponse:
        data: Optional[bytes] = None
        if isinstance(body, (bytes, str)):
            data = body.encode("utf-8") if isinstance(body, str) else body
        elif body is not None:
            data = json.dumps(body).encode("utf-8")
        request = urllib_request.Request(
            self._url(path, params),
            data=data,
            method=method,
            headers=self._headers(audit, content_type=content_type if data is not None else None),
        )
        response = self._transport(request, self.config.timeout_seconds)
        raise_for_status(response, method=method, path=path)
        return response

    def _get(self, path: str, params: Optional[Mapping[str, Any]] = None) -> Any:
        attempts = max(1, self.config.max_read_attempts)
        for attempt in range(1, attempts + 1):
            try:
                return self._send("GET", path, params=params).json()
            except TransientError:
                if attempt >= attempts:
                    raise
                logger.warning(
                    "Retrying Kill Bill read",
                    extra={"killbill_path": path, "attempt": attempt},
                )
                self._sleep(self.config.backoff_seconds * attempt)
        return None  # pragma: no cover

    def _lookup(self, path: str, params: Optional[Mapping[str, Any]] = None) -> Any:
        try:
            return self._get(path, params)
        except NotFound:
            return None

    def _mutate(
        self,
        method: str,
        path: str,
        *,
        audit: Optional[AuditContext],
        params: Optional[Mapping[str, Any]] = None,
        body: Any = None,
        content_type: Optional[str] = "application/json",
    ) -> HttpResponse:
        return self._send(
            method,
            path,
            params=params,
            body=body,
            audit=audit or self._audit,
            content_type=content_type,
        )

    def _follow(self, response: HttpResponse) -> Any:
        """Fetch the resource a ``201 Created`` response points at."""

        location = response.header("Location")
        if not location:
            return response.json()
        parsed = urllib_parse.urlsplit(location)
        params = dict(urllib_parse.parse_qsl(parsed.query))
        return self._get(parsed.path, params or None)

    # -- accounts --------------------------------------------------------

    def account_external_key(self, subscription: Subscription) -> str:
        identity = subscription.user_external_id or subscription.subscription_id
        return f"{self.config.account_key_prefix}_{identity}"

    def find_account_by_external_key(self, external_key: str) -> Optional[ExternalAccount]:
        payload = self._lookup(f"{API_ROOT}/accounts", {"externalKey": external_key})
        return ExternalAccount.model_validate(payload) if payload else None

    def get_account(self, account_id: str) -> Optional[ExternalAccount]:
        payload = self._lookup(f"{API_ROOT}/accounts/{account_id}")
        return ExternalAccount.model_validate(payload) if payload else None

    def get_or_create_account(
        self,
        subscription: Subscription,
        product: Optional[Product] = None,
        *,
        audit: Optional[AuditContext] = None,
    ) -> str:
        """Return the account id for the subscription's owner, creating it once."""

        external_key = self.account_external_key(subscription)
        existing = self.find_account_by_external_key(external_key)
        if existing is not None:
            return existing.account_id

        body = {
            "name": subscription.full_name or subscription.email or external_key,
            "email": subscription.email,
            "externalKey": external_key,
            "currency": resolve_account_currency(subscription, product),
        }
        response = self._mutate("POST", f"{API_ROOT}/accounts", audit=audit, body=body)
        account = ExternalAccount.model_validate(self._follow(response))
        logger.info(
            "Created Kill Bill account",
            extra={"killbill_account_id": account.account_id, "external_key": external_key},
        )
        return account.account_id

    def set_default_payment_method(
        self, account_id: str, payment_method_id: str, *, audit: Optional[AuditContext] = None
    ) -> None:
        self._mutate(
            "PUT",
            f"{API_ROOT}/accounts/{account_id}/paymentMethods/{payment_method_id}/setDefault",
            audit=audit,
        )

    def add_payment_method(
        self,
        account_id: str,
        plugin_name: str,
        plugin_info: Optional[Mapping[str, Any]] = None,
        *,
        is_default: bool = True,
        audit: Optional[AuditContext] = None,
    ) -> Optional[str]:
        body: Dict[str, Any] = {"accountId": account_id, "pluginName": plugin_name}
        if plugin_info:
            body["pluginInfo"] = {
                "properties": [{"key": key, "value": str(value)} for key, value in plugin_info.items()]
            }
        response = self._mutate(
            "POST",
            f"{API_ROOT}/accounts/{account_id}/paymentMethods",
            audit=audit,
            params={"isDefault": is_default},
            body=body,
        )
        payload = self._follow(response)
        return payload.get("paymentMethodId") if isinstance(payload, dict) else None

    # -- subscriptions ---------------------------------------------------

    def get_subscription_by_id(self, subscription_id: str) -> Optional[ExternalSubscription]:
        payload = self._lookup(f"{API_ROOT}/subscriptions/{subscription_id}")
        return ExternalSubscription.model_validate(payload) if payload else None

    def get_subscription_by_external_key(self, external_key: str) -> Optional[ExternalSubscription]:
        payload = self._lookup(f"{API_ROOT}/subscriptions", {"externalKey": external_key})
        return ExternalSubscription.model_validate(payload) if payload else None

    def get_account_subscriptions(self, account_id: str) -> List[ExternalSubscription]:
        bundles = self._lookup(f"{API_ROOT}/accounts/{account_id}/bundles") or []
        return [
            ExternalSubscription.model_validate(item)
            for bundle in bundles
            for item in (bundle.get("subscriptions") or [])
        ]

    def create_subscription(
        self,
        account_id: str,
        plan_name: str,
        external_key: str,
        *,
        audit: Optional[AuditContext] = None,
    ) -> ExternalSubscription:
        existing = self.get_subscription_by_external_key(external_key)
        if existing is not None:
            return existing

        body = {
            "accountId": account_id,
            "externalKey": external_key,
            "planName": plan_name,
            "priceList": DEFAULT_PRICE_LIST,
        }
        response = self._mutate("POST", f"{API_ROOT}/subscriptions", audit=audit, body=body)
        created = ExternalSubscription.model_validate(self._follow(response))
        logger.info(
            "Created Kill Bill subscription",
            extra={"killbill_subscription_id": created.subscription_id, "plan_name": plan_name},
        )
        return created

    def cancel_subscription(
        self,
        subscription_id: str,
        policy: CancelPolicy = CancelPolicy.END_OF_TERM,
        *,
        audit: Optional[AuditContext] = None,
    ) -> None:
        self._mutate(
            "DELETE",
            f"{API_ROOT}/subscriptions/{subscription_id}",
            audit=audit,
            params={"entitlementPolicy": policy.value, "billingPolicy": policy.value},
        )

    def uncancel_subscription(self, subscription_id: str, *, audit: Optional[AuditContext] = None) -> None:
        self._mutate("PUT", f"{API_ROOT}/subscriptions/{subscription_id}/uncancel", audit=audit)

    def _blocking_service(self) -> str:
        return f"{self.config.account_key_prefix}-subscription"

    def set_blocking_state(
        self, account_id: str, state: BlockingState, *, audit: Optional[AuditContext] = None
    ) -> None:
        self._mutate(
            "POST",
            f"{API_ROOT}/accounts/{account_id}/block",
            audit=audit,
            body=state.model_dump(by_alias=True),
        )

    def pause_subscription(self, account_id: str, *, audit: Optional[AuditContext] = None) -> None:
        """Block entitlement and billing for every subscription on the account."""

        self.set_blocking_state(account_id, BlockingState.paused(self._blocking_service()), audit=audit)

    def resume_subscription(self, account_id: str, *, audit: Optional[AuditContext] = None) -> None:
        self.set_blocking_state(account_id, BlockingState.active(self._blocking_service()), audit=audit)

    def change_plan(
        self,
        subscription_id: str,
        new_plan_name: str,
        *,
        immediately: bool = True,
        audit: Optional[AuditContext] = None,
    ) -> None:
        body = {
            "productName": extract_product_name(new_plan_name),
            "billingPeriod": extract_billing_period(new_plan_name).value,
            "priceList": DEFAULT_PRICE_LIST,
        }
        policy = CancelPolicy.IMMEDIATE if immediately else CancelPolicy.END_OF_TERM
        self._mutate(
            "PUT",
            f"{API_ROOT}/subscriptions/{subscription_id}",
            audit=audit,
            params={"billingPolicy": policy.value},
            body=body,
        )

    # -- invoices and payments ------------------------------------------

    def get_invoice(self, invoice_id: str) -> Optional[ExternalInvoice]:
        payload = self._lookup(f"{API_ROOT}/invoices/{invoice_id}", {"withItems": True})
        return ExternalInvoice.model_validate(payload) if payload else None

    def get_invoices(self, account_id: str) -> List[ExternalInvoice]:
        payload = self._lookup(f"{API_ROOT}/accounts/{account_id}/invoices", {"withItems": True}) or []
        return [ExternalInvoice.model_validate(item) for item in payload]

    def get_invoice_payments(self, invoice_id: str) -> List[ExternalPayment]:
        payload = self._lookup(f"{API_ROOT}/invoices/{invoice_id}/payments", {"withPluginInfo": False}) or []
        return [ExternalPayment.model_validate(item) for item in payload]

    def pay_invoice(
        self,
        invoice: ExternalInvoice,
        *,
        payment_method_id: Optional[str] = None,
        audit: Optional[AuditContext] = None,
    ) -> Optional[ExternalPayment]:
        body: Dict[str, Any] = {
            "accountId": invoice.account_id,
            "targetInvoiceId": invoice.invoice_id,
            "purchasedAmount": to_decimal(invoice.balance_cents, invoice.currency),
            "currency": invoice.currency,
        }
        if payment_method_id:
            body["paymentMethodId"] = payment_method_id
        response = self._mutate(
            "POST",
            f"{API_ROOT}/invoices/{invoice.invoice_id}/payments",
            audit=audit,
            params={"externalPayment": False},
            body=body,
        )
        payload = self._follow(response)
        return ExternalPayment.model_validate(payload) if isinstance(payload, dict) else None

    def void_invoice(self, invoice_id: str, *, audit: Optional[AuditContext] = None) -> None:
        self._mutate("PUT", f"{API_ROOT}/invoices/{invoice_id}/voidInvoice", audit=audit)

    def add_credit(
        self,
        account_id: str,
        amount_cents: int,
        currency: str,
        *,
        invoice_id: Optional[str] = None,
        description: Optional[str] = None,
        audit: Optional[AuditContext] = None,
    ) -> None:
        credit: Dict[str, Any] = {
            "accountId": account_id,
            "amount": to_decimal(amount_cents, currency),
            "currency": currency.upper(),
        }
        if invoice_id:
            credit["invoiceId"] = invoice_id
        if description:
            credit["description"] = description
        self._mutate("POST", f"{API_ROOT}/credits", audit=audit, body=[credit])

    def trigger_invoice(
        self,
        account_id: str,
        *,
        target_date: Optional[str] = None,
        audit: Optional[AuditContext] = None,
    ) -> Optional[ExternalInvoice]:
        """Ask the platform to invoice the account now; ``None`` when nothing is due."""

        try:
            response = self._mutate(
                "POST",
                f"{API_ROOT}/invoices",
                audit=audit,
                params={"accountId": account_id, "targetDate": target_date},
            )
        except NotFound:
            return None
        payload = self._follow(response)
        return ExternalInvoice.model_validate(payload) if isinstance(payload, dict) else None

    # -- catalog ---------------------------------------------------------

    def upload_catalog(self, catalog_xml: str, *, audit: Optional[AuditContext] = None) -> None:
        self._mutate(
            "POST",
            f"{API_ROOT}/catalog/xml",
            audit=audit,
            body=catalog_xml,
            content_type="text/xml",
        )

    def get_catalog(self) -> Any:
        return self._lookup(f"{API_ROOT}/catalog")

    def get_available_plans(self) -> List[Dict[str, Any]]:
        return parse_available_plans(self.get_catalog())


def _query_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


class GatewayFactory:
    """Builds one gateway per merchant account from stored credentials."""

    def __init__(
        self,
        merchant_lookup: Callable[[str], Optional[MerchantAccount]],
        *,
        env: Optional[Mapping[str, str]] = None,
        transport: Optional[Transport] = None,
        audit: Optional[AuditContext] = None,
    ) -> None:
        self._merchant_lookup = merchant_lookup
        self._env = env
        self._transport = transport
        self._audit = audit
        self._gateways: Dict[Optional[str], BillingGateway] = {}
        self._lock = Lock()

    def for_merchant_account(self, merchant_account_id: Optional[str]) -> BillingGateway:
        with self._lock:
            cached = self._gateways.get(merchant_account_id)
        if cached is not None:
            return cached

        merchant = self._merchant_lookup(merchant_account_id) if merchant_account_id else None
        config = load_billing_client_config(merchant, env=self._env)
        gateway = BillingGateway(config, transport=self._transport, audit=self._audit)
        with self._lock:
            return self._gateways.setdefault(merchant_account_id, gateway)

    def for_subscription(self, subscription: Subscription) -> BillingGateway:
        return self.for_merchant_account(subscription.merchant_account_id)

    def default(self) -> BillingGateway:
        return self.for_merchant_account(None)


__all__ = [
    "AuditContext",
    "BillingGateway",
    "CancelPolicy",
    "GatewayFactory",
    "HttpResponse",
    "Transport",
    "raise_for_status",
    "urllib_transport",
]
