"""Tests for invoice and payment outcome processing."""
from __future__ import annotations

from datetime import timedelta

import pytest

from killbill_bridge.app.billing.exceptions import TransientError
from killbill_bridge.app.billing.external import InvoiceStatus
from killbill_bridge.app.billing.gateway import HttpResponse
from killbill_bridge.app.billing.invoices import DEFAULT_CREDIT_DESCRIPTION, InvoiceEventProcessor
from killbill_bridge.app.billing.models import BillingAuditEventType, PurchaseState, SubscriptionStatus
from killbill_bridge.tests.fakes import NOW, body_of, json_response, make_subscription, query_of

INVOICE = "/1.0/kb/invoices/inv_1"


@pytest.fixture
def processor(repository, gateways, notifier, scheduler, hooks, event_logger) -> InvoiceEventProcessor:
    return InvoiceEventProcessor(
        repository,
        gateways,
        notifier,
        scheduler,
        hooks,
        event_logger,
        fail_window=timedelta(days=5),
        decline_reminder_lead=timedelta(days=2),
        clock=lambda: NOW,
    )


def _invoice(transport, *, balance: float, status: str = "COMMITTED", subscription_id: str = "ext_sub_1") -> None:
    transport.add(
        "GET",
        INVOICE,
        json_response(
            {
                "invoiceId": "inv_1",
                "accountId": "acc_1",
                "currency": "USD",
                "status": status,
                "amount": 19.99,
                "balance": balance,
                "items": [{"subscriptionId": subscription_id, "amount": 19.99, "currency": "USD"}],
            }
        ),
    )


def test_paid_invoice_settles_purchase_once(processor, repository, transport, hooks, event_logger):
    repository.add_subscription(make_subscription())
    _invoice(transport, balance=0)

    processor.process_invoice_notification("inv_1")
    processor.process_invoice_notification("inv_1")

    purchase = repository.get_purchase_by_transaction("inv_1")
    assert purchase.state == PurchaseState.SUCCESSFUL
    assert purchase.price_cents == 1999
    assert purchase.succeeded_at == NOW
    assert len(repository.purchases) == 1
    assert hooks.successes == [("sub_1", purchase.purchase_id)]
    assert event_logger.types() == [BillingAuditEventType.PURCHASE_SUCCEEDED]


def test_unpaid_invoice_notifies_live_subscription(processor, repository, transport, notifier):
    repository.add_subscription(make_subscription())
    _invoice(transport, balance=19.99)

    processor.process_invoice_notification("inv_1")

    assert notifier.declined == [("sub_1", "inv_1")]
    assert repository.purchases == {}


def test_unpaid_invoice_for_cancelled_subscription_is_quiet(processor, repository, transport, notifier):
    repository.add_subscription(make_subscription(status=SubscriptionStatus.CANCELLED, cancelled_at=NOW))
    _invoice(transport, balance=19.99)

    processor.process_invoice_notification("inv_1")

    assert notifier.declined == []


def test_draft_invoice_is_ignored(processor, repository, transport, notifier):
    repository.add_subscription(make_subscription())
    _invoice(transport, balance=0, status="DRAFT")

    processor.process_invoice_notification("inv_1")

    assert notifier.declined == []
    assert repository.purchases == {}


def test_missing_invoice_is_noop(processor):
    assert processor.process_invoice_notification("inv_1") is None


def test_invoice_fetch_errors_propagate(processor, transport):
    transport.add("GET", INVOICE, HttpResponse(503))
    with pytest.raises(TransientError):
        processor.process_invoice_notification("inv_1")


def test_subscription_resolved_through_platform_subscription(processor, repository, transport, hooks):
    repository.add_subscription(make_subscription())
    _invoice(transport, balance=0, subscription_id="kb_sub_1")
    transport.add(
        "GET",
        "/1.0/kb/subscriptions/kb_sub_1",
        json_response({"subscriptionId": "kb_sub_1", "externalKey": "ext_sub_1"}),
    )

    processor.process_invoice_notification("inv_1")

    assert len(hooks.successes) == 1


def test_subscription_lookup_failure_is_logged_not_raised(processor, repository, transport, hooks):
    _invoice(transport, balance=0, subscription_id="kb_sub_1")
    transport.add("GET", "/1.0/kb/subscriptions/kb_sub_1", HttpResponse(500))

    invoice = processor.process_invoice_notification("inv_1")

    assert invoice.invoice_id == "inv_1"
    assert hooks.successes == []


def test_payment_failed_schedules_dunning(processor, notifier, scheduler, event_logger):
    subscription = make_subscription()

    assert processor.handle_payment_failed(subscription, "inv_1") is True

    assert notifier.declined == [("sub_1", "inv_1")]
    assert scheduler.reminders == [("sub_1", "inv_1", NOW + timedelta(days=3))]
    assert scheduler.failures == [("sub_1", NOW + timedelta(days=5))]
    assert event_logger.types() == [BillingAuditEventType.PAYMENT_FAILED]


def test_payment_failed_for_dead_subscription(processor, notifier, scheduler):
    subscription = make_subscription(failed_at=NOW)

    assert processor.handle_payment_failed(subscription, "inv_1") is False
    assert notifier.declined == []
    assert scheduler.reminders == []


def test_reminder_lead_cannot_exceed_window(repository, gateways, notifier, scheduler, hooks, event_logger):
    with pytest.raises(ValueError):
        InvoiceEventProcessor(
            repository,
            gateways,
            notifier,
            scheduler,
            hooks,
            event_logger,
            fail_window=timedelta(days=1),
            decline_reminder_lead=timedelta(days=2),
        )


def test_add_credit_defaults_description(processor, transport):
    _invoice(transport, balance=19.99)
    transport.add("POST", "/1.0/kb/credits", HttpResponse(201))

    processor.add_credit_to_invoice("inv_1", 500)

    (credit,) = body_of(transport.calls("POST", "/1.0/kb/credits")[0])
    assert credit["amount"] == 5.0
    assert credit["description"] == DEFAULT_CREDIT_DESCRIPTION

    with pytest.raises(ValueError):
        processor.add_credit_to_invoice("inv_1", 0)


def test_void_invoice_returns_voided_copy(processor, transport):
    _invoice(transport, balance=19.99)
    transport.add("PUT", f"{INVOICE}/voidInvoice", HttpResponse(204))

    voided = processor.void_invoice("inv_1")

    assert voided.status == InvoiceStatus.VOID
    (request,) = transport.calls("PUT", f"{INVOICE}/voidInvoice")
    assert request.get_header("X-killbill-reason") == "CrowdChurn invoice handling"
    assert request.get_header("X-killbill-comment") == "Automated via CrowdChurn"


def test_create_invoice_defaults_target_date(processor, transport):
    transport.add(
        "GET",
        "/1.0/kb/subscriptions",
        json_response({"subscriptionId": "kb_sub_1", "accountId": "acc_1"}),
    )

    assert processor.create_invoice_for_subscription(make_subscription()) is None

    (request,) = transport.calls("POST", "/1.0/kb/invoices")
    assert query_of(request) == {"accountId": "acc_1", "targetDate": "2024-05-01"}


def test_retry_invoice_payment_skips_settled_invoice(processor, transport):
    _invoice(transport, balance=0)

    assert processor.retry_invoice_payment("inv_1") is None
    assert transport.calls("POST", f"{INVOICE}/payments") == []


def test_retry_invoice_payment_charges_open_balance(processor, transport):
    _invoice(transport, balance=19.99)
    transport.add(
        "POST",
        f"{INVOICE}/payments",
        json_response({"paymentId": "pay_1", "transactions": [{"status": "SUCCESS"}]}, status=201),
    )

    payment = processor.retry_invoice_payment("inv_1", "pm_override")

    assert payment.payment_id == "pay_1"
    (request,) = transport.calls("POST", f"{INVOICE}/payments")
    assert body_of(request)["paymentMethodId"] == "pm_override"
    assert body_of(request)["purchasedAmount"] == 19.99
