"""Tests for inbound event classification and routing."""
from __future__ import annotations

import json
from datetime import timedelta

import pytest

from killbill_bridge.app.billing.dispatcher import (
    DispatchOutcome,
    EventCategory,
    EventDispatcher,
    classify,
    event_from_payload,
)
from killbill_bridge.app.billing.gateway import GatewayFactory
from killbill_bridge.app.billing.invoices import InvoiceEventProcessor
from killbill_bridge.app.billing.models import Purchase, SubscriptionStatus
from killbill_bridge.app.billing.reconciler import SubscriptionReconciler
from killbill_bridge.tests.fakes import NOW, json_response, make_subscription


@pytest.fixture
def dispatcher(
    repository, gateways, notifier, scheduler, hooks, event_logger, payment_handler
) -> EventDispatcher:
    reconciler = SubscriptionReconciler(repository, gateways, notifier, event_logger, clock=lambda: NOW)
    invoices = InvoiceEventProcessor(
        repository, gateways, notifier, scheduler, hooks, event_logger, clock=lambda: NOW
    )
    return EventDispatcher(repository, reconciler, invoices, payment_handler, gateways)


@pytest.mark.parametrize(
    ("event_type", "category"),
    [
        ("SUBSCRIPTION_CANCEL", EventCategory.SUBSCRIPTION),
        ("SUBSCRIPTION_BCD_CHANGE", EventCategory.SUBSCRIPTION),
        ("INVOICE_PAYMENT_FAILED", EventCategory.INVOICE),
        ("PAYMENT_REFUND", EventCategory.PAYMENT),
        ("ACCOUNT_CHANGE", EventCategory.UNCLASSIFIED),
        (None, EventCategory.UNCLASSIFIED),
    ],
)
def test_classify(event_type, category):
    assert classify(event_type) == category


def test_event_from_payload_reads_metadata_fallback():
    payload = {
        "eventType": "subscription_cancel",
        "objectId": "kb_sub_1",
        "metaData": json.dumps({"externalKey": "ext_sub_1", "effectiveDate": "2024-04-30T00:00:00Z"}),
    }

    event = event_from_payload(payload)

    assert event.event_type == "SUBSCRIPTION_CANCEL"
    assert event.external_key == "ext_sub_1"
    assert event.effective_date.isoformat() == "2024-04-30T00:00:00+00:00"
    assert event.payload == payload


def test_event_from_payload_requires_type():
    with pytest.raises(ValueError):
        event_from_payload({"objectId": "kb_sub_1", "metaData": "not json"})


def test_redelivered_subscription_event_converges(dispatcher, repository):
    repository.add_subscription(make_subscription())
    event = event_from_payload(
        {
            "eventType": "SUBSCRIPTION_CANCEL",
            "objectId": "kb_sub_1",
            "externalKey": "ext_sub_1",
            "effectiveDate": (NOW - timedelta(hours=1)).isoformat(),
        }
    )

    assert dispatcher.handle(event) == DispatchOutcome.PROCESSED
    assert repository.get_subscription("sub_1").status == SubscriptionStatus.CANCELLED
    assert dispatcher.handle(event) == DispatchOutcome.PROCESSED
    assert repository.subscription_writes == 1
    assert repository.processed == {}


def test_unknown_events_are_dropped(dispatcher, repository):
    event = event_from_payload({"eventType": "TENANT_CONFIG_CHANGE", "objectId": "t_1"})

    assert dispatcher.handle(event) == DispatchOutcome.IGNORED
    assert repository.processed == {}


def test_events_for_unknown_subscriptions_are_ignored(dispatcher, repository):
    event = event_from_payload({"eventType": "SUBSCRIPTION_CANCEL", "objectId": "kb_unknown"})

    assert dispatcher.handle(event) == DispatchOutcome.IGNORED
    assert repository.processed == {}


def test_find_subscription_by_purchase_transaction(dispatcher, repository):
    repository.add_subscription(make_subscription())
    repository.create_purchase(Purchase(purchase_id="pur_1", subscription_id="sub_1", transaction_id="txn_1"))

    assert dispatcher.find_subscription("ext_sub_1").subscription_id == "sub_1"
    assert dispatcher.find_subscription("txn_1").subscription_id == "sub_1"
    assert dispatcher.find_subscription("nothing") is None
    assert dispatcher.find_subscription(None) is None


def test_invoice_payment_failed_resolves_account_through_platform(dispatcher, repository, transport, scheduler):
    repository.add_subscription(make_subscription())
    transport.add(
        "GET",
        "/1.0/kb/accounts/acc_1",
        json_response({"accountId": "acc_1", "externalKey": "crowdchurn_user_1"}),
    )
    event = event_from_payload(
        {"eventType": "INVOICE_PAYMENT_FAILED", "objectId": "inv_1", "accountId": "acc_1"}
    )

    assert dispatcher.handle(event) == DispatchOutcome.PROCESSED
    assert scheduler.failures == [("sub_1", NOW + timedelta(days=5))]


def test_account_key_may_carry_subscription_id(dispatcher, repository):
    repository.add_subscription(make_subscription(user_external_id=None))
    event = event_from_payload(
        {"eventType": "INVOICE_CREATION", "objectId": "inv_1", "externalKey": "crowdchurn_sub_1"}
    )

    assert dispatcher.find_subscription_by_account(event).subscription_id == "sub_1"


def test_invoice_payment_success_settles_purchase(dispatcher, repository, transport, hooks):
    repository.add_subscription(make_subscription())
    transport.add(
        "GET",
        "/1.0/kb/invoices/inv_1",
        json_response(
            {
                "invoiceId": "inv_1",
                "accountId": "acc_1",
                "status": "COMMITTED",
                "amount": 10,
                "balance": 0,
                "items": [{"subscriptionId": "ext_sub_1", "amount": 10}],
            }
        ),
    )
    event = event_from_payload(
        {"eventType": "INVOICE_PAYMENT_SUCCESS", "objectId": "inv_1", "externalKey": "crowdchurn_user_1"}
    )

    assert dispatcher.handle(event) == DispatchOutcome.PROCESSED
    assert len(hooks.successes) == 1


def test_payment_events_reach_payment_handler(dispatcher, repository, payment_handler):
    repository.add_subscription(make_subscription())
    event = event_from_payload(
        {"eventType": "PAYMENT_CHARGEBACK", "objectId": "pay_1", "externalKey": "crowdchurn_user_1"}
    )

    assert dispatcher.handle(event) == DispatchOutcome.PROCESSED
    assert payment_handler.events == [("PAYMENT_CHARGEBACK", "sub_1")]


def test_cancel_after_uncancel_is_applied_again(dispatcher, repository):
    repository.add_subscription(make_subscription())
    effective = (NOW + timedelta(days=10)).isoformat()

    def deliver(event_type: str) -> DispatchOutcome:
        payload = {"eventType": event_type, "objectId": "kb_sub_1", "externalKey": "ext_sub_1"}
        if event_type == "SUBSCRIPTION_CANCEL":
            payload["effectiveDate"] = effective
        return dispatcher.handle(event_from_payload(payload))

    outcomes = [deliver("SUBSCRIPTION_CANCEL"), deliver("SUBSCRIPTION_UNCANCEL"), deliver("SUBSCRIPTION_CANCEL")]

    assert outcomes == [DispatchOutcome.PROCESSED] * 3
    subscription = repository.get_subscription("sub_1")
    assert subscription.cancel_at == NOW + timedelta(days=10)
    assert subscription.alive


def _payment_failed(transaction_id: str) -> dict:
    return {
        "eventType": "INVOICE_PAYMENT_FAILED",
        "objectId": "inv_1",
        "externalKey": "crowdchurn_user_1",
        "metaData": json.dumps({"paymentTransactionId": transaction_id}),
    }


def test_repeated_payment_failures_on_one_invoice_are_each_handled(dispatcher, repository, notifier, scheduler):
    repository.add_subscription(make_subscription())

    first = dispatcher.handle(event_from_payload(_payment_failed("txn_1")))
    second = dispatcher.handle(event_from_payload(_payment_failed("txn_2")))

    assert (first, second) == (DispatchOutcome.PROCESSED, DispatchOutcome.PROCESSED)
    assert notifier.declined == [("sub_1", "inv_1"), ("sub_1", "inv_1")]
    assert len(scheduler.reminders) == 2
    assert len(scheduler.failures) == 2


def test_redelivery_with_same_transaction_is_skipped(dispatcher, repository, notifier):
    repository.add_subscription(make_subscription())
    event = event_from_payload(_payment_failed("txn_1"))

    assert event.dedup_key == "INVOICE_PAYMENT_FAILED:inv_1:txn_1"
    assert dispatcher.handle(event) == DispatchOutcome.PROCESSED
    assert dispatcher.handle(event_from_payload(_payment_failed("txn_1"))) == DispatchOutcome.DUPLICATE
    assert notifier.declined == [("sub_1", "inv_1")]


def test_partial_refunds_of_one_payment_reach_handler(dispatcher, repository, payment_handler):
    repository.add_subscription(make_subscription())

    for transaction_id in ("txn_refund_1", "txn_refund_2"):
        event = event_from_payload(
            {
                "eventType": "PAYMENT_REFUND",
                "objectId": "pay_1",
                "externalKey": "crowdchurn_user_1",
                "metaData": {"paymentTransactionId": transaction_id},
            }
        )
        assert dispatcher.handle(event) == DispatchOutcome.PROCESSED

    assert payment_handler.events == [("PAYMENT_REFUND", "sub_1"), ("PAYMENT_REFUND", "sub_1")]


def test_opaque_account_without_default_instance_is_ignored(
    repository, notifier, scheduler, hooks, event_logger, payment_handler
):
    repository.add_subscription(make_subscription())
    gateways = GatewayFactory(repository.get_merchant_account, env={})
    reconciler = SubscriptionReconciler(repository, gateways, notifier, event_logger, clock=lambda: NOW)
    invoices = InvoiceEventProcessor(
        repository, gateways, notifier, scheduler, hooks, event_logger, clock=lambda: NOW
    )
    dispatcher = EventDispatcher(repository, reconciler, invoices, payment_handler, gateways)
    event = event_from_payload({"eventType": "INVOICE_PAYMENT_FAILED", "objectId": "inv_1", "accountId": "acc_1"})

    assert dispatcher.handle(event) == DispatchOutcome.IGNORED
    assert scheduler.failures == []
