"""Tests for the billing service wiring and notification delivery."""
from __future__ import annotations

from datetime import datetime, timedelta
from email import message_from_string
from typing import List, Optional, Tuple

from killbill_bridge.app.billing.config import BillingSettings
from killbill_bridge.app.billing.dispatcher import DispatchOutcome
from killbill_bridge.app.billing.fx import HttpFxRateSource, StaticFxRateSource
from killbill_bridge.app.billing.models import ResubscriptionReason
from killbill_bridge.app.services.billing import (
    EmailBillingNotifier,
    RepositoryDunningScheduler,
    build_billing_components,
    build_fx_source,
)
from killbill_bridge.mail import CARD_DECLINED, EmailProvider, OutboundEmail, SMTPProvider, load_email_config
from killbill_bridge.tests.fakes import (
    KILLBILL_URL,
    NOW,
    FakeTransport,
    InMemoryBillingRepository,
    make_product,
    make_subscription,
)


class RecordingProvider(EmailProvider):
    name = "recording"

    def __init__(self, failures: int = 0) -> None:
        super().__init__(from_email="billing@example.com")
        self.failures = failures
        self.sent: List[OutboundEmail] = []

    def send(self, message: OutboundEmail) -> None:
        if self.failures:
            self.failures -= 1
            raise ConnectionError("smtp unavailable")
        self.sent.append(message)


class SchedulingRepository(InMemoryBillingRepository):
    def __init__(self) -> None:
        super().__init__()
        self.jobs: List[Tuple[str, str, datetime, Optional[str]]] = []

    def schedule_job(self, kind: str, subscription_id: str, run_at: datetime, *, invoice_id: Optional[str] = None) -> str:
        self.jobs.append((kind, subscription_id, run_at, invoice_id))
        return f"job_{len(self.jobs)}"


def _notifier(repository, provider, **env):
    delays: List[float] = []
    notifier = EmailBillingNotifier(
        repository,
        provider=provider,
        config=load_email_config(env={"APP_BASE_URL": "https://app.test/", "EMAIL_RETRY_BACKOFF": "1.5", **env}),
        sleep=delays.append,
    )
    return notifier, delays


def test_card_declined_email_retries_then_sends():
    repository = InMemoryBillingRepository()
    repository.add_product(make_product(name="Reading <Club>"))
    provider = RecordingProvider(failures=1)
    notifier, delays = _notifier(repository, provider, SUPPORT_EMAIL="help@example.com")

    notifier.notify_card_declined(make_subscription(), "inv_1")

    assert delays == [1.5]
    (message,) = provider.sent
    assert message.to == "reader@example.com"
    assert message.subject == "Your payment for Reading <Club> was declined"
    assert message.category == CARD_DECLINED
    assert message.reply_to == "help@example.com"
    assert "(invoice inv_1)" in message.text_body
    assert "https://app.test/subscriptions/ext_sub_1" in message.text_body
    assert "Reading &lt;Club&gt;" in message.html_body


def test_restart_email_names_reason():
    repository = InMemoryBillingRepository()
    repository.add_product(make_product())
    provider = RecordingProvider()
    notifier, _ = _notifier(repository, provider)

    notifier.notify_subscription_restarted(make_subscription(), ResubscriptionReason.PAYMENT_ISSUE_RESOLVED)

    (message,) = provider.sent
    assert message.subject == "Your Pro Plan subscription has been restarted"
    assert "your payment issue has been resolved" in message.text_body


def test_email_gives_up_after_max_attempts():
    provider = RecordingProvider(failures=10)
    notifier, delays = _notifier(InMemoryBillingRepository(), provider, EMAIL_MAX_ATTEMPTS="2")

    notifier.notify_card_declined(make_subscription(), None)

    assert provider.sent == []
    assert delays == [1.5]


def test_email_skipped_without_recipient():
    provider = RecordingProvider()
    notifier, _ = _notifier(InMemoryBillingRepository(), provider)

    notifier.notify_card_declined(make_subscription(email=None), "inv_1")

    assert provider.sent == []


def test_dunning_scheduler_persists_jobs():
    repository = SchedulingRepository()
    scheduler = RepositoryDunningScheduler(repository)
    subscription = make_subscription()

    scheduler.schedule_decline_reminder(subscription, "inv_1", NOW + timedelta(days=3))
    scheduler.schedule_unsubscribe_and_fail(subscription, NOW + timedelta(days=5))

    assert repository.jobs == [
        ("decline_reminder", "sub_1", NOW + timedelta(days=3), "inv_1"),
        ("unsubscribe_and_fail", "sub_1", NOW + timedelta(days=5), None),
    ]


def test_fx_source_selection():
    assert isinstance(build_fx_source(BillingSettings()), StaticFxRateSource)
    assert isinstance(build_fx_source(BillingSettings(fx_url="https://fx.test/{base}")), HttpFxRateSource)


def test_components_route_webhook_payloads():
    repository = SchedulingRepository()
    repository.add_subscription(make_subscription())
    provider = RecordingProvider()
    components = build_billing_components(
        settings=BillingSettings(),
        repository=repository,
        env={"KILLBILL_URL": KILLBILL_URL},
        transport=FakeTransport(),
        email_provider=provider,
    )

    outcome = components.handle_webhook_payload(
        {"eventType": "INVOICE_PAYMENT_FAILED", "objectId": "inv_1", "externalKey": "crowdchurn_user_1"}
    )

    assert outcome == DispatchOutcome.PROCESSED
    assert [job[0] for job in repository.jobs] == ["decline_reminder", "unsubscribe_and_fail"]
    assert len(provider.sent) == 1


def test_smtp_message_carries_category_and_reply_to():
    provider = SMTPProvider(from_email="billing@example.com", host="smtp.test", port=587)
    raw = provider.build_message(
        OutboundEmail(
            to="reader@example.com",
            subject="Payment declined",
            text_body="plain",
            html_body="<p>html</p>",
            category=CARD_DECLINED,
            reply_to="help@example.com",
        )
    )

    parsed = message_from_string(raw)
    assert parsed["To"] == "reader@example.com"
    assert parsed["Reply-To"] == "help@example.com"
    assert parsed["X-Billing-Category"] == CARD_DECLINED
    assert [part.get_content_type() for part in parsed.get_payload()] == ["text/plain", "text/html"]
