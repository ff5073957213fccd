"""Fixtures wiring the in-memory billing collaborators."""
from __future__ import annotations

import pytest

from killbill_bridge.app.billing.gateway import GatewayFactory
from killbill_bridge.tests.fakes import (
    KILLBILL_URL,
    FakeEventLogger,
    FakeHooks,
    FakeNotifier,
    FakePaymentHandler,
    FakeScheduler,
    FakeTransport,
    InMemoryBillingRepository,
)


@pytest.fixture
def repository() -> InMemoryBillingRepository:
    return InMemoryBillingRepository()


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def gateways(repository: InMemoryBillingRepository, transport: FakeTransport) -> GatewayFactory:
    env = {
        "KILLBILL_URL": KILLBILL_URL,
        "KILLBILL_API_KEY": "tenant-key",
        "KILLBILL_API_SECRET": "tenant-secret",
        "KILLBILL_USER": "admin",
        "KILLBILL_PASSWORD": "password",
        "KILLBILL_RETRY_BACKOFF": "0",
    }
    return GatewayFactory(repository.get_merchant_account, env=env, transport=transport)


@pytest.fixture
def notifier() -> FakeNotifier:
    return FakeNotifier()


@pytest.fixture
def scheduler() -> FakeScheduler:
    return FakeScheduler()


@pytest.fixture
def event_logger() -> FakeEventLogger:
    return FakeEventLogger()


@pytest.fixture
def hooks() -> FakeHooks:
    return FakeHooks()


@pytest.fixture
def payment_handler() -> FakePaymentHandler:
    return FakePaymentHandler()
