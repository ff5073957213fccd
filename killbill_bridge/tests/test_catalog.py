"""Tests for catalog generation."""
from __future__ import annotations

import xml.etree.ElementTree as ET

import pytest

from killbill_bridge.app.billing.catalog import (
    CATALOG_NAMESPACE,
    CatalogBuilder,
    PhaseType,
    extract_billing_period,
    extract_product_name,
    parse_available_plans,
    plan_name_for,
    slugify,
)
from killbill_bridge.app.billing.currency import CurrencyResolver
from killbill_bridge.app.billing.exceptions import NotFound
from killbill_bridge.app.billing.fx import StaticFxRateSource
from killbill_bridge.app.billing.gateway import HttpResponse
from killbill_bridge.app.billing.models import BillingAuditEventType, BillingPeriod, Price, Recurrence
from killbill_bridge.app.billing.service import CatalogService
from killbill_bridge.tests.fakes import make_product

RATES = {"USD": 1.0, "EUR": 0.9, "GBP": 0.8, "JPY": 150.0, "AUD": 1.5, "CAD": 1.35, "CHF": 0.88}
NS = {"kb": CATALOG_NAMESPACE}


@pytest.fixture
def builder() -> CatalogBuilder:
    return CatalogBuilder(CurrencyResolver(StaticFxRateSource(RATES)))


def _monthly(cents: int = 1000, currency: str = "usd", recurrence: Recurrence = Recurrence.MONTHLY) -> Price:
    return Price(
        price_id=f"price_{currency}_{recurrence.value}",
        product_id="prod_1",
        currency=currency,
        price_cents=cents,
        recurrence=recurrence,
    )


def test_plan_names_are_slugged_and_reversible():
    product = make_product(name="Café Pro Plan!")
    assert slugify("Café Pro Plan!") == "cafe_pro_plan"
    plan_name = plan_name_for(product, Recurrence.YEARLY)
    assert plan_name == "cafe_pro_plan-annual"
    assert extract_product_name(plan_name) == "cafe_pro_plan"
    assert extract_billing_period(plan_name) == BillingPeriod.ANNUAL
    assert extract_billing_period("cafe_pro_plan-biannually") == BillingPeriod.MONTHLY


def test_gross_trial_catalog_prices_every_supported_currency(builder):
    product = make_product(pricing_mode="gross", free_trial_duration_in_days=7, prices=(_monthly(),))

    document = builder.build_catalog(product)

    assert document.currencies == tuple(RATES)
    assert len(document.plans) == 1
    plan = document.plans[0]
    assert plan.name == "pro_plan-monthly"
    trial, evergreen = plan.phases
    assert trial.type == PhaseType.TRIAL
    assert trial.duration_number == 7
    assert {price.currency: price.value for price in trial.prices} == {code: 0.0 for code in RATES}
    assert evergreen.type == PhaseType.EVERGREEN
    values = {price.currency: price.value for price in evergreen.prices}
    assert len(values) == 7
    assert values["USD"] == 10.0
    assert values["JPY"] == 1500.0


def test_catalog_xml_shape(builder):
    product = make_product(pricing_mode="gross", free_trial_duration_in_days=7, prices=(_monthly(),))

    root = ET.fromstring(builder.generate_catalog_xml(product).encode("utf-8"))

    assert root.find("kb:catalogName", NS).text == "crowdchurn-catalog"
    assert [node.text for node in root.findall("kb:currencies/kb:currency", NS)] == list(RATES)
    plan = root.find("kb:plans/kb:plan", NS)
    assert plan.get("name") == "pro_plan-monthly"
    trial = plan.find("kb:initialPhases/kb:phase", NS)
    assert trial.get("type") == "TRIAL"
    assert trial.find("kb:duration/kb:number", NS).text == "7"
    final = plan.find("kb:finalPhase", NS)
    assert final.find("kb:recurring/kb:billingPeriod", NS).text == "MONTHLY"
    usd = [
        node.find("kb:value", NS).text
        for node in final.findall("kb:recurring/kb:recurringPrice/kb:price", NS)
        if node.find("kb:currency", NS).text == "USD"
    ]
    assert usd == ["10.0"]
    assert [node.text for node in root.findall("kb:priceLists/kb:defaultPriceList/kb:plans/kb:plan", NS)] == [
        "pro_plan-monthly"
    ]


def test_catalog_generation_is_deterministic(builder):
    product = make_product(prices=(_monthly(), _monthly(9000, recurrence=Recurrence.YEARLY)))
    assert builder.generate_catalog_xml(product) == builder.generate_catalog_xml(product)


def test_product_without_recurring_prices_has_no_plans(builder):
    product = make_product(prices=(_monthly().model_copy(update={"recurrence": None}),))
    document = builder.build_catalog(product)
    assert document.plans == ()
    assert document.price_lists == {"DEFAULT": ()}


def test_one_plan_per_period_prefers_base_currency_row(builder):
    product = make_product(
        pricing_mode="multi_currency",
        prices=(_monthly(950, "eur"), _monthly(1000, "usd"), _monthly(9000, recurrence=Recurrence.YEARLY)),
    )
    plans = builder.plans_for_product(product)
    assert [plan.name for plan in plans] == ["pro_plan-monthly", "pro_plan-annual"]
    monthly_prices = {price.currency: price.value for price in plans[0].final_phase.prices}
    assert monthly_prices == {"USD": 10.0, "EUR": 9.5}
    assert plans[0].initial_phases == []


def test_parse_available_plans_reads_product_plans():
    catalog = [
        {
            "name": "crowdchurn-catalog",
            "products": [
                {"name": "pro_plan", "plans": [{"name": "pro_plan-monthly", "billingPeriod": "MONTHLY", "phases": []}]}
            ],
        }
    ]
    assert parse_available_plans(catalog) == [
        {"name": "pro_plan-monthly", "product": "pro_plan", "billing_period": "MONTHLY", "phases": []}
    ]
    assert parse_available_plans({}) == []


def test_catalog_service_uploads_document(repository, gateways, transport, event_logger, builder):
    repository.add_product(make_product(prices=(_monthly(),)))
    transport.add("POST", "/1.0/kb/catalog/xml", HttpResponse(201))
    service = CatalogService(repository=repository, builder=builder, gateways=gateways, event_logger=event_logger)

    document = service.sync_product("prod_1")

    (request,) = transport.calls("POST", "/1.0/kb/catalog/xml")
    assert request.get_header("Content-type") == "text/xml"
    assert request.data.decode("utf-8") == document.to_xml()
    assert event_logger.types() == [BillingAuditEventType.CATALOG_UPLOADED]

    with pytest.raises(NotFound):
        service.sync_product("missing")
