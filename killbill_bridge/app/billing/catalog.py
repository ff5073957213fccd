"""Builds billing platform catalog documents from product pricing."""
from __future__ import annotations

import re
import unicodedata
import xml.etree.ElementTree as ET
from datetime import timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

from pydantic import BaseModel, ConfigDict, Field

from .currency import CurrencyResolver
from .models import BillingPeriod, Price, Product, Recurrence

CATALOG_NAMESPACE = "http://docs.killbill.io/catalog/v1"
DEFAULT_PRICE_LIST = "DEFAULT"
PRODUCT_CATEGORY_BASE = "BASE"
POLICY_IMMEDIATE = "IMMEDIATE"

_SLUG_PATTERN = re.compile(r"[^a-z0-9]+")


class PhaseType(str, Enum):
    TRIAL = "TRIAL"
    DISCOUNT = "DISCOUNT"
    FIXEDTERM = "FIXEDTERM"
    EVERGREEN = "EVERGREEN"


class DurationUnit(str, Enum):
    DAYS = "DAYS"
    MONTHS = "MONTHS"
    YEARS = "YEARS"
    UNLIMITED = "UNLIMITED"


class CatalogPrice(BaseModel):
    currency: str
    value: float

    model_config = ConfigDict(frozen=True)


class CatalogPhase(BaseModel):
    """A pricing segment of a plan. TRIAL prices are always zero."""

    type: PhaseType
    duration_unit: DurationUnit
    duration_number: int
    prices: Tuple[CatalogPrice, ...] = ()

    model_config = ConfigDict(frozen=True)


class CatalogPlan(BaseModel):
    name: str
    product: str
    billing_period: BillingPeriod
    phases: Tuple[CatalogPhase, ...]

    model_config = ConfigDict(frozen=True)

    @property
    def initial_phases(self) -> List[CatalogPhase]:
        return [phase for phase in self.phases if phase.type != PhaseType.EVERGREEN]

    @property
    def final_phase(self) -> Optional[CatalogPhase]:
        for phase in self.phases:
            if phase.type == PhaseType.EVERGREEN:
                return phase
        return None


class CatalogProduct(BaseModel):
    name: str
    category: str = PRODUCT_CATEGORY_BASE

    model_config = ConfigDict(frozen=True)


class CatalogDocument(BaseModel):
    """In-memory catalog ready to be rendered to the upload format."""

    name: str
    effective_date: str
    currencies: Tuple[str, ...]
    products: Tuple[CatalogProduct, ...]
    plans: Tuple[CatalogPlan, ...]
    price_lists: Dict[str, Tuple[str, ...]] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True)

    def to_xml(self) -> str:
        return render_catalog_xml(self)


def slugify(value: str) -> str:
    """Lowercase ASCII identifier with runs of other characters collapsed to ``_``."""

    normalized = unicodedata.normalize("NFKD", value).encode("ascii", "ignore").decode("ascii")
    return _SLUG_PATTERN.sub("_", normalized.lower()).strip("_")


def product_name_for_catalog(product: Product) -> str:
    return slugify(product.name) or slugify(product.product_id)


def plan_name_for(product: Product, recurrence: Optional[Recurrence]) -> str:
    period = BillingPeriod.from_recurrence(recurrence)
    return f"{product_name_for_catalog(product)}-{period.value.lower()}"


def extract_product_name(plan_name: str) -> str:
    return plan_name.split("-")[0]


def extract_billing_period(plan_name: str) -> BillingPeriod:
    candidate = plan_name.split("-")[-1].upper()
    if candidate in {"MONTHLY", "ANNUAL", "WEEKLY", "QUARTERLY"}:
        return BillingPeriod(candidate)
    return BillingPeriod.MONTHLY


def _format_value(value: float) -> str:
    return repr(float(value))


class CatalogBuilder:
    """Pure translation of a product into catalog plans; performs no I/O."""

    def __init__(self, resolver: CurrencyResolver, *, catalog_name: str = "crowdchurn-catalog") -> None:
        self._resolver = resolver
        self._catalog_name = catalog_name

    def build_catalog(self, product: Product) -> CatalogDocument:
        currencies = self._resolver.currencies_for_product(product)
        plans = self.plans_for_product(product, currencies=currencies)
        effective = product.updated_at
        if effective.tzinfo is None:
            effective = effective.replace(tzinfo=timezone.utc)
        return CatalogDocument(
            name=self._catalog_name,
            effective_date=effective.astimezone(timezone.utc).isoformat(),
            currencies=tuple(currencies),
            products=(CatalogProduct(name=product_name_for_catalog(product)),),
            plans=tuple(plans),
            price_lists={DEFAULT_PRICE_LIST: tuple(plan.name for plan in plans)},
        )

    def generate_catalog_xml(self, product: Product) -> str:
        return self.build_catalog(product).to_xml()

    def plans_for_product(
        self, product: Product, *, currencies: Optional[Sequence[str]] = None
    ) -> List[CatalogPlan]:
        if currencies is None:
            currencies = self._resolver.currencies_for_product(product)
        return [
            CatalogPlan(
                name=plan_name_for(product, price.recurrence),
                product=product_name_for_catalog(product),
                billing_period=BillingPeriod.from_recurrence(price.recurrence),
                phases=tuple(self._phases_for_price(product, price, currencies)),
            )
            for price in self._plan_prices(product)
        ]

    def _plan_prices(self, product: Product) -> List[Price]:
        # One plan per billing period; prefer the row quoted in the product's own currency.
        chosen: Dict[BillingPeriod, Price] = {}
        for price in product.recurring_buy_prices():
            period = BillingPeriod.from_recurrence(price.recurrence)
            current = chosen.get(period)
            if current is None or (
                current.currency != product.price_currency_type and price.currency == product.price_currency_type
            ):
                chosen[period] = price
        return list(chosen.values())

    def _phases_for_price(
        self, product: Product, price: Price, currencies: Sequence[str]
    ) -> List[CatalogPhase]:
        phases: List[CatalogPhase] = []
        if product.has_free_trial:
            phases.append(
                CatalogPhase(
                    type=PhaseType.TRIAL,
                    duration_unit=DurationUnit.DAYS,
                    duration_number=int(product.free_trial_duration_in_days or 0),
                    prices=tuple(CatalogPrice(currency=code, value=0.0) for code in currencies),
                )
            )
        phases.append(
            CatalogPhase(
                type=PhaseType.EVERGREEN,
                duration_unit=DurationUnit.UNLIMITED,
                duration_number=-1,
                prices=tuple(
                    CatalogPrice(
                        currency=code,
                        value=self._resolver.resolve_price(
                            product,
                            price.price_cents,
                            price.currency,
                            code,
                            product.pricing_mode,
                            recurrence=price.recurrence,
                        ),
                    )
                    for code in currencies
                ),
            )
        )
        return phases


def _text(parent: ET.Element, tag: str, value: object) -> ET.Element:
    element = ET.SubElement(parent, tag)
    element.text = str(value)
    return element


def _append_duration(parent: ET.Element, phase: CatalogPhase) -> None:
    duration = ET.SubElement(parent, "duration")
    _text(duration, "unit", phase.duration_unit.value)
    _text(duration, "number", phase.duration_number)


def _append_prices(parent: ET.Element, prices: Sequence[CatalogPrice]) -> None:
    for price in prices:
        node = ET.SubElement(parent, "price")
        _text(node, "currency", price.currency)
        _text(node, "value", _format_value(price.value))


def render_catalog_xml(document: CatalogDocument) -> str:
    """Serialize ``document`` to the billing platform's catalog XML."""

    root = ET.Element("catalog", {"xmlns": CATALOG_NAMESPACE})
    _text(root, "effectiveDate", document.effective_date)
    _text(root, "catalogName", document.name)

    currencies = ET.SubElement(root, "currencies")
    for code in document.currencies:
        _text(currencies, "currency", code.upper())

    products = ET.SubElement(root, "products")
    for product in document.products:
        node = ET.SubElement(products, "product", {"name": product.name})
        _text(node, "category", product.category)

    rules = ET.SubElement(root, "rules")
    for policy_tag, case_tag in (("changePolicy", "changePolicyCase"), ("cancelPolicy", "cancelPolicyCase")):
        case = ET.SubElement(ET.SubElement(rules, policy_tag), case_tag)
        _text(case, "policy", POLICY_IMMEDIATE)

    plans = ET.SubElement(root, "plans")
    for plan in document.plans:
        plan_node = ET.SubElement(plans, "plan", {"name": plan.name})
        _text(plan_node, "product", plan.product)

        initial = plan.initial_phases
        if initial:
            initial_node = ET.SubElement(plan_node, "initialPhases")
            for phase in initial:
                phase_node = ET.SubElement(initial_node, "phase", {"type": phase.type.value})
                _append_duration(phase_node, phase)
                fixed_price = ET.SubElement(ET.SubElement(phase_node, "fixed"), "fixedPrice")
                _append_prices(fixed_price, phase.prices)

        final = plan.final_phase
        if final is not None:
            final_node = ET.SubElement(plan_node, "finalPhase", {"type": final.type.value})
            _append_duration(final_node, final)
            recurring = ET.SubElement(final_node, "recurring")
            _text(recurring, "billingPeriod", plan.billing_period.value)
            _append_prices(ET.SubElement(recurring, "recurringPrice"), final.prices)

    price_lists = ET.SubElement(root, "priceLists")
    for list_name, plan_names in document.price_lists.items():
        tag = "defaultPriceList" if list_name == DEFAULT_PRICE_LIST else "childPriceList"
        list_plans = ET.SubElement(ET.SubElement(price_lists, tag, {"name": list_name}), "plans")
        for plan_name in plan_names:
            _text(list_plans, "plan", plan_name)

    ET.indent(root, space="  ")
    body = ET.tostring(root, encoding="unicode")
    return '<?xml version="1.0" encoding="UTF-8"?>\n' + body + "\n"


def parse_available_plans(catalog: Any) -> List[Dict[str, Any]]:
    """Extract plan summaries from the platform's JSON catalog response."""

    if not isinstance(catalog, list) or not catalog or not isinstance(catalog[0], dict):
        return []

    version = catalog[0]
    raw_plans: List[Dict[str, Any]] = list(version.get("plans") or [])
    for product in version.get("products") or []:
        for plan in product.get("plans") or []:
            raw_plans.append({**plan, "product": plan.get("product") or product.get("name")})

    return [
        {
            "name": plan.get("name"),
            "product": plan.get("product"),
            "billing_period": plan.get("billingPeriod"),
            "phases": plan.get("phases"),
        }
        for plan in raw_plans
        if isinstance(plan, dict)
    ]


__all__ = [
    "CatalogBuilder",
    "CatalogDocument",
    "CatalogPhase",
    "CatalogPlan",
    "CatalogPrice",
    "CatalogProduct",
    "PhaseType",
    "extract_billing_period",
    "extract_product_name",
    "parse_available_plans",
    "plan_name_for",
    "product_name_for_catalog",
    "render_catalog_xml",
    "slugify",
]
