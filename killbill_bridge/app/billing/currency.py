"""Price resolution across currencies under a product's pricing mode."""
from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, List, Optional

from .config import DEFAULT_SUPPORTED_CURRENCIES
from .fx import FxRateSource
from .models import PricingMode, Product, Recurrence, Subscription


# ISO 4217 currencies quoted without minor units.
SINGLE_UNIT_CURRENCIES = frozenset(
    {
        "bif",
        "clp",
        "djf",
        "gnf",
        "jpy",
        "kmf",
        "krw",
        "mga",
        "pyg",
        "rwf",
        "ugx",
        "vnd",
        "vuv",
        "xaf",
        "xof",
        "xpf",
    }
)


def is_single_unit(currency: str) -> bool:
    return currency.lower() in SINGLE_UNIT_CURRENCIES


def to_decimal(cents: int, currency: str) -> float:
    """Convert stored cents into the currency's major units."""

    if is_single_unit(currency):
        return float(cents)
    return cents / 100.0


def to_cents(amount: float, currency: str) -> int:
    """Inverse of :func:`to_decimal`, rounding half up."""

    factor = Decimal(1) if is_single_unit(currency) else Decimal(100)
    return int((Decimal(str(amount)) * factor).quantize(Decimal(1), rounding=ROUND_HALF_UP))


def _round_for_currency(amount: float, currency: str) -> float:
    places = Decimal(1) if is_single_unit(currency) else Decimal("0.01")
    return float(Decimal(str(amount)).quantize(places, rounding=ROUND_HALF_UP))


def resolve_account_currency(subscription: Subscription, product: Optional[Product]) -> str:
    """Currency for a new billing account, fixed once the account exists."""

    currency = subscription.billing_currency or (product.price_currency_type if product else None)
    return (currency or "usd").upper()


class CurrencyResolver:
    """Applies legacy, gross-FX or explicit multi-currency pricing."""

    def __init__(
        self,
        fx: FxRateSource,
        supported_currencies: Iterable[str] = DEFAULT_SUPPORTED_CURRENCIES,
    ) -> None:
        self._fx = fx
        self.supported_currencies = tuple(code.upper() for code in supported_currencies)

    def resolve_price(
        self,
        product: Optional[Product],
        base_price_cents: int,
        base_currency: str,
        target_currency: str,
        pricing_mode: object = None,
        *,
        recurrence: Optional[Recurrence] = None,
    ) -> float:
        """Quote ``base_price_cents`` for ``target_currency`` in major units.

        Under multi-currency pricing a missing explicit price falls back to
        the base amount in the base currency's units, unconverted.
        """

        mode = PricingMode.coerce(pricing_mode)

        if mode == PricingMode.GROSS:
            if target_currency.lower() == base_currency.lower():
                return to_decimal(base_price_cents, base_currency)
            amount = to_decimal(base_price_cents, base_currency)
            converted = self._fx.convert(amount, base_currency.upper(), target_currency.upper())
            return _round_for_currency(converted, target_currency)

        if mode == PricingMode.MULTI_CURRENCY:
            explicit = product.explicit_price(target_currency, recurrence) if product else None
            if explicit is not None:
                return to_decimal(explicit.price_cents, explicit.currency)
            return to_decimal(base_price_cents, base_currency)

        return to_decimal(base_price_cents, base_currency)

    def currencies_for_product(self, product: Product) -> List[str]:
        """Uppercase currency codes the product's catalog plans are priced in."""

        base_currency = product.price_currency_type.upper()
        mode = product.pricing_mode

        if mode == PricingMode.GROSS:
            return list(self.supported_currencies)

        if mode == PricingMode.MULTI_CURRENCY:
            candidates = [base_currency] + [price.currency.upper() for price in product.recurring_buy_prices()]
            supported = set(self.supported_currencies)
            return [code for code in dict.fromkeys(candidates) if code in supported]

        return [base_currency]

    def resolve_subscription_price_cents(
        self,
        subscription: Subscription,
        product: Optional[Product],
        base_price_cents: int,
    ) -> int:
        """Cents to charge a subscription in its billing currency."""

        currency = subscription.billing_currency
        if not currency or product is None:
            return base_price_cents

        mode = product.pricing_mode
        if mode == PricingMode.GROSS:
            if currency == product.price_currency_type:
                return base_price_cents
            amount = to_decimal(base_price_cents, product.price_currency_type)
            converted = self._fx.convert(amount, product.price_currency_type.upper(), currency.upper())
            return to_cents(converted, currency)

        if mode == PricingMode.MULTI_CURRENCY:
            explicit = product.explicit_price(currency, subscription.recurrence)
            return explicit.price_cents if explicit is not None else base_price_cents

        return base_price_cents


__all__ = [
    "CurrencyResolver",
    "SINGLE_UNIT_CURRENCIES",
    "is_single_unit",
    "resolve_account_currency",
    "to_cents",
    "to_decimal",
]
