"""Exchange rate sources used by gross pricing."""
from __future__ import annotations

import json
import logging
import time
from threading import Lock
from typing import Callable, Dict, Mapping, Optional, Protocol, Tuple
from urllib import error as urllib_error, request as urllib_request

from .exceptions import FxRateUnavailable

logger = logging.getLogger(__name__)


class FxRateSource(Protocol):
    """Converts an amount expressed in major units between currencies."""

    def convert(self, amount: float, from_currency: str, to_currency: str) -> float:
        ...


class StaticFxRateSource:
    """Rates expressed as units of each currency per one USD."""

    def __init__(self, rates_per_usd: Mapping[str, float]) -> None:
        self._rates: Dict[str, float] = {code.upper(): float(rate) for code, rate in rates_per_usd.items()}
        self._rates.setdefault("USD", 1.0)

    def _rate(self, currency: str) -> float:
        rate = self._rates.get(currency.upper())
        if rate is None or rate <= 0:
            raise FxRateUnavailable(f"No exchange rate configured for {currency.upper()}")
        return rate

    def convert(self, amount: float, from_currency: str, to_currency: str) -> float:
        if from_currency.upper() == to_currency.upper():
            return float(amount)
        return float(amount) / self._rate(from_currency) * self._rate(to_currency)


class HttpFxRateSource:
    """Fetches ``{"rates": {...}}`` documents keyed by base currency.

    ``url_template`` receives the uppercase base currency as ``{base}``.
    Responses are cached per base currency for ``cache_seconds``.
    """

    def __init__(
        self,
        url_template: str,
        *,
        cache_seconds: float = 3600.0,
        timeout: float = 5.0,
        opener: Optional[Callable[..., object]] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._url_template = url_template
        self._cache_seconds = cache_seconds
        self._timeout = timeout
        self._opener = opener or urllib_request.urlopen
        self._clock = clock
        self._cache: Dict[str, Tuple[float, Dict[str, float]]] = {}
        self._lock = Lock()

    def _fetch_rates(self, base: str) -> Dict[str, float]:
        url = self._url_template.format(base=base)
        try:
            with self._opener(url, timeout=self._timeout) as response:
                body = response.read()
            payload = json.loads(body.decode("utf-8"))
        except (urllib_error.URLError, json.JSONDecodeError, UnicodeDecodeError, TimeoutError) as exc:
            logger.warning("FX rate lookup failed", extra={"fx_base": base, "error": str(exc)})
            raise FxRateUnavailable(f"Unable to fetch exchange rates for {base}") from exc

        rates = payload.get("rates") if isinstance(payload, dict) else None
        if not isinstance(rates, dict):
            raise FxRateUnavailable(f"Exchange rate response for {base} has no rates")
        return {str(code).upper(): float(rate) for code, rate in rates.items()}

    def _rates_for(self, base: str) -> Dict[str, float]:
        now = self._clock()
        with self._lock:
            cached = self._cache.get(base)
            if cached and now - cached[0] < self._cache_seconds:
                return cached[1]
        rates = self._fetch_rates(base)
        with self._lock:
            self._cache[base] = (now, rates)
        return rates

    def convert(self, amount: float, from_currency: str, to_currency: str) -> float:
        base = from_currency.upper()
        target = to_currency.upper()
        if base == target:
            return float(amount)
        rate = self._rates_for(base).get(target)
        if rate is None or rate <= 0:
            raise FxRateUnavailable(f"No exchange rate from {base} to {target}")
        return float(amount) * rate


__all__ = ["FxRateSource", "HttpFxRateSource", "StaticFxRateSource"]
