"""
Currency Conversion Module

Fetches exchange rate tables from an HTTP provider, caches them per base
currency for a bounded time, and converts amounts between currencies. When
the provider is down, answers garbage, or lacks a pair, conversion degrades
to a static rate table instead of failing the caller.
"""

import time
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Callable, Dict, Optional, Tuple

import httpx

from .config import LedgerConfig, get_config
from .currency import Currency, quantize_amount, to_decimal
from .errors import ConversionUnavailable, RateProviderError
from .logging_config import get_logger

logger = get_logger("fxledger.exchange")

ONE = Decimal("1")

RateTable = Dict[str, Decimal]


class RateSource(Enum):
    """Where a resolved rate came from"""
    IDENTITY = "identity"
    LIVE = "live"
    FALLBACK = "fallback"


@dataclass(frozen=True)
class ConversionQuote:
    """Result of simulating a conversion"""
    from_currency: Currency
    to_currency: Currency
    rate: Decimal
    original_amount: Decimal
    converted_amount: Decimal  # rounded to 2 fractional digits
    source: RateSource
    timestamp: datetime

    def to_dict(self) -> Dict[str, str]:
        return {
            "from_currency": self.from_currency.code,
            "to_currency": self.to_currency.code,
            "rate": str(self.rate),
            "original_amount": str(self.original_amount),
            "converted_amount": str(self.converted_amount),
            "source": self.source.value,
            "timestamp": self.timestamp.isoformat(),
        }


class RateCache:
    """
    Rate tables keyed by base currency, valid for ``ttl_seconds`` after they
    were stored. Entries go stale by age; nothing evicts them explicitly.
    """

    def __init__(self, ttl_seconds: float = 3600, clock: Optional[Callable[[], float]] = None):
        self.ttl_seconds = ttl_seconds
        self.clock = clock or time.monotonic
        self._entries: Dict[str, Tuple[float, RateTable]] = {}

    def get(self, base: str) -> Optional[RateTable]:
        entry = self._entries.get(base)
        if entry is None:
            return None
        stored_at, rates = entry
        if self.clock() - stored_at > self.ttl_seconds:
            return None
        return rates

    def put(self, base: str, rates: RateTable) -> None:
        self._entries[base] = (self.clock(), dict(rates))

    def age(self, base: str) -> Optional[float]:
        """Seconds since the table for ``base`` was stored"""
        entry = self._entries.get(base)
        if entry is None:
            return None
        return self.clock() - entry[0]

    def clear(self) -> None:
        self._entries.clear()


class ExchangeRateProvider:
    """HTTP client for a ``GET {base_url}/{BASE}`` -> ``{"rates": {...}}`` API"""

    def __init__(self, base_url: str, timeout: float = 5.0, client: Optional[httpx.Client] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = client or httpx.Client(timeout=timeout)

    def fetch_rates(self, base: str) -> RateTable:
        """
        Fetch the rate table for a base currency.

        Raises:
            RateProviderError: On network errors, non-200 answers or a body
                without a usable ``rates`` object
        """
        url = f"{self.base_url}/{base}"
        try:
            response = self._client.get(url)
        except httpx.HTTPError as e:
            raise RateProviderError(f"Rate provider request failed: {e}", base) from e

        if response.status_code != 200:
            raise RateProviderError(f"Rate provider returned {response.status_code}", base)

        try:
            payload = response.json()
        except ValueError as e:
            raise RateProviderError(f"Rate provider returned invalid JSON: {e}", base) from e

        rates = payload.get("rates") if isinstance(payload, dict) else None
        if not isinstance(rates, dict):
            raise RateProviderError("Rate provider response has no rates table", base)

        table: RateTable = {}
        for code, value in rates.items():
            try:
                rate = Decimal(str(value))
            except (InvalidOperation, ValueError):
                continue
            if rate.is_finite() and rate > 0:
                table[str(code).upper()] = rate
        return table

    def close(self) -> None:
        self._client.close()


class CurrencyConversionService:
    """Resolves rates (live, cached or static) and converts amounts"""

    def __init__(
        self,
        provider: Optional[ExchangeRateProvider] = None,
        cache: Optional[RateCache] = None,
        config: Optional[LedgerConfig] = None
    ):
        self.config = config or get_config()
        self.provider = provider
        self.cache = cache or RateCache(ttl_seconds=self.config.rate_cache_ttl_seconds)

    @classmethod
    def from_config(cls, config: Optional[LedgerConfig] = None) -> 'CurrencyConversionService':
        config = config or get_config()
        provider = ExchangeRateProvider(config.rate_provider_url, config.rate_provider_timeout)
        return cls(
            provider=provider,
            cache=RateCache(ttl_seconds=config.rate_cache_ttl_seconds),
            config=config,
        )

    def _live_rates(self, base: Currency) -> Optional[RateTable]:
        cached = self.cache.get(base.code)
        if cached is not None:
            return cached
        if self.provider is None:
            return None

        try:
            rates = self.provider.fetch_rates(base.code)
        except RateProviderError as e:
            logger.warning(f"Using fallback rates for {base.code}: {e}")
            return None

        self.cache.put(base.code, rates)
        logger.info(f"Exchange rates refreshed for {base.code} ({len(rates)} pairs)")
        return rates

    def resolve_rate(self, from_currency, to_currency) -> Tuple[Decimal, RateSource]:
        """
        Rate and its source for a currency pair.

        Raises:
            ConversionUnavailable: Only if the static table lacks the pair too
        """
        source = Currency.from_code(from_currency)
        target = Currency.from_code(to_currency)
        if source == target:
            return ONE, RateSource.IDENTITY

        live = self._live_rates(source)
        if live and target.code in live:
            return live[target.code], RateSource.LIVE

        fallback = self.config.fallback_rate(source.code, target.code)
        if fallback is None:
            raise ConversionUnavailable(
                f"No exchange rate available for {source.code} -> {target.code}",
                from_currency=source.code, to_currency=target.code
            )
        return fallback, RateSource.FALLBACK

    def get_rate(self, from_currency, to_currency) -> Decimal:
        rate, _ = self.resolve_rate(from_currency, to_currency)
        return rate

    def convert(self, amount, from_currency, to_currency) -> Decimal:
        """
        Convert an amount; the result is not rounded.

        Converting a currency to itself returns ``amount`` unchanged. Other
        pairs accept int, float or string amounts and return a Decimal.
        """
        if Currency.from_code(from_currency) == Currency.from_code(to_currency):
            return amount
        return to_decimal(amount) * self.get_rate(from_currency, to_currency)

    def quote(self, amount, from_currency, to_currency) -> ConversionQuote:
        """Simulate a conversion without touching any account"""
        amount = to_decimal(amount)
        source = Currency.from_code(from_currency)
        target = Currency.from_code(to_currency)
        rate, rate_source = self.resolve_rate(source, target)
        converted = amount if source == target else amount * rate
        return ConversionQuote(
            from_currency=source,
            to_currency=target,
            rate=rate,
            original_amount=amount,
            converted_amount=quantize_amount(converted),
            source=rate_source,
            timestamp=datetime.now(timezone.utc),
        )
