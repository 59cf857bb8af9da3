# services/currency_service.py
# ============================================================================
# CURRENCY CONVERSION CACHE
# ============================================================================
# Process-wide USD -> AED rate cache.
#
# - Fresh cache: served directly.
# - Expired cache: one caller refreshes, everyone else keeps reading the
#   stale value until the refresh lands.
# - All sources down: hardcoded fallback rate, never cached, so the next
#   request retries the live sources.
# ============================================================================

import asyncio
import os
import time
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, List, Optional, Tuple

import httpx
import structlog

from schemas.payment_definitions import CurrencyConversion, RateQuote, quantize_amount
from schemas.payment_errors import PaymentValidationError

logger = structlog.get_logger().bind(component="currency_service")


# ============================================================================
# SECTION 1: CONFIGURATION
# ============================================================================

@dataclass
class CurrencyConfig:
    cache_ttl_seconds: float = 3600
    fallback_rate: Decimal = Decimal("3.673")
    source_timeout_seconds: float = 5.0
    base_currency: str = "USD"
    settlement_currency: str = "AED"

    @classmethod
    def from_env(cls) -> "CurrencyConfig":
        return cls(
            cache_ttl_seconds=float(os.getenv("FX_CACHE_TTL_SECONDS", "3600")),
            fallback_rate=Decimal(os.getenv("FX_FALLBACK_RATE", "3.673")),
            source_timeout_seconds=float(os.getenv("FX_SOURCE_TIMEOUT", "5")),
            base_currency=os.getenv("FX_BASE_CURRENCY", "USD").upper(),
            settlement_currency=os.getenv("FX_SETTLEMENT_CURRENCY", "AED").upper(),
        )


# (name, url template, parser). Tried in order; first positive rate wins.
RateSource = Tuple[str, str, Callable[[Any, str, str], Any]]

RATE_SOURCES: List[RateSource] = [
    (
        "exchangerate-api",
        "https://api.exchangerate-api.com/v4/latest/{base}",
        lambda data, base, target: (data.get("rates") or {}).get(target),
    ),
    (
        "exchangerate.host",
        "https://api.exchangerate.host/latest?base={base}&symbols={target}",
        lambda data, base, target: (data.get("rates") or {}).get(target),
    ),
    (
        "fawazahmed0",
        "https://cdn.jsdelivr.net/npm/@fawazahmed0/currency-api@latest/v1/currencies/{base_lower}.json",
        lambda data, base, target: (data.get(base.lower()) or {}).get(target.lower()),
    ),
]

FALLBACK_SOURCE = "fallback"


def _positive_rate(value: Any) -> Optional[Decimal]:
    if isinstance(value, bool) or not isinstance(value, (int, float, str, Decimal)):
        return None
    try:
        rate = Decimal(str(value))
    except InvalidOperation:
        return None
    if not rate.is_finite() or rate <= 0:
        return None
    return rate


def _parse_rate(parser: Callable[[Any, str, str], Any], data: Any, base: str, target: str) -> Optional[Decimal]:
    """Run a source parser; an unexpected response shape counts as no rate."""
    if not isinstance(data, dict):
        return None
    try:
        return _positive_rate(parser(data, base, target))
    except (AttributeError, KeyError, IndexError, TypeError):
        return None


# ============================================================================
# SECTION 2: SERVICE
# ============================================================================

class CurrencyService:
    """Rate cache shared by every payment-creation request."""

    def __init__(
        self,
        config: Optional[CurrencyConfig] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        sources: Optional[List[RateSource]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or CurrencyConfig.from_env()
        self._client = http_client
        self._owns_client = http_client is None
        self._sources = sources if sources is not None else RATE_SOURCES
        self._clock = clock

        self._quote: Optional[RateQuote] = None
        self._expires_at: float = 0.0
        self._refresh_task: Optional[asyncio.Task] = None
        self._lock = asyncio.Lock()

    @property
    def cached_quote(self) -> Optional[RateQuote]:
        return self._quote

    def _is_fresh(self) -> bool:
        return self._quote is not None and self._clock() < self._expires_at

    def invalidate(self):
        self._quote = None
        self._expires_at = 0.0

    # ------------------------------------------------------------------
    # Rates
    # ------------------------------------------------------------------

    async def get_rate(self) -> Decimal:
        return (await self.get_rate_quote()).rate

    async def get_rate_quote(self) -> RateQuote:
        if self._is_fresh():
            return self._quote

        async with self._lock:
            if self._is_fresh():
                return self._quote
            if self._refresh_task is not None and not self._refresh_task.done():
                if self._quote is not None:
                    return self._quote
                task = self._refresh_task
            else:
                task = asyncio.create_task(self._refresh())
                self._refresh_task = task

        # Shielded so a cancelled caller does not abort the shared refresh
        return await asyncio.shield(task)

    async def _refresh(self) -> RateQuote:
        base = self.config.base_currency
        target = self.config.settlement_currency

        for name, template, parser in self._sources:
            url = template.format(base=base, target=target, base_lower=base.lower())
            try:
                response = await self._http().get(
                    url,
                    timeout=self.config.source_timeout_seconds,
                    headers={"User-Agent": "dealroom-payments/1.0"},
                )
                response.raise_for_status()
                data = response.json()
            except (httpx.HTTPError, ValueError) as e:
                logger.warning("fx_source_failed", source=name, error=str(e))
                continue

            rate = _parse_rate(parser, data, base, target)
            if rate is None:
                logger.warning("fx_source_invalid_rate", source=name)
                continue

            quote = RateQuote(rate=rate, source=name)
            self._quote = quote
            self._expires_at = self._clock() + self.config.cache_ttl_seconds
            logger.info("fx_rate_refreshed", source=name, rate=str(rate), pair=f"{base}/{target}")
            return quote

        logger.error(
            "fx_all_sources_failed",
            fallback_rate=str(self.config.fallback_rate),
            pair=f"{base}/{target}",
        )
        return RateQuote(rate=self.config.fallback_rate, source=FALLBACK_SOURCE, is_fallback=True)

    # ------------------------------------------------------------------
    # Conversion
    # ------------------------------------------------------------------

    def settlement_currency_for(self, display_currency: str) -> str:
        """The base currency settles in the settlement currency; others settle as-is."""
        if display_currency.upper() == self.config.base_currency:
            return self.config.settlement_currency
        return display_currency.upper()

    async def convert(self, amount: Decimal, target_currency: str) -> CurrencyConversion:
        """Convert an amount in the base currency to ``target_currency``."""
        amount = Decimal(amount)
        if amount <= 0:
            raise PaymentValidationError("Amount must be positive")

        base = self.config.base_currency
        target = target_currency.upper()

        if target == base:
            value = quantize_amount(amount)
            if value <= 0:
                raise PaymentValidationError("Amount is too small")
            return CurrencyConversion(
                amount=value,
                currency=base,
                original_amount=value,
                original_currency=base,
                rate=Decimal("1"),
                source="identity",
            )

        if target != self.config.settlement_currency:
            raise PaymentValidationError(f"Unsupported currency: {target_currency}")

        quote = await self.get_rate_quote()
        # Settlement amounts are whole units
        converted = quantize_amount(amount * quote.rate, "1")
        if converted <= 0:
            raise PaymentValidationError(f"Amount is too small to settle in {target}")
        return CurrencyConversion(
            amount=converted,
            currency=target,
            original_amount=quantize_amount(amount),
            original_currency=base,
            rate=quote.rate,
            source=quote.source,
            is_fallback=quote.is_fallback,
        )

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.config.source_timeout_seconds)
            self._owns_client = True
        return self._client

    async def close(self):
        if self._refresh_task is not None and not self._refresh_task.done():
            self._refresh_task.cancel()
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None
