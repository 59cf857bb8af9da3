import asyncio
from decimal import Decimal

import httpx
import pytest

from conftest import rate_transport, single_source
from schemas.payment_errors import PaymentValidationError
from services.currency_service import FALLBACK_SOURCE, CurrencyConfig, CurrencyService


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def make_service(handler, clock=None, sources=None, ttl=3600):
    return CurrencyService(
        config=CurrencyConfig(cache_ttl_seconds=ttl),
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        sources=sources or single_source(),
        clock=clock or FakeClock(),
    )


async def test_usd_to_aed_rounds_to_whole_units(currency_service):
    conversion = await currency_service.convert(Decimal("100"), "AED")
    assert conversion.amount == Decimal("367")
    assert conversion.currency == "AED"
    assert conversion.original_amount == Decimal("100.00")
    assert conversion.rate == Decimal("3.6725")
    assert not conversion.is_fallback


async def test_half_up_rounding():
    svc = CurrencyService(
        config=CurrencyConfig(),
        http_client=httpx.AsyncClient(transport=rate_transport("3.5")),
        sources=single_source(),
    )
    conversion = await svc.convert(Decimal("1"), "AED")
    assert conversion.amount == Decimal("4")


async def test_identity_conversion(currency_service):
    conversion = await currency_service.convert(Decimal("49.999"), "usd")
    assert conversion.amount == Decimal("50.00")
    assert conversion.rate == Decimal("1")
    assert currency_service.cached_quote is None


async def test_rejects_non_positive_and_unsupported(currency_service):
    with pytest.raises(PaymentValidationError):
        await currency_service.convert(Decimal("0"), "AED")
    with pytest.raises(PaymentValidationError):
        await currency_service.convert(Decimal("10"), "EUR")


async def test_settlement_currency_for(currency_service):
    assert currency_service.settlement_currency_for("usd") == "AED"
    assert currency_service.settlement_currency_for("AED") == "AED"


async def test_fresh_cache_skips_network():
    calls = []

    def handler(request):
        calls.append(request.url)
        return httpx.Response(200, json={"rates": {"AED": 3.67}})

    svc = make_service(handler)
    await svc.get_rate()
    await svc.get_rate()
    assert len(calls) == 1


async def test_sources_tried_in_order_until_valid_rate():
    def handler(request):
        if request.url.host == "down.example.test":
            return httpx.Response(503)
        if request.url.host == "bad.example.test":
            return httpx.Response(200, json={"rates": {"AED": -1}})
        return httpx.Response(200, json={"rates": {"AED": "3.6729"}})

    parser = lambda data, base, target: data["rates"].get(target)
    svc = make_service(handler, sources=[
        ("down", "https://down.example.test/{base}", parser),
        ("bad", "https://bad.example.test/{base}", parser),
        ("good", "https://good.example.test/{base}", parser),
    ])
    quote = await svc.get_rate_quote()
    assert quote.source == "good"
    assert quote.rate == Decimal("3.6729")


async def test_fallback_is_returned_but_never_cached():
    calls = []

    def handler(request):
        calls.append(request.url)
        return httpx.Response(500)

    svc = make_service(handler)
    quote = await svc.get_rate_quote()
    assert quote.is_fallback
    assert quote.source == FALLBACK_SOURCE
    assert quote.rate == Decimal("3.673")
    assert svc.cached_quote is None

    await svc.get_rate_quote()
    assert len(calls) == 2


async def test_concurrent_cold_callers_share_one_refresh():
    calls = []
    release = asyncio.Event()

    async def handler(request):
        calls.append(request.url)
        await release.wait()
        return httpx.Response(200, json={"rates": {"AED": 3.67}})

    svc = make_service(handler)
    waiters = [asyncio.create_task(svc.get_rate()) for _ in range(5)]
    await asyncio.sleep(0.01)
    release.set()
    rates = await asyncio.gather(*waiters)
    assert set(rates) == {Decimal("3.67")}
    assert len(calls) == 1


async def test_stale_value_served_while_refresh_in_flight():
    clock = FakeClock()
    release = asyncio.Event()
    responses = iter([3.67, 3.70])

    async def handler(request):
        rate = next(responses)
        if rate == 3.70:
            await release.wait()
        return httpx.Response(200, json={"rates": {"AED": rate}})

    svc = make_service(handler, clock=clock, ttl=60)
    assert await svc.get_rate() == Decimal("3.67")

    clock.now += 120
    refresher = asyncio.create_task(svc.get_rate())
    await asyncio.sleep(0.01)

    # Refresh still running: other callers read the stale rate
    assert await svc.get_rate() == Decimal("3.67")

    release.set()
    assert await refresher == Decimal("3.7")
    assert await svc.get_rate() == Decimal("3.7")


async def test_invalidate_forces_refresh():
    calls = []

    def handler(request):
        calls.append(request.url)
        return httpx.Response(200, json={"rates": {"AED": 3.67}})

    svc = make_service(handler)
    await svc.get_rate()
    svc.invalidate()
    await svc.get_rate()
    assert len(calls) == 2


async def test_malformed_source_falls_through_to_next():
    def handler(request):
        if request.url.host == "odd.example.test":
            return httpx.Response(200, json={"rates": ["AED", 3.67]})
        return httpx.Response(200, json={"rates": {"AED": 3.67}})

    parser = lambda data, base, target: data["rates"].get(target)
    svc = make_service(handler, sources=[
        ("odd", "https://odd.example.test/{base}", parser),
        ("good", "https://good.example.test/{base}", parser),
    ])
    quote = await svc.get_rate_quote()
    assert quote.source == "good"
    assert quote.rate == Decimal("3.67")


async def test_malformed_only_source_uses_fallback():
    svc = make_service(lambda request: httpx.Response(200, json={"rates": "AED=3.67"}))
    quote = await svc.get_rate_quote()
    assert quote.is_fallback


async def test_convert_with_every_source_down_uses_fallback_rate():
    svc = make_service(lambda request: httpx.Response(503))
    conversion = await svc.convert(Decimal("100"), "AED")
    assert conversion.amount == Decimal("367")
    assert conversion.amount > 0
    assert conversion.is_fallback
    assert conversion.source == FALLBACK_SOURCE
    assert conversion.rate == Decimal("3.673")


@pytest.mark.parametrize("amount, target", [("0.1", "AED"), ("0.001", "USD")])
async def test_amount_that_rounds_to_zero_is_rejected(currency_service, amount, target):
    with pytest.raises(PaymentValidationError):
        await currency_service.convert(Decimal(amount), target)
