from unittest.mock import AsyncMock

import pytest

from analysis.models import Quote, RouteLeg
from safety.price_impact_guard import PriceImpactGuard, price_impact_percent
from safety.spread_guard import SpreadGuard

LEG = RouteLeg("polygon", "USDC", "WETH", "quickswap")


class DepthQuoteSource:
    """Rate degrades by `impact` per 1000 units traded."""

    def __init__(self, rate, impact=0.0):
        self.rate = rate
        self.impact = impact

    async def get_quote(self, chain, token_in, token_out, amount, venue):
        to_amount = amount * self.rate * (1 - self.impact * amount / 1000)
        return Quote(chain=chain, from_token=token_in, to_token=token_out, from_amount=amount, to_amount=to_amount, venue=venue)


class FakePriceSource:
    def __init__(self, prices):
        self.prices = prices

    async def get_token_price_usd(self, chain, token):
        return self.prices.get(token)


def test_reference_amount_is_small_but_never_above_trade():
    guard = SpreadGuard(DepthQuoteSource(1.0), reference_fraction=0.001, min_reference_amount=1.0)
    assert guard.reference_amount(1_000_000) == 1000
    assert guard.reference_amount(500) == 1.0
    assert guard.reference_amount(0.5) == 0.5


@pytest.mark.asyncio
async def test_spread_within_bound_passes():
    guard = SpreadGuard(DepthQuoteSource(1 / 3000, impact=0.005), max_spread_percent=1.0)
    result = await guard.check(LEG, 1000.0)
    assert result.safe is True
    assert result.details["spread_pct"] == pytest.approx(0.5, rel=1e-2)


@pytest.mark.asyncio
async def test_wide_spread_vetoes():
    guard = SpreadGuard(DepthQuoteSource(1 / 3000, impact=0.02), max_spread_percent=1.0)
    result = await guard.check(LEG, 1000.0)
    assert result.safe is False
    assert "spread" in result.reason


@pytest.mark.asyncio
async def test_missing_quote_vetoes():
    source = AsyncMock()
    source.get_quote.return_value = None
    result = await SpreadGuard(source).check(LEG, 1000.0)
    assert result.safe is False
    assert "failed to get quote" in result.reason


@pytest.mark.asyncio
async def test_check_route_stops_at_first_veto():
    guard = SpreadGuard(DepthQuoteSource(1.0, impact=0.02), max_spread_percent=1.0)
    legs = [LEG, RouteLeg("polygon", "WETH", "USDC", "quickswap")]
    result = await guard.check_route(legs, [10.0, 1000.0])
    assert result.safe is False
    assert "WETH/USDC" in result.reason


def test_price_impact_percent():
    # 3000 USDC buying 0.99 WETH at a 1/3000 reference price
    assert price_impact_percent(3000, 0.99, 1 / 3000) == pytest.approx(1.0)


@pytest.mark.asyncio
async def test_price_impact_guard_limits():
    prices = FakePriceSource({"USDC": 1.0, "WETH": 3000.0})
    strict = PriceImpactGuard(prices, max_price_impact_percent=0.5)
    loose = PriceImpactGuard(prices, max_price_impact_percent=2.0)

    assert (await strict.check("polygon", "USDC", "WETH", 3000, 0.99)).safe is False
    result = await loose.check("polygon", "USDC", "WETH", 3000, 0.99)
    assert result.safe is True
    assert result.details["price_impact_pct"] == pytest.approx(1.0)


@pytest.mark.asyncio
async def test_unknown_reference_price_vetoes():
    guard = PriceImpactGuard(FakePriceSource({"USDC": 1.0}))
    result = await guard.check("polygon", "USDC", "WETH", 3000, 1.0)
    assert result.safe is False
    assert result.details["price_impact_pct"] == 100.0


@pytest.mark.asyncio
async def test_price_source_error_vetoes():
    source = AsyncMock()
    source.get_token_price_usd.side_effect = RuntimeError("api down")
    result = await PriceImpactGuard(source).check("polygon", "USDC", "WETH", 3000, 1.0)
    assert result.safe is False
