from unittest.mock import AsyncMock

import pytest

from analysis.anomaly_detector import PriceAnomalyDetector
from analysis.models import Quote, Route, RouteLeg
from analysis.profitability import (
    ProfitabilityEvaluator,
    calculate_risk_score,
    cross_chain_cost_usd,
    cycle_gas_cost_usd,
)

PRICES = {"USDC": 1.0, "WETH": 3000.0, "WMATIC": 0.7}


class FakeQuoteSource:
    def __init__(self, rates):
        self.rates = rates
        self.calls = []

    async def get_quote(self, chain, token_in, token_out, amount, venue):
        self.calls.append((token_in, token_out, amount))
        rate = self.rates.get((token_in, token_out))
        if rate is None:
            return None
        return Quote(chain=chain, from_token=token_in, to_token=token_out, from_amount=amount, to_amount=amount * rate, venue=venue)


class FakeMarket:
    def __init__(self, gas_price_gwei=20.0, native_price=1000.0, liquidity=1_000_000.0):
        self.gas_price_gwei = gas_price_gwei
        self.native_price = native_price
        self.liquidity = liquidity

    async def get_token_price_usd(self, chain, token):
        return PRICES.get(token)

    async def get_native_price_usd(self, chain):
        return self.native_price

    async def get_gas_price_gwei(self, chain):
        return self.gas_price_gwei

    async def get_pool_liquidity_usd(self, chain, token_in, token_out, venue):
        return self.liquidity


def _triangle():
    return Route(
        legs=(
            RouteLeg("polygon", "USDC", "WETH", "quickswap"),
            RouteLeg("polygon", "WETH", "WMATIC", "sushiswap"),
            RouteLeg("polygon", "WMATIC", "USDC", "quickswap"),
        ),
        kind="triangular",
    )


def _rates(final_multiplier):
    return {
        ("USDC", "WETH"): 1 / 3000.0,
        ("WETH", "WMATIC"): 3000.0 / 0.7,
        ("WMATIC", "USDC"): 0.7 * final_multiplier,
    }


def _evaluator(quote_source, market=None, detector=None, **overrides):
    market = market or FakeMarket()
    kwargs = dict(
        quote_source=quote_source,
        price_source=market,
        gas_source=market,
        liquidity_source=market,
        anomaly_detector=detector or PriceAnomalyDetector(),
        min_net_profit_usd=1.5,
        max_risk_score=10,
        min_pool_depth_usd=10_000.0,
    )
    kwargs.update(overrides)
    return ProfitabilityEvaluator(**kwargs)


def test_cycle_gas_cost_scales_with_hops():
    # 3 legs * 150k gas * 20 gwei at $1000 per native token
    assert cycle_gas_cost_usd(3, "polygon", 20.0, 1000.0) == pytest.approx(9.0)
    assert cycle_gas_cost_usd(2, "polygon", 20.0, 1000.0) == pytest.approx(6.0)


def test_cross_chain_cost_includes_bridge_fee():
    assert cross_chain_cost_usd("polygon", "bsc") > 0


def test_risk_score_is_bounded():
    assert calculate_risk_score(50.0, 0.5) == 0
    assert calculate_risk_score(1.0, 6.0, 400) == 10
    assert 0 <= calculate_risk_score(4.0, 2.0, 150) <= 10


@pytest.mark.asyncio
async def test_unprofitable_triangle_is_discarded():
    # gross +$4 minus $9 of gas leaves -$5
    evaluator = _evaluator(FakeQuoteSource(_rates(1.004)))
    assert await evaluator.evaluate_route(_triangle(), 1000.0) is None


@pytest.mark.asyncio
async def test_profitable_triangle_is_scored():
    quote_source = FakeQuoteSource(_rates(1.02))
    detector = PriceAnomalyDetector()
    evaluator = _evaluator(quote_source, detector=detector)

    opportunity = await evaluator.evaluate_route(_triangle(), 1000.0)

    assert opportunity is not None
    route = opportunity.route
    assert route.estimated_gross_profit == pytest.approx(20.0)
    assert route.estimated_gas_cost == pytest.approx(9.0)
    assert route.estimated_net_profit == pytest.approx(route.estimated_gross_profit - route.estimated_gas_cost)
    assert route.risk_score == 1
    assert opportunity.is_demo is False
    assert len(opportunity.quotes) == 3
    # each leg is quoted with the previous leg's output
    assert quote_source.calls[1][2] == pytest.approx(opportunity.quotes[0].to_amount)
    assert "polygon:USDC/WETH" in detector


@pytest.mark.asyncio
async def test_min_net_profit_filter():
    evaluator = _evaluator(FakeQuoteSource(_rates(1.02)), min_net_profit_usd=20.0)
    assert await evaluator.evaluate_route(_triangle(), 1000.0) is None


@pytest.mark.asyncio
async def test_missing_quote_discards_route():
    rates = _rates(1.02)
    del rates[("WETH", "WMATIC")]
    evaluator = _evaluator(FakeQuoteSource(rates))
    assert await evaluator.evaluate_route(_triangle(), 1000.0) is None


@pytest.mark.asyncio
async def test_shallow_pool_discards_route():
    evaluator = _evaluator(FakeQuoteSource(_rates(1.02)), market=FakeMarket(liquidity=500.0))
    assert await evaluator.evaluate_route(_triangle(), 1000.0) is None


@pytest.mark.asyncio
async def test_price_anomaly_is_reported_and_discarded():
    detector = PriceAnomalyDetector()
    for _ in range(6):
        detector.add_price("polygon:USDC/WETH", 1 / 3000.0)
    rates = _rates(1.02)
    rates[("USDC", "WETH")] = 1.3 / 3000.0
    callback = AsyncMock()
    evaluator = _evaluator(FakeQuoteSource(rates), detector=detector, activity_callback=callback)

    assert await evaluator.evaluate_route(_triangle(), 1000.0) is None
    callback.assert_awaited_once()
    level, message, metadata = callback.await_args.args
    assert level == "error"
    assert metadata["severity"] == "critical"


@pytest.mark.asyncio
async def test_start_amount_for_converts_usd():
    evaluator = _evaluator(FakeQuoteSource({}))
    route = Route(legs=(RouteLeg("polygon", "WETH", "USDC", "quickswap"), RouteLeg("polygon", "USDC", "WETH", "quickswap")), kind="direct")
    assert await evaluator.start_amount_for(route, 1500.0) == pytest.approx(0.5)


@pytest.mark.asyncio
async def test_market_cache_is_reset_between_scans():
    market = FakeMarket()
    market.get_gas_price_gwei = AsyncMock(return_value=25.0)
    evaluator = _evaluator(FakeQuoteSource({}), market=market)

    await evaluator.get_gas_price_gwei("polygon")
    await evaluator.get_gas_price_gwei("polygon")
    assert market.get_gas_price_gwei.await_count == 1

    evaluator.reset_market_cache()
    await evaluator.get_gas_price_gwei("polygon")
    assert market.get_gas_price_gwei.await_count == 2


@pytest.mark.asyncio
async def test_missing_quote_marks_leg_dead_until_reset():
    rates = _rates(1.02)
    del rates[("WETH", "WMATIC")]
    evaluator = _evaluator(FakeQuoteSource(rates))
    sibling = Route(
        legs=(
            RouteLeg("polygon", "USDC", "WETH", "quickswap"),
            RouteLeg("polygon", "WETH", "WMATIC", "sushiswap"),
            RouteLeg("polygon", "WMATIC", "USDC", "sushiswap"),
        ),
        kind="triangular",
    )
    other_venue = Route(
        legs=(
            RouteLeg("polygon", "USDC", "WETH", "quickswap"),
            RouteLeg("polygon", "WETH", "WMATIC", "quickswap"),
            RouteLeg("polygon", "WMATIC", "USDC", "quickswap"),
        ),
        kind="triangular",
    )

    assert evaluator.has_dead_leg(sibling) is False
    await evaluator.evaluate_route(_triangle(), 1000.0)

    assert evaluator.has_dead_leg(sibling) is True
    assert evaluator.has_dead_leg(other_venue) is False

    evaluator.reset_market_cache()
    assert evaluator.has_dead_leg(sibling) is False


@pytest.mark.asyncio
async def test_shallow_pool_marks_leg_dead():
    evaluator = _evaluator(FakeQuoteSource(_rates(1.02)), market=FakeMarket(liquidity=500.0))

    await evaluator.evaluate_route(_triangle(), 1000.0)

    assert evaluator.has_dead_leg(_triangle()) is True
