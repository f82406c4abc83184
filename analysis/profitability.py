#!/usr/bin/env python3
import logging
from dataclasses import replace
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

from analysis.anomaly_detector import PriceAnomalyDetector
from analysis.models import Opportunity, Quote, Route
from constants import (
    BRIDGE_FEE_USD,
    BRIDGE_TIME_SECONDS,
    CHAIN_GAS_COST_USD,
    DEFAULT_BRIDGE_TIME_SECONDS,
    DEFAULT_CHAIN_GAS_COST_USD,
    GAS_UNITS_PER_SWAP,
    MAX_RISK_SCORE,
    RISK_BRIDGE_TIME_STEPS,
    RISK_LOW_PROFIT_STEPS,
    RISK_SPREAD_STEPS,
)

logger = logging.getLogger(__name__)

ActivityCallback = Callable[[str, str, Dict[str, Any]], Awaitable[None]]


def _step_points(value: float, steps, above: bool) -> int:
    for threshold, points in steps:
        if (above and value > threshold) or (not above and value < threshold):
            return points
    return 0


def calculate_risk_score(net_profit_usd: float, spread_pct: float, bridge_time_seconds: Optional[int] = None) -> int:
    """
    Weighted risk score in [0, 10]: slow bridges, thin absolute profit and
    suspiciously wide spreads each add points on fixed breakpoints.
    """
    score = 0
    if bridge_time_seconds is not None:
        score += _step_points(bridge_time_seconds, RISK_BRIDGE_TIME_STEPS, above=True)
    score += _step_points(net_profit_usd, RISK_LOW_PROFIT_STEPS, above=False)
    score += _step_points(spread_pct, RISK_SPREAD_STEPS, above=True)
    return min(score, MAX_RISK_SCORE)


def bridge_time_seconds(chain_a: str, chain_b: str) -> int:
    return BRIDGE_TIME_SECONDS.get(frozenset({chain_a, chain_b}), DEFAULT_BRIDGE_TIME_SECONDS)


def cycle_gas_cost_usd(hop_count: int, chain: str, gas_price_gwei: float, native_price_usd: float) -> float:
    gas_units = GAS_UNITS_PER_SWAP.get(chain, 150000)
    return hop_count * gas_units * gas_price_gwei * 1e-9 * native_price_usd


def cross_chain_cost_usd(chain_a: str, chain_b: str) -> float:
    return (
        CHAIN_GAS_COST_USD.get(chain_a, DEFAULT_CHAIN_GAS_COST_USD)
        + CHAIN_GAS_COST_USD.get(chain_b, DEFAULT_CHAIN_GAS_COST_USD)
        + BRIDGE_FEE_USD
    )


class ProfitabilityEvaluator:
    """Composes sequential quotes for a route and scores what is left after gas."""

    def __init__(
        self,
        *,
        quote_source,
        price_source,
        gas_source,
        liquidity_source,
        anomaly_detector: PriceAnomalyDetector,
        min_net_profit_usd: float,
        max_risk_score: int,
        min_pool_depth_usd: float,
        activity_callback: Optional[ActivityCallback] = None,
    ) -> None:
        self.quote_source = quote_source
        self.price_source = price_source
        self.gas_source = gas_source
        self.liquidity_source = liquidity_source
        self.anomaly_detector = anomaly_detector
        self.min_net_profit_usd = min_net_profit_usd
        self.max_risk_score = max_risk_score
        self.min_pool_depth_usd = min_pool_depth_usd
        self.activity_callback = activity_callback
        self.is_demo = bool(getattr(quote_source, 'is_demo', False))
        self._gas_prices: Dict[str, float] = {}
        self._native_prices: Dict[str, float] = {}
        self._token_prices: Dict[Tuple[str, str], float] = {}
        self._dead_legs: Set[Tuple[str, str]] = set()

    def reset_market_cache(self) -> None:
        """Forget cached gas/native/token prices and dead legs; called at the start of each scan."""
        self._gas_prices.clear()
        self._native_prices.clear()
        self._token_prices.clear()
        self._dead_legs.clear()

    def has_dead_leg(self, route: Route) -> bool:
        """True when a leg of the route had no quote or a shallow pool earlier in this scan."""
        return any((leg.pair_key, leg.venue) in self._dead_legs for leg in route.legs)

    async def get_gas_price_gwei(self, chain: str) -> Optional[float]:
        if chain not in self._gas_prices:
            gas_price = await self.gas_source.get_gas_price_gwei(chain)
            if gas_price is None:
                return None
            self._gas_prices[chain] = gas_price
        return self._gas_prices[chain]

    async def get_native_price_usd(self, chain: str) -> Optional[float]:
        if chain not in self._native_prices:
            native_price = await self.price_source.get_native_price_usd(chain)
            if native_price is None:
                return None
            self._native_prices[chain] = native_price
        return self._native_prices[chain]

    async def get_token_price_usd(self, chain: str, token: str) -> Optional[float]:
        key = (chain, token)
        if key not in self._token_prices:
            price = await self.price_source.get_token_price_usd(chain, token)
            if price is None or price <= 0:
                return None
            self._token_prices[key] = price
        return self._token_prices[key]

    async def start_amount_for(self, route: Route, amount_usd: float) -> Optional[float]:
        """Converts a USD trade size into units of the route's start token."""
        price = await self.get_token_price_usd(route.legs[0].chain, route.start_token)
        if price is None:
            return None
        return amount_usd / price

    async def evaluate_route(self, route: Route, start_amount: float) -> Optional[Opportunity]:
        """Returns a scored Opportunity, or None when the route is unavailable or unprofitable."""
        quotes = await self._compose_quotes(route, start_amount)
        if quotes is None:
            return None

        if not await self._prices_look_sane(route, quotes):
            return None

        final_amount = quotes[-1].to_amount
        start_price = await self.get_token_price_usd(route.legs[0].chain, route.start_token)
        end_price = await self.get_token_price_usd(route.legs[-1].chain, route.legs[-1].token_out)
        if start_price is None or end_price is None:
            return None
        start_value_usd = start_amount * start_price
        gross_profit = final_amount * end_price - start_value_usd

        bridge_time = None
        if route.kind == 'cross_chain':
            chain_a, chain_b = route.legs[0].chain, route.legs[-1].chain
            bridge_time = bridge_time_seconds(chain_a, chain_b)
            gas_cost = cross_chain_cost_usd(chain_a, chain_b)
        else:
            chain = route.legs[0].chain
            gas_price = await self.get_gas_price_gwei(chain)
            native_price = await self.get_native_price_usd(chain)
            if gas_price is None or native_price is None:
                return None
            gas_cost = cycle_gas_cost_usd(route.hop_count, chain, gas_price, native_price)

        net_profit = gross_profit - gas_cost
        if net_profit <= 0:
            logger.debug("Discarding %s: net profit %.4f <= 0", route.describe(), net_profit)
            return None

        if not await self._has_pool_depth(route):
            return None

        spread_pct = abs(gross_profit) / start_value_usd * 100 if start_value_usd > 0 else 0.0
        risk_score = calculate_risk_score(net_profit, spread_pct, bridge_time)

        if net_profit <= self.min_net_profit_usd or risk_score > self.max_risk_score:
            logger.debug(
                "Filtered %s: net %.2f (min %.2f), risk %d (max %d)",
                route.describe(), net_profit, self.min_net_profit_usd, risk_score, self.max_risk_score,
            )
            return None

        scored = replace(
            route,
            estimated_gross_profit=gross_profit,
            estimated_gas_cost=gas_cost,
            estimated_net_profit=net_profit,
            risk_score=risk_score,
            bridge_time_seconds=bridge_time,
        )
        return Opportunity(
            route=scored,
            start_amount=start_amount,
            final_amount=final_amount,
            quotes=tuple(quotes),
            is_demo=self.is_demo,
        )

    async def _compose_quotes(self, route: Route, start_amount: float) -> Optional[List[Quote]]:
        quotes: List[Quote] = []
        amount = start_amount
        for leg in route.legs:
            quote = await self.quote_source.get_quote(leg.chain, leg.token_in, leg.token_out, amount, leg.venue)
            if quote is None or quote.to_amount <= 0:
                self._dead_legs.add((leg.pair_key, leg.venue))
                return None
            quotes.append(quote)
            amount = quote.to_amount
        return quotes

    async def _prices_look_sane(self, route: Route, quotes: List[Quote]) -> bool:
        checked = []
        for leg, quote in zip(route.legs, quotes):
            check = self.anomaly_detector.check_price(leg.pair_key, quote.price)
            if not check.is_valid:
                level = logging.ERROR if check.severity == 'critical' else logging.WARNING
                logger.log(level, "Price anomaly on %s (%s): %s", leg.pair_key, check.severity, check.reason)
                if self.activity_callback is not None:
                    await self.activity_callback(
                        'error' if check.severity == 'critical' else 'warning',
                        f"Price anomaly on {leg.pair_key}: {check.reason}",
                        {'pair': leg.pair_key, 'price': quote.price, 'severity': check.severity, 'venue': leg.venue},
                    )
                return False
            checked.append((leg.pair_key, quote.price))
        for pair_key, price in checked:
            self.anomaly_detector.add_price(pair_key, price)
        return True

    async def _has_pool_depth(self, route: Route) -> bool:
        for leg in route.legs:
            liquidity = await self.liquidity_source.get_pool_liquidity_usd(leg.chain, leg.token_in, leg.token_out, leg.venue)
            if liquidity is None or liquidity < self.min_pool_depth_usd:
                logger.debug("Discarding %s: %s liquidity %s below %.0f", route.describe(), leg.venue, liquidity, self.min_pool_depth_usd)
                self._dead_legs.add((leg.pair_key, leg.venue))
                return False
        return True
