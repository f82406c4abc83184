#!/usr/bin/env python3
import logging
from typing import Optional

from safety.models import GuardResult

logger = logging.getLogger(__name__)


def price_impact_percent(amount_in: float, amount_out: float, market_price: float) -> float:
    """Deviation of the router's implied price from the market price, in percent."""
    actual_price = amount_out / amount_in
    return abs(actual_price - market_price) / market_price * 100


class PriceImpactGuard:
    """Vetoes trades whose quoted output strays too far from the reference market price."""

    name = 'price_impact'

    def __init__(self, price_source, max_price_impact_percent: float = 1.0):
        self.price_source = price_source
        self.max_price_impact_percent = max_price_impact_percent

    def check_amounts(self, amount_in: float, amount_out: float, market_price: Optional[float]) -> GuardResult:
        if not market_price or market_price <= 0 or amount_in <= 0:
            return GuardResult(
                safe=False,
                guard=self.name,
                reason="price impact check failed: market price unavailable",
                details={'price_impact_pct': 100.0},
            )
        impact = price_impact_percent(amount_in, amount_out, market_price)
        details = {
            'price_impact_pct': impact,
            'expected_price': market_price,
            'actual_price': amount_out / amount_in,
        }
        if impact > self.max_price_impact_percent:
            return GuardResult(
                safe=False,
                guard=self.name,
                reason=f"price impact {impact:.2f}% exceeds limit {self.max_price_impact_percent}%",
                details=details,
            )
        return GuardResult(safe=True, guard=self.name, details=details)

    async def market_price(self, chain: str, token_in: str, token_out: str) -> Optional[float]:
        """Units of token_out one token_in should buy at reference prices."""
        price_in = await self.price_source.get_token_price_usd(chain, token_in)
        price_out = await self.price_source.get_token_price_usd(chain, token_out)
        if not price_in or not price_out:
            return None
        return price_in / price_out

    async def check(self, chain: str, token_in: str, token_out: str, amount_in: float, amount_out: float) -> GuardResult:
        try:
            market = await self.market_price(chain, token_in, token_out)
        except Exception as exc:
            logger.warning("Reference price lookup failed for %s/%s: %s", token_in, token_out, exc)
            market = None
        return self.check_amounts(amount_in, amount_out, market)

    async def check_quotes(self, quotes) -> GuardResult:
        last: Optional[GuardResult] = None
        for quote in quotes:
            last = await self.check(quote.chain, quote.from_token, quote.to_token, quote.from_amount, quote.to_amount)
            if not last.safe:
                return last
        return last or GuardResult(safe=True, guard=self.name)
