#!/usr/bin/env python3
from typing import Optional

from analysis.models import RouteLeg
from safety.models import GuardResult


class SpreadGuard:
    """Compares the execution price of the real trade size against a small spot-sized quote."""

    name = 'spread'

    def __init__(self, quote_source, max_spread_percent: float = 1.0, reference_fraction: float = 0.001, min_reference_amount: float = 1.0):
        self.quote_source = quote_source
        self.max_spread_percent = max_spread_percent
        self.reference_fraction = reference_fraction
        self.min_reference_amount = min_reference_amount

    def reference_amount(self, amount: float) -> float:
        return min(amount, max(amount * self.reference_fraction, self.min_reference_amount))

    async def check(self, leg: RouteLeg, amount_in: float) -> GuardResult:
        quote = await self.quote_source.get_quote(leg.chain, leg.token_in, leg.token_out, amount_in, leg.venue)
        if quote is None or quote.to_amount <= 0 or amount_in <= 0:
            return GuardResult(safe=False, guard=self.name, reason=f"failed to get quote for {leg.pair_key} on {leg.venue}")

        spot_amount = self.reference_amount(amount_in)
        spot_quote = await self.quote_source.get_quote(leg.chain, leg.token_in, leg.token_out, spot_amount, leg.venue)
        if spot_quote is None or spot_quote.to_amount <= 0:
            return GuardResult(safe=False, guard=self.name, reason=f"failed to get spot price for {leg.pair_key} on {leg.venue}")

        spot_price = spot_quote.to_amount / spot_amount
        execution_price = quote.to_amount / amount_in
        spread_pct = abs(execution_price - spot_price) / spot_price * 100
        details = {'spread_pct': spread_pct, 'spot_price': spot_price, 'execution_price': execution_price}
        if spread_pct > self.max_spread_percent:
            return GuardResult(
                safe=False,
                guard=self.name,
                reason=f"spread {spread_pct:.2f}% on {leg.pair_key} exceeds {self.max_spread_percent}%",
                details=details,
            )
        return GuardResult(safe=True, guard=self.name, details=details)

    async def check_route(self, legs, amounts_in) -> GuardResult:
        """Checks every leg; the first leg over the bound vetoes the route."""
        last: Optional[GuardResult] = None
        for leg, amount_in in zip(legs, amounts_in):
            last = await self.check(leg, amount_in)
            if not last.safe:
                return last
        return last or GuardResult(safe=True, guard=self.name)
