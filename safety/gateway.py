"""Composes the independent safety guards into one accept/reject verdict."""
from __future__ import annotations

import asyncio
import logging
import time
from typing import List, Optional

from analysis.anomaly_detector import PriceAnomalyDetector
from analysis.models import Opportunity
from safety.models import ExecutionParams, GuardResult, SafetyVerdict
from safety.price_impact_guard import PriceImpactGuard
from safety.spread_guard import SpreadGuard
from safety.tx_guard import TxGuard

logger = logging.getLogger(__name__)


class SafetyGateway:
    """Runs every configured guard concurrently; the trade is safe only if all of them agree.

    When several guards veto, the reason of the first one in guard order is
    surfaced and the full list is kept on the verdict for auditing.
    """

    def __init__(
        self,
        *,
        quote_source,
        anomaly_detector: PriceAnomalyDetector,
        spread_guard: SpreadGuard,
        price_impact_guard: PriceImpactGuard,
        tx_guard: TxGuard,
        simulator=None,
    ) -> None:
        self.quote_source = quote_source
        self.anomaly_detector = anomaly_detector
        self.spread_guard = spread_guard
        self.price_impact_guard = price_impact_guard
        self.tx_guard = tx_guard
        self.simulator = simulator

    async def validate(self, opportunity: Opportunity, params: ExecutionParams, now: Optional[float] = None) -> SafetyVerdict:
        route = opportunity.route
        guards = [
            self._guarded('anomaly', self._check_anomaly(opportunity)),
            self._guarded('spread', self.spread_guard.check_route(route.legs, [q.from_amount for q in opportunity.quotes])),
            self._guarded('price_impact', self.price_impact_guard.check_quotes(opportunity.quotes)),
            self._guarded('tx_params', self._check_tx_params(params, now)),
            self._guarded('simulation', self._check_simulation(params)),
        ]
        results: List[GuardResult] = list(await asyncio.gather(*guards))

        checked_at = now if now is not None else time.time()
        for result in results:
            if not result.safe:
                logger.info("Safety veto for %s by %s: %s", route.describe(), result.guard, result.reason)
                return SafetyVerdict(safe=False, reason=result.reason, guard=result.guard, results=tuple(results), checked_at=checked_at)
        return SafetyVerdict(safe=True, results=tuple(results), checked_at=checked_at)

    async def _guarded(self, name: str, check) -> GuardResult:
        # An unexpected guard error vetoes; only the simulation guard fails open, inside its own check.
        try:
            return await check
        except Exception as exc:
            logger.error("Guard %s raised: %s", name, exc)
            return GuardResult(safe=False, guard=name, reason=f"{name} guard error: {exc}")

    async def _check_anomaly(self, opportunity: Opportunity) -> GuardResult:
        leg = opportunity.route.legs[0]
        quote = await self.quote_source.get_quote(leg.chain, leg.token_in, leg.token_out, opportunity.start_amount, leg.venue)
        if quote is None:
            return GuardResult(safe=False, guard='anomaly', reason=f"fresh quote unavailable for {leg.pair_key}")
        check = self.anomaly_detector.check_price(leg.pair_key, quote.price)
        if not check.is_valid:
            return GuardResult(safe=False, guard='anomaly', reason=f"price anomaly ({check.severity}): {check.reason}", details={'severity': check.severity})
        return GuardResult(safe=True, guard='anomaly', details={'price': quote.price})

    async def _check_tx_params(self, params: ExecutionParams, now: Optional[float]) -> GuardResult:
        validation = self.tx_guard.validate_transaction(
            params.expected_out,
            params.min_out,
            params.deadline,
            now=int(now) if now is not None else None,
        )
        return validation.result

    async def _check_simulation(self, params: ExecutionParams) -> GuardResult:
        """
        Dry-runs the first transaction of the route.

        Fails open: when no simulator is configured, or the simulator itself
        errors, execution is allowed and a warning is logged. Only a
        simulated revert vetoes.
        """
        if not params.transactions:
            return GuardResult(safe=True, guard='simulation', details={'skipped': 'no transactions'})
        first = params.transactions[0]
        if first.approval_tx is not None:
            return GuardResult(safe=True, guard='simulation', details={'skipped': 'approval pending'})

        if self.simulator is not None:
            outcome = await self.simulator.simulate(first.chain, first.tx)
            if not outcome.success:
                return GuardResult(safe=False, guard='simulation', reason=f"simulation reverted: {outcome.revert_reason}")
            if outcome.skipped or outcome.error:
                logger.warning("Simulation unavailable (%s); allowing execution", outcome.error or 'not configured')
            return GuardResult(safe=True, guard='simulation', details={'gas_used': outcome.gas_used, 'error': outcome.error})

        return await self.tx_guard.simulate_transaction(first.tx)
