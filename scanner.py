# scanner.py
import asyncio
import itertools
import time
from datetime import datetime, timezone
from typing import Dict, Iterator, List, Optional

from analysis.anomaly_detector import PriceAnomalyDetector
from analysis.models import Opportunity, Route
from analysis.profitability import ProfitabilityEvaluator
from analysis.route_discovery import iter_cross_chain_routes, iter_cycle_routes
from config import AppConfig
from constants import (
    AGGREGATOR_VENUE,
    C_BLUE,
    C_GREEN,
    C_RED,
    C_RESET,
    C_YELLOW,
    PRICE_HISTORY_SWEEP_SECONDS,
    TOKENS,
    VENUES,
)
from execution.coordinator import MODE_REAL, ExecutionCoordinator, ExecutionResult
from execution.settlement import SettlementResult, SettlementTransfer
from risk.ledger import RiskLedger
from safety.gateway import SafetyGateway
from safety.models import ExecutionParams
from storage import SQLiteRepository

ALERT_COOLDOWN_SECONDS = 300


class ArbitrageScanner:
    """One user's pipeline: discovery, scoring, safety gating, risk checks and execution."""

    def __init__(
        self,
        *,
        user_id: str,
        config: AppConfig,
        evaluator: ProfitabilityEvaluator,
        anomaly_detector: PriceAnomalyDetector,
        gateway: SafetyGateway,
        ledger: RiskLedger,
        coordinator: ExecutionCoordinator,
        settlement: Optional[SettlementTransfer] = None,
        repository: Optional[SQLiteRepository] = None,
        notifier=None,
        market_data=None,
    ):
        self.user_id = str(user_id)
        self.config = config
        self.evaluator = evaluator
        self.anomaly_detector = anomaly_detector
        self.gateway = gateway
        self.ledger = ledger
        self.coordinator = coordinator
        self.settlement = settlement
        self.repository = repository
        self.notifier = notifier
        self.market_data = market_data
        self.opportunities: Dict[str, Opportunity] = {}
        self.alert_cache: Dict[str, float] = {}
        self.last_scan_time: Optional[str] = None
        self.found_last_scan = 0
        self.last_error: Optional[str] = None
        self._stop_event = asyncio.Event()
        self._loop_task: Optional[asyncio.Task] = None
        self._execution_tasks: set = set()
        self._last_sweep = time.time()
        self.evaluator.activity_callback = self._log_activity

    @property
    def is_running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    def start(self) -> bool:
        """Starts the periodic scan loop. Returns False when it is already running."""
        if self.is_running:
            return False
        self._stop_event.clear()
        self._loop_task = asyncio.create_task(self._run_main_loop())
        return True

    async def stop(self) -> None:
        """Stops scheduling immediately; executions already launched are awaited, never aborted."""
        self._stop_event.set()
        task, self._loop_task = self._loop_task, None
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        if self._execution_tasks:
            await asyncio.gather(*list(self._execution_tasks), return_exceptions=True)

    async def _run_main_loop(self):
        """The main scan loop."""
        while not self._stop_event.is_set():
            print("\n" + "=" * 50)
            print(f"[{self.user_id}] Starting new arbitrage scan cycle...")
            try:
                opportunities = await self.scan()
                self.last_error = None
                if self.config.auto_trade and opportunities:
                    await self._auto_trade(opportunities[0])
            except Exception as e:
                print(f"{C_RED}Error during scan cycle: {e}{C_RESET}")
                self.last_error = str(e)

            self._sweep_price_history()
            self._prune_alert_cache()
            print(f"Scan finished. Waiting {self.config.interval} seconds...")
            print("=" * 50)
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.config.interval)
            except asyncio.TimeoutError:
                pass

    async def _auto_trade(self, opportunity: Opportunity):
        # Shielded so cancelling the loop never interrupts a trade in flight.
        task = asyncio.ensure_future(self.execute(opportunity.id, self.config.execution_mode))
        self._execution_tasks.add(task)
        task.add_done_callback(self._execution_tasks.discard)
        result = await asyncio.shield(task)
        colour = C_GREEN if result.success else C_YELLOW
        print(f"{colour}Auto-trade ({result.mode}): {'OK ' + str(result.tx_hash) if result.success else result.error}{C_RESET}")

    async def scan(self) -> List[Opportunity]:
        """Runs one scan over every configured chain and returns opportunities, best first."""
        scan_cycle_id = await self._record_scan_cycle_start()
        self.evaluator.reset_market_cache()
        if self.market_data is not None:
            self.market_data.advance()

        streams = []
        for chain in self.config.chains:
            if await self._chain_is_scannable(chain):
                streams.append(self._cycle_routes(chain))
        if self.config.cross_chain:
            chains = [chain for chain in self.config.cross_chain_chains if self.config.settlement_token in TOKENS.get(chain, {})]
            streams.append(iter_cross_chain_routes(
                chains,
                self.config.cross_chain_tokens,
                self.config.settlement_token,
                prune=lambda route: any(
                    leg.token_in not in TOKENS.get(leg.chain, {}) or leg.token_out not in TOKENS.get(leg.chain, {})
                    for leg in route.legs
                ),
            ))

        # Workers share one lazy iterator; dead legs found by one prune the others' candidates.
        routes = itertools.chain.from_iterable(streams)
        found: List[Opportunity] = []
        workers = max(1, self.config.max_concurrent_evaluations)
        counts = await asyncio.gather(*(self._evaluation_worker(routes, found) for _ in range(workers)))
        print(f"Evaluated {C_BLUE}{sum(counts)}{C_RESET} candidate routes.")
        opportunities = sorted(found, key=lambda opp: opp.net_profit_usd, reverse=True)

        self.opportunities = {opp.id: opp for opp in opportunities}
        self.last_scan_time = time.strftime('%Y-%m-%d %H:%M:%S')
        self.found_last_scan = len(opportunities)
        await self._process_opportunities(opportunities)
        await self._record_scan_cycle_finish(scan_cycle_id, len(opportunities))
        return opportunities

    def _cycle_routes(self, chain: str):
        chain_tokens = [token for token in self.config.tokens if token in TOKENS.get(chain, {})]
        configured = VENUES.get(chain, {})
        if self.config.venues:
            venues = [venue for venue in self.config.venues if venue == AGGREGATOR_VENUE or venue in configured]
        else:
            venues = list(configured) or [AGGREGATOR_VENUE]
        return iter_cycle_routes(
            chain,
            chain_tokens,
            venues,
            self.config.max_hops,
            start_tokens=self.config.start_tokens,
            prune=self.evaluator.has_dead_leg,
        )

    async def _chain_is_scannable(self, chain: str) -> bool:
        gas_price = await self.evaluator.get_gas_price_gwei(chain)
        if gas_price is None:
            print(f"{C_RED}Could not fetch gas price for {chain}. Skipping...{C_RESET}")
            return False
        if gas_price > self.config.max_gas_price_gwei:
            print(f"{C_YELLOW}[{chain.capitalize()}] Gas {gas_price:.2f} Gwei above {self.config.max_gas_price_gwei} Gwei limit. Skipping...{C_RESET}")
            return False
        print(f"[{chain.capitalize()}] Gas Price: {gas_price:.2f} Gwei")
        return True

    async def _evaluation_worker(self, routes: Iterator[Route], found: List[Opportunity]) -> int:
        evaluated = 0
        for route in routes:
            evaluated += 1
            opportunity = await self._evaluate(route)
            if opportunity is not None and await self._passes_safety(opportunity):
                found.append(opportunity)
        return evaluated

    async def _evaluate(self, route: Route) -> Optional[Opportunity]:
        try:
            start_amount = await self.evaluator.start_amount_for(route, self.config.start_amount_usd)
            if start_amount is None:
                return None
            return await self.evaluator.evaluate_route(route, start_amount)
        except Exception as e:
            print(f"{C_RED}Error evaluating {route.describe()}: {e}{C_RESET}")
            return None

    async def _passes_safety(self, opportunity: Opportunity) -> bool:
        """Runs the safety gateway on a freshly scored opportunity; vetoed ones are never surfaced."""
        tx_guard = self.gateway.tx_guard
        params = ExecutionParams(
            expected_out=opportunity.final_amount,
            min_out=tx_guard.calculate_min_amount(opportunity.final_amount),
            deadline=tx_guard.get_deadline(),
        )
        verdict = await self.gateway.validate(opportunity, params)
        if not verdict.safe:
            await self._log_activity('warning', f"Safety veto ({verdict.guard}): {verdict.reason}", {'opportunity_id': opportunity.id, 'route': opportunity.route.describe()})
            return False
        return True

    async def _process_opportunities(self, opportunities: List[Opportunity]):
        """Prints and sends alerts for the opportunities of a scan."""
        for opp in opportunities:
            self._print_opportunity(opp)
            await self._send_notification(opp)
        print("-" * 40)
        print(f"Scan complete. Found {len(opportunities)} profitable opportunities.")

    def _print_opportunity(self, opp: Opportunity):
        route = opp.route
        demo = f"{C_YELLOW}[DEMO] {C_RESET}" if opp.is_demo else ""
        print(f"{demo}{C_GREEN}OPPORTUNITY{C_RESET} {route.kind}: {route.describe()}"
              f" | Net: ${route.estimated_net_profit:.2f} (gas ${route.estimated_gas_cost:.2f})"
              f" | Risk: {route.risk_score} | id {opp.id[:8]}")

    async def _send_notification(self, opp: Opportunity):
        if self.notifier is None:
            return
        now = time.time()
        key = opp.route.describe()
        if key in self.alert_cache and now - self.alert_cache[key] <= ALERT_COOLDOWN_SECONDS:
            return
        self.alert_cache[key] = now
        route = opp.route
        header = "🧪 <b>DEMO</b> " if opp.is_demo else ""
        message = (
            f"{header}<b>{route.kind.replace('_', ' ').title()} opportunity</b>\n"
            f"{route.describe()}\n"
            f"Net profit: <b>${route.estimated_net_profit:.2f}</b> (gross ${route.estimated_gross_profit:.2f}, gas ${route.estimated_gas_cost:.2f})\n"
            f"Risk score: {route.risk_score}/10\n"
        )
        if route.bridge_time_seconds:
            message += f"Bridge time: ~{route.bridge_time_seconds // 60} min (monitor only)\n"
        else:
            message += f"Execute: <code>/execute {opp.id[:8]}</code>"
        self.notifier.notify_nowait(message)

    def _prune_alert_cache(self):
        now = time.time()
        self.alert_cache = {key: ts for key, ts in self.alert_cache.items() if now - ts <= ALERT_COOLDOWN_SECONDS}

    def _sweep_price_history(self):
        now = time.time()
        if now - self._last_sweep < PRICE_HISTORY_SWEEP_SECONDS:
            return
        removed = self.anomaly_detector.clean_old_history(now)
        self._last_sweep = now
        if removed:
            print(f"Pruned {removed} stale price history entries.")

    def find_opportunity(self, opportunity_id: str) -> Optional[Opportunity]:
        """Looks up an opportunity of the last scan by full id or unique prefix."""
        if opportunity_id in self.opportunities:
            return self.opportunities[opportunity_id]
        matches = [opp for key, opp in self.opportunities.items() if key.startswith(opportunity_id)]
        return matches[0] if len(matches) == 1 else None

    async def execute(self, opportunity_id: str, mode: Optional[str] = None) -> ExecutionResult:
        """Validates, risk-checks and executes one opportunity from the last scan."""
        mode = mode or self.config.execution_mode
        opportunity = self.find_opportunity(opportunity_id)
        if opportunity is None:
            return ExecutionResult(success=False, error="unknown or expired opportunity", mode=mode, blocked=True)
        if mode == MODE_REAL and opportunity.is_demo:
            return ExecutionResult(success=False, error="demo opportunities cannot be executed in real mode", mode=mode, blocked=True)
        if mode == MODE_REAL and not self.config.enable_real_trading:
            return ExecutionResult(success=False, error="real trading is disabled", mode=mode, blocked=True)

        route = opportunity.route
        async with self.coordinator.lock:
            params = await self.coordinator.prepare_params(opportunity)
            verdict = await self.gateway.validate(opportunity, params)
            if not verdict.safe:
                await self._log_activity('warning', f"Safety veto ({verdict.guard}): {verdict.reason}", {'opportunity_id': opportunity.id, 'route': route.describe()})
                return ExecutionResult(success=False, error=verdict.reason, mode=mode, blocked=True)

            start_price = await self.evaluator.get_token_price_usd(route.legs[0].chain, route.start_token) or 0.0
            end_price = await self.evaluator.get_token_price_usd(route.legs[-1].chain, route.legs[-1].token_out) or 0.0
            position_size_usd = opportunity.start_amount * start_price
            gas_cost_usd = route.estimated_gas_cost or 0.0
            potential_loss_usd = max(0.0, position_size_usd - params.min_out * end_price) + gas_cost_usd

            native_balance_usd = None
            gas_reserve_usd = 0.0
            if mode == MODE_REAL:
                native_price = await self.evaluator.get_native_price_usd(route.legs[0].chain) or 0.0
                native_balance = await self.coordinator.get_native_balance()
                if native_balance is not None:
                    native_balance_usd = native_balance * native_price
                gas_reserve_usd = self.config.gas_reserve_native * native_price

            check = await self.ledger.pre_check(
                position_size_usd,
                potential_loss_usd,
                native_balance_usd=native_balance_usd,
                gas_cost_usd=gas_cost_usd if native_balance_usd is not None else None,
                gas_reserve_usd=gas_reserve_usd,
            )
            if not check.allowed:
                await self._log_activity('warning', f"Risk check refused trade: {check.reason}", {'opportunity_id': opportunity.id})
                return ExecutionResult(success=False, error=check.reason, mode=mode, blocked=True)

            result = await self.coordinator.execute(route, params, verdict, mode)
            if result.blocked:
                await self._log_activity('warning', f"Execution blocked: {result.error}", {'opportunity_id': opportunity.id})
                return result

            realized_gas_usd = gas_cost_usd
            if mode == MODE_REAL:
                native_price = await self.evaluator.get_native_price_usd(route.legs[0].chain)
                if native_price and result.gas_cost_native:
                    realized_gas_usd = result.gas_cost_native * native_price
                profit_usd = (route.estimated_gross_profit or 0.0) if result.success else 0.0
                await self.ledger.record_trade_outcome(profit_usd, realized_gas_usd, result.success, position_size_usd)
            else:
                profit_usd = route.estimated_gross_profit or 0.0

            await self._record_trade(opportunity, result, profit_usd - realized_gas_usd, realized_gas_usd, position_size_usd)
            # Settlement signs from the same wallet, so it shares the nonce lock with the trade.
            await self._settle(opportunity, result, profit_usd - realized_gas_usd)

        self._after_execution(opportunity, result)
        return result

    async def _settle(self, opportunity: Opportunity, result: ExecutionResult, net_profit_usd: float) -> Optional[SettlementResult]:
        if not result.success or result.mode != MODE_REAL or self.settlement is None:
            return None
        settlement = await self.settlement.settle(opportunity, net_profit_usd)
        if not settlement.skipped:
            level = 'info' if settlement.success else 'error'
            await self._log_activity(level, f"Settlement {'sent' if settlement.success else 'failed'}: {settlement.tx_hash or settlement.error}", {'amount': settlement.amount, 'token': settlement.token})
        return settlement

    def _after_execution(self, opportunity: Opportunity, result: ExecutionResult):
        route = opportunity.route
        if result.success:
            print(f"{C_GREEN}Executed {route.describe()} ({result.mode}): {result.tx_hash}{C_RESET}")
        else:
            print(f"{C_RED}Execution failed for {route.describe()} ({result.mode}): {result.error}{C_RESET}")

        if self.notifier is not None:
            status = "✅ executed" if result.success else "❌ failed"
            self.notifier.notify_nowait(
                f"<b>Trade {status}</b> ({result.mode})\n{route.describe()}\n"
                f"{'Tx: <code>' + str(result.tx_hash) + '</code>' if result.success else 'Error: ' + str(result.error)}"
            )

    async def _log_activity(self, level: str, message: str, metadata: Optional[dict] = None):
        if self.repository is None:
            return
        await self.repository.record_activity(self.user_id, level, message, metadata)

    async def _record_trade(self, opportunity: Opportunity, result: ExecutionResult, realized_profit_usd: float, gas_cost_usd: float, position_size_usd: float):
        if self.repository is None:
            return
        await self.repository.record_trade(
            user_id=self.user_id,
            opportunity_id=opportunity.id,
            route=opportunity.route.describe(),
            mode=result.mode,
            success=result.success,
            tx_hash=result.tx_hash,
            error=result.error,
            expected_profit_usd=opportunity.net_profit_usd,
            realized_profit_usd=realized_profit_usd if result.success else -gas_cost_usd,
            gas_cost_usd=gas_cost_usd,
            position_size_usd=position_size_usd,
        )

    async def _record_scan_cycle_start(self) -> Optional[int]:
        if self.repository is None:
            return None
        try:
            return await self.repository.record_scan_cycle_start(self.config.chains, self.config.tokens)
        except Exception as exc:
            print(f"{C_RED}Failed to record scan cycle start: {exc}{C_RESET}")
            return None

    async def _record_scan_cycle_finish(self, scan_cycle_id: Optional[int], opportunities_found: int) -> None:
        if self.repository is None or scan_cycle_id is None:
            return
        try:
            await self.repository.record_scan_cycle_finish(scan_cycle_id, opportunities_found)
        except Exception as exc:
            print(f"{C_RED}Failed to record scan cycle finish: {exc}{C_RESET}")

    def status(self) -> dict:
        return {
            'running': self.is_running,
            'last_scan_time': self.last_scan_time,
            'found_last_scan': self.found_last_scan,
            'last_error': self.last_error,
            'paused': self.ledger.is_paused(),
            'demo_mode': self.evaluator.is_demo,
            'execution_mode': self.config.execution_mode,
            'checked_at': datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC'),
        }
