# session_manager.py
"""Per-user pipelines and the operation surface the bot drives them through."""
import asyncio
import logging
from typing import Awaitable, Callable, Dict, List, Optional

from analysis.anomaly_detector import PriceAnomalyDetector
from analysis.models import Opportunity
from analysis.profitability import ProfitabilityEvaluator
from config import AppConfig
from constants import C_RED, C_RESET, C_YELLOW
from execution.coordinator import ExecutionCoordinator, ExecutionResult
from execution.settlement import SettlementTransfer
from risk.ledger import RiskLedger
from safety.gateway import SafetyGateway
from safety.price_impact_guard import PriceImpactGuard
from safety.spread_guard import SpreadGuard
from safety.tx_guard import TxGuard, TxGuardConfig
from scanner import ArbitrageScanner
from storage import CircuitBreakerEvent, RiskLimitsTracking, SQLiteRepository

logger = logging.getLogger(__name__)

ScannerFactory = Callable[[str], Awaitable[ArbitrageScanner]]


class SessionFactory:
    """
    Builds one user's pipeline from the shared clients.

    Market-data clients, the RPC connection and the signer are shared;
    the anomaly history, ledger, guards, coordinator and scanner belong to
    a single user. Coordinators built for the same signer share one lock.
    """

    def __init__(
        self,
        config: AppConfig,
        *,
        repository: SQLiteRepository,
        quote_source,
        price_source,
        gas_source,
        liquidity_source,
        swap_builder=None,
        simulator=None,
        web3=None,
        signer=None,
        notifier=None,
    ):
        self.config = config
        self.repository = repository
        self.quote_source = quote_source
        self.price_source = price_source
        self.gas_source = gas_source
        self.liquidity_source = liquidity_source
        self.swap_builder = swap_builder
        self.simulator = simulator
        self.web3 = web3
        self.signer = signer
        self.notifier = notifier
        self._signer_lock = asyncio.Lock()

    async def __call__(self, user_id: str) -> ArbitrageScanner:
        config = self.config
        anomaly_detector = PriceAnomalyDetector()
        evaluator = ProfitabilityEvaluator(
            quote_source=self.quote_source,
            price_source=self.price_source,
            gas_source=self.gas_source,
            liquidity_source=self.liquidity_source,
            anomaly_detector=anomaly_detector,
            min_net_profit_usd=config.min_net_profit_usd,
            max_risk_score=config.max_risk_score,
            min_pool_depth_usd=config.min_pool_depth_usd,
        )
        tx_guard = TxGuard(
            TxGuardConfig(
                max_slippage_percent=config.max_slippage_percent,
                deadline_seconds=config.deadline_seconds,
                check_revert=config.check_revert,
                single_approve=config.single_approve,
            ),
            web3=self.web3,
        )
        price_impact_guard = PriceImpactGuard(self.price_source, max_price_impact_percent=config.max_price_impact_percent)
        gateway = SafetyGateway(
            quote_source=self.quote_source,
            anomaly_detector=anomaly_detector,
            spread_guard=SpreadGuard(
                self.quote_source,
                max_spread_percent=config.max_spread_percent,
                reference_fraction=config.spot_reference_fraction,
            ),
            price_impact_guard=price_impact_guard,
            tx_guard=tx_guard,
            simulator=self.simulator if config.simulation_enabled and config.check_revert else None,
        )
        ledger = RiskLedger(
            user_id,
            self.repository,
            daily_loss_limit=config.daily_loss_limit,
            max_position_size_usd=config.max_position_size_usd,
            max_single_loss_usd=config.max_single_loss_usd,
            max_consecutive_failures=config.max_consecutive_failures,
            auto_pause=config.auto_pause,
            notifier=self.notifier,
        )
        await ledger.load()

        coordinator = ExecutionCoordinator(
            tx_guard=tx_guard,
            signer=self.signer if config.enable_real_trading else None,
            web3=self.web3 if config.enable_real_trading else None,
            swap_builder=self.swap_builder,
            max_retries=config.max_retries,
            retry_delay=config.retry_delay,
            verdict_ttl_seconds=config.verdict_ttl_seconds,
            tx_timeout=config.tx_timeout,
            max_gas_price_gwei=config.max_gas_price_gwei,
            lock=self._signer_lock,
        )
        settlement = None
        if config.auto_transfer:
            settlement = SettlementTransfer(
                web3=self.web3,
                signer=self.signer,
                price_impact_guard=price_impact_guard,
                quote_source=self.quote_source,
                destination=config.settlement_destination,
                enabled=True,
                threshold_usd=config.transfer_threshold_usd,
                tx_timeout=config.tx_timeout,
            )

        return ArbitrageScanner(
            user_id=user_id,
            config=config,
            evaluator=evaluator,
            anomaly_detector=anomaly_detector,
            gateway=gateway,
            ledger=ledger,
            coordinator=coordinator,
            settlement=settlement,
            repository=self.repository,
            notifier=self.notifier,
            market_data=self.quote_source if getattr(self.quote_source, 'is_demo', False) else None,
        )


class SessionManager:
    """Keyed by user id; every operation lazily builds the user's pipeline on first use."""

    def __init__(self, factory: ScannerFactory):
        self._factory = factory
        self._sessions: Dict[str, ArbitrageScanner] = {}
        self._lock = asyncio.Lock()

    async def get_session(self, user_id) -> ArbitrageScanner:
        key = str(user_id)
        async with self._lock:
            if key not in self._sessions:
                self._sessions[key] = await self._factory(key)
            return self._sessions[key]

    def active_users(self) -> List[str]:
        return [user_id for user_id, scanner in self._sessions.items() if scanner.is_running]

    async def scan(self, user_id) -> List[Opportunity]:
        scanner = await self.get_session(user_id)
        return await scanner.scan()

    async def execute(self, user_id, opportunity_id: str, mode: Optional[str] = None) -> ExecutionResult:
        """Never raises: unexpected failures come back as a failed ExecutionResult."""
        try:
            scanner = await self.get_session(user_id)
            return await scanner.execute(opportunity_id, mode)
        except Exception as exc:
            logger.exception("Unexpected error executing %s for %s", opportunity_id, user_id)
            print(f"{C_RED}Execution error for {user_id}: {exc}{C_RESET}")
            return ExecutionResult(success=False, error=f"internal error: {exc}", mode=mode or 'simulation')

    async def get_risk_status(self, user_id) -> RiskLimitsTracking:
        scanner = await self.get_session(user_id)
        return await scanner.ledger.get_status()

    async def get_circuit_breaker_events(self, user_id, include_resolved: bool = True) -> List[CircuitBreakerEvent]:
        scanner = await self.get_session(user_id)
        return await scanner.ledger.get_events(include_resolved=include_resolved)

    async def resolve_circuit_breaker(self, user_id, event_id: int, note: Optional[str] = None, resolved_by: Optional[str] = None) -> bool:
        scanner = await self.get_session(user_id)
        return await scanner.ledger.resolve(event_id, resolved_by or str(user_id), note)

    async def start(self, user_id) -> bool:
        scanner = await self.get_session(user_id)
        return scanner.start()

    async def stop(self, user_id) -> None:
        scanner = self._sessions.get(str(user_id))
        if scanner is not None:
            await scanner.stop()

    async def emergency_stop(self, user_id) -> Optional[CircuitBreakerEvent]:
        """Kill switch: pauses the ledger, stops the loop and replaces any stuck transaction."""
        scanner = await self.get_session(user_id)
        event = await scanner.ledger.emergency_stop(triggered_by=str(user_id))
        await scanner.stop()
        cancelled = await scanner.coordinator.cancel_pending()
        if cancelled:
            print(f"{C_YELLOW}Replaced pending transaction with {cancelled}{C_RESET}")
        return event

    async def close(self) -> None:
        sessions = list(self._sessions.values())
        await asyncio.gather(*(scanner.stop() for scanner in sessions), return_exceptions=True)
        self._sessions.clear()
