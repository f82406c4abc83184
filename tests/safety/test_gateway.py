from unittest.mock import AsyncMock, MagicMock

import pytest
from web3.exceptions import Web3RPCError

from analysis.anomaly_detector import PriceAnomalyDetector
from analysis.models import Opportunity, Quote, Route, RouteLeg
from safety.gateway import SafetyGateway
from safety.models import ExecutionParams, GuardResult, PreparedTransaction, SafetyVerdict
from safety.tx_guard import TxGuard, TxGuardConfig
from services.simulation_client import SimulationResult

NOW = 1_700_000_000.0
ROUTER = "0x" + "33" * 20


def _opportunity():
    legs = (
        RouteLeg("polygon", "USDC", "WETH", "quickswap"),
        RouteLeg("polygon", "WETH", "USDC", "sushiswap"),
    )
    quotes = (
        Quote("polygon", "USDC", "WETH", 1000.0, 0.334, "quickswap"),
        Quote("polygon", "WETH", "USDC", 0.334, 1010.0, "sushiswap"),
    )
    route = Route(legs=legs, kind="direct", estimated_gross_profit=10.0, estimated_gas_cost=1.0, estimated_net_profit=9.0, risk_score=1)
    return Opportunity(route=route, start_amount=1000.0, final_amount=1010.0, quotes=quotes)


def _params(transactions=()):
    return ExecutionParams(expected_out=1010.0, min_out=1000.0, deadline=int(NOW) + 60, transactions=transactions)


def _safe(name):
    return GuardResult(safe=True, guard=name)


@pytest.fixture
def quote_source():
    source = MagicMock()
    source.get_quote = AsyncMock(return_value=Quote("polygon", "USDC", "WETH", 1000.0, 0.334, "quickswap"))
    return source


@pytest.fixture
def spread_guard():
    guard = MagicMock()
    guard.check_route = AsyncMock(return_value=_safe("spread"))
    return guard


@pytest.fixture
def impact_guard():
    guard = MagicMock()
    guard.check_quotes = AsyncMock(return_value=_safe("price_impact"))
    return guard


def _gateway(quote_source, spread_guard, impact_guard, simulator=None, tx_guard=None):
    return SafetyGateway(
        quote_source=quote_source,
        anomaly_detector=PriceAnomalyDetector(),
        spread_guard=spread_guard,
        price_impact_guard=impact_guard,
        tx_guard=tx_guard or TxGuard(TxGuardConfig()),
        simulator=simulator,
    )


@pytest.mark.asyncio
async def test_all_guards_pass(quote_source, spread_guard, impact_guard):
    verdict = await _gateway(quote_source, spread_guard, impact_guard).validate(_opportunity(), _params(), now=NOW)

    assert verdict.safe is True
    assert [r.guard for r in verdict.results] == ["anomaly", "spread", "price_impact", "tx_params", "simulation"]
    assert verdict.checked_at == NOW
    spread_guard.check_route.assert_awaited_once()
    legs, amounts = spread_guard.check_route.await_args.args
    assert amounts == [1000.0, 0.334]


@pytest.mark.asyncio
async def test_first_veto_in_guard_order_is_reported(quote_source, spread_guard, impact_guard):
    spread_guard.check_route.return_value = GuardResult(safe=False, guard="spread", reason="spread too wide")
    impact_guard.check_quotes.return_value = GuardResult(safe=False, guard="price_impact", reason="impact too high")

    verdict = await _gateway(quote_source, spread_guard, impact_guard).validate(_opportunity(), _params(), now=NOW)

    assert verdict.safe is False
    assert verdict.guard == "spread"
    assert verdict.reason == "spread too wide"
    assert sum(not r.safe for r in verdict.results) == 2


@pytest.mark.asyncio
async def test_guard_error_becomes_veto(quote_source, spread_guard, impact_guard):
    impact_guard.check_quotes.side_effect = RuntimeError("price api exploded")

    verdict = await _gateway(quote_source, spread_guard, impact_guard).validate(_opportunity(), _params(), now=NOW)

    assert verdict.safe is False
    assert verdict.guard == "price_impact"
    assert "price api exploded" in verdict.reason


@pytest.mark.asyncio
async def test_missing_fresh_quote_vetoes(quote_source, spread_guard, impact_guard):
    quote_source.get_quote.return_value = None
    verdict = await _gateway(quote_source, spread_guard, impact_guard).validate(_opportunity(), _params(), now=NOW)
    assert verdict.guard == "anomaly"


@pytest.mark.asyncio
async def test_stale_deadline_vetoes(quote_source, spread_guard, impact_guard):
    params = ExecutionParams(expected_out=1010.0, min_out=1000.0, deadline=int(NOW) - 1)
    verdict = await _gateway(quote_source, spread_guard, impact_guard).validate(_opportunity(), params, now=NOW)
    assert verdict.guard == "tx_params"


@pytest.mark.asyncio
async def test_simulator_outage_fails_open(quote_source, spread_guard, impact_guard):
    simulator = MagicMock()
    simulator.simulate = AsyncMock(return_value=SimulationResult(success=True, error="simulation_unavailable"))
    tx = PreparedTransaction(chain="polygon", tx={"to": ROUTER, "data": "0x"}, token_in="USDC", amount_in=1000.0)

    verdict = await _gateway(quote_source, spread_guard, impact_guard, simulator=simulator).validate(_opportunity(), _params((tx,)), now=NOW)

    assert verdict.safe is True
    simulator.simulate.assert_awaited_once_with("polygon", tx.tx)


@pytest.mark.asyncio
async def test_simulated_revert_vetoes(quote_source, spread_guard, impact_guard):
    simulator = MagicMock()
    simulator.simulate = AsyncMock(return_value=SimulationResult(success=False, revert_reason="INSUFFICIENT_OUTPUT_AMOUNT"))
    tx = PreparedTransaction(chain="polygon", tx={"to": ROUTER, "data": "0x"}, token_in="USDC", amount_in=1000.0)

    verdict = await _gateway(quote_source, spread_guard, impact_guard, simulator=simulator).validate(_opportunity(), _params((tx,)), now=NOW)

    assert verdict.safe is False
    assert verdict.guard == "simulation"
    assert "INSUFFICIENT_OUTPUT_AMOUNT" in verdict.reason


@pytest.mark.asyncio
async def test_simulation_skipped_while_approval_pending(quote_source, spread_guard, impact_guard):
    simulator = MagicMock()
    simulator.simulate = AsyncMock()
    tx = PreparedTransaction(
        chain="polygon",
        tx={"to": ROUTER, "data": "0x"},
        token_in="USDC",
        amount_in=1000.0,
        spender=ROUTER,
        approval_tx={"to": ROUTER, "data": "0x095ea7b3"},
    )

    verdict = await _gateway(quote_source, spread_guard, impact_guard, simulator=simulator).validate(_opportunity(), _params((tx,)), now=NOW)

    assert verdict.safe is True
    simulator.simulate.assert_not_awaited()
    assert verdict.results[-1].details == {"skipped": "approval pending"}


@pytest.mark.asyncio
async def test_eth_call_rpc_error_fails_open(quote_source, spread_guard, impact_guard):
    web3 = MagicMock()
    web3.eth.call.side_effect = Web3RPCError("header not found")
    tx_guard = TxGuard(TxGuardConfig(), web3=web3)
    tx = PreparedTransaction(chain="polygon", tx={"to": ROUTER, "data": "0x"}, token_in="USDC", amount_in=1000.0)

    verdict = await _gateway(quote_source, spread_guard, impact_guard, tx_guard=tx_guard).validate(_opportunity(), _params((tx,)), now=NOW)

    assert verdict.safe is True
    assert "header not found" in verdict.results[-1].details["error"]

def test_verdict_freshness():
    verdict = SafetyVerdict(safe=True, checked_at=NOW)
    assert verdict.is_fresh(5.0, now=NOW + 5)
    assert not verdict.is_fresh(5.0, now=NOW + 5.1)
