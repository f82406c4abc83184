from unittest.mock import AsyncMock, MagicMock

import pytest

from analysis.models import Opportunity, Quote, Route, RouteLeg
from execution.settlement import SettlementTransfer
from safety.models import GuardResult

WALLET = "0x" + "11" * 20
DESTINATION = "0x" + "44" * 20


def _opportunity():
    legs = (RouteLeg("polygon", "USDC", "WETH", "quickswap"), RouteLeg("polygon", "WETH", "USDC", "sushiswap"))
    quotes = (
        Quote("polygon", "USDC", "WETH", 1000.0, 0.334, "quickswap"),
        Quote("polygon", "WETH", "USDC", 0.334, 1030.0, "sushiswap"),
    )
    route = Route(legs=legs, kind="direct", estimated_gross_profit=30.0, estimated_gas_cost=1.0, estimated_net_profit=29.0, risk_score=1)
    return Opportunity(route=route, start_amount=1000.0, final_amount=1030.0, quotes=quotes)


def _web3(balance=1_030_000_000):
    web3 = MagicMock()
    contract = web3.eth.contract.return_value
    contract.functions.balanceOf.return_value.call.return_value = balance
    transfer = contract.functions.transfer.return_value
    transfer.estimate_gas.return_value = 50_000
    transfer.build_transaction.side_effect = lambda params: {**params, "to": "0xtoken", "data": "0xa9059cbb"}
    web3.eth.gas_price = 30 * 10 ** 9
    web3.eth.get_balance.return_value = 10 ** 18
    web3.eth.get_transaction_count.return_value = 7
    web3.eth.send_raw_transaction.return_value = b"\x34" * 32
    web3.eth.wait_for_transaction_receipt.return_value = {"status": 1}
    return web3


def _signer():
    signer = MagicMock()
    signer.address = WALLET
    signer.sign.return_value = b"raw"
    return signer


def _impact_guard(safe=True):
    guard = MagicMock()
    guard.check = AsyncMock(return_value=GuardResult(safe=safe, guard="price_impact", reason=None if safe else "impact 4%"))
    return guard


def _quote_source():
    source = MagicMock()
    source.get_quote = AsyncMock(return_value=Quote("polygon", "USDC", "WMATIC", 1030.0, 1450.0, "1inch"))
    return source


def _settlement(**overrides):
    kwargs = dict(
        web3=_web3(),
        signer=_signer(),
        price_impact_guard=_impact_guard(),
        quote_source=_quote_source(),
        destination=DESTINATION,
        enabled=True,
        threshold_usd=10.0,
    )
    kwargs.update(overrides)
    return SettlementTransfer(**kwargs)


@pytest.mark.asyncio
async def test_disabled_settlement_is_skipped():
    result = await _settlement(enabled=False).settle(_opportunity(), 29.0)
    assert result.skipped is True


@pytest.mark.asyncio
async def test_profit_below_threshold_is_skipped():
    settlement = _settlement()
    result = await settlement.settle(_opportunity(), 9.99)
    assert result.skipped is True
    settlement.web3.eth.contract.assert_not_called()


@pytest.mark.asyncio
async def test_missing_connection_fails():
    result = await _settlement(web3=None).settle(_opportunity(), 29.0)
    assert result.success is False
    assert result.skipped is False


@pytest.mark.asyncio
async def test_invalid_destination_fails():
    result = await _settlement(destination="not-an-address").settle(_opportunity(), 29.0)
    assert result.success is False
    assert "invalid destination" in result.error


@pytest.mark.asyncio
async def test_zero_balance_fails():
    result = await _settlement(web3=_web3(balance=0)).settle(_opportunity(), 29.0)
    assert result.success is False
    assert "no USDC balance" in result.error


@pytest.mark.asyncio
async def test_high_exit_impact_withholds_transfer():
    settlement = _settlement(price_impact_guard=_impact_guard(safe=False))
    result = await settlement.settle(_opportunity(), 29.0)

    assert result.success is False
    assert "price impact" in result.error
    settlement.signer.sign.assert_not_called()


@pytest.mark.asyncio
async def test_insufficient_gas_balance_fails():
    web3 = _web3()
    web3.eth.get_balance.return_value = 1
    result = await _settlement(web3=web3).settle(_opportunity(), 29.0)
    assert result.success is False
    assert "insufficient native balance" in result.error


@pytest.mark.asyncio
async def test_gas_balance_check_uses_buffered_limit_and_margin():
    web3 = _web3()
    # covers the raw 50k * 30 gwei estimate but not 60k buffered gas with the 1.5x margin
    web3.eth.get_balance.return_value = 2 * 10 ** 15
    settlement = _settlement(web3=web3)

    result = await settlement.settle(_opportunity(), 29.0)

    assert result.success is False
    assert "insufficient native balance" in result.error
    settlement.signer.sign.assert_not_called()

    web3.eth.get_balance.return_value = 3 * 10 ** 15
    assert (await settlement.settle(_opportunity(), 29.0)).success is True


@pytest.mark.asyncio
async def test_full_balance_is_transferred():
    settlement = _settlement()
    result = await settlement.settle(_opportunity(), 29.0)

    assert result.success is True
    assert result.tx_hash == "0x" + "34" * 32
    assert result.amount == pytest.approx(1030.0)
    assert result.token == "USDC"

    contract = settlement.web3.eth.contract.return_value
    destination, amount = contract.functions.transfer.call_args.args
    assert destination.lower() == DESTINATION
    assert amount == 1_030_000_000
    params = contract.functions.transfer.return_value.build_transaction.call_args.args[0]
    assert params["gas"] == 60_000
    assert params["nonce"] == 7
    assert params["chainId"] == 137
    assert "from" not in settlement.signer.sign.call_args.args[0]


@pytest.mark.asyncio
async def test_reverted_transfer_is_reported():
    web3 = _web3()
    web3.eth.wait_for_transaction_receipt.return_value = {"status": 0}
    result = await _settlement(web3=web3).settle(_opportunity(), 29.0)
    assert result.success is False
    assert result.tx_hash is not None
    assert "reverted" in result.error
