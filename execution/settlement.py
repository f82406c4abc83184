"""Moves the post-trade balance of the settlement token to a destination wallet."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from web3 import Web3
from web3.exceptions import TimeExhausted, Web3Exception

from analysis.models import Opportunity, from_base_units
from constants import AGGREGATOR_VENUE, CHAIN_CONFIG, GAS_BALANCE_SAFETY_MULTIPLIER, GAS_LIMIT_BUFFER, TOKENS
from safety.price_impact_guard import PriceImpactGuard
from safety.tx_guard import ERC20_ABI

logger = logging.getLogger(__name__)

TRANSFER_ABI = [
    {
        "constant": False,
        "inputs": [{"name": "to", "type": "address"}, {"name": "amount", "type": "uint256"}],
        "name": "transfer",
        "outputs": [{"name": "", "type": "bool"}],
        "stateMutability": "nonpayable",
        "type": "function",
    },
]


@dataclass(frozen=True)
class SettlementResult:
    success: bool
    skipped: bool = False
    tx_hash: Optional[str] = None
    amount: float = 0.0
    token: Optional[str] = None
    error: Optional[str] = None


class SettlementTransfer:
    """
    Sends 100% of the settlement token balance to the destination after a profitable trade.

    Settlement failures are reported and logged; they never reverse the trade
    that produced the balance.
    """

    def __init__(
        self,
        *,
        web3: Optional[Web3],
        signer,
        price_impact_guard: PriceImpactGuard,
        quote_source,
        destination: Optional[str],
        enabled: bool = False,
        threshold_usd: float = 10.0,
        tx_timeout: float = 120.0,
    ) -> None:
        self.web3 = web3
        self.signer = signer
        self.price_impact_guard = price_impact_guard
        self.quote_source = quote_source
        self.destination = destination
        self.enabled = enabled
        self.threshold_usd = threshold_usd
        self.tx_timeout = tx_timeout

    async def settle(self, opportunity: Opportunity, net_profit_usd: float) -> SettlementResult:
        if not self.enabled or not self.destination:
            return SettlementResult(success=False, skipped=True, error="auto transfer disabled")
        if net_profit_usd < self.threshold_usd:
            logger.info("Profit $%.2f below settlement threshold $%.2f, skipping transfer", net_profit_usd, self.threshold_usd)
            return SettlementResult(success=False, skipped=True, error="profit below transfer threshold")
        if self.web3 is None or self.signer is None:
            return SettlementResult(success=False, error="settlement requires a signer and an RPC connection")
        if not Web3.is_address(self.destination):
            return SettlementResult(success=False, error=f"invalid destination address {self.destination}")

        chain = opportunity.route.legs[0].chain
        token = opportunity.route.start_token
        token_info = TOKENS[chain][token]
        decimals = int(token_info['decimals'])

        try:
            return await self._transfer(chain, token, str(token_info['address']), decimals)
        except TimeExhausted as exc:
            logger.error("Settlement transfer not confirmed in time: %s", exc)
            return SettlementResult(success=False, token=token, error=f"confirmation timeout: {exc}")
        except (Web3Exception, ValueError, RuntimeError, ConnectionError, TimeoutError, OSError) as exc:
            logger.error("Settlement transfer failed: %s", exc)
            return SettlementResult(success=False, token=token, error=str(exc))

    async def _transfer(self, chain: str, token: str, token_address: str, decimals: int) -> SettlementResult:
        owner = self.signer.address
        contract = self.web3.eth.contract(address=Web3.to_checksum_address(token_address), abi=ERC20_ABI + TRANSFER_ABI)

        balance = int(await asyncio.to_thread(contract.functions.balanceOf(Web3.to_checksum_address(owner)).call))
        if balance == 0:
            return SettlementResult(success=False, token=token, error=f"no {token} balance to transfer")
        amount = from_base_units(balance, decimals)

        impact_error = await self._check_exit_impact(chain, token, amount)
        if impact_error:
            return SettlementResult(success=False, token=token, amount=amount, error=impact_error)

        transfer = contract.functions.transfer(Web3.to_checksum_address(self.destination), balance)
        gas_limit = int(int(await asyncio.to_thread(transfer.estimate_gas, {'from': owner})) * GAS_LIMIT_BUFFER)
        gas_price = int(await asyncio.to_thread(lambda: self.web3.eth.gas_price))
        native_balance = int(await asyncio.to_thread(self.web3.eth.get_balance, owner))
        if gas_limit * gas_price * GAS_BALANCE_SAFETY_MULTIPLIER > native_balance:
            return SettlementResult(success=False, token=token, amount=amount, error="insufficient native balance for transfer gas")

        tx = await asyncio.to_thread(
            transfer.build_transaction,
            {
                'from': owner,
                'gas': gas_limit,
                'gasPrice': gas_price,
                'nonce': await asyncio.to_thread(self.web3.eth.get_transaction_count, owner, 'pending'),
                'chainId': int(CHAIN_CONFIG[chain]['chainId']),
            },
        )
        tx.pop('from', None)
        raw = self.signer.sign(tx)
        tx_hash = Web3.to_hex(await asyncio.to_thread(self.web3.eth.send_raw_transaction, raw))
        receipt = await asyncio.to_thread(self.web3.eth.wait_for_transaction_receipt, tx_hash, timeout=self.tx_timeout)
        if int(receipt.get('status', 0)) == 0:
            return SettlementResult(success=False, tx_hash=tx_hash, token=token, amount=amount, error="settlement transfer reverted")

        logger.info("Settled %.6f %s to %s in %s", amount, token, self.destination, tx_hash)
        return SettlementResult(success=True, tx_hash=tx_hash, token=token, amount=amount)

    async def _check_exit_impact(self, chain: str, token: str, amount: float) -> Optional[str]:
        """Quotes the full balance into the chain's wrapped native token; a thin exit withholds the transfer."""
        reference = str(CHAIN_CONFIG[chain].get('wrappedNative') or '')
        if not reference or reference == token or reference not in TOKENS.get(chain, {}):
            return None
        quote = await self.quote_source.get_quote(chain, token, reference, amount, AGGREGATOR_VENUE)
        if quote is None:
            return f"could not quote {token} balance for price impact check"
        result = await self.price_impact_guard.check(chain, token, reference, amount, quote.to_amount)
        if not result.safe:
            return f"price impact too high: {result.reason}"
        return None
