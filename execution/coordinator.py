"""Turns a validated opportunity into signed, submitted and confirmed transactions."""
from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from web3 import Web3
from web3.exceptions import TimeExhausted, Web3Exception

from analysis.models import Opportunity, Route
from constants import GAS_LIMIT_BUFFER
from safety.models import ExecutionParams, PreparedTransaction, SafetyVerdict
from safety.tx_guard import TxGuard

logger = logging.getLogger(__name__)

MODE_SIMULATION = 'simulation'
MODE_REAL = 'real'
EXECUTION_MODES = (MODE_SIMULATION, MODE_REAL)

CANCEL_GAS_LIMIT = 21000
CANCEL_FEE_MULTIPLIER = 2

# Send-stage failures worth another attempt. Anything raised after the
# transaction reached the node is never retried.
TRANSIENT_ERRORS = (ConnectionError, TimeoutError, OSError)

# Node rejections that clear up on a later attempt with a fresh nonce and fees.
RETRYABLE_RPC_MESSAGES = (
    'nonce too low',
    'replacement transaction underpriced',
    'transaction underpriced',
    'already known',
    'timeout',
    'timed out',
)


def is_retryable_send_error(exc: Exception) -> bool:
    if isinstance(exc, TRANSIENT_ERRORS):
        return True
    if isinstance(exc, (Web3Exception, ValueError)):
        message = str(exc).lower()
        return any(marker in message for marker in RETRYABLE_RPC_MESSAGES)
    return False


class TransactionReverted(Exception):
    def __init__(self, tx_hash: str, gas_used: int = 0, gas_cost_wei: int = 0):
        super().__init__(f"transaction {tx_hash} reverted on-chain")
        self.tx_hash = tx_hash
        self.gas_used = gas_used
        self.gas_cost_wei = gas_cost_wei


@dataclass(frozen=True)
class ExecutionResult:
    success: bool
    tx_hash: Optional[str] = None
    error: Optional[str] = None
    mode: str = MODE_SIMULATION
    gas_used: int = 0
    blocked: bool = False
    gas_cost_native: float = 0.0
    tx_hashes: Tuple[str, ...] = ()


@dataclass
class _PendingTransaction:
    chain_id: int
    nonce: int
    fees: Dict[str, int]


class ExecutionCoordinator:
    """
    Owns one signing identity and the chain connection it submits through.

    Executions are serialized with ``self.lock``; callers hold it across
    validation, execution, settlement and the ledger update so one signer
    never has two transactions (and two nonces) in flight.
    """

    def __init__(
        self,
        *,
        tx_guard: TxGuard,
        signer=None,
        web3: Optional[Web3] = None,
        swap_builder=None,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        verdict_ttl_seconds: float = 5.0,
        tx_timeout: float = 120.0,
        max_gas_price_gwei: Optional[float] = None,
        lock: Optional[asyncio.Lock] = None,
    ) -> None:
        self.tx_guard = tx_guard
        self.signer = signer
        self.web3 = web3
        self.swap_builder = swap_builder
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.verdict_ttl_seconds = verdict_ttl_seconds
        self.tx_timeout = tx_timeout
        self.max_gas_price_gwei = max_gas_price_gwei
        self.lock = lock or asyncio.Lock()
        self._clock = time.monotonic
        self._pending: Optional[_PendingTransaction] = None

    @property
    def can_trade(self) -> bool:
        return self.signer is not None and self.web3 is not None

    async def get_native_balance(self) -> Optional[float]:
        """Signer's native-token balance in whole units, or None when it cannot be read."""
        if not self.can_trade:
            return None
        try:
            wei = await asyncio.to_thread(self.web3.eth.get_balance, self.signer.address)
        except (Web3Exception, ValueError, RuntimeError, *TRANSIENT_ERRORS) as exc:
            logger.warning("Could not read native balance: %s", exc)
            return None
        return int(wei) / 10 ** 18

    async def prepare_params(self, opportunity: Opportunity, now: Optional[float] = None) -> ExecutionParams:
        """
        Derives min-out and deadline, and builds one swap transaction per leg when trading is possible.

        A later leg is sized at the previous leg's minimum output, so a
        route never spends more than the earlier legs are guaranteed to return.
        """
        expected_out = opportunity.final_amount
        min_out = self.tx_guard.calculate_min_amount(expected_out)
        deadline = self.tx_guard.get_deadline(now)

        route = opportunity.route
        if opportunity.is_demo or route.kind == 'cross_chain' or not self.can_trade or self.swap_builder is None:
            return ExecutionParams(expected_out=expected_out, min_out=min_out, deadline=deadline)

        owner = self.signer.address
        transactions: List[PreparedTransaction] = []
        amount_in = opportunity.start_amount
        for index, leg in enumerate(route.legs):
            if index > 0:
                amount_in = self.tx_guard.calculate_min_amount(opportunity.quotes[index - 1].to_amount)
            swap = await self.swap_builder.build_swap(
                leg.chain,
                leg.token_in,
                leg.token_out,
                amount_in,
                leg.venue,
                owner,
                self.tx_guard.config.max_slippage_percent,
            )
            if swap is None:
                logger.info("Could not build swap for %s on %s", leg.pair_key, leg.venue)
                return ExecutionParams(expected_out=expected_out, min_out=min_out, deadline=deadline)

            approval_tx = None
            spender = swap.get('spender')
            if spender:
                approval = await self.tx_guard.check_approval(leg.chain, leg.token_in, owner, spender, amount_in)
                if approval.needs_approval:
                    approval_tx = self.tx_guard.build_approval_tx(leg.chain, leg.token_in, owner, spender, approval.required_amount)
            transactions.append(PreparedTransaction(
                chain=leg.chain,
                tx=swap['tx'],
                token_in=leg.token_in,
                amount_in=amount_in,
                spender=spender,
                approval_tx=approval_tx,
            ))

        return ExecutionParams(expected_out=expected_out, min_out=min_out, deadline=deadline, transactions=tuple(transactions))

    async def execute(
        self,
        route: Route,
        params: ExecutionParams,
        verdict: SafetyVerdict,
        mode: str = MODE_SIMULATION,
        now: Optional[float] = None,
    ) -> ExecutionResult:
        if mode not in EXECUTION_MODES:
            return ExecutionResult(success=False, error=f"unknown execution mode '{mode}'", mode=mode, blocked=True)
        if not verdict.safe:
            return ExecutionResult(success=False, error=verdict.reason or "rejected by safety checks", mode=mode, blocked=True)
        if not verdict.is_fresh(self.verdict_ttl_seconds, now):
            return ExecutionResult(success=False, error="safety verdict expired; re-validate before executing", mode=mode, blocked=True)
        if route.kind == 'cross_chain':
            return ExecutionResult(success=False, error="cross-chain routes are monitor-only", mode=mode, blocked=True)

        if mode == MODE_SIMULATION:
            sim_id = f"sim-{uuid.uuid4().hex[:16]}"
            logger.info("Simulated execution of %s as %s", route.describe(), sim_id)
            return ExecutionResult(success=True, tx_hash=sim_id, mode=mode, tx_hashes=(sim_id,))

        if not self.can_trade:
            return ExecutionResult(success=False, error="real trading requires a signer and an RPC connection", mode=mode)
        if not self.signer.is_available():
            return ExecutionResult(success=False, error="signer is not available", mode=mode)
        if not params.transactions:
            return ExecutionResult(success=False, error="no transactions prepared for this route", mode=mode)

        steps: List[Dict[str, Any]] = []
        for prepared in params.transactions:
            if prepared.approval_tx is not None:
                steps.append(prepared.approval_tx)
            steps.append(prepared.tx)

        # Later transactions are signed after waiting on earlier receipts; the
        # verdict has to still be fresh at each of those points.
        started = self._clock()
        checked_from = now if now is not None else time.time()

        hashes: List[str] = []
        gas_used = 0
        gas_cost_wei = 0
        try:
            for index, tx in enumerate(steps):
                if index > 0 and not verdict.is_fresh(self.verdict_ttl_seconds, checked_from + self._clock() - started):
                    logger.warning("Verdict for %s expired after %d of %d transactions", route.describe(), index, len(steps))
                    return self._failed(
                        mode,
                        f"safety verdict expired after {index} of {len(steps)} transactions; remaining legs not sent",
                        hashes, gas_used, gas_cost_wei,
                    )
                tx_hash, receipt = await self._submit_and_confirm(tx)
                hashes.append(tx_hash)
                gas_used += int(receipt.get('gasUsed', 0))
                gas_cost_wei += int(receipt.get('gasUsed', 0)) * int(receipt.get('effectiveGasPrice', 0))
        except TransactionReverted as exc:
            hashes.append(exc.tx_hash)
            gas_used += exc.gas_used
            gas_cost_wei += exc.gas_cost_wei
            logger.error("Transaction reverted for %s: %s", route.describe(), exc)
            return self._failed(mode, f"reverted: {exc}", hashes, gas_used, gas_cost_wei)
        except TimeExhausted as exc:
            logger.error("Confirmation timed out for %s: %s", route.describe(), exc)
            return self._failed(mode, f"confirmation timeout: {exc}", hashes, gas_used, gas_cost_wei)
        except (Web3Exception, ValueError, RuntimeError, *TRANSIENT_ERRORS) as exc:
            if is_retryable_send_error(exc):
                logger.error("Submission failed after %d retries: %s", self.max_retries, exc)
                return self._failed(mode, f"submission failed: {exc}", hashes, gas_used, gas_cost_wei)
            logger.error("Execution error for %s: %s", route.describe(), exc)
            return self._failed(mode, str(exc), hashes, gas_used, gas_cost_wei)

        self._pending = None
        return ExecutionResult(
            success=True,
            tx_hash=hashes[-1],
            mode=mode,
            gas_used=gas_used,
            gas_cost_native=gas_cost_wei / 10 ** 18,
            tx_hashes=tuple(hashes),
        )

    @staticmethod
    def _failed(mode: str, error: str, hashes: List[str], gas_used: int, gas_cost_wei: int) -> ExecutionResult:
        return ExecutionResult(
            success=False,
            tx_hash=hashes[-1] if hashes else None,
            error=error,
            mode=mode,
            gas_used=gas_used,
            gas_cost_native=gas_cost_wei / 10 ** 18,
            tx_hashes=tuple(hashes),
        )

    async def _submit_and_confirm(self, tx: Dict[str, Any]) -> Tuple[str, Dict[str, Any]]:
        tx_hash = await self._send_with_retry(tx)
        receipt = await asyncio.to_thread(self.web3.eth.wait_for_transaction_receipt, tx_hash, timeout=self.tx_timeout)
        self._pending = None
        if int(receipt.get('status', 0)) == 0:
            gas = int(receipt.get('gasUsed', 0))
            raise TransactionReverted(tx_hash, gas, gas * int(receipt.get('effectiveGasPrice', 0)))
        return tx_hash, dict(receipt)

    async def _send_with_retry(self, tx: Dict[str, Any]) -> str:
        # Each attempt re-reads the pending nonce and current fees.
        attempt = 0
        while True:
            try:
                return await asyncio.to_thread(self._sign_and_send_sync, tx)
            except (Web3Exception, ValueError, *TRANSIENT_ERRORS) as exc:
                if not is_retryable_send_error(exc) or attempt >= self.max_retries:
                    raise
                delay = self.retry_delay * 2 ** attempt
                logger.warning("Recoverable send error (attempt %d/%d): %s; retrying in %.1fs", attempt + 1, self.max_retries, exc, delay)
                attempt += 1
                await asyncio.sleep(delay)

    def _gas_fees_sync(self) -> Dict[str, int]:
        block = self.web3.eth.get_block('latest')
        base_fee = block.get('baseFeePerGas')
        cap_wei = int(self.max_gas_price_gwei * 10 ** 9) if self.max_gas_price_gwei else None
        if base_fee is None:
            gas_price = int(self.web3.eth.gas_price)
            return {'gasPrice': min(gas_price, cap_wei) if cap_wei else gas_price}
        priority_fee = int(self.web3.eth.max_priority_fee)
        max_fee = int(base_fee) * 2 + priority_fee
        if cap_wei and max_fee > cap_wei:
            max_fee = cap_wei
            priority_fee = min(priority_fee, cap_wei)
        return {'maxFeePerGas': max_fee, 'maxPriorityFeePerGas': priority_fee}

    def _sign_and_send_sync(self, tx: Dict[str, Any]) -> str:
        address = self.signer.address
        prepared = {key: value for key, value in tx.items() if key != 'from'}
        prepared['to'] = Web3.to_checksum_address(prepared['to'])
        prepared['value'] = int(prepared.get('value') or 0)
        prepared['nonce'] = self.web3.eth.get_transaction_count(address, 'pending')
        prepared['chainId'] = int(prepared.get('chainId') or self.web3.eth.chain_id)
        if not prepared.get('gas'):
            estimate = self.web3.eth.estimate_gas({**prepared, 'from': address})
            prepared['gas'] = int(estimate * GAS_LIMIT_BUFFER)
        fees = self._gas_fees_sync()
        prepared.update(fees)

        raw = self.signer.sign(prepared)
        tx_hash = Web3.to_hex(self.web3.eth.send_raw_transaction(raw))
        self._pending = _PendingTransaction(chain_id=prepared['chainId'], nonce=prepared['nonce'], fees=fees)
        logger.info("Submitted %s (nonce %d)", tx_hash, prepared['nonce'])
        return tx_hash

    async def cancel_pending(self) -> Optional[str]:
        """Replaces a stuck pending transaction with a zero-value self-transfer at doubled fees."""
        if self._pending is None or not self.can_trade:
            return None
        pending = self._pending
        address = self.signer.address
        replacement = {
            'to': Web3.to_checksum_address(address),
            'value': 0,
            'gas': CANCEL_GAS_LIMIT,
            'nonce': pending.nonce,
            'chainId': pending.chain_id,
        }
        for key, value in pending.fees.items():
            replacement[key] = value * CANCEL_FEE_MULTIPLIER
        try:
            raw = self.signer.sign(replacement)
            tx_hash = Web3.to_hex(await asyncio.to_thread(self.web3.eth.send_raw_transaction, raw))
        except (Web3Exception, ValueError, RuntimeError, *TRANSIENT_ERRORS) as exc:
            logger.error("Could not cancel pending nonce %d: %s", pending.nonce, exc)
            return None
        self._pending = None
        logger.warning("Cancelled pending nonce %d with %s", pending.nonce, tx_hash)
        return tx_hash
