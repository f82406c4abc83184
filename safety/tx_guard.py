"""Transaction-parameter validation: slippage, deadline, allowance and revert checks."""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, Optional

from analysis.models import to_base_units
from constants import TOKENS
from safety.models import GuardResult

from web3 import Web3
from web3.exceptions import ContractLogicError, Web3Exception

logger = logging.getLogger(__name__)

MAX_UINT256 = 2 ** 256 - 1
APPROVE_SELECTOR = "0x095ea7b3"

ERC20_ABI = [
    {
        "constant": True,
        "inputs": [{"name": "owner", "type": "address"}, {"name": "spender", "type": "address"}],
        "name": "allowance",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "constant": True,
        "inputs": [{"name": "account", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "constant": True,
        "inputs": [],
        "name": "decimals",
        "outputs": [{"name": "", "type": "uint8"}],
        "stateMutability": "view",
        "type": "function",
    },
]


def encode_address(address: str) -> str:
    return address.lower().replace('0x', '').rjust(64, '0')


def encode_uint(value: int) -> str:
    return format(value, '064x')


@dataclass(frozen=True)
class TxGuardConfig:
    max_slippage_percent: float = 2.0
    deadline_seconds: int = 300
    check_revert: bool = True
    single_approve: bool = True


@dataclass(frozen=True)
class TxValidation:
    result: GuardResult
    adjusted_params: Dict[str, Any] = field(default_factory=dict)

    @property
    def safe(self) -> bool:
        return self.result.safe


@dataclass(frozen=True)
class ApprovalCheck:
    needs_approval: bool
    current_allowance: int
    required_amount: int


class TxGuard:
    name = 'tx_params'

    def __init__(self, config: TxGuardConfig, web3: Optional[Web3] = None):
        self.config = config
        self.web3 = web3

    def validate_transaction(
        self,
        expected_amount: float,
        min_amount: float,
        deadline: Optional[int] = None,
        now: Optional[int] = None,
    ) -> TxValidation:
        """Checks slippage against the policy and that the deadline lies in (now, now + window]."""
        if expected_amount <= 0:
            return TxValidation(GuardResult(safe=False, guard=self.name, reason="expected amount must be positive"))

        # rounded so a min amount derived at exactly the maximum tolerance passes
        slippage_pct = round((expected_amount - min_amount) / expected_amount * 100, 9)
        if slippage_pct > self.config.max_slippage_percent:
            return TxValidation(GuardResult(
                safe=False,
                guard=self.name,
                reason=f"slippage {slippage_pct:.2f}% exceeds maximum {self.config.max_slippage_percent}%",
                details={'slippage_pct': slippage_pct},
            ))

        current = int(now if now is not None else time.time())
        effective_deadline = deadline if deadline is not None else current + self.config.deadline_seconds
        if effective_deadline <= current:
            return TxValidation(GuardResult(safe=False, guard=self.name, reason="transaction deadline already passed"))
        if effective_deadline > current + self.config.deadline_seconds:
            return TxValidation(GuardResult(
                safe=False,
                guard=self.name,
                reason=f"deadline {effective_deadline - current}s exceeds maximum {self.config.deadline_seconds}s",
            ))

        return TxValidation(
            GuardResult(safe=True, guard=self.name, details={'slippage_pct': slippage_pct}),
            adjusted_params={'min_amount': min_amount, 'deadline': effective_deadline},
        )

    def calculate_min_amount(self, expected_amount: float, slippage_percent: Optional[float] = None) -> float:
        slippage = self.config.max_slippage_percent if slippage_percent is None else slippage_percent
        minimum = Decimal(str(expected_amount)) * (Decimal(1) - Decimal(str(slippage)) / Decimal(100))
        return float(minimum)

    def get_deadline(self, now: Optional[float] = None) -> int:
        return int(now if now is not None else time.time()) + self.config.deadline_seconds

    async def check_approval(self, chain: str, token: str, owner: str, spender: str, required_amount: float) -> ApprovalCheck:
        token_info = TOKENS[chain][token]
        required = to_base_units(required_amount, int(token_info['decimals']))
        allowance = await asyncio.to_thread(self._allowance_sync, str(token_info['address']), owner, spender)
        return ApprovalCheck(needs_approval=allowance < required, current_allowance=allowance, required_amount=required)

    def _allowance_sync(self, token_address: str, owner: str, spender: str) -> int:
        contract = self.web3.eth.contract(address=Web3.to_checksum_address(token_address), abi=ERC20_ABI)
        return int(contract.functions.allowance(Web3.to_checksum_address(owner), Web3.to_checksum_address(spender)).call())

    def build_approval_tx(self, chain: str, token: str, owner: str, spender: str, amount: int) -> Dict[str, Any]:
        """Approval for exactly `amount` base units, never an unlimited allowance under the single-approve policy."""
        if self.config.single_approve and amount >= MAX_UINT256:
            raise ValueError("unbounded approvals are disabled")
        token_info = TOKENS[chain][token]
        return {
            'from': owner,
            'to': Web3.to_checksum_address(str(token_info['address'])),
            'data': APPROVE_SELECTOR + encode_address(spender) + encode_uint(amount),
            'value': 0,
        }

    async def simulate_transaction(self, tx: Dict[str, Any]) -> GuardResult:
        """eth_call dry run. A contract revert vetoes; any other node or RPC failure allows the trade."""
        if not self.config.check_revert or self.web3 is None:
            return GuardResult(safe=True, guard='revert_check', details={'skipped': True})
        call = {key: tx[key] for key in ('from', 'to', 'data', 'value') if key in tx}
        try:
            await asyncio.to_thread(self.web3.eth.call, call)
        except ContractLogicError as exc:
            return GuardResult(safe=False, guard='revert_check', reason=f"simulation reverted: {exc}")
        except (Web3Exception, ValueError, ConnectionError, TimeoutError, OSError) as exc:
            logger.warning("eth_call simulation unavailable: %s", exc)
            return GuardResult(safe=True, guard='revert_check', details={'error': str(exc)})
        return GuardResult(safe=True, guard='revert_check')
