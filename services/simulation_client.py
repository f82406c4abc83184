"""Pre-flight transaction simulation through the Tenderly simulate API."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import aiohttp

from constants import CHAIN_CONFIG, TENDERLY_API_BASE_URL
from services.api import api_post

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SimulationResult:
    success: bool
    gas_used: int = 0
    revert_reason: Optional[str] = None
    skipped: bool = False
    error: Optional[str] = None


class TenderlySimulationClient:
    """Dry-runs a transaction. Unavailability is reported as success with ``skipped`` or ``error`` set."""

    def __init__(
        self,
        session: aiohttp.ClientSession,
        *,
        account: Optional[str],
        project: Optional[str],
        access_key: Optional[str],
        enabled: bool = True,
        timeout: float = 15,
    ) -> None:
        self.session = session
        self.account = account
        self.project = project
        self.access_key = access_key
        self.enabled = enabled
        self.timeout = timeout

    @property
    def is_configured(self) -> bool:
        return bool(self.enabled and self.account and self.project and self.access_key)

    async def simulate(self, chain: str, tx: Dict[str, Any]) -> SimulationResult:
        if not self.is_configured:
            return SimulationResult(success=True, skipped=True)

        chain_id = CHAIN_CONFIG.get(chain, {}).get('chainId')
        url = f"{TENDERLY_API_BASE_URL}/account/{self.account}/project/{self.project}/simulate"
        payload = {
            'network_id': str(chain_id),
            'from': tx.get('from'),
            'to': tx.get('to'),
            'input': tx.get('data', '0x'),
            'gas': int(tx.get('gas') or 8_000_000),
            'value': str(int(tx.get('value') or 0)),
            'save': False,
            'save_if_fails': True,
        }
        headers = {'X-Access-Key': self.access_key, 'Content-Type': 'application/json'}
        data = await api_post(url, self.session, json_data=payload, headers=headers, timeout=self.timeout)
        if data is None:
            logger.warning("Tenderly simulation unavailable for %s", tx.get('to'))
            return SimulationResult(success=True, error='simulation_unavailable')

        try:
            transaction = data['transaction']
            gas_used = int(transaction.get('gas_used') or 0)
            call_trace = transaction.get('call_trace') or {}
            succeeded = bool(transaction.get('status', call_trace.get('status', False)))
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("Unexpected Tenderly response: %s", exc)
            return SimulationResult(success=True, error=f'unexpected_response:{exc}')

        if succeeded:
            return SimulationResult(success=True, gas_used=gas_used)
        reason = transaction.get('error_message') or call_trace.get('error') or 'execution reverted'
        return SimulationResult(success=False, gas_used=gas_used, revert_reason=reason)
