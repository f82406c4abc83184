#!/usr/bin/env python3
import asyncio
import time
from typing import Optional

import aiohttp
from constants import CHAIN_CONFIG, ETHERSCAN_API_BASE_URL
from services.api import api_get, log_error


class EtherscanClient:
    def __init__(self, session: aiohttp.ClientSession, api_key: str):
        self.session = session
        self.api_key = api_key
        self._last_request_time = 0.0
        self._rate_limit_delay = 0.2 # Etherscan has a 5 calls/sec rate limit (200ms delay)

    async def _wait_for_rate_limit(self):
        elapsed = time.time() - self._last_request_time
        if elapsed < self._rate_limit_delay:
            await asyncio.sleep(self._rate_limit_delay - elapsed)
        self._last_request_time = time.time()

    async def get_gas_price_gwei(self, chain: str) -> Optional[float]:
        """Gets the current proposed gas price in Gwei from the multichain gas oracle."""
        chain_id = CHAIN_CONFIG.get(chain, {}).get('chainId')
        if not chain_id:
            log_error(f"Chain ID not configured for chain: {chain}")
            return None

        await self._wait_for_rate_limit()
        params = {
            'chainid': chain_id,
            'module': 'gastracker',
            'action': 'gasoracle',
            'apikey': self.api_key,
        }
        data = await api_get(ETHERSCAN_API_BASE_URL, self.session, params=params)
        if data and data.get('status') == '1' and data.get('result'):
            # ProposeGasPrice is for EIP-1559 chains, SafeGasPrice is a fallback
            gas_price = data['result'].get('ProposeGasPrice') or data['result'].get('SafeGasPrice')
            try:
                return float(gas_price)
            except (ValueError, TypeError):
                pass

        log_error(f"Could not parse gas price from Etherscan for {chain}: {data if data else 'No data'}")
        return None
