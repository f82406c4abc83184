#!/usr/bin/env python3
import asyncio
import time
from typing import Dict, Optional

import aiohttp

from analysis.models import Quote, from_base_units, to_base_units
from constants import AGGREGATOR_VENUE, CHAIN_CONFIG, ONEINCH_API_BASE_URL, TOKENS, VENUES
from services.api import api_get, log_error


class OneInchClient:
    """Quote and swap-building client for the 1inch aggregation API.

    A venue other than the aggregator itself is pinned through the
    ``protocols`` filter so each leg is priced on exactly one DEX.
    """

    is_demo = False

    def __init__(self, session: aiohttp.ClientSession, api_key: Optional[str], timeout: float = 10):
        self.session = session
        self.api_key = api_key
        self.headers = {'Authorization': f'Bearer {api_key}'} if api_key else {}
        self.timeout = timeout
        self._last_request_time = 0.0
        self._rate_limit_delay = 1.0  # free tier allows 1 request per second
        self._rate_lock = asyncio.Lock()

    async def _wait_for_rate_limit(self):
        async with self._rate_lock:
            elapsed = time.time() - self._last_request_time
            if elapsed < self._rate_limit_delay:
                await asyncio.sleep(self._rate_limit_delay - elapsed)
            self._last_request_time = time.time()

    def _base_params(self, chain: str, token_in: str, token_out: str, amount: float, venue: str) -> Optional[Dict]:
        chain_tokens = TOKENS.get(chain, {})
        src = chain_tokens.get(token_in)
        dst = chain_tokens.get(token_out)
        if src is None or dst is None:
            return None
        params = {
            'src': src['address'],
            'dst': dst['address'],
            'amount': str(to_base_units(amount, int(src['decimals']))),
        }
        if venue != AGGREGATOR_VENUE:
            venue_info = VENUES.get(chain, {}).get(venue)
            if venue_info is None:
                return None
            params['protocols'] = venue_info['oneinchProtocol']
        return params

    async def get_quote(self, chain: str, token_in: str, token_out: str, amount: float, venue: str) -> Optional[Quote]:
        """Quotes `amount` of token_in into token_out on one venue. Returns None when unavailable."""
        if amount <= 0:
            return None
        params = self._base_params(chain, token_in, token_out, amount, venue)
        chain_id = CHAIN_CONFIG.get(chain, {}).get('chainId')
        if params is None or chain_id is None:
            return None
        params['includeGas'] = 'true'

        await self._wait_for_rate_limit()
        url = f"{ONEINCH_API_BASE_URL}/{chain_id}/quote"
        data = await api_get(url, self.session, params=params, headers=self.headers, timeout=self.timeout)
        if not data or not data.get('dstAmount'):
            return None

        try:
            to_amount = from_base_units(data['dstAmount'], int(TOKENS[chain][token_out]['decimals']))
            estimated_gas = int(data.get('gas') or 0)
        except (ValueError, TypeError, KeyError) as e:
            log_error(f"Could not parse 1inch quote for {token_in}->{token_out} on {chain}: {e}")
            return None

        return Quote(
            chain=chain,
            from_token=token_in,
            to_token=token_out,
            from_amount=amount,
            to_amount=to_amount,
            venue=venue,
            estimated_gas=estimated_gas,
        )

    async def build_swap(
        self,
        chain: str,
        token_in: str,
        token_out: str,
        amount: float,
        venue: str,
        from_address: str,
        slippage_percent: float,
    ) -> Optional[Dict]:
        """
        Builds a ready-to-sign swap transaction.
        Returns {'tx': {...}, 'to_amount': float, 'spender': router} or None.
        """
        params = self._base_params(chain, token_in, token_out, amount, venue)
        chain_id = CHAIN_CONFIG.get(chain, {}).get('chainId')
        if params is None or chain_id is None:
            return None
        params.update({
            'from': from_address,
            'origin': from_address,
            'slippage': str(slippage_percent),
            'disableEstimate': 'true',
        })

        await self._wait_for_rate_limit()
        url = f"{ONEINCH_API_BASE_URL}/{chain_id}/swap"
        data = await api_get(url, self.session, params=params, headers=self.headers, timeout=self.timeout)
        if not data or 'tx' not in data:
            return None

        try:
            tx = data['tx']
            return {
                'tx': {
                    'from': tx['from'],
                    'to': tx['to'],
                    'data': tx['data'],
                    'value': int(tx.get('value') or 0),
                    'gas': int(tx.get('gas') or 0),
                    'chainId': int(chain_id),
                },
                'to_amount': from_base_units(data['dstAmount'], int(TOKENS[chain][token_out]['decimals'])),
                'spender': tx['to'],
            }
        except (ValueError, TypeError, KeyError) as e:
            log_error(f"Could not parse 1inch swap for {token_in}->{token_out} on {chain}: {e}")
            return None
