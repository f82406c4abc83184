#!/usr/bin/env python3
import asyncio
import time
from typing import Optional, Dict, List, Tuple

import aiohttp
from constants import COINGECKO_API_BASE_URL, TOKENS
from services.api import api_get, log_error


class CoinGeckoClient:
    """Reference market prices; the price-impact guard compares router output against these."""

    def __init__(self, session: aiohttp.ClientSession, api_key: Optional[str] = None, cache_ttl: float = 60.0):
        self.session = session
        self.api_key = api_key
        self.headers = {'x-cg-demo-api-key': self.api_key} if self.api_key else {}
        self._last_request_time = 0.0
        self._rate_limit_delay = 6
        self._cache_ttl = cache_ttl
        self._price_cache: Dict[str, Tuple[float, float]] = {}
        self._fetch_lock = asyncio.Lock()

    async def _wait_for_rate_limit(self):
        elapsed = time.time() - self._last_request_time
        if elapsed < self._rate_limit_delay:
            await asyncio.sleep(self._rate_limit_delay - elapsed)
        self._last_request_time = time.time()

    async def get_price(self, coin_ids: List[str], vs_currencies: List[str]) -> Optional[Dict]:
        await self._wait_for_rate_limit()
        url = f"{COINGECKO_API_BASE_URL}/simple/price"
        params = {'ids': ",".join(coin_ids), 'vs_currencies': ",".join(vs_currencies)}
        return await api_get(url, self.session, params=params, headers=self.headers)

    def _cached(self, coin_id: str) -> Optional[float]:
        cached = self._price_cache.get(coin_id)
        if cached and time.time() - cached[0] < self._cache_ttl:
            return cached[1]
        return None

    async def get_token_price_usd(self, chain: str, token: str) -> Optional[float]:
        """
        USD price for a token in the universe. A cache miss refreshes every
        token of the chain in one request to stay inside the rate limit.
        """
        token_info = TOKENS.get(chain, {}).get(token)
        if token_info is None:
            return None
        coin_id = str(token_info['coingeckoId'])
        cached = self._cached(coin_id)
        if cached is not None:
            return cached

        async with self._fetch_lock:
            cached = self._cached(coin_id)
            if cached is not None:
                return cached
            coin_ids = sorted({str(info['coingeckoId']) for info in TOKENS[chain].values()})
            prices = await self.get_price(coin_ids=coin_ids, vs_currencies=['usd'])
            if not prices:
                log_error(f"Could not fetch CoinGecko prices for {chain}.")
                return None
            now = time.time()
            for fetched_id, payload in prices.items():
                try:
                    self._price_cache[fetched_id] = (now, float(payload['usd']))
                except (KeyError, TypeError, ValueError):
                    continue

        price = self._cached(coin_id)
        if price is None:
            log_error(f"Could not parse {token} price from CoinGecko API response.")
        return price
