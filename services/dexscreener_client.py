#!/usr/bin/env python3
import asyncio
import time
from typing import Optional, Dict, List, Tuple

import aiohttp
from constants import AGGREGATOR_VENUE, CHAIN_CONFIG, DEXSCREENER_API_BASE_URL, TOKENS, VENUES
from services.api import api_get, log_error
from services.coingecko_client import CoinGeckoClient


class DexScreenerClient:
    """Native-token prices and per-venue pool liquidity from DexScreener."""

    def __init__(self, session: aiohttp.ClientSession, coingecko_client: CoinGeckoClient, cache_ttl: float = 60.0):
        self.session = session
        self.coingecko_client = coingecko_client
        self._last_request_time = 0.0
        self._rate_limit_delay = 0.5 # 500ms delay between requests to stay under 300 req/min
        self._cache_ttl = cache_ttl
        self._pairs_cache: Dict[Tuple[str, str], Tuple[float, List[Dict]]] = {}

    async def _wait_for_rate_limit(self):
        elapsed = time.time() - self._last_request_time
        if elapsed < self._rate_limit_delay:
            await asyncio.sleep(self._rate_limit_delay - elapsed)
        self._last_request_time = time.time()

    async def get_native_price_usd(self, chain: str) -> Optional[float]:
        """Gets the current price of a chain's native token in USD."""
        chain_info = CHAIN_CONFIG.get(chain)
        if chain_info is None:
            log_error(f"Chain '{chain}' not found in CHAIN_CONFIG.")
            return None
        await self._wait_for_rate_limit()
        url = f"{DEXSCREENER_API_BASE_URL}/pairs/{chain_info['dexscreenerName']}/{chain_info['nativeTokenPair']}"
        data = await api_get(url, self.session)
        pair = None
        if data:
            pair = data.get('pair') or (data.get('pairs') or [None])[0]
        if pair and pair.get('priceUsd'):
            try:
                return float(pair['priceUsd'])
            except (ValueError, TypeError):
                pass

        log_error(f"Could not parse native token price from API response for {chain_info['dexscreenerName']}.")
        return None

    async def get_token_price_usd(self, chain: str, token: str) -> Optional[float]:
        """Reference USD price, delegated to CoinGecko."""
        return await self.coingecko_client.get_token_price_usd(chain, token)

    async def _get_token_pairs(self, chain: str, token_address: str) -> List[Dict]:
        cache_key = (chain, token_address)
        cached = self._pairs_cache.get(cache_key)
        if cached and time.time() - cached[0] < self._cache_ttl:
            return cached[1]
        await self._wait_for_rate_limit()
        url = f"{DEXSCREENER_API_BASE_URL}/tokens/{token_address}"
        data = await api_get(url, self.session)
        pairs = (data or {}).get('pairs') or []
        dexscreener_name = CHAIN_CONFIG[chain]['dexscreenerName']
        pairs = [pair for pair in pairs if pair.get('chainId') == dexscreener_name]
        self._pairs_cache[cache_key] = (time.time(), pairs)
        return pairs

    async def get_pool_liquidity_usd(self, chain: str, token_in: str, token_out: str, venue: str) -> Optional[float]:
        """
        Deepest USD liquidity among pools for the pair on the venue.
        The aggregator venue accepts a pool on any DEX.
        """
        chain_tokens = TOKENS.get(chain, {})
        if token_in not in chain_tokens or token_out not in chain_tokens or chain not in CHAIN_CONFIG:
            return None
        address_in = str(chain_tokens[token_in]['address']).lower()
        address_out = str(chain_tokens[token_out]['address']).lower()

        dex_id = None
        if venue != AGGREGATOR_VENUE:
            venue_info = VENUES.get(chain, {}).get(venue)
            if venue_info is None:
                return None
            dex_id = venue_info['dexscreenerId']

        pairs = await self._get_token_pairs(chain, address_in)
        best: Optional[float] = None
        for pair in pairs:
            try:
                if dex_id is not None and pair.get('dexId') != dex_id:
                    continue
                addresses = {pair['baseToken']['address'].lower(), pair['quoteToken']['address'].lower()}
                if addresses != {address_in, address_out}:
                    continue
                liquidity = float(pair.get('liquidity', {}).get('usd') or 0)
            except (KeyError, TypeError, ValueError, AttributeError):
                continue
            if best is None or liquidity > best:
                best = liquidity
        return best
