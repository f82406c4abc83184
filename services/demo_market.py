"""DEMO MODE ONLY: synthetic market data for running the pipeline without API keys.

Selected explicitly with ``--demo-mode``. Every quote it produces marks the
resulting opportunities as demo, and demo opportunities cannot be executed
in real mode.
"""
from __future__ import annotations

import hashlib
import random
from typing import Dict, Optional

from analysis.models import Quote
from constants import AGGREGATOR_VENUE, CHAIN_CONFIG, TOKENS

DEMO_PRICES_USD: Dict[str, float] = {
    'USDC': 1.0,
    'USDT': 1.0,
    'DAI': 1.0,
    'WMATIC': 0.7,
    'WETH': 3000.0,
    'WBNB': 600.0,
    'WAVAX': 35.0,
    'WBTC': 60000.0,
}
DEMO_NATIVE_PRICES_USD = {'MATIC': 0.7, 'ETH': 3000.0, 'BNB': 600.0, 'AVAX': 35.0}
DEMO_FEE = 0.003


class DemoMarketData:
    """Quote, price, gas and liquidity source backed by seeded pseudo-random data."""

    is_demo = True

    def __init__(self, seed: int = 7, max_skew: float = 0.006, gas_price_gwei: float = 30.0, liquidity_usd: float = 250000.0):
        self._seed = seed
        self._max_skew = max_skew
        self._gas_price_gwei = gas_price_gwei
        self._liquidity_usd = liquidity_usd
        self._tick = 0

    def advance(self) -> None:
        """Moves the synthetic market to its next state."""
        self._tick += 1

    def _skew(self, *parts: str) -> float:
        digest = hashlib.sha256(":".join((str(self._seed), str(self._tick)) + parts).encode()).digest()
        rng = random.Random(int.from_bytes(digest[:8], 'big'))
        return rng.uniform(-self._max_skew, self._max_skew)

    async def get_quote(self, chain: str, token_in: str, token_out: str, amount: float, venue: str) -> Optional[Quote]:
        if token_in not in TOKENS.get(chain, {}) or token_out not in TOKENS.get(chain, {}):
            return None
        price_in = DEMO_PRICES_USD.get(token_in)
        price_out = DEMO_PRICES_USD.get(token_out)
        if not price_in or not price_out or amount <= 0:
            return None
        rate = price_in / price_out * (1 + self._skew(chain, token_in, token_out, venue))
        return Quote(
            chain=chain,
            from_token=token_in,
            to_token=token_out,
            from_amount=amount,
            to_amount=amount * rate * (1 - DEMO_FEE),
            venue=venue,
            estimated_gas=150000,
        )

    async def build_swap(self, chain, token_in, token_out, amount, venue, from_address, slippage_percent):
        return None

    async def get_token_price_usd(self, chain: str, token: str) -> Optional[float]:
        return DEMO_PRICES_USD.get(token)

    async def get_native_price_usd(self, chain: str) -> Optional[float]:
        symbol = CHAIN_CONFIG.get(chain, {}).get('nativeSymbol')
        return DEMO_NATIVE_PRICES_USD.get(str(symbol))

    async def get_gas_price_gwei(self, chain: str) -> Optional[float]:
        return self._gas_price_gwei

    async def get_pool_liquidity_usd(self, chain: str, token_in: str, token_out: str, venue: str) -> Optional[float]:
        if venue == AGGREGATOR_VENUE:
            return self._liquidity_usd * 4
        return self._liquidity_usd
