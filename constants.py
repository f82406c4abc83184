#!/usr/bin/env python3
from typing import Dict, Union

# --- ANSI Color Codes ---
C_GREEN = '\033[92m'
C_RED = '\033[91m'
C_YELLOW = '\033[93m'
C_BLUE = '\033[94m'
C_RESET = '\033[0m'

# --- API Configuration ---
ETHERSCAN_API_BASE_URL = 'https://api.etherscan.io/v2/api'
DEXSCREENER_API_BASE_URL = 'https://api.dexscreener.com/latest/dex'
COINGECKO_API_BASE_URL = 'https://api.coingecko.com/api/v3'
ONEINCH_API_BASE_URL = 'https://api.1inch.dev/swap/v6.0'
TENDERLY_API_BASE_URL = 'https://api.tenderly.co/api/v1'

# --- Environment Variable Names ---
ETHERSCAN_API_KEY_ENV_VAR = 'ETHERSCAN_API_KEY'
TELEGRAM_BOT_TOKEN_ENV_VAR = 'TELEGRAM_BOT_TOKEN'
TELEGRAM_CHAT_ID_ENV_VAR = 'TELEGRAM_CHAT_ID'
COINGECKO_API_KEY_ENV_VAR = 'COINGECKO_API_KEY'
ONEINCH_API_KEY_ENV_VAR = 'ONEINCH_API_KEY'
TRADING_PRIVATE_KEY_ENV_VAR = 'TRADING_PRIVATE_KEY'
TENDERLY_ACCOUNT_ENV_VAR = 'TENDERLY_ACCOUNT'
TENDERLY_PROJECT_ENV_VAR = 'TENDERLY_PROJECT'
TENDERLY_ACCESS_KEY_ENV_VAR = 'TENDERLY_ACCESS_KEY'
SETTLEMENT_DESTINATION_ENV_VAR = 'SETTLEMENT_DESTINATION'
MAX_PRICE_IMPACT_ENV_VAR = 'MAX_PRICE_IMPACT_PERCENT'

# --- Chain Configuration ---
CHAIN_CONFIG: Dict[str, Dict[str, Union[str, int]]] = {
    'ethereum': {
        'chainId': 1,
        'dexscreenerName': 'ethereum',
        'nativeTokenPair': '0x88e6a0c2ddd26feeb64f039a2c41296fcb3f5640',  # WETH/USDC
        'nativeSymbol': 'ETH',
        'wrappedNative': 'WETH',
    },
    'polygon': {
        'chainId': 137,
        'dexscreenerName': 'polygon',
        'nativeTokenPair': '0x6e7a5fafcec6bb1e78bae2a1f0b612012bf14827',  # WMATIC/USDC
        'nativeSymbol': 'MATIC',
        'wrappedNative': 'WMATIC',
    },
    'bsc': {
        'chainId': 56,
        'dexscreenerName': 'bsc',
        'nativeTokenPair': '0x16b9a82891338f9ba80e2d6970fdda79d1eb0dae',  # WBNB/USDT on PancakeSwap
        'nativeSymbol': 'BNB',
        'wrappedNative': 'WBNB',
    },
    'arbitrum': {
        'chainId': 42161,
        'dexscreenerName': 'arbitrum',
        'nativeTokenPair': '0xc6962004f452be9203591991d15f6b388e09e8d0',  # WETH/USDC on Uniswap v3
        'nativeSymbol': 'ETH',
        'wrappedNative': 'WETH',
    },
    'avalanche': {
        'chainId': 43114,
        'dexscreenerName': 'avalanche',
        'nativeTokenPair': '0xf4003f4efbe8691b60249e6afbd307abe7758adb',  # WAVAX/USDC on Trader Joe
        'nativeSymbol': 'AVAX',
        'wrappedNative': 'WAVAX',
    },
}

# --- Gas Configuration ---
GAS_UNITS_PER_SWAP: Dict[str, int] = {
    'ethereum': 150000,
    'polygon': 150000,
    'bsc': 120000,
    'arbitrum': 250000,
    'avalanche': 150000,
}
GAS_LIMIT_BUFFER = 1.2

# --- Token Universe (addresses lowercase) ---
TOKENS: Dict[str, Dict[str, Dict[str, Union[str, int]]]] = {
    'polygon': {
        'USDC': {'address': '0x3c499c542cef5e3811e1192ce70d8cc03d5c3359', 'decimals': 6, 'coingeckoId': 'usd-coin'},
        'WMATIC': {'address': '0x0d500b1d8e8ef31e21c99d1db9a6444d3adf1270', 'decimals': 18, 'coingeckoId': 'wmatic'},
        'WETH': {'address': '0x7ceb23fd6bc0add59e62ac25578270cff1b9f619', 'decimals': 18, 'coingeckoId': 'weth'},
        'USDT': {'address': '0xc2132d05d31c914a87c6611c10748aeb04b58e8f', 'decimals': 6, 'coingeckoId': 'tether'},
        'DAI': {'address': '0x8f3cf7ad23cd3cadbd9735aff958023239c6a063', 'decimals': 18, 'coingeckoId': 'dai'},
    },
    'ethereum': {
        'USDC': {'address': '0xa0b86991c6218b36c1d19d4a2e9eb0ce3606eb48', 'decimals': 6, 'coingeckoId': 'usd-coin'},
        'WETH': {'address': '0xc02aaa39b223fe8d0a0e5c4f27ead9083c756cc2', 'decimals': 18, 'coingeckoId': 'weth'},
        'USDT': {'address': '0xdac17f958d2ee523a2206206994597c13d831ec7', 'decimals': 6, 'coingeckoId': 'tether'},
        'DAI': {'address': '0x6b175474e89094c44da98b954eedeac495271d0f', 'decimals': 18, 'coingeckoId': 'dai'},
        'WBTC': {'address': '0x2260fac5e5542a773aa44fbcfedf7c193bc2c599', 'decimals': 8, 'coingeckoId': 'wrapped-bitcoin'},
    },
    'bsc': {
        'USDC': {'address': '0x8ac76a51cc950d9822d68b83fe1ad97b32cd580d', 'decimals': 18, 'coingeckoId': 'usd-coin'},
        'USDT': {'address': '0x55d398326f99059ff775485246999027b3197955', 'decimals': 18, 'coingeckoId': 'tether'},
        'WETH': {'address': '0x2170ed0880ac9a755fd29b2688956bd959f933f8', 'decimals': 18, 'coingeckoId': 'weth'},
        'WBNB': {'address': '0xbb4cdb9cbd36b01bd1cbaebf2de08d9173bc095c', 'decimals': 18, 'coingeckoId': 'wbnb'},
    },
    'arbitrum': {
        'USDC': {'address': '0xaf88d065e77c8cc2239327c5edb3a432268e5831', 'decimals': 6, 'coingeckoId': 'usd-coin'},
        'USDT': {'address': '0xfd086bc7cd5c481dcc9c85ebe478a1c0b69fcbb9', 'decimals': 6, 'coingeckoId': 'tether'},
        'WETH': {'address': '0x82af49447d8a07e3bd95bd0d56f35241523fbab1', 'decimals': 18, 'coingeckoId': 'weth'},
    },
    'avalanche': {
        'USDC': {'address': '0xb97ef9ef8734c71904d8002f8b6bc66dd9c48a6e', 'decimals': 6, 'coingeckoId': 'usd-coin'},
        'USDT': {'address': '0x9702230a8ea53601f5cd2dc00fdbc13d4df4a8c7', 'decimals': 6, 'coingeckoId': 'tether'},
        'WETH': {'address': '0x49d5c2bdffac6ce2bfdb6640f4f80f226bc10bab', 'decimals': 18, 'coingeckoId': 'weth'},
        'WAVAX': {'address': '0xb31f66aa3c1e785363f0875a1b74e27b85fd66c7', 'decimals': 18, 'coingeckoId': 'wrapped-avax'},
    },
}

STABLECOINS = {'USDC', 'USDT', 'DAI'}

# --- Venues: router address, 1inch protocol id and DexScreener dexId ---
ONEINCH_ROUTER = '0x111111125421ca6dc452d289314280a0f8842a65'
AGGREGATOR_VENUE = '1inch'

VENUES: Dict[str, Dict[str, Dict[str, str]]] = {
    'polygon': {
        'quickswap': {
            'router': '0xa5e0829caced8ffdd4de3c43696c57f7d7a678ff',
            'oneinchProtocol': 'POLYGON_QUICKSWAP',
            'dexscreenerId': 'quickswap',
        },
        'sushiswap': {
            'router': '0x1b02da8cb0d097eb8d57a175b88c7d8b47997506',
            'oneinchProtocol': 'POLYGON_SUSHISWAP',
            'dexscreenerId': 'sushiswap',
        },
        'uniswap_v3': {
            'router': '0xe592427a0aece125dc95ec93a4dc4de4f3d2f6ea',
            'oneinchProtocol': 'POLYGON_UNISWAP_V3',
            'dexscreenerId': 'uniswap',
        },
    },
    'ethereum': {
        'uniswap_v3': {
            'router': '0xe592427a0aece125dc95ec93a4dc4de4f3d2f6ea',
            'oneinchProtocol': 'UNISWAP_V3',
            'dexscreenerId': 'uniswap',
        },
        'sushiswap': {
            'router': '0xd9e1ce17f2641f24ae83637ab66a2cca9c378b9f',
            'oneinchProtocol': 'SUSHI',
            'dexscreenerId': 'sushiswap',
        },
    },
}

# --- Cross-Chain Settings ---
BRIDGE_FEE_USD = 1.0
DEFAULT_BRIDGE_TIME_SECONDS = 300
BRIDGE_TIME_SECONDS: Dict[frozenset, int] = {
    frozenset({'polygon', 'bsc'}): 90,
    frozenset({'polygon', 'arbitrum'}): 120,
    frozenset({'polygon', 'avalanche'}): 180,
    frozenset({'bsc', 'arbitrum'}): 600,
}
CHAIN_GAS_COST_USD: Dict[str, float] = {
    'polygon': 0.5,
    'bsc': 0.3,
    'arbitrum': 1.5,
}
DEFAULT_CHAIN_GAS_COST_USD = 2.0

# --- Price Anomaly Detection ---
PRICE_HISTORY_MAX_ENTRIES = 100
PRICE_HISTORY_MAX_AGE_SECONDS = 3600
PRICE_HISTORY_SWEEP_SECONDS = 600
ANOMALY_MIN_HISTORY = 5
ANOMALY_MAX_DEVIATION = 0.10
ANOMALY_CRITICAL_DEVIATION = 0.20
ANOMALY_MAX_Z_SCORE = 3.0
ANOMALY_SHORT_WINDOW = 3

# --- Risk Scoring Breakpoints (threshold, points) ---
RISK_BRIDGE_TIME_STEPS = ((300, 3), (180, 2), (120, 1))
RISK_LOW_PROFIT_STEPS = ((2.0, 3), (5.0, 2), (10.0, 1))
RISK_SPREAD_STEPS = ((5.0, 4), (3.0, 2), (1.5, 1))
MAX_RISK_SCORE = 10

# --- Risk Ledger Defaults ---
DEFAULT_DAILY_LOSS_LIMIT_USD = 500.0
DEFAULT_MAX_POSITION_SIZE_USD = 50000.0
DEFAULT_MAX_SINGLE_LOSS_USD = 100.0
DEFAULT_MAX_CONSECUTIVE_FAILURES = 5
GAS_BALANCE_SAFETY_MULTIPLIER = 1.5
