#!/usr/bin/env python3
import os
import argparse
from typing import NamedTuple
import constants

class AppConfig(NamedTuple):
    """Typed configuration object."""
    chains: list[str]
    tokens: list[str]
    venues: list[str]
    start_tokens: list[str]
    max_hops: int
    start_amount_usd: float
    min_net_profit_usd: float
    max_risk_score: int
    min_pool_depth_usd: float
    max_gas_price_gwei: float
    cross_chain: bool
    cross_chain_chains: list[str]
    cross_chain_tokens: list[str]
    settlement_token: str
    max_spread_percent: float
    spot_reference_fraction: float
    max_price_impact_percent: float
    max_slippage_percent: float
    deadline_seconds: int
    check_revert: bool
    single_approve: bool
    daily_loss_limit: float
    max_position_size_usd: float
    max_single_loss_usd: float
    max_consecutive_failures: int
    auto_pause: bool
    gas_reserve_native: float
    enable_real_trading: bool
    auto_trade: bool
    execution_mode: str
    max_retries: int
    retry_delay: float
    verdict_ttl_seconds: float
    tx_timeout: int
    interval: int
    max_concurrent_evaluations: int
    demo_mode: bool
    scanner_enabled: bool
    rpc_url: str | None
    trading_private_key: str | None
    oneinch_api_key: str | None
    etherscan_api_key: str | None
    coingecko_api_key: str | None
    simulation_enabled: bool
    tenderly_account: str | None
    tenderly_project: str | None
    tenderly_access_key: str | None
    auto_transfer: bool
    settlement_destination: str | None
    transfer_threshold_usd: float
    telegram_enabled: bool
    telegram_bot_token: str | None
    telegram_chat_id: str | None
    db_path: str


def load_config() -> AppConfig:
    """
    Parses command-line arguments and loads environment variables to create a configuration object.
    """
    parser = argparse.ArgumentParser(
        description="Discover DEX arbitrage routes, gate them through safety checks and optionally execute them.",
        epilog="Example: ./main.py --chain polygon --token USDC WMATIC WETH --max-hops 3 --scanner-enabled"
    )
    # --- Discovery ---
    parser.add_argument('--chain', nargs='+', choices=constants.CHAIN_CONFIG.keys(), default=['polygon'], help='One or more blockchains to scan (default: polygon).')
    parser.add_argument('--token', nargs='+', default=['USDC', 'WMATIC', 'WETH', 'USDT', 'DAI'], help='Token symbols forming the route universe.')
    parser.add_argument('--venue', nargs='+', help='Restrict routing to these venues (default: every venue configured for the chain).')
    parser.add_argument('--start-token', nargs='+', default=['USDC'], help='Tokens a cycle may start and end on (default: USDC).')
    parser.add_argument('--max-hops', type=int, default=3, help='Maximum number of legs in a cycle (default: 3).')
    parser.add_argument('--start-amount', type=float, default=1000.0, help='Trade size in USD used when composing quotes (default: 1000).')
    parser.add_argument('--min-net-profit', type=float, default=1.5, help='Minimum net profit in USD for a route to be surfaced (default: 1.5).')
    parser.add_argument('--max-risk-score', type=int, default=4, help='Maximum risk score (0-10) for a route to be surfaced (default: 4).')
    parser.add_argument('--min-pool-depth', type=float, default=10000.0, help='Minimum pool liquidity in USD for every leg (default: 10000).')
    parser.add_argument('--max-gas-price', type=float, default=60.0, help='Skip scans while gas is above this price in Gwei (default: 60).')
    parser.add_argument('--cross-chain', action='store_true', help='Also evaluate cross-chain buy/sell pairs.')
    parser.add_argument('--cross-chain-chains', nargs='+', choices=constants.CHAIN_CONFIG.keys(), default=['polygon', 'bsc', 'arbitrum', 'avalanche'], help='Chains paired in cross-chain mode.')
    parser.add_argument('--cross-chain-token', nargs='+', default=['WETH', 'USDT'], help='Tokens compared across chains (default: WETH USDT).')
    parser.add_argument('--settlement-token', type=str, default='USDC', help='Token cross-chain routes start and end in (default: USDC).')

    # --- Safety ---
    parser.add_argument('--max-spread', type=float, default=1.0, help='Maximum spread between execution and spot price in percent (default: 1.0).')
    parser.add_argument('--spot-reference-fraction', type=float, default=0.001, help='Fraction of the trade amount quoted as the spot reference (default: 0.001).')
    parser.add_argument('--max-price-impact', type=float, help='Maximum price impact in percent (default: $MAX_PRICE_IMPACT_PERCENT or 1.0).')
    parser.add_argument('--max-slippage', type=float, default=2.0, help='Maximum slippage tolerance in percent (default: 2.0).')
    parser.add_argument('--deadline-seconds', type=int, default=300, help='Maximum transaction deadline window in seconds (default: 300).')
    parser.add_argument('--skip-revert-check', action='store_true', help='Do not run the pre-flight simulation guard.')
    parser.add_argument('--allow-unbounded-approve', action='store_true', help='Disable the exact-amount approval policy.')

    # --- Risk ---
    parser.add_argument('--daily-loss-limit', type=float, default=constants.DEFAULT_DAILY_LOSS_LIMIT_USD, help='Daily loss in USD that trips the circuit breaker (default: 500).')
    parser.add_argument('--max-position-size', type=float, default=constants.DEFAULT_MAX_POSITION_SIZE_USD, help='Maximum position size in USD (default: 50000).')
    parser.add_argument('--max-single-loss', type=float, default=constants.DEFAULT_MAX_SINGLE_LOSS_USD, help='Single-trade loss in USD that trips the circuit breaker (default: 100).')
    parser.add_argument('--max-consecutive-failures', type=int, default=constants.DEFAULT_MAX_CONSECUTIVE_FAILURES, help='Failures in a row tolerated before the breaker trips (default: 5).')
    parser.add_argument('--no-auto-pause', action='store_true', help='Record breaker events without pausing trading.')
    parser.add_argument('--gas-reserve', type=float, default=0.0, help='Native-token balance kept in reserve on top of gas needs (default: 0).')

    # --- Execution ---
    parser.add_argument('--enable-real-trading', action='store_true', help='Allow transactions to be broadcast on chain.')
    parser.add_argument('--auto-trade', action='store_true', help='Execute the best opportunity of each scan automatically.')
    parser.add_argument('--execution-mode', choices=['simulation', 'real'], default='simulation', help='Mode used by auto trading (default: simulation).')
    parser.add_argument('--max-retries', type=int, default=3, help='Submission retries for recoverable RPC failures (default: 3).')
    parser.add_argument('--retry-delay', type=float, default=2.0, help='Base delay in seconds between submission retries (default: 2).')
    parser.add_argument('--verdict-ttl', type=float, default=5.0, help='Seconds a safety verdict stays valid (default: 5).')
    parser.add_argument('--tx-timeout', type=int, default=120, help='Seconds to wait for a transaction receipt (default: 120).')
    parser.add_argument('--rpc-url', type=str, help='RPC endpoint used for execution and settlement.')
    parser.add_argument('--simulation-enabled', action='store_true', help='Dry-run transactions through Tenderly before sending.')
    parser.add_argument('--auto-transfer', action='store_true', help='Move post-trade balances to the settlement destination.')
    parser.add_argument('--transfer-threshold', type=float, default=10.0, help='Minimum net profit in USD before a settlement transfer (default: 10).')

    # --- Loop / Runtime ---
    parser.add_argument('--interval', type=int, default=30, help='Seconds to wait between each scan (default: 30).')
    parser.add_argument('--max-concurrent-evaluations', type=int, default=8, help='Routes evaluated concurrently within a scan (default: 8).')
    parser.add_argument('--demo-mode', action='store_true', help='DEMO: use synthetic quotes. Demo opportunities can never be executed for real.')
    parser.add_argument('--scanner-enabled', action='store_true', help='Start the background scan loop for the configured chat.')
    parser.add_argument('--telegram-enabled', action='store_true', help='Enable Telegram notifications.')
    parser.add_argument('--db-path', type=str, default='data/arbitrage.db', help='SQLite database path (default: data/arbitrage.db).')

    args = parser.parse_args()

    if args.max_hops < 2:
        parser.error('--max-hops must be at least 2.')

    # Load from environment
    telegram_bot_token = os.environ.get(constants.TELEGRAM_BOT_TOKEN_ENV_VAR)
    telegram_chat_id = os.environ.get(constants.TELEGRAM_CHAT_ID_ENV_VAR)
    oneinch_api_key = os.environ.get(constants.ONEINCH_API_KEY_ENV_VAR)
    etherscan_api_key = os.environ.get(constants.ETHERSCAN_API_KEY_ENV_VAR)
    coingecko_api_key = os.environ.get(constants.COINGECKO_API_KEY_ENV_VAR)
    trading_private_key = os.environ.get(constants.TRADING_PRIVATE_KEY_ENV_VAR)
    tenderly_account = os.environ.get(constants.TENDERLY_ACCOUNT_ENV_VAR)
    tenderly_project = os.environ.get(constants.TENDERLY_PROJECT_ENV_VAR)
    tenderly_access_key = os.environ.get(constants.TENDERLY_ACCESS_KEY_ENV_VAR)
    settlement_destination = os.environ.get(constants.SETTLEMENT_DESTINATION_ENV_VAR)

    max_price_impact = args.max_price_impact
    if max_price_impact is None:
        env_impact = os.environ.get(constants.MAX_PRICE_IMPACT_ENV_VAR)
        try:
            max_price_impact = float(env_impact) if env_impact else 1.0
        except ValueError:
            print(f"{constants.C_RED}{constants.MAX_PRICE_IMPACT_ENV_VAR} must be a number.{constants.C_RESET}")
            exit(1)

    if not args.demo_mode and not oneinch_api_key:
        print(f"{constants.C_RED}{constants.ONEINCH_API_KEY_ENV_VAR} environment variable not set. Get it from https://portal.1inch.dev or run with --demo-mode.{constants.C_RESET}")
        exit(1)

    if not args.demo_mode and not etherscan_api_key:
        print(f"{constants.C_RED}{constants.ETHERSCAN_API_KEY_ENV_VAR} environment variable not set. Get it from https://etherscan.io/apis{constants.C_RESET}")
        exit(1)

    if args.telegram_enabled and not (telegram_bot_token and telegram_chat_id):
        print(f"{constants.C_RED}Telegram is enabled, but {constants.TELEGRAM_BOT_TOKEN_ENV_VAR} or {constants.TELEGRAM_CHAT_ID_ENV_VAR} are not set.{constants.C_RESET}")
        exit(1)

    if args.enable_real_trading:
        if args.demo_mode:
            print(f"{constants.C_RED}--enable-real-trading cannot be combined with --demo-mode.{constants.C_RESET}")
            exit(1)
        if not args.rpc_url:
            print(f"{constants.C_RED}--enable-real-trading requires --rpc-url to be specified.{constants.C_RESET}")
            exit(1)
        if not trading_private_key:
            print(f"{constants.C_RED}{constants.TRADING_PRIVATE_KEY_ENV_VAR} environment variable not set; required for --enable-real-trading.{constants.C_RESET}")
            exit(1)

    if args.execution_mode == 'real' and not args.enable_real_trading:
        print(f"{constants.C_RED}--execution-mode real requires --enable-real-trading.{constants.C_RESET}")
        exit(1)

    if args.simulation_enabled and not (tenderly_account and tenderly_project and tenderly_access_key):
        print(f"{constants.C_YELLOW}Simulation enabled but Tenderly credentials are missing; the simulation guard will allow all transactions.{constants.C_RESET}")

    if args.auto_transfer and not settlement_destination:
        print(f"{constants.C_RED}--auto-transfer requires {constants.SETTLEMENT_DESTINATION_ENV_VAR} to be set.{constants.C_RESET}")
        exit(1)

    if args.auto_transfer and not (args.rpc_url and trading_private_key):
        print(f"{constants.C_RED}--auto-transfer requires --rpc-url and {constants.TRADING_PRIVATE_KEY_ENV_VAR}.{constants.C_RESET}")
        exit(1)

    return AppConfig(
        chains=args.chain,
        tokens=[token.upper() for token in args.token],
        venues=args.venue or [],
        start_tokens=[token.upper() for token in args.start_token],
        max_hops=args.max_hops,
        start_amount_usd=args.start_amount,
        min_net_profit_usd=args.min_net_profit,
        max_risk_score=args.max_risk_score,
        min_pool_depth_usd=args.min_pool_depth,
        max_gas_price_gwei=args.max_gas_price,
        cross_chain=args.cross_chain,
        cross_chain_chains=args.cross_chain_chains,
        cross_chain_tokens=[token.upper() for token in args.cross_chain_token],
        settlement_token=args.settlement_token.upper(),
        max_spread_percent=args.max_spread,
        spot_reference_fraction=args.spot_reference_fraction,
        max_price_impact_percent=max_price_impact,
        max_slippage_percent=args.max_slippage,
        deadline_seconds=args.deadline_seconds,
        check_revert=not args.skip_revert_check,
        single_approve=not args.allow_unbounded_approve,
        daily_loss_limit=args.daily_loss_limit,
        max_position_size_usd=args.max_position_size,
        max_single_loss_usd=args.max_single_loss,
        max_consecutive_failures=args.max_consecutive_failures,
        auto_pause=not args.no_auto_pause,
        gas_reserve_native=args.gas_reserve,
        enable_real_trading=args.enable_real_trading,
        auto_trade=args.auto_trade,
        execution_mode=args.execution_mode,
        max_retries=args.max_retries,
        retry_delay=args.retry_delay,
        verdict_ttl_seconds=args.verdict_ttl,
        tx_timeout=args.tx_timeout,
        interval=args.interval,
        max_concurrent_evaluations=args.max_concurrent_evaluations,
        demo_mode=args.demo_mode,
        scanner_enabled=args.scanner_enabled,
        rpc_url=args.rpc_url,
        trading_private_key=trading_private_key,
        oneinch_api_key=oneinch_api_key,
        etherscan_api_key=etherscan_api_key,
        coingecko_api_key=coingecko_api_key,
        simulation_enabled=args.simulation_enabled,
        tenderly_account=tenderly_account,
        tenderly_project=tenderly_project,
        tenderly_access_key=tenderly_access_key,
        auto_transfer=args.auto_transfer,
        settlement_destination=settlement_destination,
        transfer_threshold_usd=args.transfer_threshold,
        telegram_enabled=args.telegram_enabled,
        telegram_bot_token=telegram_bot_token,
        telegram_chat_id=telegram_chat_id,
        db_path=args.db_path,
    )
