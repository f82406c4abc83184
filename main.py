#!/usr/bin/env python3
import asyncio
import logging
import time

import aiohttp
from telegram import BotCommand
from telegram.error import TelegramError, TimedOut
from telegram.ext import Application, CommandHandler
from web3 import Web3

import constants
from bot.handlers import (
    events_command,
    execute_command,
    help_command,
    killswitch_command,
    resolve_command,
    risk_command,
    scan_command,
    scaninfo_command,
    startbot_command,
    status_command,
    stopbot_command,
)
from config import AppConfig, load_config
from execution.signers import PrivateKeySigner
from services.coingecko_client import CoinGeckoClient
from services.demo_market import DemoMarketData
from services.dexscreener_client import DexScreenerClient
from services.etherscan_client import EtherscanClient
from services.oneinch_client import OneInchClient
from services.simulation_client import TenderlySimulationClient
from services.telegram_notifier import TelegramNotifier
from session_manager import SessionFactory, SessionManager
from storage import SQLiteRepository

CLI_USER_ID = 'cli'
RPC_REQUEST_TIMEOUT = 15


def build_session_manager(
    config: AppConfig,
    session: aiohttp.ClientSession,
    repository: SQLiteRepository,
    notifier=None,
) -> SessionManager:
    """Creates the shared clients and returns a SessionManager over them."""
    if config.demo_mode:
        print(f"{constants.C_YELLOW}DEMO MODE: quotes, prices and gas are synthetic. Nothing can be executed for real.{constants.C_RESET}")
        market = DemoMarketData()
        quote_source = price_source = gas_source = liquidity_source = market
        swap_builder = None
    else:
        coingecko_client = CoinGeckoClient(session, config.coingecko_api_key)
        dexscreener_client = DexScreenerClient(session, coingecko_client)
        oneinch_client = OneInchClient(session, config.oneinch_api_key)
        quote_source = swap_builder = oneinch_client
        price_source = liquidity_source = dexscreener_client
        gas_source = EtherscanClient(session, config.etherscan_api_key)

    simulator = None
    if config.simulation_enabled:
        simulator = TenderlySimulationClient(
            session,
            account=config.tenderly_account,
            project=config.tenderly_project,
            access_key=config.tenderly_access_key,
        )

    web3 = None
    signer = None
    if config.enable_real_trading or config.auto_transfer:
        web3 = Web3(Web3.HTTPProvider(config.rpc_url, request_kwargs={'timeout': RPC_REQUEST_TIMEOUT}))
        if not web3.is_connected():
            print(f"{constants.C_RED}Could not connect to RPC URL: {config.rpc_url}{constants.C_RESET}")
            exit(1)
        signer = PrivateKeySigner(config.trading_private_key)
        print(f"Trading wallet: {constants.C_BLUE}{signer.address}{constants.C_RESET}")

    factory = SessionFactory(
        config,
        repository=repository,
        quote_source=quote_source,
        price_source=price_source,
        gas_source=gas_source,
        liquidity_source=liquidity_source,
        swap_builder=swap_builder,
        simulator=simulator,
        web3=web3,
        signer=signer,
        notifier=notifier,
    )
    return SessionManager(factory)


async def post_init_hook(application: Application) -> None:
    """A hook that runs after the bot is initialized to set up shared clients and tasks."""
    session = aiohttp.ClientSession(headers={'User-Agent': 'DexArbBot/1.0'})
    application.bot_data['http_session'] = session

    config: AppConfig = application.bot_data['config']
    notifier = TelegramNotifier(application.bot, config.telegram_chat_id) if config.telegram_enabled else None
    application.bot_data['notifier'] = notifier
    session_manager = build_session_manager(config, session, application.bot_data['repository'], notifier)
    application.bot_data['session_manager'] = session_manager

    commands = [
        BotCommand("status", "Check bot status"),
        BotCommand("scan", "Scan for opportunities now"),
        BotCommand("execute", "Execute an opportunity"),
        BotCommand("risk", "Show risk counters"),
        BotCommand("events", "Show circuit breaker events"),
        BotCommand("resolve", "Resolve a circuit breaker event"),
        BotCommand("startbot", "Start the scan loop"),
        BotCommand("stopbot", "Stop the scan loop"),
        BotCommand("killswitch", "Emergency stop"),
        BotCommand("scaninfo", "See current scan config"),
        BotCommand("help", "Show help message"),
    ]
    try:
        await application.bot.set_my_commands(commands)
    except (TimedOut, TelegramError) as exc:
        print(
            f"{constants.C_YELLOW}Warning: unable to set Telegram bot commands ({exc})."
            f" Continuing startup without updating commands.{constants.C_RESET}"
        )

    if config.scanner_enabled:
        user_id = config.telegram_chat_id or CLI_USER_ID
        await session_manager.start(user_id)
        print(f"{constants.C_GREEN}Scan loop started for {user_id}.{constants.C_RESET}")


async def post_shutdown_hook(application: Application) -> None:
    """A hook that runs on application shutdown to clean up resources."""
    session_manager = application.bot_data.get('session_manager')
    if session_manager:
        await session_manager.close()
    notifier = application.bot_data.get('notifier')
    if notifier:
        await notifier.drain()
    session = application.bot_data.get('http_session')
    if session:
        await session.close()
    repository = application.bot_data.get('repository')
    if repository:
        repository.close()


async def run_cli(config: AppConfig, repository: SQLiteRepository) -> None:
    """Runs the scan loop without Telegram until interrupted."""
    async with aiohttp.ClientSession(headers={'User-Agent': 'DexArbBot/1.0'}) as session:
        session_manager = build_session_manager(config, session, repository)
        try:
            if config.scanner_enabled:
                await session_manager.start(CLI_USER_ID)
                while True:
                    await asyncio.sleep(3600)
            else:
                await session_manager.scan(CLI_USER_ID)
        finally:
            await session_manager.close()


def main() -> None:
    """The main synchronous entry point for the application."""
    logging.basicConfig(level=logging.INFO, format='%(asctime)s %(levelname)s %(name)s: %(message)s')
    config = load_config()
    repository = SQLiteRepository(config.db_path)

    if not config.telegram_enabled or not config.telegram_bot_token:
        print("Telegram is not configured. The application will run in CLI-only mode.")
        try:
            asyncio.run(run_cli(config, repository))
        except KeyboardInterrupt:
            print("Stopped.")
        finally:
            repository.close()
        return

    application = (
        Application.builder()
        .token(config.telegram_bot_token)
        .post_init(post_init_hook)
        .post_shutdown(post_shutdown_hook)
        .build()
    )

    application.bot_data['config'] = config
    application.bot_data['start_time'] = time.time()
    application.bot_data['scan_info'] = {
        'chains': config.chains,
        'tokens': config.tokens,
        'max_hops': config.max_hops,
        'start_amount_usd': config.start_amount_usd,
        'min_net_profit_usd': config.min_net_profit_usd,
        'cross_chain': config.cross_chain,
    }
    application.bot_data['repository'] = repository

    application.add_handler(CommandHandler("start", help_command))
    application.add_handler(CommandHandler("help", help_command))
    application.add_handler(CommandHandler("status", status_command))
    application.add_handler(CommandHandler("scaninfo", scaninfo_command))
    application.add_handler(CommandHandler("scan", scan_command))
    application.add_handler(CommandHandler("execute", execute_command))
    application.add_handler(CommandHandler("risk", risk_command))
    application.add_handler(CommandHandler("events", events_command))
    application.add_handler(CommandHandler("resolve", resolve_command))
    application.add_handler(CommandHandler("startbot", startbot_command))
    application.add_handler(CommandHandler("stopbot", stopbot_command))
    application.add_handler(CommandHandler("killswitch", killswitch_command))

    application.run_polling()


if __name__ == "__main__":
    main()
