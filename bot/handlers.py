# bot/handlers.py
import html
import time

from telegram import Update
from telegram.ext import ContextTypes

from config import AppConfig
from session_manager import SessionManager

OPPORTUNITIES_SHOWN = 10
EVENTS_SHOWN = 10


def _user_id(update: Update) -> str:
    return str(update.effective_chat.id)


async def _authorized(update: Update, context: ContextTypes.DEFAULT_TYPE) -> bool:
    """Trading commands are only accepted from the configured chat, when one is configured."""
    config: AppConfig = context.application.bot_data.get('config')
    if config and config.telegram_chat_id and _user_id(update) != str(config.telegram_chat_id):
        await update.message.reply_text("This chat is not allowed to control trading.")
        return False
    return True


def _sessions(context: ContextTypes.DEFAULT_TYPE) -> SessionManager:
    return context.application.bot_data['session_manager']


# --- Command Handlers ---

async def help_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Displays a help message with all available commands."""
    help_text = """
    <b>Welcome to the DEX Arbitrage Bot!</b>

    Routes are discovered, scored after gas, gated by safety checks and only then executed.

    <b><u>Scanning</u></b>
    /scan - Run a scan now and list opportunities
    /scaninfo - See current scan configuration
    /status - Get bot status and last scan info

    <b><u>Trading</u></b>
    /execute &lt;id&gt; [real] - Execute an opportunity (simulation by default)
    /startbot - Start the periodic scan loop
    /stopbot - Stop the periodic scan loop

    <b><u>Risk</u></b>
    /risk - Daily risk counters and limits
    /events - Circuit breaker events
    /resolve &lt;id&gt; [note] - Resolve a circuit breaker event
    /killswitch - Emergency stop: pause all trading

    /help - Show this help message
    """
    await update.message.reply_html(help_text)


async def status_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Checks and reports the bot's operational status and scanner state."""
    config: AppConfig = context.application.bot_data.get('config')
    start_time = context.application.bot_data.get('start_time', 0)
    uptime_str = time.strftime('%H:%M:%S', time.gmtime(time.time() - start_time))

    scanner = await _sessions(context).get_session(_user_id(update))
    status = scanner.status()

    if status['running']:
        scanner_status = "✅ Running"
    elif config and config.scanner_enabled:
        scanner_status = "⏹️ Stopped"
    else:
        scanner_status = "🚫 Idle (use /startbot)"

    status_text = (
        f"<b>🤖 Bot Status</b>\n"
        f"Uptime: <code>{uptime_str}</code>\n"
        f"Mode: <code>{status['execution_mode']}</code>{' 🧪 DEMO' if status['demo_mode'] else ''}\n"
        f"Trading: {'⛔ PAUSED' if status['paused'] else '🟢 Active'}\n\n"
        f"<b>🔍 Scanner</b>\n"
        f"Status: {scanner_status}\n"
        f"Last Scan: <code>{status['last_scan_time'] or 'Never'}</code>\n"
        f"Found Last Scan: <code>{status['found_last_scan']}</code>\n"
    )
    if status['last_error']:
        status_text += f"Last Error: <pre>{html.escape(status['last_error'])}</pre>\n"

    await update.message.reply_html(status_text)


async def scaninfo_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Displays the current scan configuration."""
    scan_info = context.application.bot_data.get('scan_info')

    if not scan_info:
        await update.message.reply_text("Scanner configuration not found.")
        return

    message = (
        f"<b>🔍 Current Scanner Configuration</b>\n\n"
        f"<b>Chains:</b> <code>{', '.join(scan_info.get('chains', []))}</code>\n"
        f"<b>Tokens:</b> <code>{', '.join(scan_info.get('tokens', []))}</code>\n"
        f"<b>Max hops:</b> <code>{scan_info.get('max_hops')}</code>\n"
        f"<b>Trade size:</b> <code>${scan_info.get('start_amount_usd', 0):,.0f}</code>\n"
        f"<b>Min net profit:</b> <code>${scan_info.get('min_net_profit_usd', 0):.2f}</code>\n"
        f"<b>Cross-chain:</b> <code>{'on' if scan_info.get('cross_chain') else 'off'}</code>"
    )

    await update.message.reply_html(message)


async def scan_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Runs a scan immediately and lists the best opportunities."""
    if not await _authorized(update, context):
        return
    await update.message.reply_text("Scanning routes, this may take a moment...")

    try:
        opportunities = await _sessions(context).scan(_user_id(update))
    except Exception as e:
        print(f"Error in /scan command: {e}")
        await update.message.reply_text("An error occurred while scanning.")
        return

    if not opportunities:
        await update.message.reply_text("No profitable opportunities found.")
        return

    lines = [f"<b>💹 {len(opportunities)} opportunities</b>\n"]
    for opp in opportunities[:OPPORTUNITIES_SHOWN]:
        route = opp.route
        lines.append(
            f"{'🧪 ' if opp.is_demo else ''}<code>{opp.id[:8]}</code> {route.kind}: {html.escape(route.describe())}\n"
            f"   Net ${route.estimated_net_profit:.2f} | Gas ${route.estimated_gas_cost:.2f} | Risk {route.risk_score}"
        )
    await update.message.reply_html("\n".join(lines))


async def execute_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Executes an opportunity from the last scan: /execute <id> [real]."""
    if not await _authorized(update, context):
        return
    if not context.args:
        await update.message.reply_text("Usage: /execute <opportunity id> [real]")
        return

    opportunity_id = context.args[0]
    mode = 'real' if len(context.args) > 1 and context.args[1].lower() == 'real' else 'simulation'
    result = await _sessions(context).execute(_user_id(update), opportunity_id, mode)

    if result.success:
        message = f"✅ <b>Executed</b> ({result.mode})\nTx: <code>{result.tx_hash}</code>"
        if result.gas_used:
            message += f"\nGas used: {result.gas_used:,}"
    elif result.blocked:
        message = f"🛑 <b>Blocked</b> ({result.mode})\n{html.escape(result.error or 'unknown reason')}"
    else:
        message = f"❌ <b>Failed</b> ({result.mode})\n{html.escape(result.error or 'unknown error')}"
    await update.message.reply_html(message)


async def risk_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Shows the daily risk counters and limits."""
    tracking = await _sessions(context).get_risk_status(_user_id(update))
    scanner = await _sessions(context).get_session(_user_id(update))

    message = (
        f"<b>🛡️ Risk Status</b> ({scanner.ledger.state})\n\n"
        f"Daily loss: <code>${tracking.daily_loss_usd:,.2f}</code> / ${tracking.daily_loss_limit:,.2f}"
        f" ({tracking.daily_loss_utilization:.1f}%)\n"
        f"Daily profit: <code>${tracking.daily_profit_usd:,.2f}</code>\n"
        f"Trades today: <code>{tracking.daily_trade_count}</code>\n"
        f"Gas today: <code>${tracking.daily_gas_used_usd:,.2f}</code>\n"
        f"Consecutive failures: <code>{tracking.consecutive_failures}</code>\n"
        f"Max position: ${tracking.max_position_size_usd:,.0f} (peak {tracking.largest_position_utilization:.1f}%)\n"
        f"Max single loss: ${tracking.max_single_loss_usd:,.2f}"
    )
    await update.message.reply_html(message)


async def events_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Lists recent circuit breaker events."""
    events = await _sessions(context).get_circuit_breaker_events(_user_id(update), include_resolved=True)
    if not events:
        await update.message.reply_text("No circuit breaker events recorded.")
        return

    lines = ["<b>⚡ Circuit Breaker Events</b>\n"]
    for event in events[:EVENTS_SHOWN]:
        icon = "✅" if event.resolved else ("🚨" if event.severity == 'critical' else "⚠️")
        line = (
            f"{icon} #{event.id} <b>{event.reason}</b> ({event.severity})\n"
            f"   {event.trigger_value:,.2f} vs {event.threshold_value:,.2f} at {event.created_at:%Y-%m-%d %H:%M} UTC"
        )
        if event.resolved:
            line += f"\n   resolved by {html.escape(event.resolved_by or '?')}"
        lines.append(line)
    await update.message.reply_html("\n".join(lines))


async def resolve_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Resolves a circuit breaker event: /resolve <id> [note]."""
    if not await _authorized(update, context):
        return
    if not context.args or not context.args[0].isdigit():
        await update.message.reply_text("Usage: /resolve <event id> [note]")
        return

    event_id = int(context.args[0])
    note = " ".join(context.args[1:]) or None
    resolved_by = update.effective_user.username if update.effective_user and update.effective_user.username else _user_id(update)
    resolved = await _sessions(context).resolve_circuit_breaker(_user_id(update), event_id, note, resolved_by)

    if not resolved:
        await update.message.reply_text(f"Event #{event_id} not found or already resolved.")
        return
    scanner = await _sessions(context).get_session(_user_id(update))
    state = "still paused (other events unresolved)" if scanner.ledger.is_paused() else "trading resumed"
    await update.message.reply_text(f"Event #{event_id} resolved; {state}.")


async def startbot_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    if not await _authorized(update, context):
        return
    started = await _sessions(context).start(_user_id(update))
    await update.message.reply_text("Scan loop started." if started else "Scan loop is already running.")


async def stopbot_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    if not await _authorized(update, context):
        return
    await _sessions(context).stop(_user_id(update))
    await update.message.reply_text("Scan loop stopped.")


async def killswitch_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Emergency stop: pauses trading until the event is resolved."""
    if not await _authorized(update, context):
        return
    event = await _sessions(context).emergency_stop(_user_id(update))
    if event is None:
        await update.message.reply_text("Emergency stop already active. Trading is paused.")
        return
    await update.message.reply_html(
        f"🛑 <b>EMERGENCY STOP</b>\nTrading paused and scan loop stopped.\nUse /resolve {event.id} to resume."
    )
