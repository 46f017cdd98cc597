"""
Energy Trader - runs battery arbitrage on 15-minute day-ahead prices

Charges the battery in the cheapest price windows and discharges it when
prices rise above the break-even price of the stored energy.
"""

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import List, Optional

from energy_trader.clients import ESPHomeClient, MarstekClient, NordPoolClient, OtePriceProvider, TelegramNotifier
from energy_trader.config import Config
from energy_trader.engine import TradingEngine
from energy_trader.errors import PriceFetchError, TraderError
from energy_trader.interfaces import BatteryController, PriceProvider
from energy_trader.models import TradingPlan
from energy_trader.price_analyzer import analyze_prices
from energy_trader.server import StatusServer
from energy_trader.trade_ledger import TradeLedger

logger = logging.getLogger(__name__)


def setup_logging(level: str, log_file: Optional[str] = None) -> None:
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='%(asctime)s - %(levelname)s - %(message)s',
        handlers=handlers,
        force=True,
    )
    # Reduce noise from HTTP internals
    logging.getLogger('aiohttp').setLevel(logging.WARNING)
    logging.getLogger('asyncio').setLevel(logging.WARNING)


def build_price_provider(config: Config) -> PriceProvider:
    if config['price_source'] == 'ote':
        return OtePriceProvider(config.location)
    return NordPoolClient(config['nordpool_area'], config['nordpool_currency'], config.location)


def build_battery(config: Config) -> BatteryController:
    if config['battery_backend'] == 'esphome':
        return ESPHomeClient(config['esphome_url'], min_soc=config.min_soc_percent)
    return MarstekClient(config['battery_udp_addr'])


def build_notifier(config: Config) -> TelegramNotifier:
    notifier = TelegramNotifier(
        config['telegram_bot_token'],
        config['telegram_chat_id'],
        currency=config.currency,
        efficiency=config.efficiency,
        min_price_spread=config.decimal('min_price_spread'),
    )
    if not notifier.enabled:
        logger.info("Telegram not configured, notifications disabled")
    return notifier


def log_plan(day: str, plan: TradingPlan) -> None:
    logger.info(f"📊 Trading plan for {day} ({plan.date}): min={plan.min_price:.4f} max={plan.max_price:.4f} "
                f"spread={plan.spread:.4f}")
    if not plan.should_trade():
        logger.info("  No profitable cycles")
    for i, cycle in enumerate(plan.cycles, 1):
        logger.info(f"  Cycle {i}: {cycle!r}")


async def show_plan(config: Config) -> None:
    """Fetch prices and print the plan without touching the battery"""
    provider = build_price_provider(config)
    analyzer_config = config.analyzer_config()
    try:
        log_plan('today', analyze_prices(await provider.fetch_today_prices(), analyzer_config))
        try:
            log_plan('tomorrow', analyze_prices(await provider.fetch_tomorrow_prices(), analyzer_config))
        except PriceFetchError as e:
            logger.info(f"Tomorrow's prices not available yet: {e}")
    finally:
        await provider.close()


async def run_service(config: Config) -> None:
    prices = build_price_provider(config)
    battery = build_battery(config)
    notifier = build_notifier(config)
    ledger = TradeLedger(config['data_dir'], config.location)
    engine = TradingEngine(config, prices, battery, notifier, ledger)
    server = StatusServer(engine, config['http_host'], int(config['http_port']))

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, engine.stop)

    try:
        await server.start()
        await engine.run()
    finally:
        await server.stop()
        await battery.close()
        await prices.close()
        await notifier.close()
        logger.info("👋 Energy trader stopped")


async def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Energy Trader - battery arbitrage on day-ahead electricity prices"
    )
    parser.add_argument(
        "--config",
        "-c",
        metavar="PATH",
        help="Path to a YAML config file. Environment variables override its values."
    )
    parser.add_argument(
        "--plan",
        action="store_true",
        help="Fetch prices, log today's (and tomorrow's) trading plan and exit."
    )
    parser.add_argument(
        "--log-file",
        metavar="PATH",
        help="Also write logs to this file."
    )
    args = parser.parse_args(argv)

    try:
        config = Config(args.config)
    except (OSError, ValueError) as e:
        setup_logging('info', args.log_file)
        logger.error(f"Invalid configuration: {e}")
        return 1

    setup_logging(config['log_level'], args.log_file)

    try:
        if args.plan:
            await show_plan(config)
        else:
            logger.info(f"🔋 Starting {config['service_name']} "
                        f"(prices: {config['price_source']}, battery: {config['battery_backend']})")
            await run_service(config)
    except TraderError as e:
        logger.error(f"Fatal: {e}")
        return 1
    return 0


def run() -> None:
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
