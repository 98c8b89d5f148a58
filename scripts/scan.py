#!/usr/bin/env python
"""Scan CLI: rank the universe, show the current decision, or run the bot.

Usage:
    python scripts/scan.py --paper rank --top 20
    python scripts/scan.py --config bot.yaml decide
    python scripts/scan.py --config bot.yaml equity
    python scripts/scan.py --config bot.yaml run
"""
import argparse
import asyncio
import sys
from decimal import Decimal
from pathlib import Path
from typing import List, Optional

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from torra_trade.binance_client import BinanceClient
from torra_trade.config import BotConfig, Venue
from torra_trade.logging_setup import logger, setup_logging
from torra_trade.models import Decision, RankingRow
from torra_trade.paper import PaperVenue
from torra_trade.rate_limit_policy import RateLimitManager
from torra_trade.runner import CycleRunner
from torra_trade.secrets import apply_credentials
from torra_trade.trader import Trader


def format_pct(value: Optional[Decimal]) -> str:
    if value is None:
        return "n/a"
    return f"{value * 100:+.2f}%"


def format_ranking(rows: List[RankingRow], window_label: str = "3h", top: Optional[int] = None) -> str:
    """Render ranking rows as a fixed-width table."""
    if not rows:
        return "No symbols ranked"
    shown = rows[:top] if top else rows
    lines = [
        f"{'#':<4} {'Symbol':<14} {'Price':>16} {window_label + ' ago':>16} {window_label + ' ret':>10} {'24h Vol':>16}",
        "-" * 81,
    ]
    for i, row in enumerate(shown, start=1):
        price_ago = f"{row.price_ago}" if row.price_ago is not None else "n/a"
        lines.append(
            f"{i:<4} {row.symbol:<14} {str(row.price_now):>16} {price_ago:>16} "
            f"{format_pct(row.trailing_return):>10} {row.quote_volume_24h:>16.0f}"
        )
    missing = sum(1 for row in rows if not row.has_return)
    if missing:
        lines.append(f"({missing} of {len(rows)} symbols without {window_label} data)")
    return "\n".join(lines)


def format_decision(decision: Decision) -> str:
    lines = [f"Decision: {decision.kind.value}", f"Note: {decision.note}"]
    if decision.next_check is not None:
        lines.append(f"Next check: {decision.next_check.isoformat()}")
    return "\n".join(lines)


async def run_command(args, config: BotConfig, venue) -> None:
    trader = Trader(venue, config)
    if args.cmd == "rank":
        rows = await trader.build_ranking(args.universe)
        print(format_ranking(rows, trader.window_label, args.top))
    elif args.cmd == "decide":
        print(format_decision(await trader.decide()))
    elif args.cmd == "equity":
        equity = await trader.get_equity()
        print(f"Equity: {equity} {venue.quote_asset}")
    elif args.cmd == "run":
        runner = CycleRunner(trader, config.schedule, max_backoff_seconds=config.exchange.max_backoff_seconds)
        try:
            await runner.start()
        except asyncio.CancelledError:
            await runner.stop()


def build_config(args) -> BotConfig:
    config = BotConfig.from_yaml(args.config) if args.config else BotConfig()
    if args.sandbox:
        config.exchange.venue = Venue.SANDBOX
    return config


async def amain(args) -> None:
    config = build_config(args)
    setup_logging(config.logging.log_file, args.log_level or config.logging.log_level)
    logger.info(f"Strategy | {config.strategy}")

    if args.paper:
        await run_command(args, config, PaperVenue(quote_asset=config.exchange.quote_asset, seed=args.seed))
        return

    if args.cmd in ("equity", "run"):
        apply_credentials(config.exchange)
    limiter = RateLimitManager(quotas=config.rate_limit.to_quotas())
    async with BinanceClient(config.exchange, rate_limiter=limiter) as client:
        await run_command(args, config, client)


def main():
    parser = argparse.ArgumentParser(description="Dip scanner CLI")
    parser.add_argument("--config", help="Path to YAML config")
    parser.add_argument("--sandbox", action="store_true", help="Use the Binance spot testnet")
    parser.add_argument("--paper", action="store_true", help="Use the simulated paper venue")
    parser.add_argument("--seed", type=int, default=None, help="Paper venue random seed")
    parser.add_argument("--log-level", default=None)

    sub = parser.add_subparsers(dest="cmd")
    rank = sub.add_parser("rank")
    rank.add_argument("--universe", type=int, default=None, help="Universe size (default from config)")
    rank.add_argument("--top", type=int, default=25, help="Rows to print")
    sub.add_parser("decide")
    sub.add_parser("equity")
    sub.add_parser("run")

    args = parser.parse_args()
    if not args.cmd:
        parser.print_help()
        sys.exit(1)

    try:
        asyncio.run(amain(args))
    except ValueError as e:
        print(f"Error: {e}")
        sys.exit(1)
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
