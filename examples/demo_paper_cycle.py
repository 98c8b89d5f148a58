"""End-to-end demo of the trading core against the paper venue.

Shows:
1. Structured logging
2. Ranking the universe by trailing return
3. Deciding and entering with a bracketed exit
4. Watching the position resolve (take-profit, stop or time stop)
"""
import asyncio
import sys
from decimal import Decimal
from pathlib import Path

# Add parent directory to path so we can import torra_trade
sys.path.insert(0, str(Path(__file__).parent.parent))

from torra_trade.config import BotConfig
from torra_trade.logging_setup import logger, setup_logging
from torra_trade.paper import PaperVenue
from torra_trade.trader import Trader


async def main():
    """Run one paper trade cycle."""
    setup_logging(log_file=None, level="INFO", enable_console=True)
    logger.info("=== Paper Trading Demo ===")

    config = BotConfig()
    config.strategy.universe_size = 20

    venue = PaperVenue(universe=20, seed=11)
    # One symbol with a clear dip so the demo always finds a candidate
    venue.set_price("DIPUSDT", Decimal("91"), price_ago=Decimal("100"))
    trader = Trader(venue, config)

    rows = await trader.build_ranking()
    for row in rows[:5]:
        logger.info(f"Ranked | {row.symbol} return={row.trailing_return}")

    entered, symbol, note = await trader.try_enter()
    logger.info(f"try_enter -> entered={entered} symbol={symbol} note={note}")
    if not entered:
        return

    for step in range(200):
        venue.advance_prices()
        message = await trader.check_position()
        if message:
            logger.info(f"After {step + 1} ticks: {message}")
            break
    else:
        logger.info(f"Position still open: {trader.position}")

    logger.info(f"Equity: {await trader.get_equity()} {venue.quote_asset}")


if __name__ == "__main__":
    asyncio.run(main())
