"""Ranking pipeline: trailing returns for the most liquid quote-asset symbols."""
import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Callable, List, Optional, Tuple

from .config import RankingConfig
from .execution import TradingVenue
from .logging_setup import logger
from .models import RankingRow, SymbolQuote, ZERO


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def sort_rows(rows: List[RankingRow]) -> List[RankingRow]:
    """Present returns ascending first, absent returns last; ties keep input order."""
    return sorted(rows, key=lambda r: (0, r.trailing_return) if r.has_return else (1, ZERO))


class RankingPipeline:
    """Build a ranking snapshot from one universe fetch.

    Per-symbol work runs under a semaphore so at most max_concurrency price
    lookups are in flight. A symbol that fails or times out still appears in
    the snapshot, with an absent return.
    """

    def __init__(
        self,
        venue: TradingVenue,
        config: Optional[RankingConfig] = None,
        *,
        now: Callable[[], datetime] = _utc_now,
    ):
        self.venue = venue
        self.config = config or RankingConfig()
        self._now = now

    def _eligible(self, symbol: str, quote: str) -> bool:
        return (
            symbol.endswith(quote)
            and not symbol.startswith(quote)
            and not any(fragment in symbol for fragment in self.config.excluded_fragments)
        )

    async def universe(self, universe_size: int) -> List[SymbolQuote]:
        """Top universe_size eligible symbols by 24h quote volume."""
        quote = self.venue.quote_asset.upper()
        tickers = await self.venue.get_24h_tickers()
        books = {b.symbol.upper(): b for b in await self.venue.get_book_tickers()}
        tradables = await self.venue.get_tradable_symbols()

        quotes: List[SymbolQuote] = []
        for t in tickers:
            symbol = t.symbol.upper()
            if not self._eligible(symbol, quote):
                continue
            if tradables is not None and symbol not in tradables:
                continue
            book = books.get(symbol)
            quotes.append(
                SymbolQuote(
                    symbol=symbol,
                    last_price=t.last_price,
                    quote_volume_24h=t.quote_volume,
                    spread_bps=book.spread_bps if book else ZERO,
                )
            )
        quotes.sort(key=lambda q: q.quote_volume_24h, reverse=True)
        return quotes[:universe_size]

    async def build(self, universe_size: int) -> List[RankingRow]:
        """Rank the universe by trailing return over the lookback window.

        Args:
            universe_size: How many symbols (by quote volume) to rank

        Returns:
            Rows sorted by sort_rows()
        """
        quotes = await self.universe(universe_size)
        target = self._now() - timedelta(minutes=self.config.lookback_minutes)
        semaphore = asyncio.Semaphore(self.config.max_concurrency)

        async def ranked(quote: SymbolQuote) -> RankingRow:
            async with semaphore:
                try:
                    price_now, price_ago = await asyncio.wait_for(
                        self._prices(quote.symbol, target), timeout=self.config.symbol_timeout_seconds
                    )
                except asyncio.TimeoutError:
                    logger.warning(f"Ranking fetch timed out | symbol={quote.symbol}")
                    return RankingRow(quote.symbol, ZERO, None, None, quote.quote_volume_24h)
                except Exception as e:
                    logger.warning(f"Ranking fetch failed | symbol={quote.symbol} error={e}")
                    return RankingRow(quote.symbol, ZERO, None, None, quote.quote_volume_24h)

            ret = None
            if price_ago is not None and price_ago > 0 and price_now > 0:
                ret = price_now / price_ago - 1
            return RankingRow(quote.symbol, price_now, price_ago, ret, quote.quote_volume_24h)

        rows = await asyncio.gather(*(ranked(q) for q in quotes))
        with_return = sum(1 for r in rows if r.has_return)
        logger.info(f"Ranking built | symbols={len(rows)} with_return={with_return}")
        return sort_rows(list(rows))

    async def _prices(self, symbol: str, target: datetime) -> Tuple[Decimal, Optional[Decimal]]:
        price_now = await self.venue.get_last_price(symbol)
        price_ago = await self.venue.get_price_at(symbol, target)
        if price_ago is None:
            # sparse candles: one more try slightly earlier
            retry_at = target - timedelta(seconds=self.config.sparse_retry_seconds)
            price_ago = await self.venue.get_price_at(symbol, retry_at)
        return price_now, price_ago
