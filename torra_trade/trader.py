"""Trader facade: the four calls a presentation layer makes into the core.

Also enforces the single outstanding position and the time stop.
"""
import asyncio
from dataclasses import replace
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, List, Optional, Tuple

from .config import BotConfig
from .decision import decide
from .errors import PartialExecutionError
from .execution import ExecutionEngine, TradingVenue, base_asset_of
from .logging_setup import logger
from .models import ActivePosition, Decision, RankingRow
from .order_state import UNMANAGED_PREFIX, CycleResult
from .ranking import RankingPipeline
from .sizing import size_sell_entire_balance


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Trader:
    """Rank, decide and enter, one position at a time.

    Attributes:
        position: The position currently held, if any
        last_symbol: Symbol of the previous entry (not re-entered back to back)
        last_result: CycleResult of the latest entry attempt
        last_decision: Decision of the latest try_enter
    """

    def __init__(
        self,
        venue: TradingVenue,
        config: BotConfig,
        *,
        now: Callable[[], datetime] = _utc_now,
        engine: Optional[ExecutionEngine] = None,
    ):
        self.venue = venue
        self.config = config
        self.strategy = config.strategy
        for warning in self.strategy.normalize():
            logger.warning(f"Strategy adjusted | {warning}")
        self._now = now
        self.pipeline = RankingPipeline(venue, config.ranking, now=now)
        self.engine = engine or ExecutionEngine(venue, config.strategy, config.execution)
        self.position: Optional[ActivePosition] = None
        self.last_symbol: Optional[str] = None
        self.last_result: Optional[CycleResult] = None
        self.last_decision: Optional[Decision] = None
        self._lock = asyncio.Lock()

    @property
    def window_label(self) -> str:
        minutes = self.config.ranking.lookback_minutes
        return f"{minutes // 60}h" if minutes % 60 == 0 else f"{minutes}m"

    async def build_ranking(self, universe_size: Optional[int] = None) -> List[RankingRow]:
        return await self.pipeline.build(universe_size or self.strategy.universe_size)

    async def decide(self) -> Decision:
        rows = await self.build_ranking()
        decision = decide(rows, self.strategy, self._now(), window_label=self.window_label)
        self.last_decision = decision
        logger.info(f"Decision | kind={decision.kind.value} symbol={decision.symbol} note={decision.note}")
        return decision

    async def try_enter(self) -> Tuple[bool, Optional[str], str]:
        """Decide and, on a candidate, run one trade cycle.

        Returns:
            (entered, symbol, note); entered is True whenever a buy filled,
            including unmanaged-exposure outcomes
        """
        async with self._lock:
            if self.position is not None:
                return False, None, f"Skip: holding {self.position.symbol}; one position at a time."

            decision = await self.decide()
            if not decision.is_candidate:
                return False, None, decision.note

            symbol = decision.symbol
            if self.config.execution.skip_same_symbol and symbol == self.last_symbol:
                return False, None, "Skip: same symbol as previous trade."

            result = await self.engine.enter(symbol)
            self.last_result = result
            if result.entered or result.unmanaged:
                self.last_symbol = symbol
                self.position = ActivePosition(
                    symbol=symbol,
                    entry_price=result.entry_price,
                    quantity=result.quantity,
                    entered_at=self._now(),
                    exit_order_id=result.exit_order_id,
                )
                return True, symbol, result.note
            return False, symbol, result.note

    async def get_equity(self) -> Decimal:
        """Free plus locked quote-asset balance."""
        balance = await self.venue.get_balance(self.venue.quote_asset)
        return balance.total

    async def check_position(self, now: Optional[datetime] = None) -> Optional[str]:
        """Clear a resolved position or close one past its time stop.

        Returns:
            A note when the position was cleared, None otherwise
        """
        position = self.position
        if position is None:
            return None
        now = now or self._now()

        if position.exit_order_id is not None:
            open_orders = await self.venue.get_open_orders(position.symbol)
            if not open_orders:
                self.position = None
                logger.info(f"Position resolved | symbol={position.symbol} exit_order_id={position.exit_order_id}")
                return f"Exit order for {position.symbol} completed."

        if now - position.entered_at < self.strategy.time_stop:
            return None
        return await self._close_position(position)

    async def _close_position(self, position: ActivePosition) -> str:
        """Cancel the bracket and sell the observed balance at market.

        Raises:
            PartialExecutionError: the close failed part way; the position is
                kept without an exit order so the next check retries it
        """
        symbol = position.symbol
        logger.warning(f"Time stop reached | symbol={symbol} entered_at={position.entered_at.isoformat()}")

        try:
            if await self.venue.get_open_orders(symbol):
                await self.venue.cancel_open_orders(symbol)

            base = base_asset_of(symbol, self.venue.quote_asset)
            balance = (await self.venue.get_balance(base)).free
            rules = await self.venue.get_symbol_rules(symbol)
            price = await self.venue.get_last_price(symbol)
            sell = size_sell_entire_balance(balance, price, rules)

            if not sell.ok:
                self.position = None
                logger.warning(f"Time stop sell skipped | symbol={symbol} reason={sell.rejected}")
                return f"Time stop on {symbol}: nothing sellable ({sell.rejected})."

            result = await self.venue.market_sell(symbol, sell.quantity)
        except Exception as e:
            self.position = replace(position, exit_order_id=None)
            message = f"{UNMANAGED_PREFIX} time stop close of {symbol} failed: {e}"
            logger.critical(f"Unmanaged exposure | symbol={symbol} detail=time stop close failed error={e}")
            raise PartialExecutionError(message, symbol=symbol, quantity=position.quantity) from e

        self.position = None
        note = f"Time stop on {symbol}: sold {sell.quantity} (order {result.order_id})."
        if sell.dust_remaining > 0:
            note += f" Dust left: {sell.dust_remaining}."
        logger.info(f"Time stop close | symbol={symbol} qty={sell.quantity} order_id={result.order_id}")
        return note
