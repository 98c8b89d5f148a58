"""
Async execution engine for spot dip entries.

Runs one trade cycle: size the spend, market-buy, wait for the balance to
settle, size the sell from the observed balance and place a bracket (OCO)
exit. Uses an abstract venue interface so the live Binance client and the
paper venue are driven the same way.
"""

import asyncio
from abc import ABC, abstractmethod
from datetime import datetime
from decimal import Decimal
from typing import Awaitable, Callable, List, Optional, Set

from .config import ExecutionConfig, StrategyConfig
from .errors import ExchangeError, FilterViolationError, NetworkError, PartialExecutionError
from .logging_setup import logger
from .models import OrderResult, SymbolRules, ZERO
from .order_state import CycleResult, TradeCycle, TradeState
from .schemas import AssetBalance, BookTicker, OpenOrder, Ticker24h
from .sizing import exit_prices, floor_quote, size_sell_entire_balance


class TradingVenue(ABC):
    """Abstract spot venue: the operations ranking and execution need.

    All price/qty values use Decimal for precision and consistency.
    """

    @property
    @abstractmethod
    def quote_asset(self) -> str:
        """Quote currency every traded symbol is priced in (e.g. "USDT")."""

    @abstractmethod
    async def get_24h_tickers(self) -> List[Ticker24h]:
        """Get 24h statistics for every symbol."""

    @abstractmethod
    async def get_book_tickers(self) -> List[BookTicker]:
        """Get best bid/ask for every symbol."""

    @abstractmethod
    async def get_tradable_symbols(self) -> Optional[Set[str]]:
        """Get the allow-list of symbols currently trading.

        Returns:
            Set of symbols, or None when no allow-list applies or it could
            not be fetched
        """

    @abstractmethod
    async def get_last_price(self, symbol: str) -> Decimal:
        """Get the latest trade price for symbol."""

    @abstractmethod
    async def get_price_at(self, symbol: str, at: datetime) -> Optional[Decimal]:
        """Get the 1-minute close nearest a point in time.

        Args:
            symbol: Exchange symbol
            at: Target time (timezone-aware UTC)

        Returns:
            Close price, or None when no candle covers the target
        """

    @abstractmethod
    async def get_top_of_book(self, symbol: str) -> BookTicker:
        """Get best bid/ask for one symbol."""

    @abstractmethod
    async def get_symbol_rules(self, symbol: str) -> SymbolRules:
        """Get (possibly cached) exchange filters for symbol."""

    @abstractmethod
    def invalidate_symbol_rules(self, symbol: str) -> None:
        """Drop cached filters so the next lookup refetches them."""

    @abstractmethod
    async def get_balance(self, asset: str) -> AssetBalance:
        """Get free and locked balance of one asset."""

    @abstractmethod
    async def get_open_orders(self, symbol: Optional[str] = None) -> List[OpenOrder]:
        """Get open orders, for one symbol or all."""

    @abstractmethod
    async def market_buy_with_notional(self, symbol: str, quote_amount: Decimal) -> OrderResult:
        """Market buy spending quote_amount of the quote asset.

        Returns:
            OrderResult with executed quantity and average price
        """

    @abstractmethod
    async def market_sell(self, symbol: str, quantity: Decimal) -> OrderResult:
        """Market sell a base quantity."""

    @abstractmethod
    async def place_bracket_order(
        self,
        symbol: str,
        quantity: Decimal,
        take_profit: Decimal,
        stop_price: Decimal,
        stop_limit_price: Decimal,
    ) -> OrderResult:
        """Place a take-profit / stop-limit sell pair where one fill cancels the other.

        Returns:
            OrderResult whose order_id is the order-list id
        """

    @abstractmethod
    async def cancel_open_orders(self, symbol: str) -> OrderResult:
        """Cancel every open order on symbol."""


def base_asset_of(symbol: str, quote_asset: str) -> str:
    """SOLUSDT with quote USDT -> SOL."""
    symbol = symbol.upper()
    quote_asset = quote_asset.upper()
    if symbol.endswith(quote_asset) and len(symbol) > len(quote_asset):
        return symbol[: -len(quote_asset)]
    return symbol


class ExecutionEngine:
    """Drive one buy-then-bracket trade cycle against a TradingVenue.

    Strictly sequential: each step needs the result of the one before it.
    Every exchange failure ends in a CycleResult; failures after the buy
    filled are reported as unmanaged exposure.
    """

    def __init__(
        self,
        venue: TradingVenue,
        strategy: StrategyConfig,
        config: Optional[ExecutionConfig] = None,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.venue = venue
        self.strategy = strategy
        self.config = config or ExecutionConfig()
        self._sleep = sleep

    async def enter(self, symbol: str) -> CycleResult:
        symbol = symbol.upper()
        cycle = TradeCycle(symbol)
        quote = self.venue.quote_asset
        base = base_asset_of(symbol, quote)

        # Sizing
        cycle.advance(TradeState.SIZING)
        try:
            rules = await self.venue.get_symbol_rules(symbol)
            book = await self.venue.get_top_of_book(symbol)
        except ExchangeError as e:
            logger.error(f"Sizing lookup failed | symbol={symbol} error={e}")
            return cycle.fail(f"Could not size {symbol}: {e}", error=e)

        mid = book.mid
        if mid <= 0:
            return cycle.skip(f"Skip {symbol}: no top-of-book price.")

        try:
            available = (await self.venue.get_balance(quote)).free
        except ExchangeError as e:
            logger.error(f"Balance lookup failed | asset={quote} error={e}")
            return cycle.fail(f"Could not read {quote} balance: {e}", error=e)

        if available <= 0:
            return cycle.skip(f"No {quote} available to spend.")

        spend = floor_quote(
            max(rules.min_notional * self.config.spend_margin, available * self.config.equity_fraction)
        )
        if spend < rules.min_notional:
            return cycle.skip(
                f"Spend {spend} {quote} is below minNotional {rules.min_notional} for {symbol}."
            )
        if spend > available:
            return cycle.skip(
                f"Insufficient {quote}: need {spend} for minNotional {rules.min_notional}, have {available}."
            )

        # Buying
        cycle.advance(TradeState.BUYING)
        try:
            buy = await self.venue.market_buy_with_notional(symbol, spend)
        except NetworkError as e:
            # The order may have reached the exchange before the connection dropped
            logger.error(f"Market buy outcome unknown | symbol={symbol} spend={spend} error={e}")
            return cycle.fail(
                f"Buy outcome unknown for {symbol}: {e}. Check the {base} balance before retrying.",
                error=e,
            )
        except ExchangeError as e:
            logger.error(f"Market buy failed | symbol={symbol} spend={spend} error={e}")
            return cycle.fail(f"Buy failed for {symbol}: {e}", error=e)
        except Exception as e:
            # Accepted by the exchange but the response could not be read
            return self._unmanaged(
                cycle, f"buy for {symbol} was accepted but its response was unreadable: {e}", e
            )

        if buy.noop:
            return cycle.skip(f"Read-only: would buy {symbol} for {spend} {quote}.")

        executed = buy.executed_qty
        if executed <= 0:
            executed = spend / mid
            cycle.warn(f"Buy reported no executed quantity; assuming {executed}")
        logger.info(
            f"Market buy filled | symbol={symbol} order_id={buy.order_id} "
            f"spend={spend} executed_qty={executed} avg_price={buy.avg_price}"
        )

        # AwaitingSettle
        cycle.advance(TradeState.AWAITING_SETTLE)
        try:
            observed = await self._await_settlement(cycle, base, executed)
        except Exception as e:
            return self._unmanaged(
                cycle,
                f"bought {executed} {symbol} but could not read the {base} balance: {e}",
                e,
                buy_order_id=buy.order_id,
                quantity=executed,
            )

        # Sizing(Sell)
        cycle.advance(TradeState.SIZING_SELL)
        entry = buy.avg_price if buy.avg_price > 0 else mid
        sell = size_sell_entire_balance(observed, entry, rules)
        if not sell.ok:
            return self._unmanaged(
                cycle,
                f"bought {observed} {base} but cannot size an exit ({sell.rejected}); "
                f"dust remaining {sell.dust_remaining}.",
                None,
                buy_order_id=buy.order_id,
                quantity=observed,
                entry_price=entry,
                dust=sell.dust_remaining,
            )

        # PlacingExit
        cycle.advance(TradeState.PLACING_EXIT)
        prices = exit_prices(entry, self.strategy.take_profit_pct, self.strategy.stop_loss_pct, rules)
        try:
            exit_order = await self.venue.place_bracket_order(
                symbol, sell.quantity, prices.take_profit, prices.stop_loss, prices.stop_limit
            )
        except Exception as e:
            if isinstance(e, FilterViolationError):
                self.venue.invalidate_symbol_rules(symbol)
            return self._unmanaged(
                cycle,
                f"bought {sell.quantity} {symbol} but the exit order failed: {e}",
                e,
                buy_order_id=buy.order_id,
                quantity=sell.quantity,
                entry_price=entry,
                dust=sell.dust_remaining,
            )

        if sell.dust_remaining > 0:
            cycle.warn(f"Dust left behind: {sell.dust_remaining} {base}")
        logger.info(
            f"Bracket placed | symbol={symbol} order_list_id={exit_order.order_id} qty={sell.quantity} "
            f"tp={prices.take_profit} sl={prices.stop_loss} sl_limit={prices.stop_limit}"
        )

        note = (
            f"Entered {symbol}: {sell.quantity} @ ~{entry}. "
            f"TP {prices.take_profit}, SL {prices.stop_loss} (limit {prices.stop_limit})."
        )
        if sell.dust_remaining > 0:
            note += f" Warning: dust {sell.dust_remaining} {base} could not be included."
        return cycle.complete(
            note,
            buy_order_id=buy.order_id,
            exit_order_id=exit_order.order_id,
            quantity=sell.quantity,
            entry_price=entry,
            take_profit=prices.take_profit,
            stop_loss=prices.stop_loss,
            stop_limit=prices.stop_limit,
            dust=sell.dust_remaining,
        )

    async def _await_settlement(self, cycle: TradeCycle, base: str, executed: Decimal) -> Decimal:
        """Poll the free base balance until it reflects the fill.

        Accepts once balance >= executed * (1 - tolerance); after the last
        poll the latest observation is used as-is.
        """
        await self._sleep(self.config.settle_delay_seconds)
        threshold = executed * (1 - self.config.settle_tolerance)
        observed = ZERO
        for attempt in range(1, self.config.settle_polls + 1):
            observed = (await self.venue.get_balance(base)).free
            if observed >= threshold:
                return observed
            if attempt < self.config.settle_polls:
                await self._sleep(self.config.settle_backoff_seconds * attempt)

        message = f"{base} balance {observed} never reached {threshold} after {self.config.settle_polls} polls"
        logger.warning(f"Settlement incomplete | asset={base} observed={observed} expected={executed}")
        cycle.warn(message)
        return observed

    def _unmanaged(
        self, cycle: TradeCycle, message: str, cause: Optional[Exception], **details
    ) -> CycleResult:
        error = PartialExecutionError(message, symbol=cycle.symbol, quantity=details.get("quantity", ZERO))
        if cause is not None:
            error.__cause__ = cause
        logger.critical(f"Unmanaged exposure | symbol={cycle.symbol} detail={message}")
        return cycle.fail_unmanaged(message, error=error, **details)
