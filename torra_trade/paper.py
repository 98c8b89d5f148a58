"""Paper venue: a simulated exchange for demos and tests.

Prices follow a seeded random walk; balances, fills and brackets are kept in
memory. Bracket legs are evaluated whenever open orders are queried, so a
monitor loop polling get_open_orders sees exits happen.
"""
import random
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, List, Optional, Set

from .errors import InsufficientFundsError
from .execution import TradingVenue
from .logging_setup import logger
from .models import OrderResult, SymbolRules, ZERO
from .schemas import AssetBalance, BookTicker, OpenOrder, Ticker24h
from .sizing import floor_to_step, floor_to_tick


DEFAULT_RULES = dict(
    step_size=Decimal("0.000001"),
    min_qty=Decimal("0"),
    tick_size=Decimal("0.00000001"),
    min_notional=Decimal("5"),
)


def _dec(value: float) -> Decimal:
    return Decimal(str(round(value, 8)))


class PaperVenue(TradingVenue):
    """A simple venue that records calls and lets tests drive prices."""

    def __init__(
        self,
        *,
        quote_asset: str = "USDT",
        starting_equity: Decimal = Decimal("1000"),
        universe: int = 150,
        seed: Optional[int] = None,
        fee_rate: Decimal = Decimal("0.001"),
        spread: Decimal = Decimal("0.001"),
    ):
        self._quote_asset = quote_asset.upper()
        self.universe = universe
        self.fee_rate = fee_rate
        self.spread = spread
        self.rng = random.Random(seed)
        self.prices: Dict[str, Decimal] = {}
        self.prices_ago: Dict[str, Decimal] = {}
        self.free: Dict[str, Decimal] = {self._quote_asset: starting_equity}
        self.locked: Dict[str, Decimal] = {}
        self.orders: Dict[str, dict] = {}
        self.next_id = 1
        self.rules_lookups = 0
        self.invalidated: List[str] = []

    @property
    def quote_asset(self) -> str:
        return self._quote_asset

    def _gen_id(self) -> str:
        oid = f"p{self.next_id}"
        self.next_id += 1
        return oid

    def _base(self, symbol: str) -> str:
        return symbol[: -len(self._quote_asset)] if symbol.endswith(self._quote_asset) else symbol

    def _credit(self, asset: str, amount: Decimal) -> None:
        self.free[asset] = self.free.get(asset, ZERO) + amount

    def _ensure_universe(self) -> None:
        for i in range(1, self.universe + 1):
            symbol = f"COIN{i}{self._quote_asset}"
            if symbol not in self.prices:
                last = _dec(1 + self.rng.random() * 100)
                self.prices[symbol] = last
                # within +/-5% of the current price
                self.prices_ago[symbol] = last * _dec(1 + self.rng.random() * 0.1 - 0.05)

    def set_price(self, symbol: str, price: Decimal, price_ago: Optional[Decimal] = None) -> None:
        self.prices[symbol.upper()] = price
        if price_ago is not None:
            self.prices_ago[symbol.upper()] = price_ago

    def advance_prices(self) -> None:
        """Move every price by a random step of up to +/-0.25%."""
        for symbol, price in self.prices.items():
            step = _dec(self.rng.random() * 0.005 - 0.0025)
            self.prices[symbol] = max(Decimal("0.0000001"), price * (1 + step))
        self._evaluate_brackets()

    def _evaluate_brackets(self) -> None:
        for oid, order in self.orders.items():
            if order["type"] != "oco" or order["state"] != "open":
                continue
            symbol = order["symbol"]
            price = self.prices.get(symbol, ZERO)
            if price >= order["take_profit"]:
                fill = order["take_profit"]
            elif price <= order["stop_price"]:
                fill = order["stop_limit_price"]
            else:
                continue
            qty = order["qty"]
            self.locked[self._base(symbol)] = self.locked.get(self._base(symbol), ZERO) - qty
            self._credit(self._quote_asset, qty * fill * (1 - self.fee_rate))
            order["state"] = "filled"
            order["fill_price"] = fill
            logger.info(f"Paper bracket filled | symbol={symbol} order_list_id={oid} price={fill}")

    async def get_24h_tickers(self) -> List[Ticker24h]:
        self._ensure_universe()
        self.advance_prices()
        return [
            Ticker24h(symbol=symbol, last_price=price, quote_volume=Decimal(10_000_000 + i * 100_000))
            for i, (symbol, price) in enumerate(self.prices.items(), start=1)
        ]

    async def get_book_tickers(self) -> List[BookTicker]:
        return [await self.get_top_of_book(symbol) for symbol in self.prices]

    async def get_tradable_symbols(self) -> Optional[Set[str]]:
        return None

    async def get_last_price(self, symbol: str) -> Decimal:
        return self.prices.get(symbol.upper(), Decimal("1"))

    async def get_price_at(self, symbol: str, at: datetime) -> Optional[Decimal]:
        return self.prices_ago.get(symbol.upper())

    async def get_top_of_book(self, symbol: str) -> BookTicker:
        mid = self.prices.get(symbol.upper(), ZERO)
        return BookTicker(symbol=symbol.upper(), bid_price=mid * (1 - self.spread), ask_price=mid * (1 + self.spread))

    async def get_symbol_rules(self, symbol: str) -> SymbolRules:
        self.rules_lookups += 1
        return SymbolRules(symbol=symbol.upper(), **DEFAULT_RULES)

    def invalidate_symbol_rules(self, symbol: str) -> None:
        self.invalidated.append(symbol.upper())

    async def get_balance(self, asset: str) -> AssetBalance:
        asset = asset.upper()
        return AssetBalance(asset=asset, free=self.free.get(asset, ZERO), locked=self.locked.get(asset, ZERO))

    async def get_open_orders(self, symbol: Optional[str] = None) -> List[OpenOrder]:
        self._evaluate_brackets()
        result: List[OpenOrder] = []
        for oid, order in self.orders.items():
            if order["type"] != "oco" or order["state"] != "open":
                continue
            if symbol and order["symbol"] != symbol.upper():
                continue
            list_id = int(oid[1:])
            for leg, price in (("LIMIT_MAKER", order["take_profit"]), ("STOP_LOSS_LIMIT", order["stop_limit_price"])):
                result.append(
                    OpenOrder(
                        symbol=order["symbol"],
                        order_id=list_id * 10 + len(result),
                        order_list_id=list_id,
                        side="SELL",
                        type=leg,
                        price=price,
                        orig_qty=order["qty"],
                        time=int(order["time"].timestamp() * 1000),
                    )
                )
        return result

    async def market_buy_with_notional(self, symbol: str, quote_amount: Decimal) -> OrderResult:
        symbol = symbol.upper()
        ask = (await self.get_top_of_book(symbol)).ask_price
        rules = await self.get_symbol_rules(symbol)
        qty = floor_to_step(quote_amount / ask, rules.step_size)
        if qty * ask > self.free.get(self._quote_asset, ZERO):
            raise InsufficientFundsError(f"Paper buy of {quote_amount} {self._quote_asset} exceeds free balance")
        self._credit(self._quote_asset, -(qty * ask))
        self._credit(self._base(symbol), qty * (1 - self.fee_rate))
        oid = self._gen_id()
        self.orders[oid] = {"type": "market", "side": "BUY", "symbol": symbol, "qty": qty, "price": ask, "state": "filled"}
        return OrderResult(order_id=oid, symbol=symbol, executed_qty=qty, avg_price=ask, status="FILLED")

    async def market_sell(self, symbol: str, quantity: Decimal) -> OrderResult:
        symbol = symbol.upper()
        bid = (await self.get_top_of_book(symbol)).bid_price
        if quantity > self.free.get(self._base(symbol), ZERO):
            raise InsufficientFundsError(f"Paper sell of {quantity} {self._base(symbol)} exceeds free balance")
        self._credit(self._base(symbol), -quantity)
        self._credit(self._quote_asset, quantity * bid * (1 - self.fee_rate))
        oid = self._gen_id()
        self.orders[oid] = {"type": "market", "side": "SELL", "symbol": symbol, "qty": quantity, "price": bid, "state": "filled"}
        return OrderResult(order_id=oid, symbol=symbol, executed_qty=quantity, avg_price=bid, status="FILLED")

    async def place_bracket_order(
        self,
        symbol: str,
        quantity: Decimal,
        take_profit: Decimal,
        stop_price: Decimal,
        stop_limit_price: Decimal,
    ) -> OrderResult:
        symbol = symbol.upper()
        base = self._base(symbol)
        if quantity > self.free.get(base, ZERO):
            raise InsufficientFundsError(f"Paper bracket for {quantity} {base} exceeds free balance")
        self._credit(base, -quantity)
        self.locked[base] = self.locked.get(base, ZERO) + quantity
        oid = self._gen_id()
        self.orders[oid] = {
            "type": "oco",
            "symbol": symbol,
            "qty": quantity,
            "take_profit": take_profit,
            "stop_price": stop_price,
            "stop_limit_price": floor_to_tick(stop_limit_price, DEFAULT_RULES["tick_size"]),
            "state": "open",
            "time": datetime.now(timezone.utc),
        }
        return OrderResult(order_id=oid, symbol=symbol, executed_qty=ZERO, status="EXECUTING")

    async def cancel_open_orders(self, symbol: str) -> OrderResult:
        symbol = symbol.upper()
        base = self._base(symbol)
        for order in self.orders.values():
            if order["type"] == "oco" and order["symbol"] == symbol and order["state"] == "open":
                order["state"] = "cancelled"
                self.locked[base] = self.locked.get(base, ZERO) - order["qty"]
                self._credit(base, order["qty"])
        return OrderResult(order_id=f"CANCEL-{symbol}", symbol=symbol, status="CANCELED")
