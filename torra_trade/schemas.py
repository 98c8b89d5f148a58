"""Pydantic models for the Binance spot JSON payloads the core consumes.

Binance encodes decimals as strings; pydantic coerces them to Decimal. Unknown
fields are ignored so schema additions on the exchange side never break parsing.
"""
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .models import OrderResult, SymbolRules


class _Payload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class Ticker24h(_Payload):
    symbol: str
    last_price: Decimal = Field(default=Decimal("0"), alias="lastPrice")
    quote_volume: Decimal = Field(default=Decimal("0"), alias="quoteVolume")


class BookTicker(_Payload):
    symbol: str
    bid_price: Decimal = Field(default=Decimal("0"), alias="bidPrice")
    ask_price: Decimal = Field(default=Decimal("0"), alias="askPrice")

    @property
    def mid(self) -> Decimal:
        return (self.bid_price + self.ask_price) / 2

    @property
    def spread_bps(self) -> Decimal:
        """Spread in basis points of mid; zero when either side is empty."""
        if self.bid_price <= 0 or self.ask_price <= 0:
            return Decimal("0")
        return (self.ask_price - self.bid_price) / self.mid * Decimal("10000")


class PriceTicker(_Payload):
    symbol: str
    price: Decimal


class ServerTime(_Payload):
    server_time: int = Field(alias="serverTime")


class AssetBalance(_Payload):
    asset: str
    free: Decimal = Decimal("0")
    locked: Decimal = Decimal("0")

    @property
    def total(self) -> Decimal:
        return self.free + self.locked


class AccountInfo(_Payload):
    balances: List[AssetBalance] = Field(default_factory=list)

    def balance(self, asset: str) -> AssetBalance:
        for b in self.balances:
            if b.asset.upper() == asset.upper():
                return b
        return AssetBalance(asset=asset)


class OpenOrder(_Payload):
    symbol: str
    order_id: int = Field(alias="orderId")
    order_list_id: int = Field(default=-1, alias="orderListId")
    side: str = ""
    type: str = ""
    price: Decimal = Decimal("0")
    orig_qty: Decimal = Field(default=Decimal("0"), alias="origQty")
    executed_qty: Decimal = Field(default=Decimal("0"), alias="executedQty")
    time: int = 0

    @property
    def placed_at(self) -> datetime:
        return datetime.fromtimestamp(self.time / 1000, tz=timezone.utc)


class Fill(_Payload):
    price: Decimal = Decimal("0")
    qty: Decimal = Decimal("0")
    commission: Decimal = Decimal("0")
    commission_asset: str = Field(default="", alias="commissionAsset")


class OrderResponse(_Payload):
    symbol: str = ""
    order_id: int = Field(default=-1, alias="orderId")
    executed_qty: Decimal = Field(default=Decimal("0"), alias="executedQty")
    cummulative_quote_qty: Decimal = Field(default=Decimal("0"), alias="cummulativeQuoteQty")
    status: str = ""
    fills: List[Fill] = Field(default_factory=list)

    @property
    def avg_price(self) -> Decimal:
        """Quantity-weighted fill price, falling back to quote/base totals."""
        total_qty = sum((f.qty for f in self.fills), Decimal("0"))
        if total_qty > 0:
            return sum((f.qty * f.price for f in self.fills), Decimal("0")) / total_qty
        if self.executed_qty > 0:
            return self.cummulative_quote_qty / self.executed_qty
        return Decimal("0")

    def to_result(self) -> OrderResult:
        return OrderResult(
            order_id=str(self.order_id),
            symbol=self.symbol,
            executed_qty=self.executed_qty,
            avg_price=self.avg_price,
            status=self.status,
        )


class OcoResponse(_Payload):
    symbol: str = ""
    order_list_id: int = Field(default=-1, alias="orderListId")
    list_order_status: str = Field(default="", alias="listOrderStatus")

    def to_result(self) -> OrderResult:
        return OrderResult(
            order_id=str(self.order_list_id),
            symbol=self.symbol,
            status=self.list_order_status,
        )


class SymbolInfo(_Payload):
    symbol: str
    status: str = ""
    filters: List[dict] = Field(default_factory=list)

    def to_rules(self) -> SymbolRules:
        """Collapse LOT_SIZE, PRICE_FILTER and (MIN_)NOTIONAL into SymbolRules."""
        step = min_qty = tick = min_price = Decimal("0")
        min_notional = Decimal("0")
        for f in self.filters:
            kind = f.get("filterType")
            if kind == "LOT_SIZE":
                step = Decimal(str(f.get("stepSize", "0")))
                min_qty = Decimal(str(f.get("minQty", "0")))
            elif kind == "PRICE_FILTER":
                tick = Decimal(str(f.get("tickSize", "0")))
                min_price = Decimal(str(f.get("minPrice", "0")))
            elif kind in ("MIN_NOTIONAL", "NOTIONAL") and "minNotional" in f:
                min_notional = Decimal(str(f["minNotional"]))
        return SymbolRules(
            symbol=self.symbol,
            step_size=step,
            min_qty=min_qty,
            tick_size=tick,
            min_notional=min_notional,
            min_price=min_price,
        )


class ExchangeInfo(_Payload):
    symbols: List[SymbolInfo] = Field(default_factory=list)


class Kline(_Payload):
    """One candle; Binance sends these as positional arrays."""

    open_time: int
    close: Decimal
    close_time: int

    @classmethod
    def from_row(cls, row: List[Any]) -> "Kline":
        return cls(open_time=int(row[0]), close=Decimal(str(row[4])), close_time=int(row[6]))


def nearest_close(klines: List[Kline], target_ms: int) -> Optional[Decimal]:
    """Close of the candle whose close time is nearest target_ms, or None."""
    best: Optional[Decimal] = None
    best_dist: Optional[int] = None
    for k in klines:
        dist = abs(k.close_time - target_ms)
        if best_dist is None or dist < best_dist:
            best, best_dist = k.close, dist
    return best
