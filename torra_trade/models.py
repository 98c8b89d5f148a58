"""
Value types shared across the ranking, decision and execution layers.

Every price, quantity and notional is a Decimal. All types here are frozen:
a ranking row or decision is produced once per cycle and never mutated.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional


ZERO = Decimal("0")


@dataclass(frozen=True)
class SymbolQuote:
    """One symbol of the 24h ticker universe."""

    symbol: str
    last_price: Decimal
    quote_volume_24h: Decimal
    spread_bps: Decimal = ZERO


@dataclass(frozen=True)
class RankingRow:
    """A ranked symbol with its trailing return over the lookback window.

    Attributes:
        symbol: Exchange symbol id (e.g. "SOLUSDT")
        price_now: Latest price (zero when the per-symbol fetch failed)
        price_ago: Close nearest the lookback start, None when unavailable
        trailing_return: price_now / price_ago - 1, None when unavailable
        quote_volume_24h: 24h volume in the quote asset
    """

    symbol: str
    price_now: Decimal
    price_ago: Optional[Decimal]
    trailing_return: Optional[Decimal]
    quote_volume_24h: Decimal

    @property
    def has_return(self) -> bool:
        return self.trailing_return is not None


class DecisionKind(Enum):
    CANDIDATE_FOUND = "CandidateFound"
    COOLDOWN = "Cooldown"


@dataclass(frozen=True)
class Decision:
    """Verdict of one decision cycle.

    A CANDIDATE_FOUND decision carries symbol and trailing_return and no
    next_check; a COOLDOWN decision carries next_check only.
    """

    kind: DecisionKind
    time: datetime
    symbol: Optional[str] = None
    trailing_return: Optional[Decimal] = None
    next_check: Optional[datetime] = None
    note: str = ""

    def __post_init__(self):
        if self.kind is DecisionKind.CANDIDATE_FOUND:
            if self.symbol is None or self.trailing_return is None or self.next_check is not None:
                raise ValueError("CandidateFound requires symbol and return, and no next_check")
        else:
            if self.next_check is None or self.symbol is not None or self.trailing_return is not None:
                raise ValueError("Cooldown requires next_check, and no symbol or return")

    @property
    def is_candidate(self) -> bool:
        return self.kind is DecisionKind.CANDIDATE_FOUND


@dataclass(frozen=True)
class SymbolRules:
    """Exchange filters for one symbol.

    A zero step_size or tick_size means the quantity/price is unconstrained.
    """

    symbol: str
    step_size: Decimal
    min_qty: Decimal
    tick_size: Decimal
    min_notional: Decimal
    min_price: Decimal = ZERO

    def __post_init__(self):
        for name in ("step_size", "min_qty", "tick_size", "min_notional", "min_price"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be non-negative for {self.symbol}")


class OrderSide(Enum):
    BUY = "BUY"
    SELL = "SELL"


class OrderType(Enum):
    MARKET = "MARKET"
    OCO = "OCO"
    CANCEL = "CANCEL"


@dataclass(frozen=True)
class OrderIntent:
    """What the caller asked the exchange to do.

    Exactly one of quantity (base asset) or quote_amount is set for market
    orders; bracket orders also carry their three prices.
    """

    symbol: str
    side: OrderSide
    type: OrderType
    quantity: Optional[Decimal] = None
    quote_amount: Optional[Decimal] = None
    take_profit: Optional[Decimal] = None
    stop_price: Optional[Decimal] = None
    stop_limit_price: Optional[Decimal] = None


@dataclass(frozen=True)
class OrderResult:
    """Exchange acknowledgement of an order intent."""

    order_id: str
    symbol: str = ""
    executed_qty: Decimal = ZERO
    avg_price: Decimal = ZERO
    status: str = ""
    noop: bool = False


READ_ONLY_RESULT = OrderResult(order_id="READONLY", status="READ_ONLY", noop=True)


@dataclass(frozen=True)
class ActivePosition:
    """The single position the trader is currently holding."""

    symbol: str
    entry_price: Decimal
    quantity: Decimal
    entered_at: datetime
    exit_order_id: Optional[str] = None
