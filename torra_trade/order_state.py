"""
Trade cycle state machine for one entry attempt.

A cycle moves strictly forward through the states below; any other move is
a programming error and raises ValueError.

State Transitions:
    IDLE → SIZING → BUYING → AWAITING_SETTLE → SIZING_SELL → PLACING_EXIT → DONE
    any non-terminal state → FAILED

Examples:
    >>> cycle = TradeCycle("SOLUSDT")
    >>> cycle.advance(TradeState.SIZING)
    >>> cycle.advance(TradeState.DONE)
    Traceback (most recent call last):
    ...
    ValueError: Illegal transition SIZING -> DONE for SOLUSDT
"""

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum, auto
from typing import Dict, FrozenSet, List, Optional

from .models import ZERO


class TradeState(Enum):
    """Trade cycle states."""

    IDLE = auto()
    SIZING = auto()  # Reading rules, price and balance
    BUYING = auto()  # Market buy submitted
    AWAITING_SETTLE = auto()  # Waiting for the base balance to show up
    SIZING_SELL = auto()
    PLACING_EXIT = auto()  # Bracket order submitted
    DONE = auto()
    FAILED = auto()


class TradeOutcome(Enum):
    ENTERED = "entered"
    SKIPPED = "skipped"
    FAILED = "failed"
    UNMANAGED_EXPOSURE = "unmanaged_exposure"


UNMANAGED_PREFIX = "UNMANAGED EXPOSURE:"

_TERMINAL = frozenset({TradeState.DONE, TradeState.FAILED})

_ALLOWED: Dict[TradeState, FrozenSet[TradeState]] = {
    TradeState.IDLE: frozenset({TradeState.SIZING}),
    TradeState.SIZING: frozenset({TradeState.BUYING}),
    TradeState.BUYING: frozenset({TradeState.AWAITING_SETTLE}),
    TradeState.AWAITING_SETTLE: frozenset({TradeState.SIZING_SELL}),
    TradeState.SIZING_SELL: frozenset({TradeState.PLACING_EXIT}),
    TradeState.PLACING_EXIT: frozenset({TradeState.DONE}),
}


@dataclass
class CycleResult:
    """Final report of a trade cycle.

    Attributes:
        outcome: ENTERED, SKIPPED, FAILED or UNMANAGED_EXPOSURE
        state: State the cycle stopped in
        symbol: Symbol the cycle traded
        note: Human-readable summary
        buy_order_id: Exchange id of the market buy, if one was placed
        exit_order_id: Exchange order-list id of the bracket, if placed
        quantity: Base quantity bought (observed balance once settled)
        entry_price: Average fill price, or mid when unknown
        dust: Base quantity that could not be sold
        warnings: Non-fatal issues met along the way
        error: The exception that ended the cycle, if any
    """

    outcome: TradeOutcome
    state: TradeState
    symbol: str
    note: str
    buy_order_id: Optional[str] = None
    exit_order_id: Optional[str] = None
    quantity: Decimal = ZERO
    entry_price: Decimal = ZERO
    take_profit: Optional[Decimal] = None
    stop_loss: Optional[Decimal] = None
    stop_limit: Optional[Decimal] = None
    dust: Decimal = ZERO
    warnings: List[str] = field(default_factory=list)
    error: Optional[Exception] = None

    @property
    def entered(self) -> bool:
        return self.outcome is TradeOutcome.ENTERED

    @property
    def unmanaged(self) -> bool:
        return self.outcome is TradeOutcome.UNMANAGED_EXPOSURE


class TradeCycle:
    """State container for one enter() call.

    Callers drive it with advance(); the finishing helpers build the
    CycleResult and move to DONE or FAILED.
    """

    def __init__(self, symbol: str) -> None:
        self.symbol = symbol
        self.state = TradeState.IDLE
        self.history: List[TradeState] = [TradeState.IDLE]
        self.warnings: List[str] = []

    @property
    def finished(self) -> bool:
        return self.state in _TERMINAL

    def advance(self, new_state: TradeState) -> None:
        if new_state is TradeState.FAILED and not self.finished:
            allowed = True
        else:
            allowed = new_state in _ALLOWED.get(self.state, frozenset())
        if not allowed:
            raise ValueError(
                f"Illegal transition {self.state.name} -> {new_state.name} for {self.symbol}"
            )
        self.state = new_state
        self.history.append(new_state)

    def warn(self, message: str) -> None:
        self.warnings.append(message)

    def _result(self, outcome: TradeOutcome, note: str, **details) -> CycleResult:
        return CycleResult(
            outcome=outcome,
            state=self.state,
            symbol=self.symbol,
            note=note,
            warnings=list(self.warnings),
            **details,
        )

    def skip(self, note: str, **details) -> CycleResult:
        """End the cycle without trading; nothing was bought."""
        self.advance(TradeState.FAILED)
        return self._result(TradeOutcome.SKIPPED, note, **details)

    def fail(self, note: str, **details) -> CycleResult:
        """End the cycle with an error before any buy filled."""
        self.advance(TradeState.FAILED)
        return self._result(TradeOutcome.FAILED, note, **details)

    def fail_unmanaged(self, note: str, **details) -> CycleResult:
        """End the cycle with a filled buy and no protecting exit order."""
        self.advance(TradeState.FAILED)
        if not note.startswith(UNMANAGED_PREFIX):
            note = f"{UNMANAGED_PREFIX} {note}"
        return self._result(TradeOutcome.UNMANAGED_EXPOSURE, note, **details)

    def complete(self, note: str, **details) -> CycleResult:
        self.advance(TradeState.DONE)
        return self._result(TradeOutcome.ENTERED, note, **details)
