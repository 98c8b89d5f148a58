"""
Order sizing and rounding against exchange symbol filters.

Pure functions, no I/O. Every function takes the SymbolRules it needs as an
explicit argument so the same inputs always give the same answer.

Rounding directions:
    - quantities always round DOWN to the step size. A rounded-up sell can
      exceed the real balance and a rounded-up buy can exceed the budget.
    - take-profit prices round UP to the tick (at least the target gain).
    - stop and stop-limit prices round DOWN to the tick (trigger no later
      than intended).

Sells are sized from the balance observed on the exchange after the buy
settled, never from the nominal buy quantity: fees and fill rounding can
leave the real balance below what was bought.

Examples:
    >>> from decimal import Decimal
    >>> floor_to_step(Decimal("1.2345"), Decimal("0.01"))
    Decimal('1.23')
    >>> ceil_to_tick(Decimal("100.001"), Decimal("0.01"))
    Decimal('100.01')
"""

from dataclasses import dataclass
from decimal import ROUND_CEILING, ROUND_DOWN, ROUND_FLOOR, Decimal
from typing import NamedTuple, Optional

from .models import SymbolRules, ZERO


STOP_LIMIT_MARGIN = Decimal("0.999")


@dataclass(frozen=True)
class SizeResult:
    """Outcome of a sizing call.

    Attributes:
        quantity: Exchange-legal quantity (zero when rejected)
        notional: quantity * price
        dust_remaining: Balance left behind that cannot be traded
        rejected: Reason string naming the failed constraint, None on success
    """

    quantity: Decimal
    notional: Decimal
    dust_remaining: Decimal = ZERO
    rejected: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.rejected is None

    @classmethod
    def reject(cls, reason: str, dust_remaining: Decimal = ZERO) -> "SizeResult":
        return cls(quantity=ZERO, notional=ZERO, dust_remaining=dust_remaining, rejected=reason)


class ExitPrices(NamedTuple):
    take_profit: Decimal
    stop_loss: Decimal
    stop_limit: Decimal


def floor_to_step(quantity: Decimal, step: Decimal) -> Decimal:
    """Round quantity down to a multiple of step; identity when step <= 0."""
    if step <= 0:
        return quantity
    return (quantity / step).to_integral_value(rounding=ROUND_FLOOR) * step


def floor_to_tick(price: Decimal, tick: Decimal) -> Decimal:
    """Round price down to a multiple of tick; identity when tick <= 0."""
    if tick <= 0:
        return price
    return (price / tick).to_integral_value(rounding=ROUND_FLOOR) * tick


def ceil_to_tick(price: Decimal, tick: Decimal) -> Decimal:
    """Round price up to a multiple of tick; identity when tick <= 0."""
    if tick <= 0:
        return price
    return (price / tick).to_integral_value(rounding=ROUND_CEILING) * tick


def floor_quote(amount: Decimal, decimals: int = 2) -> Decimal:
    """Truncate a quote-currency amount to a fixed number of decimals."""
    return amount.quantize(Decimal(1).scaleb(-decimals), rounding=ROUND_DOWN)


def _notional_check(quantity: Decimal, price: Decimal, rules: SymbolRules) -> Optional[str]:
    notional = quantity * price
    if notional < rules.min_notional:
        return (
            f"minNotional: notional {notional} is below minimum {rules.min_notional} "
            f"(short by {rules.min_notional - notional})"
        )
    return None


def size_buy(raw_quantity: Decimal, price: Decimal, rules: SymbolRules) -> SizeResult:
    """Turn an ideal buy quantity into an exchange-legal one.

    Args:
        raw_quantity: Desired base-asset quantity before rounding
        price: Expected execution price, used for the notional check
        rules: Filters of the symbol being bought

    Returns:
        SizeResult with the floored quantity, or a rejection naming the
        constraint (minQty / minNotional) and the shortfall.
    """
    qty = floor_to_step(raw_quantity, rules.step_size)
    if qty <= 0 or qty < rules.min_qty:
        return SizeResult.reject(
            f"minQty: quantity {qty} is below minimum {rules.min_qty} "
            f"(short by {rules.min_qty - qty}; raw {raw_quantity}, step {rules.step_size})"
        )
    problem = _notional_check(qty, price, rules)
    if problem:
        return SizeResult.reject(problem)
    return SizeResult(quantity=qty, notional=qty * price)


def size_sell_entire_balance(actual_balance: Decimal, price: Decimal, rules: SymbolRules) -> SizeResult:
    """Size a sell of everything that can legally be sold from a balance.

    The balance must be the free amount freshly read from the exchange. The
    returned quantity never exceeds it; the remainder is reported as dust.
    A rejection reports the whole balance as dust since nothing can be sold.
    """
    qty = floor_to_step(actual_balance, rules.step_size)
    if qty <= 0:
        return SizeResult.reject(
            f"stepSize: balance {actual_balance} rounds to zero with step {rules.step_size}",
            dust_remaining=max(actual_balance, ZERO),
        )
    if qty < rules.min_qty:
        return SizeResult.reject(
            f"minQty: sellable quantity {qty} is below minimum {rules.min_qty} "
            f"(short by {rules.min_qty - qty})",
            dust_remaining=actual_balance,
        )
    problem = _notional_check(qty, price, rules)
    if problem:
        return SizeResult.reject(problem, dust_remaining=actual_balance)
    return SizeResult(quantity=qty, notional=qty * price, dust_remaining=actual_balance - qty)


def exit_prices(
    entry_price: Decimal,
    take_profit_pct: Decimal,
    stop_loss_pct: Decimal,
    rules: SymbolRules,
) -> ExitPrices:
    """Compute tick-legal bracket prices around an entry.

    take_profit = ceil(entry * (1 + tp))
    stop_loss   = floor(entry * (1 - sl))
    stop_limit  = floor(stop_loss * 0.999), raised to min_price if below it

    The stop-limit sits slightly under the trigger so the limit leg stays
    reachable in a fast market; that improves but does not guarantee a fill.

    Example:
        >>> rules = SymbolRules("XUSDT", Decimal("0.001"), Decimal("0"), Decimal("0.01"), Decimal("5"))
        >>> exit_prices(Decimal("100"), Decimal("0.02"), Decimal("0.02"), rules)
        ExitPrices(take_profit=Decimal('102.00'), stop_loss=Decimal('98.00'), stop_limit=Decimal('97.90'))
    """
    tick = rules.tick_size
    take_profit = ceil_to_tick(entry_price * (1 + take_profit_pct), tick)
    stop_loss = floor_to_tick(entry_price * (1 - stop_loss_pct), tick)
    stop_limit = floor_to_tick(stop_loss * STOP_LIMIT_MARGIN, tick)
    if stop_limit < rules.min_price:
        stop_limit = rules.min_price
    return ExitPrices(take_profit, stop_loss, stop_limit)
