"""Exception hierarchy for exchange calls and trade cycles.

Retry policy by class:
    NetworkError            transient; caller may retry the whole operation
    ClockDriftError         retried once inside the client, then fatal
    RateLimitedError        caller backs off; never retried internally
    MalformedRequestError   fatal; carries a hint for known filter failures
    FilterViolationError    fatal; a sizing bug, never corrected silently
    InsufficientFundsError  fatal for the current cycle only
    PartialExecutionError   fatal and flagged: a position is open without an exit
"""
from typing import Optional


class ExchangeError(Exception):
    """Base class for every error raised by the exchange layer."""

    def __init__(
        self,
        message: str,
        *,
        status: Optional[int] = None,
        code: Optional[int] = None,
        body: Optional[str] = None,
    ):
        super().__init__(message)
        self.status = status
        self.code = code
        self.body = body


class NetworkError(ExchangeError):
    """Transport failure or timeout before a response was received."""


class ClockDriftError(ExchangeError):
    """Request timestamp fell outside the exchange's receive window."""


class RateLimitedError(ExchangeError):
    """The exchange (or the local quota) refused the request for rate reasons."""

    def __init__(self, message: str, *, retry_after: Optional[float] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class MalformedRequestError(ExchangeError):
    """The exchange rejected the request parameters."""

    def __init__(self, message: str, *, hint: str = "", **kwargs):
        super().__init__(message, **kwargs)
        self.hint = hint


class FilterViolationError(MalformedRequestError):
    """Order quantity, price or notional breaks a symbol filter."""


class InsufficientFundsError(ExchangeError):
    """Account balance cannot cover the order."""


class ExchangeRequestError(ExchangeError):
    """Any other non-success response, surfaced verbatim."""


class CredentialsError(ExchangeError):
    """A signed endpoint was called without API key/secret."""


class PartialExecutionError(Exception):
    """A buy filled but no exit order protects the resulting position."""

    def __init__(self, message: str, *, symbol: str, quantity):
        super().__init__(message)
        self.symbol = symbol
        self.quantity = quantity
