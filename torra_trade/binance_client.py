import asyncio
import functools
import hashlib
import hmac
import json
import random
import time
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, List, Mapping, Optional, Set, Tuple
from urllib.parse import quote

import aiohttp
from pydantic import ValidationError

from .config import ExchangeConfig
from .errors import (
    ClockDriftError,
    CredentialsError,
    ExchangeError,
    ExchangeRequestError,
    FilterViolationError,
    InsufficientFundsError,
    MalformedRequestError,
    NetworkError,
    RateLimitedError,
)
from .execution import TradingVenue
from .logging_setup import logger
from .models import READ_ONLY_RESULT, OrderIntent, OrderResult, OrderSide, OrderType, SymbolRules
from .rate_limit_policy import RateLimitManager
from .schemas import (
    AccountInfo,
    AssetBalance,
    BookTicker,
    ExchangeInfo,
    Kline,
    OcoResponse,
    OpenOrder,
    OrderResponse,
    PriceTicker,
    ServerTime,
    Ticker24h,
    nearest_close,
)
from .symbol_rules import SymbolRulesCache


BODY_PREVIEW_CHARS = 600
TRADABLES_TTL_SECONDS = 15 * 60

_FILTER_HINTS = (
    (("notional",), "notional too small."),
    (("lot_size", "step"), "qty step invalid, round to StepSize."),
    (("price_filter", "tick"), "price step invalid, round to TickSize."),
    (("precision",), "adjust decimals to filters."),
)


def canonical_query(params: Mapping[str, Any]) -> str:
    """Keys sorted ordinally, each key and value URL-escaped, joined with '&'."""
    return "&".join(
        f"{quote(str(k), safe='')}={quote(_param(v), safe='')}" for k, v in sorted(params.items())
    )


def sign_query(secret: str, query: str) -> str:
    """Hex HMAC-SHA256 of query under secret."""
    return hmac.new(secret.encode("utf-8"), query.encode("utf-8"), hashlib.sha256).hexdigest()


def _param(value: Any) -> str:
    if isinstance(value, Decimal):
        return format(value.normalize(), "f")
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _parse_error_body(body: str) -> Tuple[Optional[int], Optional[str]]:
    try:
        data = json.loads(body)
    except (ValueError, TypeError):
        return None, None
    if not isinstance(data, dict):
        return None, None
    code = data.get("code")
    msg = data.get("msg")
    return (code if isinstance(code, int) else None), (msg if isinstance(msg, str) else None)


def _retry_after(headers: Optional[Mapping[str, str]]) -> Optional[float]:
    if not headers:
        return None
    for key, value in headers.items():
        if key.lower() == "retry-after":
            try:
                return float(value)
            except (ValueError, TypeError):
                return None
    return None


def classify_error(
    status: int, path: str, body: str, headers: Optional[Mapping[str, str]] = None
) -> ExchangeError:
    """Map a non-2xx Binance response to the matching exception.

    Args:
        status: HTTP status code
        path: Request path, for the message
        body: Raw response body
        headers: Response headers (Retry-After is read on 418/429)

    Returns:
        The exception to raise; never raises itself
    """
    code, msg = _parse_error_body(body)
    lowered = (msg or "").lower()
    base = f"Binance HTTP {status} at {path}"
    if code is not None:
        base += f" | code={code}"
    if msg:
        base += f" | msg={msg}"
    preview = body if len(body) <= BODY_PREVIEW_CHARS else body[:BODY_PREVIEW_CHARS] + " ..."
    kwargs = dict(status=status, code=code, body=preview)

    if status in (418, 429):
        return RateLimitedError(
            f"{base}. Hint: rate limited, slow down.", retry_after=_retry_after(headers), **kwargs
        )
    if code == -1021 or "outside of the recvwindow" in lowered:
        return ClockDriftError(f"{base}.", **kwargs)
    if code == -2010 or "insufficient balance" in lowered:
        return InsufficientFundsError(f"{base}.", **kwargs)
    if status == 400:
        for needles, hint in _FILTER_HINTS:
            if any(n in lowered for n in needles):
                return FilterViolationError(f"{base}. Hint: {hint}", hint=hint, **kwargs)
        return MalformedRequestError(f"{base}.", **kwargs)
    return ExchangeRequestError(f"{base}.\nBody: {preview}", **kwargs)


def mutating(func):
    """Short-circuit an order-placing method to READ_ONLY_RESULT in read-only mode."""

    @functools.wraps(func)
    async def wrapper(self, *args, **kwargs):
        if self.read_only:
            logger.info(f"Read-only mode | skipped {func.__name__} args={args} kwargs={kwargs}")
            return READ_ONLY_RESULT
        return await func(self, *args, **kwargs)

    return wrapper


def _is_multiple(value: Decimal, step: Decimal) -> bool:
    return step <= 0 or value % step == 0


class BinanceClient(TradingVenue):
    """Async Binance spot REST client using aiohttp.

    Features:
    - Deterministic HMAC-SHA256 request signing (X-MBX-APIKEY header).
    - Server clock offset kept per instance; one re-sync and retry on drift.
    - Per-endpoint client-side pacing before every request.
    - Local filter validation before any order is sent.
    - Read-only mode: order methods return READ_ONLY_RESULT without I/O.

    Usage:
        async with BinanceClient(config) as client:
            tickers = await client.get_24h_tickers()
    """

    def __init__(
        self,
        config: ExchangeConfig,
        *,
        rate_limiter: Optional[RateLimitManager] = None,
        clock: Callable[[], float] = time.time,
        monotonic: Callable[[], float] = time.monotonic,
        max_rate_limit_wait: float = 10.0,
    ):
        self.api_key = config.api_key
        self.api_secret = config.api_secret
        self.base_url = config.resolved_base_url
        self.is_sandbox = config.is_sandbox
        self.read_only = config.read_only
        self.timeout = config.timeout
        self.recv_window_ms = config.recv_window_ms
        self.max_backoff_seconds = config.max_backoff_seconds
        self._quote_asset = config.quote_asset.upper()
        self.rate_limiter = rate_limiter or RateLimitManager(clock=monotonic)
        self.max_rate_limit_wait = max_rate_limit_wait
        self._clock = clock
        self._monotonic = monotonic
        self._time_offset_ms: Optional[int] = None
        self.rules = SymbolRulesCache(self.fetch_symbol_rules, config.rules_ttl_seconds, clock=monotonic)
        self.last_intent: Optional[OrderIntent] = None
        self._tradables: Optional[Set[str]] = None
        self._tradables_expires_at = 0.0
        self._tradables_warned = False
        self.session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self):
        self.session = aiohttp.ClientSession()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self.session:
            await self.session.close()
            self.session = None

    @property
    def quote_asset(self) -> str:
        return self._quote_asset

    @property
    def time_offset_ms(self) -> Optional[int]:
        return self._time_offset_ms

    @staticmethod
    def _jittered_backoff(attempt: int, base: float = 1.0, max_backoff: float = 60.0) -> float:
        """Compute jittered exponential backoff."""
        delay = base * (2 ** attempt)
        delay = min(delay, max_backoff)
        jitter = delay * 0.25 * (2 * random.random() - 1)
        return max(0, delay + jitter)

    # ----- transport -----

    async def _send(self, method: str, url: str, headers: Dict[str, str]) -> Tuple[int, Dict[str, str], str]:
        """Perform one HTTP exchange; returns (status, headers, body)."""
        if not self.session:
            raise ExchangeError("Session not initialized; use 'async with' context manager")
        async with self.session.request(
            method, url, headers=headers, timeout=aiohttp.ClientTimeout(total=self.timeout)
        ) as resp:
            text = await resp.text()
            return resp.status, dict(resp.headers), text

    def _timestamp_ms(self) -> int:
        return int(self._clock() * 1000) + (self._time_offset_ms or 0)

    def _require_credentials(self) -> None:
        if not self.api_key or not self.api_secret:
            raise CredentialsError("Signed endpoint requires api_key/api_secret")

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        *,
        signed: bool = False,
    ) -> Any:
        """Execute one request; raises the classified ExchangeError on failure."""
        if not await self.rate_limiter.wait_if_needed(path, max_wait=self.max_rate_limit_wait):
            raise RateLimitedError(f"Local request quota for {path} exhausted")

        params = dict(params or {})
        headers: Dict[str, str] = {}
        if signed:
            params["recvWindow"] = self.recv_window_ms
            params["timestamp"] = self._timestamp_ms()
            query = canonical_query(params)
            query = f"{query}&signature={sign_query(self.api_secret, query)}"
            headers["X-MBX-APIKEY"] = self.api_key
        else:
            query = canonical_query(params)
        url = f"{self.base_url}{path}" + (f"?{query}" if query else "")

        try:
            status, resp_headers, text = await self._send(method, url, headers)
        except asyncio.TimeoutError as e:
            raise NetworkError(f"Request timeout at {path}: {e}") from e
        except aiohttp.ClientError as e:
            raise NetworkError(f"Request failed at {path}: {e}") from e

        if not (200 <= status < 300):
            raise classify_error(status, path, text, resp_headers)
        if text:
            return json.loads(text)
        return None

    async def _public(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        return await self._request("GET", path, params)

    async def _signed(self, method: str, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """Signed request with exactly one re-sync and retry on clock drift."""
        self._require_credentials()
        if self._time_offset_ms is None:
            await self.sync_time()
        try:
            return await self._request(method, path, params, signed=True)
        except ClockDriftError as e:
            logger.warning(f"Clock drift detected | path={path} offset_ms={self._time_offset_ms} error={e}")
            await self.sync_time()
            return await self._request(method, path, params, signed=True)

    async def sync_time(self) -> int:
        """Set offset = server time - local time; returns the new offset in ms."""
        data = await self._public("/api/v3/time")
        server_ms = ServerTime.model_validate(data).server_time
        self._time_offset_ms = server_ms - int(self._clock() * 1000)
        logger.debug(f"Server time synced | offset_ms={self._time_offset_ms}")
        return self._time_offset_ms

    # ----- market data -----

    async def get_24h_tickers(self) -> List[Ticker24h]:
        data = await self._public("/api/v3/ticker/24hr")
        return [Ticker24h.model_validate(t) for t in data or []]

    async def get_book_tickers(self) -> List[BookTicker]:
        data = await self._public("/api/v3/ticker/bookTicker")
        return [BookTicker.model_validate(b) for b in data or []]

    async def get_tradable_symbols(self) -> Optional[Set[str]]:
        """Symbols with status TRADING on the sandbox, cached 15 minutes.

        Production lists symbols the sandbox cannot trade, so the allow-list
        only applies there. A failed fetch returns None and ranking proceeds
        unfiltered.
        """
        if not self.is_sandbox:
            return None
        if self._tradables is not None and self._monotonic() < self._tradables_expires_at:
            return self._tradables
        try:
            data = await asyncio.wait_for(self._public("/api/v3/exchangeInfo"), timeout=10)
            info = ExchangeInfo.model_validate(data)
        except (ExchangeError, asyncio.TimeoutError, ValidationError) as e:
            if not self._tradables_warned:
                self._tradables_warned = True
                logger.warning(f"Tradable symbol list unavailable; ranking unfiltered | error={e}")
            return None
        self._tradables = {s.symbol.upper() for s in info.symbols if s.status.upper() == "TRADING"}
        self._tradables_expires_at = self._monotonic() + TRADABLES_TTL_SECONDS
        return self._tradables

    async def get_last_price(self, symbol: str) -> Decimal:
        data = await self._public("/api/v3/ticker/price", {"symbol": symbol.upper()})
        return PriceTicker.model_validate(data).price

    async def get_klines(self, symbol: str, start_ms: int, end_ms: int, interval: str = "1m") -> List[Kline]:
        data = await self._public(
            "/api/v3/klines",
            {"symbol": symbol.upper(), "interval": interval, "startTime": start_ms, "endTime": end_ms},
        )
        return [Kline.from_row(row) for row in data or []]

    async def get_price_at(self, symbol: str, at: datetime) -> Optional[Decimal]:
        target_ms = int(at.timestamp() * 1000)
        start_ms = int((at - timedelta(minutes=2)).timestamp() * 1000)
        end_ms = int((at + timedelta(minutes=1)).timestamp() * 1000)
        klines = await self.get_klines(symbol, start_ms, end_ms)
        return nearest_close(klines, target_ms)

    async def get_top_of_book(self, symbol: str) -> BookTicker:
        data = await self._public("/api/v3/ticker/bookTicker", {"symbol": symbol.upper()})
        return BookTicker.model_validate(data)

    async def fetch_symbol_rules(self, symbol: str) -> SymbolRules:
        """Read LOT_SIZE / PRICE_FILTER / NOTIONAL filters from exchangeInfo."""
        data = await self._public("/api/v3/exchangeInfo", {"symbol": symbol.upper()})
        info = ExchangeInfo.model_validate(data)
        if not info.symbols:
            raise MalformedRequestError(f"exchangeInfo has no entry for {symbol}")
        return info.symbols[0].to_rules()

    async def get_symbol_rules(self, symbol: str) -> SymbolRules:
        return await self.rules.get(symbol)

    def invalidate_symbol_rules(self, symbol: str) -> None:
        self.rules.invalidate(symbol)

    # ----- account -----

    async def get_account(self) -> AccountInfo:
        data = await self._signed("GET", "/api/v3/account")
        return AccountInfo.model_validate(data)

    async def get_balance(self, asset: str) -> AssetBalance:
        return (await self.get_account()).balance(asset)

    async def get_open_orders(self, symbol: Optional[str] = None) -> List[OpenOrder]:
        params = {"symbol": symbol.upper()} if symbol else None
        data = await self._signed("GET", "/api/v3/openOrders", params)
        return [OpenOrder.model_validate(o) for o in data or []]

    # ----- orders -----

    def _check_quantity(self, rules: SymbolRules, quantity: Decimal) -> None:
        if quantity <= 0 or not _is_multiple(quantity, rules.step_size):
            raise FilterViolationError(
                f"LOT_SIZE: quantity {quantity} is not a positive multiple of step {rules.step_size} "
                f"for {rules.symbol}",
                hint="round quantity down to stepSize",
            )
        if quantity < rules.min_qty:
            raise FilterViolationError(
                f"LOT_SIZE: quantity {quantity} is below minQty {rules.min_qty} for {rules.symbol}",
                hint="quantity below minQty",
            )

    def _check_price(self, rules: SymbolRules, name: str, price: Decimal) -> None:
        if price <= 0 or not _is_multiple(price, rules.tick_size) or price < rules.min_price:
            raise FilterViolationError(
                f"PRICE_FILTER: {name} {price} is not a valid multiple of tick {rules.tick_size} "
                f"(minPrice {rules.min_price}) for {rules.symbol}",
                hint="round price to tickSize",
            )

    def _check_notional(self, rules: SymbolRules, notional: Decimal) -> None:
        if notional < rules.min_notional:
            raise FilterViolationError(
                f"NOTIONAL: {notional} is below minNotional {rules.min_notional} for {rules.symbol}",
                hint="notional too small",
            )

    async def _place_market(self, intent: OrderIntent, params: Dict[str, Any]) -> OrderResult:
        self.last_intent = intent
        data = await self._signed("POST", "/api/v3/order", params)
        result = OrderResponse.model_validate(data).to_result()
        logger.info(
            f"Market order placed | symbol={intent.symbol} side={intent.side.value} "
            f"order_id={result.order_id} executed_qty={result.executed_qty} avg_price={result.avg_price}"
        )
        return result

    @mutating
    async def market_buy_with_notional(self, symbol: str, quote_amount: Decimal) -> OrderResult:
        symbol = symbol.upper()
        rules = await self.get_symbol_rules(symbol)
        self._check_notional(rules, quote_amount)
        intent = OrderIntent(symbol, OrderSide.BUY, OrderType.MARKET, quote_amount=quote_amount)
        return await self._place_market(
            intent, {"symbol": symbol, "side": "BUY", "type": "MARKET", "quoteOrderQty": quote_amount}
        )

    @mutating
    async def market_buy(self, symbol: str, quantity: Decimal) -> OrderResult:
        symbol = symbol.upper()
        rules = await self.get_symbol_rules(symbol)
        self._check_quantity(rules, quantity)
        intent = OrderIntent(symbol, OrderSide.BUY, OrderType.MARKET, quantity=quantity)
        return await self._place_market(
            intent, {"symbol": symbol, "side": "BUY", "type": "MARKET", "quantity": quantity}
        )

    @mutating
    async def market_sell(self, symbol: str, quantity: Decimal) -> OrderResult:
        symbol = symbol.upper()
        rules = await self.get_symbol_rules(symbol)
        self._check_quantity(rules, quantity)
        intent = OrderIntent(symbol, OrderSide.SELL, OrderType.MARKET, quantity=quantity)
        return await self._place_market(
            intent, {"symbol": symbol, "side": "SELL", "type": "MARKET", "quantity": quantity}
        )

    @mutating
    async def place_bracket_order(
        self,
        symbol: str,
        quantity: Decimal,
        take_profit: Decimal,
        stop_price: Decimal,
        stop_limit_price: Decimal,
    ) -> OrderResult:
        symbol = symbol.upper()
        rules = await self.get_symbol_rules(symbol)
        self._check_quantity(rules, quantity)
        self._check_price(rules, "take_profit", take_profit)
        self._check_price(rules, "stop_price", stop_price)
        self._check_price(rules, "stop_limit_price", stop_limit_price)
        # the stop leg is the smaller of the two
        self._check_notional(rules, quantity * stop_limit_price)

        self.last_intent = OrderIntent(
            symbol,
            OrderSide.SELL,
            OrderType.OCO,
            quantity=quantity,
            take_profit=take_profit,
            stop_price=stop_price,
            stop_limit_price=stop_limit_price,
        )
        data = await self._signed(
            "POST",
            "/api/v3/order/oco",
            {
                "symbol": symbol,
                "side": "SELL",
                "quantity": quantity,
                "price": take_profit,
                "stopPrice": stop_price,
                "stopLimitPrice": stop_limit_price,
                "stopLimitTimeInForce": "GTC",
            },
        )
        result = OcoResponse.model_validate(data).to_result()
        logger.info(
            f"OCO placed | symbol={symbol} order_list_id={result.order_id} qty={quantity} "
            f"tp={take_profit} stop={stop_price} stop_limit={stop_limit_price}"
        )
        return result

    @mutating
    async def cancel_open_orders(self, symbol: str) -> OrderResult:
        symbol = symbol.upper()
        self.last_intent = OrderIntent(symbol, OrderSide.SELL, OrderType.CANCEL)
        data = await self._signed("DELETE", "/api/v3/openOrders", {"symbol": symbol})
        cancelled = len(data) if isinstance(data, list) else 0
        logger.info(f"Open orders cancelled | symbol={symbol} count={cancelled}")
        return OrderResult(order_id=f"CANCEL-{symbol}", symbol=symbol, status="CANCELED")
