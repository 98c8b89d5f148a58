import json
from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import AsyncMock
from urllib.parse import parse_qsl, urlsplit

import aiohttp
import pytest

from torra_trade.binance_client import BinanceClient, canonical_query, classify_error, sign_query
from torra_trade.config import ExchangeConfig, Venue
from torra_trade.errors import (
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
from torra_trade.models import READ_ONLY_RESULT, OrderSide, OrderType


LOCAL_SECONDS = 1_700_000_000.0
SERVER_MS = 1_700_000_000_500

EXCHANGE_INFO = {
    "symbols": [
        {
            "symbol": "BTCUSDT",
            "status": "TRADING",
            "filters": [
                {"filterType": "PRICE_FILTER", "minPrice": "0.01", "tickSize": "0.01"},
                {"filterType": "LOT_SIZE", "minQty": "0.00001", "stepSize": "0.00001"},
                {"filterType": "NOTIONAL", "minNotional": "5.00"},
            ],
        }
    ]
}

ORDER_FILLED = {
    "symbol": "BTCUSDT",
    "orderId": 12,
    "executedQty": "0.00100",
    "cummulativeQuoteQty": "50.00",
    "status": "FILLED",
    "fills": [{"price": "50000.00", "qty": "0.00100", "commission": "0", "commissionAsset": "BTC"}],
}

DRIFT = (400, {}, json.dumps({"code": -1021, "msg": "Timestamp for this request is outside of the recvWindow."}))


def ok(payload):
    return 200, {}, json.dumps(payload)


class Router:
    """Scripted _send replacement: one response queue per path."""

    def __init__(self, responses):
        self.responses = {path: list(queue) for path, queue in responses.items()}
        self.calls = []

    async def __call__(self, method, url, headers):
        self.calls.append((method, url, headers))
        return self.responses[urlsplit(url).path].pop(0)

    def paths(self):
        return [urlsplit(url).path for _, url, _ in self.calls]


def make_client(router=None, **overrides):
    params = dict(api_key="key", api_secret="secret", read_only=False)
    params.update(overrides)
    client = BinanceClient(ExchangeConfig(**params), clock=lambda: LOCAL_SECONDS)
    if router is not None:
        client._send = router
    return client


def test_canonical_query_sorts_and_escapes():
    query = canonical_query({"symbol": "BTCUSDT", "side": "BUY", "quantity": Decimal("0.0100"), "note": "a b/c"})
    assert query == "note=a%20b%2Fc&quantity=0.01&side=BUY&symbol=BTCUSDT"


def test_sign_query_matches_reference_vector():
    secret = "NhqPtmdSJYdKjVHjA7PZj4Mge3R5YNiP1e3UZjInClVN65XAbvqqM6A7H5fATj0j"
    query = (
        "symbol=LTCBTC&side=BUY&type=LIMIT&timeInForce=GTC&quantity=1&price=0.1"
        "&recvWindow=5000&timestamp=1499827319559"
    )
    assert sign_query(secret, query) == "c8db56825ae71d6d79447849e617115f4a920fa2acdcab2b053c4b2838bd6b71"


def test_jittered_backoff_respects_max():
    backoff = BinanceClient._jittered_backoff(10, base=1.0, max_backoff=5.0)
    assert 0 <= backoff <= 5.0 + 5.0 * 0.25


@pytest.mark.asyncio
async def test_signed_request_syncs_clock_and_signs():
    router = Router({"/api/v3/time": [ok({"serverTime": SERVER_MS})], "/api/v3/account": [ok({"balances": []})]})
    client = make_client(router)

    await client.get_account()

    assert router.paths() == ["/api/v3/time", "/api/v3/account"]
    assert client.time_offset_ms == 500
    method, url, headers = router.calls[1]
    assert method == "GET"
    assert headers["X-MBX-APIKEY"] == "key"
    query = urlsplit(url).query
    unsigned, signature = query.rsplit("&signature=", 1)
    assert signature == sign_query("secret", unsigned)
    params = dict(parse_qsl(unsigned))
    assert params["timestamp"] == str(SERVER_MS)
    assert params["recvWindow"] == "5000"
    assert [k for k, _ in parse_qsl(unsigned)] == sorted(params)


@pytest.mark.asyncio
async def test_clock_drift_retries_exactly_once_then_succeeds():
    router = Router(
        {
            "/api/v3/exchangeInfo": [ok(EXCHANGE_INFO)],
            "/api/v3/time": [ok({"serverTime": SERVER_MS}), ok({"serverTime": SERVER_MS + 1500})],
            "/api/v3/order": [DRIFT, ok(ORDER_FILLED)],
        }
    )
    client = make_client(router)

    result = await client.market_buy_with_notional("BTCUSDT", Decimal("50"))

    assert router.paths().count("/api/v3/order") == 2
    assert router.paths().count("/api/v3/time") == 2
    assert client.time_offset_ms == 2000
    assert result.order_id == "12"
    assert result.executed_qty == Decimal("0.001")
    assert result.avg_price == Decimal("50000")


@pytest.mark.asyncio
async def test_second_clock_drift_is_fatal_without_third_attempt():
    router = Router(
        {
            "/api/v3/exchangeInfo": [ok(EXCHANGE_INFO)],
            "/api/v3/time": [ok({"serverTime": SERVER_MS}), ok({"serverTime": SERVER_MS})],
            "/api/v3/order": [DRIFT, DRIFT],
        }
    )
    client = make_client(router)

    with pytest.raises(ClockDriftError):
        await client.market_buy_with_notional("BTCUSDT", Decimal("50"))
    assert router.paths().count("/api/v3/order") == 2


@pytest.mark.asyncio
async def test_read_only_mode_makes_no_network_calls():
    send = AsyncMock()
    client = make_client(send, read_only=True)

    results = [
        await client.market_buy_with_notional("BTCUSDT", Decimal("50")),
        await client.market_buy("BTCUSDT", Decimal("0.001")),
        await client.market_sell("BTCUSDT", Decimal("0.001")),
        await client.place_bracket_order(
            "BTCUSDT", Decimal("0.001"), Decimal("51000"), Decimal("49000"), Decimal("48951")
        ),
        await client.cancel_open_orders("BTCUSDT"),
    ]

    assert all(r is READ_ONLY_RESULT for r in results)
    assert all(r.noop for r in results)
    send.assert_not_called()


@pytest.mark.asyncio
async def test_bracket_order_is_validated_before_submission():
    router = Router({"/api/v3/exchangeInfo": [ok(EXCHANGE_INFO)]})
    client = make_client(router)

    with pytest.raises(FilterViolationError):
        await client.place_bracket_order(
            "BTCUSDT", Decimal("0.000015"), Decimal("51000"), Decimal("49000"), Decimal("48951")
        )
    with pytest.raises(FilterViolationError):
        await client.place_bracket_order(
            "BTCUSDT", Decimal("0.001"), Decimal("51000.005"), Decimal("49000"), Decimal("48951")
        )
    with pytest.raises(FilterViolationError):
        await client.place_bracket_order(
            "BTCUSDT", Decimal("0.00001"), Decimal("51000"), Decimal("49000"), Decimal("48951")
        )
    assert router.paths() == ["/api/v3/exchangeInfo"]


@pytest.mark.asyncio
async def test_bracket_order_submits_oco_and_records_intent():
    router = Router(
        {
            "/api/v3/exchangeInfo": [ok(EXCHANGE_INFO)],
            "/api/v3/time": [ok({"serverTime": SERVER_MS})],
            "/api/v3/order/oco": [ok({"symbol": "BTCUSDT", "orderListId": 77, "listOrderStatus": "EXECUTING"})],
        }
    )
    client = make_client(router)

    result = await client.place_bracket_order(
        "btcusdt", Decimal("0.001"), Decimal("51000.00"), Decimal("49000.00"), Decimal("48951.00")
    )

    assert result.order_id == "77"
    method, url, _ = router.calls[-1]
    assert method == "POST"
    params = dict(parse_qsl(urlsplit(url).query))
    assert params["side"] == "SELL"
    assert params["price"] == "51000"
    assert params["stopPrice"] == "49000"
    assert params["stopLimitPrice"] == "48951"
    assert params["stopLimitTimeInForce"] == "GTC"
    assert client.last_intent.type is OrderType.OCO
    assert client.last_intent.side is OrderSide.SELL


@pytest.mark.asyncio
async def test_symbol_rules_are_cached():
    router = Router({"/api/v3/exchangeInfo": [ok(EXCHANGE_INFO)]})
    client = make_client(router)

    first = await client.get_symbol_rules("BTCUSDT")
    second = await client.get_symbol_rules("btcusdt")

    assert first is second
    assert first.step_size == Decimal("0.00001")
    assert first.min_notional == Decimal("5.00")
    assert first.min_price == Decimal("0.01")
    assert router.paths() == ["/api/v3/exchangeInfo"]


@pytest.mark.asyncio
async def test_missing_credentials_raise_before_network():
    send = AsyncMock()
    client = make_client(send, api_key=None, api_secret=None)
    with pytest.raises(CredentialsError):
        await client.get_account()
    send.assert_not_called()


@pytest.mark.asyncio
async def test_transport_errors_become_network_errors():
    client = make_client(AsyncMock(side_effect=aiohttp.ClientConnectionError("refused")))
    with pytest.raises(NetworkError):
        await client.get_last_price("BTCUSDT")


@pytest.mark.asyncio
async def test_request_without_session_raises():
    client = make_client()
    with pytest.raises(ExchangeError):
        await client.get_last_price("BTCUSDT")


@pytest.mark.asyncio
async def test_context_manager_initializes_session():
    client = make_client()
    assert client.session is None
    async with client:
        assert client.session is not None
    assert client.session is None


@pytest.mark.asyncio
async def test_price_at_picks_nearest_close():
    at = datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)
    target_ms = int(at.timestamp() * 1000)
    rows = [
        [target_ms - 120_000, "1", "1", "1", "10.0", "0", target_ms - 60_001],
        [target_ms - 60_000, "1", "1", "1", "11.0", "0", target_ms - 1],
        [target_ms, "1", "1", "1", "12.0", "0", target_ms + 59_999],
    ]
    router = Router({"/api/v3/klines": [ok(rows)]})
    client = make_client(router)

    assert await client.get_price_at("BTCUSDT", at) == Decimal("11.0")
    params = dict(parse_qsl(urlsplit(router.calls[0][1]).query))
    assert params["interval"] == "1m"
    assert int(params["startTime"]) == target_ms - 120_000
    assert int(params["endTime"]) == target_ms + 60_000


@pytest.mark.asyncio
async def test_price_at_without_candles_is_absent():
    client = make_client(Router({"/api/v3/klines": [ok([])]}))
    assert await client.get_price_at("BTCUSDT", datetime(2024, 5, 1, tzinfo=timezone.utc)) is None


@pytest.mark.asyncio
async def test_tradable_symbols_only_on_sandbox_and_cached():
    production = make_client(AsyncMock())
    assert await production.get_tradable_symbols() is None
    production._send.assert_not_called()

    info = {"symbols": [{"symbol": "BTCUSDT", "status": "TRADING"}, {"symbol": "OLDUSDT", "status": "BREAK"}]}
    router = Router({"/api/v3/exchangeInfo": [ok(info)]})
    sandbox = make_client(router, venue=Venue.SANDBOX)
    assert await sandbox.get_tradable_symbols() == {"BTCUSDT"}
    assert await sandbox.get_tradable_symbols() == {"BTCUSDT"}
    assert len(router.calls) == 1
    assert sandbox.base_url == "https://testnet.binance.vision"


@pytest.mark.asyncio
async def test_tradable_symbols_failure_returns_none():
    router = Router({"/api/v3/exchangeInfo": [(503, {}, "unavailable")]})
    sandbox = make_client(router, venue=Venue.SANDBOX)
    assert await sandbox.get_tradable_symbols() is None


def test_classify_rate_limit_carries_retry_after():
    err = classify_error(429, "/api/v3/order", '{"code":-1003,"msg":"Too many requests"}', {"Retry-After": "7"})
    assert isinstance(err, RateLimitedError)
    assert err.retry_after == 7.0
    assert isinstance(classify_error(418, "/api/v3/order", ""), RateLimitedError)


def test_classify_clock_drift_and_insufficient_funds():
    assert isinstance(classify_error(400, "/p", DRIFT[2]), ClockDriftError)
    funds = classify_error(400, "/p", '{"code":-2010,"msg":"Account has insufficient balance for requested action."}')
    assert isinstance(funds, InsufficientFundsError)
    assert funds.code == -2010


@pytest.mark.parametrize(
    "msg,hint",
    [
        ("Filter failure: NOTIONAL", "notional too small."),
        ("Filter failure: LOT_SIZE", "qty step invalid, round to StepSize."),
        ("Filter failure: PRICE_FILTER", "price step invalid, round to TickSize."),
        ("Precision is over the maximum defined for this asset.", "adjust decimals to filters."),
    ],
)
def test_classify_filter_failures(msg, hint):
    err = classify_error(400, "/api/v3/order", json.dumps({"code": -1013, "msg": msg}))
    assert isinstance(err, FilterViolationError)
    assert err.hint == hint
    assert str(err).startswith("Binance HTTP 400 at /api/v3/order | code=-1013")


def test_classify_other_bad_request_is_malformed():
    err = classify_error(400, "/p", '{"code":-1102,"msg":"Mandatory parameter \'symbol\' was not sent."}')
    assert type(err) is MalformedRequestError


@pytest.mark.parametrize(
    "body",
    [
        '{"code":-1102,"msg":"Mandatory parameter \'timestamp\' was not sent, was empty/null, or malformed."}',
        '{"code":-1100,"msg":"Illegal characters found in parameter \'timestamp\'."}',
    ],
)
def test_classify_bad_timestamp_parameter_is_not_drift(body):
    err = classify_error(400, "/api/v3/order", body)
    assert not isinstance(err, ClockDriftError)
    assert type(err) is MalformedRequestError


def test_classify_recv_window_message_without_code_is_drift():
    body = '{"msg":"Timestamp for this request is outside of the recvWindow."}'
    assert isinstance(classify_error(400, "/api/v3/order", body), ClockDriftError)


def test_classify_other_errors_truncate_body():
    err = classify_error(502, "/api/v3/ticker/24hr", "x" * 2000)
    assert isinstance(err, ExchangeRequestError)
    assert len(err.body) < 700
    assert "\nBody: " in str(err)
