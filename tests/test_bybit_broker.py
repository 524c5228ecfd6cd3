import hashlib
import hmac
import json

import pytest
import requests

from broker.bybit import BybitBroker, _fmt_number
from shared.errors import ExternalServiceError

NOW_S = 1_700_000_100.0


class FakeResponse:
    def __init__(self, payload, status=200):
        self.payload = payload
        self.status = status

    def raise_for_status(self):
        if self.status >= 400:
            raise requests.HTTPError(f"{self.status} error")

    def json(self):
        if isinstance(self.payload, Exception):
            raise self.payload
        return self.payload


class FakeSession:
    """按 path 返回预置响应，记录每次请求。"""

    def __init__(self, routes):
        self.routes = routes
        self.calls = []

    def request(self, method, url, params=None, data=None, headers=None, timeout=None):
        self.calls.append({"method": method, "url": url, "params": params, "data": data, "headers": headers})
        path = url.split("bybit.test", 1)[1]
        route = self.routes[path]
        if isinstance(route, Exception):
            raise route
        return route


def _ok(result):
    return FakeResponse({"retCode": 0, "retMsg": "OK", "result": result})


def _broker(routes, **kwargs):
    session = FakeSession(routes)
    params = dict(base_url="https://bybit.test", api_key="key", api_secret="secret", session=session)
    params.update(kwargs)
    return BybitBroker(clock=lambda: NOW_S, **params), session


def test_recent_candles_reversed_and_confirm_flag():
    start_now = int(NOW_S * 1000) // 60_000 * 60_000
    rows = [
        [str(start_now), "101", "102", "100", "101.5", "3", "300"],
        [str(start_now - 60_000), "100", "101", "99", "101", "2", "200"],
    ]
    broker, session = _broker({"/v5/market/kline": _ok({"list": rows})})
    candles = broker.get_recent_candles("BTCUSDT", "1", 2)
    assert [c.start for c in candles] == [start_now - 60_000, start_now]
    assert candles[0].confirm is True
    assert candles[1].confirm is False
    assert candles[1].turnover == 300.0
    assert session.calls[0]["params"]["limit"] == 2
    assert session.calls[0]["headers"] is None


def test_trade_limits_parsed_and_cached():
    info = {
        "list": [
            {
                "symbol": "BTCUSDT",
                "lotSizeFilter": {"minOrderQty": "0.001", "qtyStep": "0.001", "minNotionalValue": "5"},
                "priceFilter": {"tickSize": "0.10"},
            }
        ]
    }
    broker, session = _broker({"/v5/market/instruments-info": _ok(info)})
    limits = broker.get_trade_limits("linear", "BTCUSDT")
    assert limits.min_qty == 0.001
    assert limits.qty_step == 0.001
    assert limits.tick_size == 0.1
    assert limits.min_notional == 5.0
    assert broker.get_trade_limits("linear", "BTCUSDT") is limits
    assert len(session.calls) == 1


def test_unknown_instrument():
    broker, _ = _broker({"/v5/market/instruments-info": _ok({"list": []})})
    with pytest.raises(ExternalServiceError):
        broker.get_trade_limits("linear", "FOOUSDT")


def test_balance_request_is_signed():
    wallet = {"list": [{"coin": [{"coin": "BTC", "walletBalance": "1"}, {"coin": "USDT", "availableToWithdraw": "", "walletBalance": "250.5"}]}]}
    broker, session = _broker({"/v5/account/wallet-balance": _ok(wallet)})
    assert broker.get_available_balance("USDT") == 250.5

    call = session.calls[0]
    headers = call["headers"]
    ts = headers["X-BAPI-TIMESTAMP"]
    assert ts == str(int(NOW_S * 1000))
    payload = "accountType=UNIFIED&coin=USDT"
    expected = hmac.new(b"secret", f"{ts}key5000{payload}".encode(), hashlib.sha256).hexdigest()
    assert headers["X-BAPI-SIGN"] == expected
    assert headers["X-BAPI-API-KEY"] == "key"


def test_signed_call_without_credentials():
    broker, session = _broker({}, api_key="", api_secret="")
    with pytest.raises(ExternalServiceError):
        broker.has_open_orders("linear", "BTCUSDT")
    assert session.calls == []


def test_open_orders():
    broker, _ = _broker({"/v5/order/realtime": _ok({"list": [{"orderId": "1"}]})})
    assert broker.has_open_orders("linear", "BTCUSDT") is True


def test_place_order_requires_allow_live():
    broker, session = _broker({})
    with pytest.raises(ExternalServiceError):
        broker.place_limit_order("BTCUSDT", "Buy", 101.0, 0.01, 99.9, 103.1)
    assert session.calls == []


def test_place_order_body():
    broker, session = _broker({"/v5/order/create": _ok({"orderId": "abc-1", "orderLinkId": "vpa_x"})}, allow_live=True)
    order_id = broker.place_limit_order("BTCUSDT", "buy", 101.0, 0.01, 99.9, 103.1, client_order_id="vpa_x")
    assert order_id == "abc-1"
    body = json.loads(session.calls[0]["data"])
    assert body == {
        "category": "linear",
        "symbol": "BTCUSDT",
        "side": "Buy",
        "orderType": "Limit",
        "qty": "0.01",
        "price": "101",
        "timeInForce": "GTC",
        "tpslMode": "Full",
        "takeProfit": "103.1",
        "tpTriggerBy": "MarkPrice",
        "stopLoss": "99.9",
        "slTriggerBy": "MarkPrice",
        "slOrderType": "Market",
        "orderLinkId": "vpa_x",
    }


@pytest.mark.parametrize(
    "route",
    [
        FakeResponse({"retCode": 10001, "retMsg": "params error", "result": {}}),
        FakeResponse({}, status=502),
        FakeResponse(ValueError("not json")),
        requests.ConnectionError("connection refused"),
    ],
)
def test_failures_become_external_errors(route):
    broker, _ = _broker({"/v5/market/kline": route})
    with pytest.raises(ExternalServiceError):
        broker.get_recent_candles("BTCUSDT", "1", 5)


def test_fmt_number():
    assert _fmt_number(0.001) == "0.001"
    assert _fmt_number(27000.0) == "27000"
    assert _fmt_number(1e-7) == "0.0000001"
    assert _fmt_number(0) == "0"
