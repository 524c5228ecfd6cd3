"""Bybit v5 REST broker（线性合约 / 现货）。

说明：
- 行情与交易对信息走公共接口，余额/挂单/下单走 HMAC 签名接口；
- 只有 `allow_live=True` 时才会真实下单；
- 任何网络错误、HTTP 错误或 `retCode != 0` 都转成 `ExternalServiceError`。
"""

from __future__ import annotations

import hashlib
import hmac
import json
import threading
import time
from typing import Any, Callable
from urllib.parse import urlencode

import requests

from broker.abstract_broker import Broker, BrokerMode
from market_data.state import interval_to_ms
from shared.errors import ExternalServiceError
from shared.models.models import Candle, TradeLimits
from shared.utils.logging import setup_logger

_LIMITS_TTL_S = 2 * 60 * 60


def _fmt_number(value: float) -> str:
    """下单参数用的十进制字符串（不带科学计数法与尾随 0）。"""
    text = f"{float(value):.10f}".rstrip("0").rstrip(".")
    return text or "0"


class BybitBroker(Broker):
    """对接 Bybit v5 的 broker。

    Parameters
    ----------
    base_url:
        REST 根地址（主网 `https://api.bybit.com`，测试网 `https://api-testnet.bybit.com`）。
    api_key, api_secret:
        API 凭证；只访问公共接口时可为空。
    allow_live:
        是否允许真实下单。
    recv_window:
        签名请求的 recv_window（毫秒）。
    timeout_s:
        单次请求超时（秒）。
    """

    mode = BrokerMode.LIVE

    def __init__(
        self,
        *,
        base_url: str = "https://api.bybit.com",
        api_key: str | None = None,
        api_secret: str | None = None,
        allow_live: bool = False,
        recv_window: int = 5000,
        timeout_s: float = 5.0,
        account_type: str = "UNIFIED",
        session: requests.Session | None = None,
        clock: Callable[[], float] = time.time,
        logger=None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key or ""
        self.api_secret = (api_secret or "").encode()
        self.allow_live = bool(allow_live)
        self.recv_window = int(recv_window)
        self.timeout_s = float(timeout_s)
        self.account_type = account_type
        self.session = session or requests.Session()
        self._clock = clock
        self.logger = logger or setup_logger("bybit")
        self._limits_cache: dict[tuple[str, str], tuple[float, TradeLimits]] = {}
        self._cache_lock = threading.Lock()

    @classmethod
    def from_config(cls, cfg, session: requests.Session | None = None) -> "BybitBroker":
        """由 `ExchangeConfig` 构建。"""
        return cls(
            base_url=cfg.base_url,
            api_key=cfg.api_key,
            api_secret=cfg.api_secret,
            allow_live=cfg.allow_live,
            recv_window=cfg.recv_window,
            timeout_s=cfg.timeout_s,
            session=session,
        )

    # ---------- 行情 / 交易对 ----------

    def get_recent_candles(self, symbol: str, interval: str, count: int) -> list[Candle]:
        res = self._public("/v5/market/kline", {
            "category": "linear",
            "symbol": symbol,
            "interval": interval,
            "limit": int(count),
        })
        rows = res.get("list") or []
        step = interval_to_ms(interval)
        now_ms = int(self._clock() * 1000)
        candles: list[Candle] = []
        try:
            # 接口按时间倒序返回
            for row in reversed(rows):
                start = int(row[0])
                candles.append(
                    Candle(
                        symbol=symbol,
                        start=start,
                        end=start + step - 1,
                        open=float(row[1]),
                        high=float(row[2]),
                        low=float(row[3]),
                        close=float(row[4]),
                        volume=float(row[5]),
                        turnover=float(row[6]) if len(row) > 6 else 0.0,
                        confirm=start + step <= now_ms,
                        interval=str(interval),
                    )
                )
        except (TypeError, ValueError, IndexError) as exc:
            raise ExternalServiceError(f"bad kline response for {symbol}: {exc}") from exc
        return candles

    def get_trade_limits(self, category: str, symbol: str) -> TradeLimits:
        key = (category, symbol)
        now = self._clock()
        with self._cache_lock:
            cached = self._limits_cache.get(key)
            if cached is not None and now - cached[0] < _LIMITS_TTL_S:
                return cached[1]

        res = self._public("/v5/market/instruments-info", {"category": category, "symbol": symbol})
        for inst in res.get("list") or []:
            if inst.get("symbol") != symbol:
                continue
            lot = inst.get("lotSizeFilter") or {}
            price = inst.get("priceFilter") or {}
            try:
                limits = TradeLimits(
                    symbol=symbol,
                    min_qty=float(lot.get("minOrderQty") or 0.0),
                    qty_step=float(lot.get("qtyStep") or lot.get("basePrecision") or 0.0),
                    tick_size=float(price.get("tickSize") or 0.0),
                    min_notional=float(lot.get("minNotionalValue") or lot.get("minOrderAmt") or 0.0),
                )
            except (TypeError, ValueError) as exc:
                raise ExternalServiceError(f"bad instrument info for {symbol}: {exc}") from exc
            with self._cache_lock:
                self._limits_cache[key] = (now, limits)
            return limits
        raise ExternalServiceError(f"instrument not found: {category}/{symbol}")

    # ---------- 账户 / 订单 ----------

    def get_available_balance(self, asset: str) -> float:
        res = self._signed("GET", "/v5/account/wallet-balance", {"accountType": self.account_type, "coin": asset})
        for account in res.get("list") or []:
            for coin in account.get("coin") or []:
                if coin.get("coin") != asset:
                    continue
                raw = coin.get("availableToWithdraw") or coin.get("walletBalance") or 0.0
                try:
                    return float(raw)
                except (TypeError, ValueError) as exc:
                    raise ExternalServiceError(f"bad balance value for {asset}: {raw}") from exc
        return 0.0

    def has_open_orders(self, category: str, symbol: str) -> bool:
        res = self._signed("GET", "/v5/order/realtime", {"category": category, "symbol": symbol})
        return bool(res.get("list"))

    def place_limit_order(
        self,
        symbol: str,
        side: str,
        price: float,
        quantity: float,
        stop_loss: float,
        take_profit: float,
        *,
        category: str = "linear",
        client_order_id: str | None = None,
    ) -> str:
        if not self.allow_live:
            raise ExternalServiceError("live trading disabled (exchange.allow_live=false)")
        side_norm = {"buy": "Buy", "sell": "Sell"}.get(str(side).lower())
        if side_norm is None:
            raise ValueError(f"invalid order side: {side}")

        body: dict[str, Any] = {
            "category": category,
            "symbol": symbol,
            "side": side_norm,
            "orderType": "Limit",
            "qty": _fmt_number(quantity),
            "price": _fmt_number(price),
            "timeInForce": "GTC",
        }
        if stop_loss > 0 or take_profit > 0:
            body["tpslMode"] = "Full"
        if take_profit > 0:
            body["takeProfit"] = _fmt_number(take_profit)
            body["tpTriggerBy"] = "MarkPrice"
        if stop_loss > 0:
            body["stopLoss"] = _fmt_number(stop_loss)
            body["slTriggerBy"] = "MarkPrice"
            body["slOrderType"] = "Market"
        if client_order_id:
            body["orderLinkId"] = client_order_id

        res = self._signed("POST", "/v5/order/create", body)
        order_id = res.get("orderId")
        if not order_id:
            raise ExternalServiceError(f"order create returned no orderId: {res}")
        self.logger.info("Order placed: %s %s %s qty=%s price=%s id=%s", category, symbol, side_norm, quantity, price, order_id)
        return str(order_id)

    # ---------- HTTP ----------

    def _sign(self, payload: str, ts: int) -> str:
        text = f"{ts}{self.api_key}{self.recv_window}{payload}"
        return hmac.new(self.api_secret, text.encode(), hashlib.sha256).hexdigest()

    def _public(self, path: str, params: dict) -> dict:
        return self._send("GET", path, params=params)

    def _signed(self, method: str, path: str, params: dict) -> dict:
        if not self.api_key or not self.api_secret:
            raise ExternalServiceError(f"{path} requires api_key/api_secret")
        ts = int(self._clock() * 1000)
        if method == "GET":
            payload = urlencode(params)
            body = None
        else:
            payload = json.dumps(params, separators=(",", ":"))
            body = payload
        headers = {
            "X-BAPI-API-KEY": self.api_key,
            "X-BAPI-TIMESTAMP": str(ts),
            "X-BAPI-RECV-WINDOW": str(self.recv_window),
            "X-BAPI-SIGN": self._sign(payload, ts),
            "Content-Type": "application/json",
        }
        if method == "GET":
            return self._send(method, path, params=params, headers=headers)
        return self._send(method, path, data=body, headers=headers)

    def _send(self, method: str, path: str, params=None, data=None, headers=None) -> dict:
        url = f"{self.base_url}{path}"
        try:
            resp = self.session.request(
                method,
                url,
                params=params if method == "GET" else None,
                data=data,
                headers=headers,
                timeout=self.timeout_s,
            )
            resp.raise_for_status()
            payload = resp.json()
        except requests.RequestException as exc:
            raise ExternalServiceError(f"{method} {path} failed: {exc}") from exc
        except ValueError as exc:
            raise ExternalServiceError(f"{method} {path} returned invalid JSON: {exc}") from exc

        if not isinstance(payload, dict):
            raise ExternalServiceError(f"{method} {path} returned unexpected payload")
        if payload.get("retCode") not in (0, "0"):
            raise ExternalServiceError(
                f"{method} {path} retCode={payload.get('retCode')} retMsg={payload.get('retMsg')}"
            )
        return payload.get("result") or {}
