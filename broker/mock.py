"""Dry-run broker。

不触网：余额、交易对约束、挂单都在本地维护，下单只记录意图。
"""

from __future__ import annotations

import itertools
import threading

from broker.abstract_broker import Broker, BrokerMode
from shared.models.models import Candle, OrderIntent, TradeLimits
from shared.utils.logging import setup_logger


class DryRunBroker(Broker):
    """干跑模式的模拟 broker。

    Parameters
    ----------
    balance:
        初始可用余额（quote 资产）。
    limits:
        按 symbol 的下单约束；缺省时用 `default_limits`。
    candles:
        可选的预置 K 线（作为 CandleProvider 回退源）。
    fill_open_orders:
        True 时记录下来的订单视为挂单中（`has_open_orders` 返回 True）。
    """

    mode = BrokerMode.DRY_RUN

    def __init__(
        self,
        balance: float = 1000.0,
        quote_asset: str = "USDT",
        limits: dict[str, TradeLimits] | None = None,
        default_limits: TradeLimits | None = None,
        candles: dict[str, list[Candle]] | None = None,
        fill_open_orders: bool = False,
        logger=None,
    ):
        self.logger = logger or setup_logger("dry-run-broker")
        self.quote_asset = quote_asset
        self.balances: dict[str, float] = {quote_asset: float(balance)}
        self.limits = dict(limits or {})
        self.default_limits = default_limits
        self.candles = {k: list(v) for k, v in (candles or {}).items()}
        self.fill_open_orders = bool(fill_open_orders)
        self.orders: list[OrderIntent] = []
        self.open_orders: dict[str, list[str]] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def get_recent_candles(self, symbol: str, interval: str, count: int) -> list[Candle]:
        return [c.copy() for c in self.candles.get(symbol, [])[-count:]]

    def get_available_balance(self, asset: str) -> float:
        return float(self.balances.get(asset, 0.0))

    def get_trade_limits(self, category: str, symbol: str) -> TradeLimits:
        limits = self.limits.get(symbol)
        if limits is not None:
            return limits
        if self.default_limits is not None:
            return TradeLimits(
                symbol=symbol,
                min_qty=self.default_limits.min_qty,
                qty_step=self.default_limits.qty_step,
                tick_size=self.default_limits.tick_size,
                min_notional=self.default_limits.min_notional,
            )
        return TradeLimits(symbol=symbol, min_qty=0.001, qty_step=0.001, tick_size=0.1, min_notional=0.0)

    def has_open_orders(self, category: str, symbol: str) -> bool:
        with self._lock:
            return bool(self.open_orders.get(symbol))

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
        with self._lock:
            order_id = f"dry-{next(self._ids)}"
            self.orders.append(
                OrderIntent(
                    symbol=symbol,
                    category=category,
                    side=side,
                    price=price,
                    quantity=quantity,
                    stop_loss=stop_loss,
                    take_profit=take_profit,
                    client_order_id=client_order_id,
                )
            )
            if self.fill_open_orders:
                self.open_orders.setdefault(symbol, []).append(order_id)
        self.logger.info(
            "[DRY-RUN ORDER] %s %s qty=%s price=%s sl=%s tp=%s id=%s",
            side.upper(),
            symbol,
            quantity,
            price,
            stop_loss,
            take_profit,
            order_id,
        )
        return order_id
