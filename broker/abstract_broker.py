"""Broker 抽象接口与运行模式定义。

决策周期依赖四类外部能力：历史 K 线、下单/挂单查询、账户余额、交易对约束。
实现方在网络/接口错误时抛 `ExternalServiceError`。
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from enum import Enum

from shared.models.models import Candle, TradeLimits


class BrokerMode(Enum):
    """Broker 运行模式枚举。"""

    DRY_RUN = "dry-run"
    LIVE = "live"


class CandleProvider(ABC):
    @abstractmethod
    def get_recent_candles(self, symbol: str, interval: str, count: int) -> list[Candle]:
        """返回最近 `count` 根 K 线（时间升序，最后一根可能未收盘）。"""


class OrderExecutor(ABC):
    @abstractmethod
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
        """提交带止损/止盈的限价单，返回交易所订单号。"""

    @abstractmethod
    def has_open_orders(self, category: str, symbol: str) -> bool:
        """该交易对是否还有未完成订单。"""


class AccountProvider(ABC):
    @abstractmethod
    def get_available_balance(self, asset: str) -> float:
        """可用余额（如 USDT）。"""


class InstrumentProvider(ABC):
    @abstractmethod
    def get_trade_limits(self, category: str, symbol: str) -> TradeLimits:
        """数量步进/最小数量/价格 tick 等下单约束。"""


class Broker(CandleProvider, OrderExecutor, AccountProvider, InstrumentProvider):
    """完整交易执行抽象层（四类能力的组合）。"""

    mode: BrokerMode
