"""核心数据结构：Candle/OrderBook/Signal/RiskLevels/OrderIntent/SimulatedTrade。"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any


class Signal(Enum):
    """入场信号（每个周期重新计算，不落地）。"""

    LONG = "long"
    SHORT = "short"
    NONE = "none"

    @property
    def order_side(self) -> str:
        """交易所下单方向："Buy" / "Sell"。"""
        if self is Signal.LONG:
            return "Buy"
        if self is Signal.SHORT:
            return "Sell"
        raise ValueError("Signal.NONE has no order side")


@dataclass
class Candle:
    """K 线数据（时间戳为毫秒）。"""
    symbol: str
    start: int
    end: int
    open: float
    high: float
    low: float
    close: float
    volume: float
    turnover: float = 0.0
    confirm: bool = True
    interval: str = "1"

    def copy(self) -> "Candle":
        return replace(self)


@dataclass(frozen=True)
class OrderBookLevel:
    price: float
    size: float


@dataclass
class OrderBookSnapshot:
    """盘口快照。写入时不要求有序；读取方拿到的是排好序的副本。"""
    symbol: str
    bids: list[OrderBookLevel] = field(default_factory=list)
    asks: list[OrderBookLevel] = field(default_factory=list)
    ts: int = 0

    def sorted_copy(self) -> "OrderBookSnapshot":
        return OrderBookSnapshot(
            symbol=self.symbol,
            bids=sorted(self.bids, key=lambda lvl: lvl.price, reverse=True),
            asks=sorted(self.asks, key=lambda lvl: lvl.price),
            ts=self.ts,
        )


@dataclass(frozen=True)
class RiskLevels:
    """止损/止盈价位。

    Long: stop_loss < entry_price < take_profit；
    Short: take_profit < entry_price < stop_loss。
    """
    entry_price: float
    stop_loss: float
    take_profit: float

    def is_valid(self, side: Signal) -> bool:
        if side is Signal.LONG:
            return self.stop_loss < self.entry_price < self.take_profit
        if side is Signal.SHORT:
            return self.take_profit < self.entry_price < self.stop_loss
        return False


@dataclass(frozen=True)
class PositionSizing:
    quantity: float
    risk_capital: float


@dataclass(frozen=True)
class TradeLimits:
    """交易对下单约束（数量步进/价格 tick/最小名义）。"""
    symbol: str
    min_qty: float
    qty_step: float
    tick_size: float
    min_notional: float = 0.0


@dataclass(frozen=True)
class OrderIntent:
    """决策周期最终产出的下单意图（交给外部执行方）。"""
    symbol: str
    category: str
    side: str        # "Buy" / "Sell"
    price: float
    quantity: float
    stop_loss: float
    take_profit: float
    client_order_id: str | None = None


@dataclass(frozen=True)
class SimulatedTrade:
    """回测中的单笔模拟交易。"""
    side: Signal
    entry_index: int
    exit_index: int
    entry_price: float
    exit_price: float
    stop_loss: float
    take_profit: float
    outcome: str     # "tp" / "sl" / "timeout"
    profit_fraction: float


@dataclass
class BacktestResult:
    """回测聚合统计。"""
    trades: list[SimulatedTrade] = field(default_factory=list)
    num_trades: int = 0
    num_wins: int = 0
    num_losses: int = 0
    num_timeouts: int = 0
    win_rate: float = 0.0
    total_pnl: float = 0.0

    def summary(self) -> dict[str, Any]:
        return {
            "num_trades": self.num_trades,
            "num_wins": self.num_wins,
            "num_losses": self.num_losses,
            "num_timeouts": self.num_timeouts,
            "win_rate": self.win_rate,
            "total_pnl": self.total_pnl,
        }
