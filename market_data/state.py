"""行情状态缓存（MarketState）。

推送线程/协程写入，决策周期读取：
- 盘口：按 topic 整体替换（不做增量合并），读取时排序；
- K 线：按 topic 维护滚动序列，同 `start` 原地更新（未收盘 bar），新 `start` 追加；
- 所有读取都返回副本，调用方拿不到缓存内部对象的引用。

一把 `threading.RLock` 同时保护两张表。
"""

from __future__ import annotations

import threading
import time
from typing import Any, Callable

from shared.errors import MalformedMessageError
from shared.models.models import Candle, OrderBookLevel, OrderBookSnapshot
from shared.utils.logging import setup_logger

_INTERVAL_MS = {
    "D": 86_400_000,
    "W": 7 * 86_400_000,
    "M": 30 * 86_400_000,
}


def interval_to_ms(interval: str) -> int:
    """Bybit K 线周期（"1"/"5"/"60"/"D"...）转毫秒。"""
    key = str(interval).strip().upper()
    if key in _INTERVAL_MS:
        return _INTERVAL_MS[key]
    try:
        minutes = int(key)
    except ValueError as exc:
        raise ValueError(f"Unsupported kline interval: {interval}") from exc
    if minutes <= 0:
        raise ValueError(f"Unsupported kline interval: {interval}")
    return minutes * 60_000


def orderbook_topic(symbol: str, depth: int = 50) -> str:
    return f"orderbook.{int(depth)}.{symbol.upper()}"


def kline_topic(symbol: str, interval: str = "1") -> str:
    return f"kline.{interval}.{symbol.upper()}"


def weighted_mid_price(snapshot: OrderBookSnapshot, levels: int = 5) -> float:
    """按前 `levels` 档挂单量加权的中间价。

    bid/ask 各自做 size 加权平均，再取两者均值；任一侧为空返回 0.0。
    传入的快照需已排序（见 `MarketState.get_sorted_orderbook`）。
    """
    if levels <= 0 or not snapshot.bids or not snapshot.asks:
        return 0.0

    def _side_avg(side: list[OrderBookLevel]) -> float:
        chunk = side[:levels]
        qty = sum(lvl.size for lvl in chunk)
        if qty <= 0:
            return 0.0
        return sum(lvl.price * lvl.size for lvl in chunk) / qty

    return (_side_avg(snapshot.bids) + _side_avg(snapshot.asks)) / 2


def _parse_levels(raw: Any) -> list[OrderBookLevel]:
    levels: list[OrderBookLevel] = []
    for item in raw or []:
        if isinstance(item, dict):
            price, size = item.get("price", item.get("p")), item.get("size", item.get("v"))
        else:
            price, size = item[0], item[1]
        levels.append(OrderBookLevel(price=float(price), size=float(size)))
    return levels


def parse_orderbook(symbol: str, data: Any, ts: int = 0) -> OrderBookSnapshot:
    """解析盘口 payload（Bybit `b`/`a` 或 `bids`/`asks`）。"""
    if isinstance(data, OrderBookSnapshot):
        return data
    if not isinstance(data, dict):
        raise MalformedMessageError("orderbook payload must be an object")
    try:
        bids = _parse_levels(data.get("b", data.get("bids")))
        asks = _parse_levels(data.get("a", data.get("asks")))
        ts_ms = int(ts or 0)
    except (TypeError, ValueError, IndexError) as exc:
        raise MalformedMessageError(f"bad orderbook payload: {exc}") from exc
    return OrderBookSnapshot(symbol=str(data.get("s") or symbol), bids=bids, asks=asks, ts=ts_ms)


def parse_candle(symbol: str, interval: str, data: Any) -> Candle:
    """解析单根 K 线（数值可能是字符串）。"""
    if isinstance(data, Candle):
        return data
    if not isinstance(data, dict):
        raise MalformedMessageError("kline item must be an object")
    try:
        start = int(data["start"])
        return Candle(
            symbol=str(data.get("symbol") or data.get("s") or symbol),
            start=start,
            end=int(data.get("end") or start + interval_to_ms(interval) - 1),
            open=float(data["open"]),
            high=float(data["high"]),
            low=float(data["low"]),
            close=float(data["close"]),
            volume=float(data.get("volume") or 0.0),
            turnover=float(data.get("turnover") or 0.0),
            confirm=bool(data.get("confirm", False)),
            interval=str(data.get("interval") or interval),
        )
    except (KeyError, TypeError, ValueError) as exc:
        raise MalformedMessageError(f"bad kline payload: {exc}") from exc


class MarketState:
    """盘口快照 + K 线序列的并发缓存。

    Parameters
    ----------
    max_candles:
        每个 K 线 topic 最多保留的根数（超出后丢最旧的）。
    clock:
        时间源，用于计算数据年龄（测试可注入）。
    """

    def __init__(self, max_candles: int = 500, clock: Callable[[], float] = time.monotonic, logger=None):
        self.max_candles = int(max_candles)
        self._clock = clock
        self.logger = logger or setup_logger("market-state")
        self._lock = threading.RLock()
        self._orderbooks: dict[str, OrderBookSnapshot] = {}
        self._klines: dict[str, list[Candle]] = {}
        self._updated_at: dict[str, float] = {}

    # ---------- 写入（ingest） ----------

    def apply_snapshot(self, topic: str, snapshot: OrderBookSnapshot) -> None:
        """整体替换 topic 对应的盘口。"""
        stored = OrderBookSnapshot(
            symbol=snapshot.symbol,
            bids=list(snapshot.bids),
            asks=list(snapshot.asks),
            ts=snapshot.ts,
        )
        with self._lock:
            self._orderbooks[topic] = stored
            self._updated_at[topic] = self._clock()

    def mark_alive(self, topic: str) -> bool:
        """刷新已缓存 topic 的更新时间，不改数据；topic 从未写入过时返回 False。"""
        with self._lock:
            if topic not in self._orderbooks and topic not in self._klines:
                return False
            self._updated_at[topic] = self._clock()
            return True

    def apply_kline_update(self, topic: str, candle: Candle) -> bool:
        """追加或原地更新一根 K 线。

        Returns
        -------
        bool
            False 表示乱序/过期消息被丢弃，状态不变。
        """
        incoming = candle.copy()
        with self._lock:
            series = self._klines.setdefault(topic, [])
            if series:
                last = series[-1]
                if incoming.start == last.start:
                    series[-1] = incoming
                    self._updated_at[topic] = self._clock()
                    return True
                if incoming.start < last.start:
                    gap = last.start - incoming.start
                    if gap >= self._interval_ms(topic, incoming):
                        self.logger.warning(
                            "Drop stale kline %s start=%s (last=%s)", topic, incoming.start, last.start
                        )
                    else:
                        self.logger.warning(
                            "Drop misaligned kline %s start=%s (last=%s)", topic, incoming.start, last.start
                        )
                    return False
            series.append(incoming)
            if len(series) > self.max_candles:
                del series[: len(series) - self.max_candles]
            self._updated_at[topic] = self._clock()
            self.logger.debug(
                "Append kline %s start=%s confirm=%s total=%d", topic, incoming.start, incoming.confirm, len(series)
            )
            return True

    def apply_message(self, message: dict[str, Any]) -> bool:
        """应用一条推送消息 `{topic, type, ts, data}`。

        盘口 topic 只有 `type == "snapshot"` 会替换缓存；格式正确的 delta 不改盘口，
        只刷新该 topic 的更新时间（Bybit 订阅后只推一次 snapshot，之后全是 delta）。
        K 线 topic 每条都处理。无法解析的消息记录日志后丢弃，不抛异常。
        """
        try:
            topic = message.get("topic") if isinstance(message, dict) else None
            if not topic or not isinstance(topic, str):
                raise MalformedMessageError(f"message without a valid topic: {topic!r}")
            data = message.get("data")
            if topic.startswith("orderbook"):
                symbol = topic.rsplit(".", 1)[-1]
                book = parse_orderbook(symbol, data, message.get("ts") or 0)
                if message.get("type") != "snapshot":
                    self.mark_alive(topic)
                    return False
                self.apply_snapshot(topic, book)
                return True
            if topic.startswith("kline"):
                parts = topic.split(".")
                if len(parts) < 3:
                    raise MalformedMessageError(f"bad kline topic: {topic}")
                interval, symbol = parts[1], parts[-1]
                items = data if isinstance(data, list) else [data]
                if not items:
                    raise MalformedMessageError("kline message without data")
                applied = False
                for item in items:
                    applied = self.apply_kline_update(topic, parse_candle(symbol, interval, item)) or applied
                return applied
            return False
        except MalformedMessageError as exc:
            self.logger.warning("Drop malformed message: %s", exc)
            return False

    # ---------- 读取（decision） ----------

    def get_sorted_orderbook(self, topic: str) -> tuple[OrderBookSnapshot | None, bool]:
        """返回排好序的盘口副本（bids 降序，asks 升序）。"""
        with self._lock:
            snap = self._orderbooks.get(topic)
            if snap is None:
                return None, False
            return snap.sorted_copy(), True

    def get_closed_candles(self, topic: str, count: int) -> tuple[list[Candle], bool]:
        """返回最近 `count` 根已收盘 K 线（最新一根未收盘则排除）。

        缓存少于 `count + 1` 根时 ok=False。
        """
        with self._lock:
            series = self._klines.get(topic) or []
            if count <= 0 or len(series) < count + 1:
                return [], False
            closed = series[:-1] if not series[-1].confirm else series
            window = [c.copy() for c in closed[-count:]]
        # 只有最新一根允许未收盘；中间出现未收盘（推送丢失 confirm）也不当作收盘 bar
        if len(window) < count or any(not c.confirm for c in window):
            return [], False
        return window, True

    def get_candles(self, topic: str) -> list[Candle]:
        with self._lock:
            return [c.copy() for c in self._klines.get(topic) or []]

    def last_update_age(self, topic: str) -> float | None:
        """距离该 topic 最后一次写入的秒数；从未写入返回 None。"""
        with self._lock:
            ts = self._updated_at.get(topic)
        if ts is None:
            return None
        return max(0.0, self._clock() - ts)

    def topics(self) -> list[str]:
        with self._lock:
            return sorted(set(self._orderbooks) | set(self._klines))

    @staticmethod
    def _interval_ms(topic: str, candle: Candle) -> int:
        parts = topic.split(".")
        for raw in (parts[1] if len(parts) >= 3 else None, candle.interval):
            if raw is None:
                continue
            try:
                return interval_to_ms(raw)
            except ValueError:
                continue
        return 60_000
