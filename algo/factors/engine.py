"""指标计算引擎（带 TTL 缓存）。

同一 (symbol, kind, params) 在 TTL 内重复请求直接返回缓存值；过期或未命中时用
调用方传入的 K 线序列重新计算。缓存只按时间失效，不感知新 K 线到达，TTL 需小于
K 线周期。
"""

from __future__ import annotations

import math
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Sequence

import pandas as pd

from algo.factors.registry import build_indicator
from market_data.loader import candles_to_frame
from shared.errors import ComputationDegenerateError
from shared.models.models import Candle
from shared.utils.logging import setup_logger


@dataclass(frozen=True)
class IndicatorKey:
    symbol: str
    kind: str
    params: tuple[tuple[str, Any], ...]

    @classmethod
    def of(cls, symbol: str, kind: str, params: Mapping[str, Any] | None = None) -> "IndicatorKey":
        return cls(symbol=symbol, kind=kind.lower(), params=tuple(sorted(dict(params or {}).items())))


@dataclass(frozen=True)
class IndicatorValue:
    value: float
    signal: float | None = None
    histogram: float | None = None
    computed_at: float = 0.0


class IndicatorEngine:
    """按 key 缓存指标结果的计算器（线程安全，锁独立于 MarketState）。

    Parameters
    ----------
    ttl_seconds:
        缓存有效期（秒）；0 表示不缓存。
    clock:
        单调时钟，测试可注入。
    """

    def __init__(self, ttl_seconds: float = 5.0, clock: Callable[[], float] = time.monotonic, logger=None):
        self.ttl_seconds = float(ttl_seconds)
        self._clock = clock
        self.logger = logger or setup_logger("indicators")
        self._lock = threading.Lock()
        self._cache: dict[IndicatorKey, IndicatorValue] = {}
        self._stats = {"hits": 0, "misses": 0}

    def compute(
        self,
        symbol: str,
        kind: str,
        params: Mapping[str, Any] | None,
        series: Sequence[Candle] | pd.DataFrame,
    ) -> IndicatorValue:
        """返回指标最新值。

        Raises
        ------
        DataInsufficientError
            序列长度不足该指标的最小要求。
        ComputationDegenerateError
            结果为 NaN/Inf（不会写入缓存）。
        """
        key = IndicatorKey.of(symbol, kind, params)
        now = self._clock()
        with self._lock:
            cached = self._cache.get(key)
            if cached is not None and now - cached.computed_at < self.ttl_seconds:
                self._stats["hits"] += 1
                return cached
            self._stats["misses"] += 1

        factor = build_indicator(kind, params)
        df = series if isinstance(series, pd.DataFrame) else candles_to_frame(list(series))
        value, signal, hist = factor.latest(df)
        for v in (value, signal, hist):
            if v is not None and not math.isfinite(v):
                raise ComputationDegenerateError(f"{kind} produced non-finite value for {symbol}")

        result = IndicatorValue(value=value, signal=signal, histogram=hist, computed_at=self._clock())
        if self.ttl_seconds > 0:
            with self._lock:
                self._cache[key] = result
        return result

    def clear(self, symbol: str | None = None) -> None:
        with self._lock:
            if symbol is None:
                self._cache.clear()
                return
            for key in [k for k in self._cache if k.symbol == symbol]:
                del self._cache[key]

    def stats(self) -> dict[str, int]:
        with self._lock:
            return {**self._stats, "entries": len(self._cache)}
