"""趋势过滤规则（信号的第 4 道过滤）。

规则只看传入的已收盘 K 线窗口（最新一根在最后），不保存状态。
可选传入 `IndicatorEngine`，让实时决策复用 TTL 缓存；回测不传，每次直接计算。
"""

from __future__ import annotations

from typing import Any, Mapping, Protocol, Sequence

from algo.factors.engine import IndicatorEngine
from algo.factors.registry import build_indicator
from market_data.loader import candles_to_frame
from shared.models.models import Candle


class TrendRule(Protocol):
    name: str

    @property
    def min_candles(self) -> int:
        ...

    def allows_long(self, window: Sequence[Candle], indicators: IndicatorEngine | None = None) -> bool:
        ...

    def allows_short(self, window: Sequence[Candle], indicators: IndicatorEngine | None = None) -> bool:
        ...


def _indicator(
    kind: str,
    params: Mapping[str, Any],
    window: Sequence[Candle],
    indicators: IndicatorEngine | None,
) -> float:
    if indicators is not None:
        return indicators.compute(window[-1].symbol, kind, params, window).value
    value, _, _ = build_indicator(kind, params).latest(candles_to_frame(list(window)))
    return value


class SMATrendRule:
    """收盘价相对 SMA(period) 的位置；配置 slow_period 时还要求快慢 SMA 同向。

    Long: close > SMA(period) [且 SMA(period) > SMA(slow_period)]；Short 镜像。
    """

    name = "sma"

    def __init__(self, period: int = 20, slow_period: int | None = None):
        self.period = int(period)
        self.slow_period = int(slow_period) if slow_period else None
        if self.period <= 0:
            raise ValueError("trend period must be > 0")
        if self.slow_period is not None and self.slow_period <= self.period:
            raise ValueError("trend slow_period must be > period")

    @property
    def min_candles(self) -> int:
        return self.slow_period or self.period

    def _levels(self, window, indicators) -> tuple[float, float | None]:
        fast = _indicator("sma", {"period": self.period}, window, indicators)
        slow = None
        if self.slow_period is not None:
            slow = _indicator("sma", {"period": self.slow_period}, window, indicators)
        return fast, slow

    def allows_long(self, window, indicators=None) -> bool:
        fast, slow = self._levels(window, indicators)
        return window[-1].close > fast and (slow is None or fast > slow)

    def allows_short(self, window, indicators=None) -> bool:
        fast, slow = self._levels(window, indicators)
        return window[-1].close < fast and (slow is None or fast < slow)


class EMARSITrendRule:
    """EMA(fast) vs EMA(slow) 定方向，RSI 在 [rsi_lower, rsi_upper] 区间内才放行。"""

    name = "ema_rsi"

    def __init__(
        self,
        fast: int = 50,
        slow: int = 200,
        rsi_period: int = 14,
        rsi_lower: float = 30.0,
        rsi_upper: float = 70.0,
    ):
        self.fast = int(fast)
        self.slow = int(slow)
        self.rsi_period = int(rsi_period)
        self.rsi_lower = float(rsi_lower)
        self.rsi_upper = float(rsi_upper)
        if self.fast <= 0 or self.slow <= self.fast:
            raise ValueError("ema_rsi requires 0 < fast < slow")
        if self.rsi_lower >= self.rsi_upper:
            raise ValueError("ema_rsi requires rsi_lower < rsi_upper")

    @property
    def min_candles(self) -> int:
        return max(2 * self.slow, self.rsi_period + 1)

    def _levels(self, window, indicators) -> tuple[float, float, float]:
        return (
            _indicator("ema", {"period": self.fast}, window, indicators),
            _indicator("ema", {"period": self.slow}, window, indicators),
            _indicator("rsi", {"period": self.rsi_period}, window, indicators),
        )

    def _rsi_ok(self, rsi: float) -> bool:
        return self.rsi_lower <= rsi <= self.rsi_upper

    def allows_long(self, window, indicators=None) -> bool:
        fast, slow, rsi = self._levels(window, indicators)
        return fast > slow and self._rsi_ok(rsi)

    def allows_short(self, window, indicators=None) -> bool:
        fast, slow, rsi = self._levels(window, indicators)
        return fast < slow and self._rsi_ok(rsi)


class NoTrendRule:
    name = "none"
    min_candles = 0

    def allows_long(self, window, indicators=None) -> bool:
        return True

    def allows_short(self, window, indicators=None) -> bool:
        return True


_RULES: dict[str, type] = {
    "sma": SMATrendRule,
    "ema_rsi": EMARSITrendRule,
    "none": NoTrendRule,
}


def build_trend_rule(cfg: Any = None) -> TrendRule:
    """从 `TrendConfig` 或 dict（type + params）构建趋势规则，默认 `sma`。"""
    if cfg is None:
        return SMATrendRule()
    if isinstance(cfg, Mapping):
        name = str(cfg.get("type") or "sma")
        params = dict(cfg.get("params") or {k: v for k, v in cfg.items() if k != "type"})
    else:
        name = str(getattr(cfg, "type", "sma"))
        params = dict(getattr(cfg, "params", {}) or {})
    cls = _RULES.get(name.lower())
    if cls is None:
        raise ValueError(f"Unknown trend rule: {name}")
    if cls is NoTrendRule:
        return NoTrendRule()
    try:
        return cls(**params)
    except TypeError as exc:
        raise ValueError(f"Invalid params for trend rule '{name}': {params}") from exc
