"""量价行为（VPA）信号检测。

对一段已收盘 K 线（最新在最后）依次检查，任一失败即短路：
1. 放量：当前量 >= 前 `volume_window` 根均量 * `spike_factor`；
2. 极值：当前 low 低于前 `lookback_period` 根中至少 `extremum_ratio` 比例的 low（空头看 high）；
3. K 线颜色：阳线做多 / 阴线做空；
4. 趋势规则（见 `trend_filter.py`）。
"""

from __future__ import annotations

from typing import Sequence

from algo.factors.engine import IndicatorEngine
from algo.strategy.trend_filter import TrendRule, build_trend_rule
from shared.models.models import Candle, Signal
from shared.utils.logging import setup_logger


class SignalDetector:
    """无状态的多空信号判定器。

    Parameters
    ----------
    volume_window:
        计算均量的历史根数。
    lookback_period:
        极值比较的历史根数。
    spike_factor:
        放量倍数。
    extremum_ratio:
        极值判定需要"击穿"的历史根数比例。
    trend_rule:
        趋势规则实例，默认 `SMATrendRule(20)`。
    indicators:
        可选指标引擎（实时决策复用缓存）。
    """

    def __init__(
        self,
        volume_window: int = 15,
        lookback_period: int = 5,
        spike_factor: float = 1.5,
        extremum_ratio: float = 2.0 / 3.0,
        trend_rule: TrendRule | None = None,
        indicators: IndicatorEngine | None = None,
        logger=None,
    ):
        if volume_window <= 0 or lookback_period <= 0:
            raise ValueError("volume_window and lookback_period must be > 0")
        self.volume_window = int(volume_window)
        self.lookback_period = int(lookback_period)
        self.spike_factor = float(spike_factor)
        self.extremum_ratio = float(extremum_ratio)
        self.trend_rule = trend_rule if trend_rule is not None else build_trend_rule()
        self.indicators = indicators
        self.logger = logger or setup_logger("signal")
        self.last_skip_reason: str | None = None

    @classmethod
    def from_config(cls, cfg, indicators: IndicatorEngine | None = None, logger=None) -> "SignalDetector":
        """由 `SignalConfig` 构建。"""
        return cls(
            volume_window=cfg.volume_window,
            lookback_period=cfg.lookback_period,
            spike_factor=cfg.spike_factor,
            extremum_ratio=cfg.extremum_ratio,
            trend_rule=build_trend_rule(cfg.trend),
            indicators=indicators,
            logger=logger,
        )

    @property
    def required_window(self) -> int:
        return max(self.volume_window + self.lookback_period, int(self.trend_rule.min_candles))

    # ---------- 公共入口 ----------

    def check_long(self, window: Sequence[Candle]) -> bool:
        reason = self._long_failure(window)
        self.last_skip_reason = reason
        return reason is None

    def check_short(self, window: Sequence[Candle]) -> bool:
        reason = self._short_failure(window)
        self.last_skip_reason = reason
        return reason is None

    def evaluate(self, window: Sequence[Candle]) -> Signal:
        """返回 LONG / SHORT / NONE；多空同时成立视为歧义返回 NONE。"""
        if len(window) < self.required_window:
            self.last_skip_reason = "insufficient_data"
            return Signal.NONE

        long_reason = self._long_failure(window)
        short_reason = self._short_failure(window)
        if long_reason is None and short_reason is None:
            self.logger.warning(
                "Ambiguous signal for %s at %s: both long and short passed",
                window[-1].symbol,
                window[-1].start,
            )
            self.last_skip_reason = "ambiguous"
            return Signal.NONE
        if long_reason is None:
            self.last_skip_reason = None
            return Signal.LONG
        if short_reason is None:
            self.last_skip_reason = None
            return Signal.SHORT
        if long_reason == short_reason:
            self.last_skip_reason = long_reason
        else:
            self.last_skip_reason = f"long:{long_reason},short:{short_reason}"
        return Signal.NONE

    # ---------- 过滤链 ----------

    def _long_failure(self, window: Sequence[Candle]) -> str | None:
        if len(window) < self.required_window:
            return "insufficient_data"
        current = window[-1]
        if not self._volume_spike(window):
            return "volume"
        previous = window[-1 - self.lookback_period:-1]
        if not self._breaks(sum(1 for c in previous if current.low < c.low)):
            return "extremum"
        if not current.close > current.open:
            return "candle_color"
        if not self.trend_rule.allows_long(window, self.indicators):
            return "trend"
        return None

    def _short_failure(self, window: Sequence[Candle]) -> str | None:
        if len(window) < self.required_window:
            return "insufficient_data"
        current = window[-1]
        if not self._volume_spike(window):
            return "volume"
        previous = window[-1 - self.lookback_period:-1]
        if not self._breaks(sum(1 for c in previous if current.high > c.high)):
            return "extremum"
        if not current.close < current.open:
            return "candle_color"
        if not self.trend_rule.allows_short(window, self.indicators):
            return "trend"
        return None

    def _volume_spike(self, window: Sequence[Candle]) -> bool:
        history = window[-1 - self.volume_window:-1]
        avg = sum(c.volume for c in history) / len(history)
        return window[-1].volume >= avg * self.spike_factor

    def _breaks(self, count: int) -> bool:
        # 与整数比例一致：5 根里至少 3 根，6 根里至少 4 根
        needed = int(self.lookback_period * self.extremum_ratio + 1e-9)
        return count >= needed
