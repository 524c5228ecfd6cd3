"""ATR 因子。"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Sequence

import numpy as np
import pandas as pd

from algo.factors.base import as_float_array, finite_last, require_columns, require_length


def true_range(high: np.ndarray, low: np.ndarray, close: np.ndarray) -> np.ndarray:
    """TR = max(high-low, |high-prevClose|, |low-prevClose|)；第一根没有前收，记为 NaN。"""
    tr = np.full(len(high), np.nan)
    if len(high) < 2:
        return tr
    prev_close = close[:-1]
    tr[1:] = np.maximum.reduce(
        [
            high[1:] - low[1:],
            np.abs(high[1:] - prev_close),
            np.abs(low[1:] - prev_close),
        ]
    )
    return tr


def atr_series(
    high: Sequence[float] | np.ndarray,
    low: Sequence[float] | np.ndarray,
    close: Sequence[float] | np.ndarray,
    period: int,
) -> np.ndarray:
    """Wilder ATR：第一个值（下标 `period`）是前 `period` 个 TR 的均值。"""
    h, lo, c = as_float_array(high), as_float_array(low), as_float_array(close)
    if not (len(h) == len(lo) == len(c)):
        raise ValueError("ATR inputs must have equal length")
    out = np.full(len(h), np.nan)
    if period <= 0 or len(h) < period + 1:
        return out
    tr = true_range(h, lo, c)
    atr = tr[1:period + 1].mean()
    out[period] = atr
    for i in range(period + 1, len(h)):
        atr = (atr * (period - 1) + tr[i]) / period
        out[i] = atr
    return out


@dataclass(frozen=True)
class ATRFactor:
    """平均真实波幅（ATR，Wilder 平滑）。"""

    period: int = 14
    high_col: str = "high"
    low_col: str = "low"
    close_col: str = "close"
    out_col: str | None = None
    name: str = "atr"
    params: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if self.period <= 0:
            raise ValueError("ATR period must be > 0")
        object.__setattr__(
            self,
            "params",
            {
                "period": self.period,
                "high_col": self.high_col,
                "low_col": self.low_col,
                "close_col": self.close_col,
                "out_col": self.out_col,
            },
        )

    @property
    def min_length(self) -> int:
        return self.period + 1

    def _series(self, df: pd.DataFrame) -> np.ndarray:
        require_columns("ATRFactor", df, [self.high_col, self.low_col, self.close_col])
        return atr_series(
            df[self.high_col].to_numpy(dtype=float),
            df[self.low_col].to_numpy(dtype=float),
            df[self.close_col].to_numpy(dtype=float),
            self.period,
        )

    def compute(self, df: pd.DataFrame) -> pd.DataFrame:
        out = self.out_col or f"atr_{self.period}"
        df[out] = self._series(df)
        return df

    def latest(self, df: pd.DataFrame) -> tuple[float, None, None]:
        require_length("ATR", len(df), self.min_length)
        return finite_last("ATR", self._series(df)), None, None
