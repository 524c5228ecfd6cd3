"""RSI 因子。"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Sequence

import numpy as np
import pandas as pd

from algo.factors.base import as_float_array, finite_last, require_columns, require_length


def rsi_series(values: Sequence[float] | np.ndarray, period: int) -> np.ndarray:
    """Wilder RSI。

    第一个值（下标 `period`）用前 `period` 个涨跌幅的简单均值做种子，之后按
    avg = (prev * (period - 1) + x) / period 平滑。平均跌幅为 0 时 RSI = 100。
    """
    arr = as_float_array(values)
    out = np.full(len(arr), np.nan)
    if period <= 0 or len(arr) < period + 1:
        return out
    delta = np.diff(arr)
    gain = np.clip(delta, 0.0, None)
    loss = np.clip(-delta, 0.0, None)

    avg_gain = gain[:period].mean()
    avg_loss = loss[:period].mean()
    out[period] = _rsi(avg_gain, avg_loss)
    for i in range(period + 1, len(arr)):
        avg_gain = (avg_gain * (period - 1) + gain[i - 1]) / period
        avg_loss = (avg_loss * (period - 1) + loss[i - 1]) / period
        out[i] = _rsi(avg_gain, avg_loss)
    return out


def _rsi(avg_gain: float, avg_loss: float) -> float:
    if avg_loss == 0:
        return 100.0
    rs = avg_gain / avg_loss
    return 100.0 - (100.0 / (1.0 + rs))


@dataclass(frozen=True)
class RSIFactor:
    """相对强弱指数（RSI，Wilder 平滑）。"""

    period: int = 14
    price_col: str = "close"
    out_col: str | None = None
    name: str = "rsi"
    params: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if self.period <= 0:
            raise ValueError("RSI period must be > 0")
        object.__setattr__(
            self,
            "params",
            {
                "period": self.period,
                "price_col": self.price_col,
                "out_col": self.out_col,
            },
        )

    @property
    def min_length(self) -> int:
        return self.period + 1

    def compute(self, df: pd.DataFrame) -> pd.DataFrame:
        require_columns("RSIFactor", df, [self.price_col])
        out = self.out_col or f"rsi_{self.period}"
        df[out] = rsi_series(df[self.price_col].to_numpy(dtype=float), self.period)
        return df

    def latest(self, df: pd.DataFrame) -> tuple[float, None, None]:
        require_columns("RSIFactor", df, [self.price_col])
        require_length("RSI", len(df), self.min_length)
        values = rsi_series(df[self.price_col].to_numpy(dtype=float), self.period)
        return finite_last("RSI", values), None, None
