"""EMA 因子。"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Sequence

import numpy as np
import pandas as pd

from algo.factors.base import as_float_array, finite_last, require_columns, require_length


def ema_series(values: Sequence[float] | np.ndarray, period: int) -> np.ndarray:
    """EMA，α = 2/(period+1)，以前 `period` 个值的 SMA 作为种子。

    种子之前的位置为 NaN；输入中的 NaN 前缀会被跳过（MACD 信号线用）。
    """
    arr = as_float_array(values)
    out = np.full(len(arr), np.nan)
    if period <= 0:
        return out
    valid = np.flatnonzero(~np.isnan(arr))
    if len(valid) == 0:
        return out
    first = int(valid[0])
    seed_end = first + period
    if len(arr) < seed_end:
        return out
    alpha = 2.0 / (period + 1)
    out[seed_end - 1] = arr[first:seed_end].mean()
    for i in range(seed_end, len(arr)):
        out[i] = alpha * arr[i] + (1.0 - alpha) * out[i - 1]
    return out


@dataclass(frozen=True)
class EMAFactor:
    """指数移动平均（EMA）。"""

    period: int = 14
    price_col: str = "close"
    out_col: str | None = None
    name: str = "ema"
    params: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if self.period <= 0:
            raise ValueError("EMA period must be > 0")
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
        # 种子之后至少再平滑 period 根，避免结果只是一个 SMA
        return 2 * self.period

    def compute(self, df: pd.DataFrame) -> pd.DataFrame:
        require_columns("EMAFactor", df, [self.price_col])
        out = self.out_col or f"ema_{self.period}"
        df[out] = ema_series(df[self.price_col].to_numpy(dtype=float), self.period)
        return df

    def latest(self, df: pd.DataFrame) -> tuple[float, None, None]:
        require_columns("EMAFactor", df, [self.price_col])
        require_length("EMA", len(df), self.min_length)
        values = ema_series(df[self.price_col].to_numpy(dtype=float), self.period)
        return finite_last("EMA", values), None, None
