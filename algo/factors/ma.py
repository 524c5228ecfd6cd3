"""SMA 因子。"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Sequence

import numpy as np
import pandas as pd

from algo.factors.base import as_float_array, finite_last, require_columns, require_length


def sma_series(values: Sequence[float] | np.ndarray, period: int) -> np.ndarray:
    """尾随算术平均，前 `period - 1` 个位置为 NaN。"""
    arr = as_float_array(values)
    out = np.full(len(arr), np.nan)
    if period <= 0 or len(arr) < period:
        return out
    csum = np.cumsum(np.insert(arr, 0, 0.0))
    out[period - 1:] = (csum[period:] - csum[:-period]) / period
    return out


@dataclass(frozen=True)
class MAFactor:
    """简单移动平均（SMA）。"""

    period: int = 20
    price_col: str = "close"
    out_col: str | None = None
    name: str = "sma"
    params: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if self.period <= 0:
            raise ValueError("SMA period must be > 0")
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
        return self.period

    def compute(self, df: pd.DataFrame) -> pd.DataFrame:
        require_columns("MAFactor", df, [self.price_col])
        out = self.out_col or f"sma_{self.period}"
        df[out] = sma_series(df[self.price_col].to_numpy(dtype=float), self.period)
        return df

    def latest(self, df: pd.DataFrame) -> tuple[float, None, None]:
        require_columns("MAFactor", df, [self.price_col])
        require_length("SMA", len(df), self.min_length)
        values = sma_series(df[self.price_col].to_numpy(dtype=float), self.period)
        return finite_last("SMA", values), None, None
