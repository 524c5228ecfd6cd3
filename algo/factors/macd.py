"""MACD 因子。"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Sequence

import numpy as np
import pandas as pd

from algo.factors.base import finite_last, require_columns, require_length
from algo.factors.ema import ema_series


def macd_series(
    values: Sequence[float] | np.ndarray,
    fast: int = 12,
    slow: int = 26,
    signal: int = 9,
) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """返回 (macd_line, signal_line, histogram)。

    line = EMA(fast) - EMA(slow)；signal = line 的 EMA(signal)；hist = line - signal。
    """
    line = ema_series(values, fast) - ema_series(values, slow)
    sig = ema_series(line, signal)
    return line, sig, line - sig


@dataclass(frozen=True)
class MACDFactor:
    """MACD（line / signal / histogram 三列）。"""

    fast: int = 12
    slow: int = 26
    signal: int = 9
    price_col: str = "close"
    out_col: str | None = None
    name: str = "macd"
    params: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if min(self.fast, self.slow, self.signal) <= 0:
            raise ValueError("MACD periods must be > 0")
        if self.fast >= self.slow:
            raise ValueError("MACD fast period must be < slow period")
        object.__setattr__(
            self,
            "params",
            {
                "fast": self.fast,
                "slow": self.slow,
                "signal": self.signal,
                "price_col": self.price_col,
                "out_col": self.out_col,
            },
        )

    @property
    def min_length(self) -> int:
        return max(2 * self.slow, self.slow + self.signal - 1)

    def compute(self, df: pd.DataFrame) -> pd.DataFrame:
        require_columns("MACDFactor", df, [self.price_col])
        out = self.out_col or f"macd_{self.fast}_{self.slow}_{self.signal}"
        line, sig, hist = macd_series(df[self.price_col].to_numpy(dtype=float), self.fast, self.slow, self.signal)
        df[out] = line
        df[f"{out}_signal"] = sig
        df[f"{out}_hist"] = hist
        return df

    def latest(self, df: pd.DataFrame) -> tuple[float, float, float]:
        require_columns("MACDFactor", df, [self.price_col])
        require_length("MACD", len(df), self.min_length)
        line, sig, hist = macd_series(df[self.price_col].to_numpy(dtype=float), self.fast, self.slow, self.signal)
        return finite_last("MACD", line), finite_last("MACD signal", sig), finite_last("MACD hist", hist)
