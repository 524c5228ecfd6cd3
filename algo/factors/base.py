"""因子（Factors/Features）抽象协议与公共工具。"""

from __future__ import annotations

import math
from typing import Any, Mapping, Protocol, Sequence

import numpy as np
import pandas as pd

from shared.errors import ComputationDegenerateError, DataInsufficientError


class Factor(Protocol):
    """因子协议：`compute(df) -> df`，`latest(df)` 取最后一根的值。"""

    name: str
    params: Mapping[str, Any]

    @property
    def min_length(self) -> int:
        """计算所需的最少 K 线数量。"""
        ...

    def compute(self, df: pd.DataFrame) -> pd.DataFrame:
        """对输入 df 添加/更新因子列并返回 df。"""
        ...

    def latest(self, df: pd.DataFrame) -> tuple[float, float | None, float | None]:
        """返回 (value, signal, histogram)；单值指标后两项为 None。"""
        ...


def as_float_array(values: Sequence[float] | np.ndarray | pd.Series) -> np.ndarray:
    return np.asarray(values, dtype=float)


def require_length(name: str, n: int, min_length: int) -> None:
    if n < min_length:
        raise DataInsufficientError(f"{name} requires at least {min_length} values, got {n}")


def require_columns(name: str, df: pd.DataFrame, cols: Sequence[str]) -> None:
    for col in cols:
        if col not in df.columns:
            raise ValueError(f"{name} requires column: {col}")


def finite_last(name: str, arr: np.ndarray) -> float:
    """取序列最后一个值，NaN/Inf 视为退化结果。"""
    if len(arr) == 0:
        raise DataInsufficientError(f"{name} produced no values")
    value = float(arr[-1])
    if not math.isfinite(value):
        raise ComputationDegenerateError(f"{name} produced non-finite value: {value}")
    return value
