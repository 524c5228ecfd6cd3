"""指标注册表：字符串 -> 因子实现。"""

from __future__ import annotations

import inspect
from typing import Any, Mapping

from algo.factors.atr import ATRFactor
from algo.factors.base import Factor
from algo.factors.ema import EMAFactor
from algo.factors.ma import MAFactor
from algo.factors.macd import MACDFactor
from algo.factors.rsi import RSIFactor

_REGISTRY: dict[str, type] = {}

# 配置里常见的别名参数
_PARAM_ALIASES = {"window": "period", "length": "period"}


def register_indicator(name: str, cls: type) -> None:
    _REGISTRY[name.lower()] = cls


def get_indicator_cls(name: str) -> type:
    key = str(name).lower()
    if key not in _REGISTRY:
        raise ValueError(f"Unknown indicator: {name}")
    return _REGISTRY[key]


def available_indicators() -> list[str]:
    return sorted(_REGISTRY)


def _filter_init_kwargs(cls: type, params: Mapping[str, Any]) -> dict[str, Any]:
    """过滤出 __init__ 支持的参数，避免配置里多字段导致报错。"""
    try:
        sig = inspect.signature(cls.__init__)
    except (TypeError, ValueError):
        return dict(params)

    if any(p.kind == inspect.Parameter.VAR_KEYWORD for p in sig.parameters.values()):
        return dict(params)

    allowed = {name for name in sig.parameters.keys() if name not in {"self", "name", "params"}}
    return {k: v for k, v in params.items() if k in allowed}


def build_indicator(kind: str, params: Mapping[str, Any] | None = None) -> Factor:
    """按名称与参数构建指标实例。

    Examples
    --------
    >>> build_indicator("ema", {"period": 50})
    >>> build_indicator("macd", {"fast": 12, "slow": 26, "signal": 9})
    """
    cls = get_indicator_cls(kind)
    raw = {_PARAM_ALIASES.get(k, k): v for k, v in dict(params or {}).items()}
    kwargs = _filter_init_kwargs(cls, raw)
    try:
        return cls(**kwargs)
    except TypeError as exc:
        raise ValueError(f"Invalid params for indicator '{kind}': {dict(params or {})}") from exc


# 默认注册
register_indicator("sma", MAFactor)
register_indicator("ma", MAFactor)
register_indicator("ema", EMAFactor)
register_indicator("rsi", RSIFactor)
register_indicator("atr", ATRFactor)
register_indicator("macd", MACDFactor)
