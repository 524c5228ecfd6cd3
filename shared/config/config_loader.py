"""配置加载。

支持 YAML 配置、环境变量占位符 `${VAR}` 展开，以及 .env/.env.local 自动加载；
解析结果统一交给 `shared.config.schema` 做强校验。
"""

import os
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from shared.config.schema import (
    AppConfig,
    BacktestConfig,
    DecisionConfig,
    ExchangeConfig,
    IndicatorConfig,
    RiskConfig,
    SignalConfig,
    TrendConfig,
)

__all__ = [
    "AppConfig",
    "BacktestConfig",
    "DecisionConfig",
    "ExchangeConfig",
    "IndicatorConfig",
    "RiskConfig",
    "SignalConfig",
    "TrendConfig",
    "load_config",
]

_ENV_PATTERN = re.compile(r"\$\{([^}:]+)(?::-([^}]*))?\}")


def _load_env_file(env_path: Path):
    if not env_path.exists():
        return
    for line in env_path.read_text().splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        value = value.strip().strip('"').strip("'")
        if key and key not in os.environ:
            os.environ[key] = value


def _load_envs(cfg_path: Path):
    """
    加载配置文件目录与仓库根目录下的 .env/.env.local（不覆盖已有环境变量）。
    """
    candidates = [
        cfg_path.parent / ".env",
        cfg_path.parent / ".env.local",
        cfg_path.parent.parent / ".env",
        cfg_path.parent.parent / ".env.local",
    ]
    for env_file in candidates:
        _load_env_file(env_file)


def _expand_env(value: Any) -> Any:
    if isinstance(value, str):
        # 未设置且没有 `:-默认值` 的变量直接报错，避免静默替换为空
        def replacer(match):
            var_name, default = match.group(1), match.group(2)
            if var_name in os.environ:
                return os.environ[var_name]
            if default is not None:
                return default
            raise ValueError(f"Missing environment variable: {var_name}")

        return _ENV_PATTERN.sub(replacer, value)
    if isinstance(value, dict):
        return {k: _expand_env(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_expand_env(v) for v in value]
    return value


def load_config(path: str, load_env: bool = True, expand_env: bool = True) -> AppConfig:
    """从 YAML 读取并解析配置。

    Parameters
    ----------
    path:
        配置文件路径。
    load_env:
        是否自动加载 .env/.env.local。
    expand_env:
        是否展开 `${VAR}` 占位符。

    Returns
    -------
    AppConfig
        校验后的配置对象。

    Raises
    ------
    FileNotFoundError
        配置文件不存在。
    ValueError
        字段非法、出现未知字段或缺失环境变量。
    """
    cfg_path = Path(path)
    if not cfg_path.exists():
        raise FileNotFoundError(f"Config file not found: {cfg_path}")

    if load_env:
        _load_envs(cfg_path)

    with cfg_path.open("r", encoding="utf-8") as f:
        raw_cfg: dict[str, Any] = yaml.safe_load(f) or {}

    if not isinstance(raw_cfg, dict):
        raise ValueError("Config root must be a dict")

    cfg = _expand_env(raw_cfg) if expand_env else raw_cfg

    # 单 symbol 写法：symbol: BTCUSDT
    if "symbol" in cfg and "symbols" not in cfg:
        cfg = dict(cfg)
        cfg["symbols"] = [cfg.pop("symbol")]

    try:
        return AppConfig.model_validate(cfg)
    except ValidationError as exc:
        raise ValueError(f"Invalid config {cfg_path}: {exc}") from exc
