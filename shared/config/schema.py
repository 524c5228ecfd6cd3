"""配置架构定义（Pydantic Schema）。

目标：
- 让配置成为“强类型 + 可演进”的边界协议；
- 启动阶段尽早失败，避免 typo/类型错误在实盘或长回测中“隐蔽爆炸”；
- 业务代码只接收这里的对象，不再到处 `cfg.get(...)`。
"""

from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class ExchangeConfig(BaseModel):
    """交易所配置（Bybit v5）。"""
    name: str = "bybit"
    base_url: str = "https://api.bybit.com"
    ws_url: str = "wss://stream.bybit.com/v5/public/linear"

    # 使用 Field(default=None) 允许这些字段在 YAML 中缺失
    api_key: Optional[str] = None
    api_secret: Optional[str] = None
    allow_live: bool = False

    category: str = "linear"
    quote_asset: str = "USDT"
    recv_window: int = 5000
    timeout_s: float = 5.0

    model_config = ConfigDict(extra="forbid")


class TrendConfig(BaseModel):
    """趋势过滤规则（type + params）。

    说明：
    - `sma`：收盘价 vs SMA(period)，可选 SMA(period) vs SMA(slow_period)；
    - `ema_rsi`：EMA(fast) vs EMA(slow) + RSI 区间；
    - `none`：不过滤。
    """
    type: Literal["sma", "ema_rsi", "none"] = "sma"
    params: Dict[str, Any] = Field(default_factory=dict)
    model_config = ConfigDict(extra="forbid")

    @model_validator(mode="before")
    @classmethod
    def _pack_flat_params(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        if set(data.keys()) <= {"type", "params"}:
            return data
        params = {k: v for k, v in data.items() if k not in {"type", "params"}}
        existing = data.get("params")
        if isinstance(existing, dict):
            params = {**params, **existing}
        return {"type": data.get("type", "sma"), "params": params}


class SignalConfig(BaseModel):
    """量价信号参数。"""
    volume_window: int = Field(default=15, gt=0)
    lookback_period: int = Field(default=5, gt=0)
    spike_factor: float = Field(default=1.5, gt=0)
    extremum_ratio: float = Field(default=2.0 / 3.0, gt=0, le=1)
    trend: TrendConfig = Field(default_factory=TrendConfig)
    model_config = ConfigDict(extra="forbid")


class IndicatorConfig(BaseModel):
    """指标缓存配置。"""
    ttl_s: float = Field(default=5.0, ge=0)
    model_config = ConfigDict(extra="forbid")


class RiskConfig(BaseModel):
    """止损/止盈与仓位参数。"""
    mode: Literal["atr_clamped", "fixed_percent", "fee_adjusted"] = "atr_clamped"
    atr_period: int = Field(default=9, gt=0)
    stop_loss_atr_multiplier: float = Field(default=1.0, gt=0)
    risk_reward_ratio: float = Field(default=2.0, gt=0)
    min_sl_percent: float = Field(default=0.001, ge=0)
    max_sl_percent: float = Field(default=0.01, gt=0)
    spread_adjustment_factor: float = Field(default=0.0005, ge=0)
    risk_per_trade: float = Field(default=0.01, gt=0, le=1)
    fee_rate: float = Field(default=0.00055, ge=0)
    model_config = ConfigDict(extra="forbid")

    @model_validator(mode="after")
    def _check_sl_bounds(self) -> "RiskConfig":
        if self.min_sl_percent > self.max_sl_percent:
            raise ValueError("risk.min_sl_percent must be <= risk.max_sl_percent")
        return self


class DecisionConfig(BaseModel):
    """决策周期调度与校验参数。"""
    interval_s: float = Field(default=30.0, gt=0)
    cycle_timeout_s: float = Field(default=20.0, gt=0)
    kline_interval: str = "1"
    orderbook_depth: int = 50
    mid_price_levels: int = 5
    max_price_divergence: float = Field(default=0.002, ge=0)
    candle_stale_after_s: float = Field(default=90.0, gt=0)
    orderbook_stale_after_s: float = Field(default=10.0, gt=0)
    max_cached_candles: int = Field(default=500, gt=0)
    model_config = ConfigDict(extra="forbid")


class BacktestConfig(BaseModel):
    """回测配置。"""
    data_path: str = "dataset/history/bybit_klines.csv"
    symbol: Optional[str] = None
    entry_mode: Literal["close", "next_open"] = "close"
    model_config = ConfigDict(extra="forbid")


class MainConfig(BaseModel):
    """应用总配置。"""
    symbols: List[str] = Field(default_factory=lambda: ["BTCUSDT"])
    mode: Literal["dry-run", "live"] = "dry-run"
    equity_base: float = Field(default=1000.0, ge=0)

    # 子模块配置
    exchange: ExchangeConfig = Field(default_factory=ExchangeConfig)
    signal: SignalConfig = Field(default_factory=SignalConfig)
    indicators: IndicatorConfig = Field(default_factory=IndicatorConfig)
    risk: RiskConfig = Field(default_factory=RiskConfig)
    decision: DecisionConfig = Field(default_factory=DecisionConfig)
    backtest: BacktestConfig = Field(default_factory=BacktestConfig)

    model_config = ConfigDict(extra="forbid", validate_assignment=True)

    @model_validator(mode="before")
    @classmethod
    def _normalize_mode(cls, data: Any) -> Any:
        if isinstance(data, dict) and isinstance(data.get("mode"), str):
            data = dict(data)
            data["mode"] = data["mode"].replace("_", "-").lower()
        return data


# 兼容旧命名
AppConfig = MainConfig
