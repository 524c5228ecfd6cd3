"""风险管理：止损/止盈价位与按风险定仓。"""

from __future__ import annotations

import math
from typing import Sequence

from algo.factors.atr import atr_series
from shared.errors import ComputationDegenerateError
from shared.models.models import Candle, PositionSizing, RiskLevels, Signal
from shared.utils.logging import setup_logger
from shared.utils.precision import floor_to_step

RISK_MODES = ("atr_clamped", "fixed_percent", "fee_adjusted")


class RiskManager:
    """止损距离 = clamp(ATR * multiplier, entry * min_sl, entry * max_sl) + entry * spread。

    Parameters
    ----------
    atr_period:
        ATR 周期（取最近 atr_period + 1 根 K 线）。
    stop_loss_atr_multiplier:
        ATR 倍数。
    risk_reward_ratio:
        止盈距离 / 止损距离。
    min_sl_percent, max_sl_percent:
        止损距离占入场价比例的上下限。
    spread_adjustment_factor:
        额外加到止损距离上的价差补偿（占入场价比例）。
    risk_per_trade:
        单笔风险占权益比例（定仓用）。
    fee_rate:
        单边手续费率（仅 `fee_adjusted` 模式使用）。
    mode:
        `atr_clamped` / `fixed_percent` / `fee_adjusted`。
    """

    def __init__(
        self,
        atr_period: int = 9,
        stop_loss_atr_multiplier: float = 1.0,
        risk_reward_ratio: float = 2.0,
        min_sl_percent: float = 0.001,
        max_sl_percent: float = 0.01,
        spread_adjustment_factor: float = 0.0005,
        risk_per_trade: float = 0.01,
        fee_rate: float = 0.00055,
        mode: str = "atr_clamped",
        logger=None,
    ):
        if mode not in RISK_MODES:
            raise ValueError(f"Unknown risk mode: {mode}")
        if min_sl_percent > max_sl_percent:
            raise ValueError("min_sl_percent must be <= max_sl_percent")
        self.atr_period = int(atr_period)
        self.stop_loss_atr_multiplier = float(stop_loss_atr_multiplier)
        self.risk_reward_ratio = float(risk_reward_ratio)
        self.min_sl_percent = float(min_sl_percent)
        self.max_sl_percent = float(max_sl_percent)
        self.spread_adjustment_factor = float(spread_adjustment_factor)
        self.risk_per_trade = float(risk_per_trade)
        self.fee_rate = float(fee_rate)
        self.mode = mode
        self.logger = logger or setup_logger("risk")

    @classmethod
    def from_config(cls, cfg, logger=None) -> "RiskManager":
        """由 `RiskConfig` 构建。"""
        return cls(
            atr_period=cfg.atr_period,
            stop_loss_atr_multiplier=cfg.stop_loss_atr_multiplier,
            risk_reward_ratio=cfg.risk_reward_ratio,
            min_sl_percent=cfg.min_sl_percent,
            max_sl_percent=cfg.max_sl_percent,
            spread_adjustment_factor=cfg.spread_adjustment_factor,
            risk_per_trade=cfg.risk_per_trade,
            fee_rate=cfg.fee_rate,
            mode=cfg.mode,
            logger=logger,
        )

    # ---------- 止损 / 止盈 ----------

    def calculate_risk_levels(self, side: Signal, entry_price: float, candles: Sequence[Candle]) -> RiskLevels:
        """计算止损/止盈价位。

        K 线不足 `atr_period + 1` 根（或 `fixed_percent` 模式）时，止损距离退化为
        entry * min_sl_percent，且不加价差补偿。

        Raises
        ------
        ComputationDegenerateError
            入场价非正、ATR 非有限值，或修正后价位仍不满足方向顺序。
        """
        if side not in (Signal.LONG, Signal.SHORT):
            raise ValueError(f"risk levels need a LONG/SHORT side, got {side}")
        entry = float(entry_price)
        if not math.isfinite(entry) or entry <= 0:
            raise ComputationDegenerateError(f"invalid entry price: {entry_price}")

        raw = None
        if self.mode == "fixed_percent" or len(candles) < self.atr_period + 1:
            distance = entry * self.min_sl_percent
        else:
            raw = self._atr(candles) * self.stop_loss_atr_multiplier
            distance = self._clamp(raw, entry * self.min_sl_percent, entry * self.max_sl_percent)
            distance += entry * self.spread_adjustment_factor

        levels = self._levels(side, entry, distance)
        if levels.is_valid(side):
            return levels

        # 距离退化（例如 min_sl=0 且 ATR=0）：改用未裁剪的原始距离再算一次
        if raw is not None and raw > 0:
            self.logger.warning(
                "Degenerate stop distance %.8f at entry %.8f, retry with raw ATR distance %.8f",
                distance,
                entry,
                raw,
            )
            levels = self._levels(side, entry, raw)
            if levels.is_valid(side):
                return levels
        raise ComputationDegenerateError(
            f"degenerate risk levels for {side.value} at {entry}: sl={levels.stop_loss}, tp={levels.take_profit}"
        )

    def _levels(self, side: Signal, entry: float, distance: float) -> RiskLevels:
        reward = distance * self.risk_reward_ratio
        if self.mode == "fee_adjusted":
            # 止盈再推远一个往返手续费，保证扣费后的盈亏比
            reward += 2.0 * self.fee_rate * entry
        if side is Signal.LONG:
            return RiskLevels(entry_price=entry, stop_loss=entry - distance, take_profit=entry + reward)
        return RiskLevels(entry_price=entry, stop_loss=entry + distance, take_profit=entry - reward)

    def _atr(self, candles: Sequence[Candle]) -> float:
        tail = list(candles)[-(self.atr_period + 1):]
        values = atr_series(
            [c.high for c in tail],
            [c.low for c in tail],
            [c.close for c in tail],
            self.atr_period,
        )
        atr = float(values[-1])
        if not math.isfinite(atr):
            raise ComputationDegenerateError(f"non-finite ATR({self.atr_period}): {atr}")
        return atr

    @staticmethod
    def _clamp(value: float, lower: float, upper: float) -> float:
        return max(lower, min(value, upper))

    # ---------- 定仓 ----------

    def calculate_position_size(
        self,
        entry_price: float,
        stop_loss: float,
        account_equity: float,
        risk_per_trade: float | None = None,
        qty_step: float | None = None,
    ) -> PositionSizing:
        """按风险资金定仓：quantity = equity * risk_fraction / 单位风险。

        单位风险为 |entry - stop_loss|（`fee_adjusted` 模式再加上往返手续费）；
        单位风险为 0 时返回数量 0。数量按 `qty_step` 向下取整。
        """
        fraction = self.risk_per_trade if risk_per_trade is None else float(risk_per_trade)
        risk_capital = max(0.0, float(account_equity)) * fraction
        risk_per_unit = abs(float(entry_price) - float(stop_loss))
        if risk_per_unit == 0:
            return PositionSizing(quantity=0.0, risk_capital=risk_capital)
        if self.mode == "fee_adjusted":
            risk_per_unit += (float(entry_price) + float(stop_loss)) * self.fee_rate
        qty = risk_capital / risk_per_unit
        if qty_step:
            qty = floor_to_step(qty, qty_step)
        return PositionSizing(quantity=max(0.0, qty), risk_capital=risk_capital)
