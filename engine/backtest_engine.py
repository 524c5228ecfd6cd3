"""单次回测引擎（BacktestEngine）。

配置 → K 线 CSV → 逐根检测信号 → 止损/止盈 → 向后扫描出场 → 汇总统计。
整个过程单线程、无缓存，同样的输入得到完全相同的结果。
"""

from __future__ import annotations

from pathlib import Path
from typing import Sequence

import pandas as pd

from algo.risk.manager import RiskManager
from algo.strategy.signal_detector import SignalDetector
from engine.base_engine import BaseEngine, EngineResult
from market_data.loader import load_candles_from_csv
from shared.config.config_loader import load_config
from shared.errors import ComputationDegenerateError
from shared.models.models import BacktestResult, Candle, RiskLevels, Signal, SimulatedTrade
from shared.utils.logging import setup_logger

ENTRY_MODES = ("close", "next_open")


class BacktestSimulator:
    """在历史 K 线上重放信号并模拟止损/止盈出场。

    Parameters
    ----------
    detector:
        信号判定器（窗口长度取其 `required_window`）。
    risk:
        止损/止盈计算。
    entry_mode:
        `close`：以信号 K 线收盘价入场，从下一根开始扫描；
        `next_open`：以下一根开盘价入场，扫描包含这一根。
    """

    def __init__(self, detector: SignalDetector, risk: RiskManager, entry_mode: str = "close", logger=None):
        if entry_mode not in ENTRY_MODES:
            raise ValueError(f"Unknown entry_mode: {entry_mode}")
        self.detector = detector
        self.risk = risk
        self.entry_mode = entry_mode
        self.logger = logger or setup_logger("backtest")

    def run(self, candles: Sequence[Candle]) -> BacktestResult:
        n = len(candles)
        window_len = self.detector.required_window
        trades: list[SimulatedTrade] = []

        i = window_len - 1
        while i <= n - 2:
            window = candles[i - window_len + 1:i + 1]
            signal = self.detector.evaluate(window)
            if signal is Signal.NONE:
                i += 1
                continue

            if self.entry_mode == "close":
                entry = candles[i].close
            else:
                entry = candles[i + 1].open
            try:
                levels = self.risk.calculate_risk_levels(signal, entry, window)
            except ComputationDegenerateError as exc:
                self.logger.warning("Skip signal at bar %d: %s", i, exc)
                i += 1
                continue

            trade = self._simulate_exit(candles, signal, i, levels)
            trades.append(trade)
            i = trade.exit_index + 1

        return self._aggregate(trades)

    def _simulate_exit(self, candles: Sequence[Candle], signal: Signal, i: int, levels: RiskLevels) -> SimulatedTrade:
        entry, sl, tp = levels.entry_price, levels.stop_loss, levels.take_profit
        exit_index = len(candles) - 1
        exit_price = candles[-1].close
        outcome = "timeout"
        for j in range(i + 1, len(candles)):
            bar = candles[j]
            # 同一根同时触及时按止损处理
            if signal is Signal.LONG:
                if bar.low <= sl:
                    exit_index, exit_price, outcome = j, sl, "sl"
                    break
                if bar.high >= tp:
                    exit_index, exit_price, outcome = j, tp, "tp"
                    break
            else:
                if bar.high >= sl:
                    exit_index, exit_price, outcome = j, sl, "sl"
                    break
                if bar.low <= tp:
                    exit_index, exit_price, outcome = j, tp, "tp"
                    break

        if signal is Signal.LONG:
            profit = (exit_price - entry) / entry
        else:
            profit = (entry - exit_price) / entry
        return SimulatedTrade(
            side=signal,
            entry_index=i,
            exit_index=exit_index,
            entry_price=entry,
            exit_price=exit_price,
            stop_loss=sl,
            take_profit=tp,
            outcome=outcome,
            profit_fraction=profit,
        )

    @staticmethod
    def _aggregate(trades: list[SimulatedTrade]) -> BacktestResult:
        wins = sum(1 for t in trades if t.outcome == "tp")
        losses = sum(1 for t in trades if t.outcome == "sl")
        timeouts = sum(1 for t in trades if t.outcome == "timeout")
        return BacktestResult(
            trades=trades,
            num_trades=len(trades),
            num_wins=wins,
            num_losses=losses,
            num_timeouts=timeouts,
            win_rate=wins / len(trades) if trades else 0.0,
            total_pnl=sum(t.profit_fraction for t in trades),
        )


def _export_trades_csv(trades: list[SimulatedTrade], path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    rows = []
    for t in trades:
        rows.append(
            {
                "side": t.side.value,
                "entry_index": t.entry_index,
                "exit_index": t.exit_index,
                "entry_price": t.entry_price,
                "exit_price": t.exit_price,
                "stop_loss": t.stop_loss,
                "take_profit": t.take_profit,
                "outcome": t.outcome,
                "profit_fraction": t.profit_fraction,
            }
        )
    pd.DataFrame(rows).to_csv(path, index=False)


class BacktestEngine(BaseEngine):
    """单次回测引擎。

    Notes
    -----
    CLI 统一由仓库根目录 `main.py` 承担。
    """

    def __init__(
        self,
        *,
        cfg_path: str = "config/config.yml",
        cfg_obj=None,
        data_path: str | Path | None = None,
        candles: list[Candle] | None = None,
        artifacts_dir: str | Path | None = None,
    ):
        self._cfg_path = cfg_path
        self._cfg_obj = cfg_obj
        self._data_path = data_path
        self._candles = candles
        self._artifacts_dir = artifacts_dir
        self.result: BacktestResult | None = None

    def run(self) -> EngineResult:
        cfg = self._load_cfg()
        logger = setup_logger("backtest")

        candles = self._load_candles(cfg)
        detector = SignalDetector.from_config(cfg.signal)
        risk = RiskManager.from_config(cfg.risk)
        simulator = BacktestSimulator(detector, risk, entry_mode=cfg.backtest.entry_mode, logger=logger)

        result = simulator.run(candles)
        self.result = result

        summary = result.summary()
        summary["num_candles"] = len(candles)
        summary["entry_mode"] = cfg.backtest.entry_mode
        artifacts = self._export_artifacts(result)
        logger.info("Backtest summary: %s", summary)
        return EngineResult(summary=summary, artifacts=artifacts)

    def _load_cfg(self):
        return self._cfg_obj or load_config(self._cfg_path, load_env=False, expand_env=False)

    def _load_candles(self, cfg) -> list[Candle]:
        if self._candles is not None:
            return list(self._candles)
        path = self._data_path or cfg.backtest.data_path
        symbol = cfg.backtest.symbol or (cfg.symbols[0] if cfg.symbols else "BTCUSDT")
        return load_candles_from_csv(path, symbol=symbol, interval=cfg.decision.kline_interval)

    def _export_artifacts(self, result: BacktestResult) -> dict | None:
        if self._artifacts_dir is None:
            return None
        out_dir = Path(self._artifacts_dir)
        _export_trades_csv(result.trades, out_dir / "trades.csv")
        return {"dir": str(out_dir)}
