from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import main as app_main


@dataclass
class _Res:
    summary: dict[str, Any]


def test_parse_args_defaults_to_runner():
    args = app_main.parse_args([])
    assert args.task == "runner"
    assert args.config == "config/config.yml"
    assert args.max_cycles is None


def test_main_backtest_accepts_config_after_subcommand(monkeypatch):
    calls: list[dict[str, Any]] = []

    class _FakeEngine:
        def __init__(self, *, cfg_path: str, data_path=None, artifacts_dir=None):
            calls.append({"cfg_path": cfg_path, "data_path": data_path, "artifacts_dir": artifacts_dir})

        def run(self):
            return _Res(
                summary={
                    "num_candles": 100,
                    "num_trades": 2,
                    "num_wins": 1,
                    "num_losses": 1,
                    "num_timeouts": 0,
                    "win_rate": 0.5,
                    "total_pnl": 0.001,
                }
            )

    monkeypatch.setattr(app_main, "BacktestEngine", _FakeEngine)
    res = app_main.main(["backtest", "--config", "config/bt.yml", "--data", "k.csv"])
    assert res["num_trades"] == 2
    assert calls == [{"cfg_path": "config/bt.yml", "data_path": "k.csv", "artifacts_dir": None}]


def test_main_global_config_before_subcommand(monkeypatch):
    args = app_main.parse_args(["--config", "config/other.yml", "backtest", "--artifacts-dir", "out"])
    assert args.config == "config/other.yml"
    assert args.task == "backtest"
    assert args.artifacts_dir == "out"


def test_main_runner_uses_trading_engine(monkeypatch):
    class _FakeEngine:
        def __init__(self, *, cfg_path: str, max_cycles: int | None = None, **_kwargs):
            self.cfg_path = cfg_path
            self.max_cycles = max_cycles

        def run(self):
            return _Res(summary={"cfg_path": self.cfg_path, "max_cycles": self.max_cycles})

    monkeypatch.setattr(app_main, "TradingEngine", _FakeEngine)
    res = app_main.main(["--config", "config/config.yml", "runner", "--max-cycles", "12"])
    assert res == {"cfg_path": "config/config.yml", "max_cycles": 12}
