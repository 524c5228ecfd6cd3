import pytest

from algo.risk.manager import RiskManager
from algo.strategy.signal_detector import SignalDetector
from engine.backtest_engine import BacktestEngine, BacktestSimulator
from market_data.loader import candles_to_frame
from shared.config.schema import AppConfig
from shared.models.models import Signal


def _simulator(entry_mode="close"):
    return BacktestSimulator(SignalDetector(), RiskManager(), entry_mode=entry_mode)


def _drift(make_candle, start, n):
    """不触及止损/止盈的小幅震荡 K 线。"""
    return [make_candle(start + k, open=101.0, high=102.0, low=100.5, close=101.5) for k in range(n)]


def test_long_take_profit_on_fourth_bar(long_spike_window, make_candle):
    candles = long_spike_window + _drift(make_candle, 21, 3)
    candles.append(make_candle(24, open=101.5, high=103.5, low=101.0, close=103.0))

    result = _simulator().run(candles)

    assert result.num_trades == 1
    trade = result.trades[0]
    assert trade.side is Signal.LONG
    assert trade.entry_index == 20
    assert trade.exit_index == 24
    assert trade.outcome == "tp"
    assert trade.entry_price == pytest.approx(101.0)
    assert trade.exit_price == pytest.approx(trade.take_profit)
    assert trade.profit_fraction == pytest.approx((trade.take_profit - 101.0) / 101.0)
    assert result.num_wins == 1
    assert result.win_rate == pytest.approx(1.0)
    assert result.total_pnl == pytest.approx(trade.profit_fraction)


def test_stop_loss_wins_when_both_touched(long_spike_window, make_candle):
    candles = long_spike_window + [make_candle(21, open=101.0, high=104.0, low=99.0, close=101.0)]
    candles += _drift(make_candle, 22, 2)
    result = _simulator().run(candles)
    trade = result.trades[0]
    assert trade.outcome == "sl"
    assert trade.exit_index == 21
    assert trade.exit_price == pytest.approx(trade.stop_loss)
    assert trade.profit_fraction < 0
    assert result.num_losses == 1
    assert result.win_rate == 0.0


def test_timeout_closes_at_last_bar(long_spike_window, make_candle):
    candles = long_spike_window + _drift(make_candle, 21, 3)
    result = _simulator().run(candles)
    trade = result.trades[0]
    assert trade.outcome == "timeout"
    assert trade.exit_index == len(candles) - 1
    assert trade.exit_price == pytest.approx(101.5)
    assert result.num_timeouts == 1


def test_short_take_profit(short_spike_window, make_candle):
    candles = short_spike_window + [make_candle(21, open=99.0, high=99.5, low=96.5, close=97.0)]
    candles.append(make_candle(22, open=97.0, close=97.0))
    result = _simulator().run(candles)
    trade = result.trades[0]
    assert trade.side is Signal.SHORT
    assert trade.outcome == "tp"
    assert trade.exit_index == 21
    assert trade.profit_fraction > 0


def test_next_open_entry(long_spike_window, make_candle):
    candles = long_spike_window + [make_candle(21, open=100.5, high=102.0, low=100.2, close=101.5)]
    candles.append(make_candle(22, open=101.5, high=103.0, low=101.0, close=102.5))
    candles.append(make_candle(23, open=102.5, close=102.5))
    trade = _simulator("next_open").run(candles).trades[0]
    assert trade.entry_price == pytest.approx(100.5)
    assert trade.outcome == "tp"
    assert trade.exit_index == 22


def test_signal_on_last_bar_is_ignored(long_spike_window):
    result = _simulator().run(long_spike_window)
    assert result.num_trades == 0
    assert result.win_rate == 0.0


def test_short_history_has_no_trades(flat_candles):
    result = _simulator().run(flat_candles(10))
    assert result.num_trades == 0
    assert result.total_pnl == 0.0


def test_deterministic(long_spike_window, make_candle):
    candles = long_spike_window + _drift(make_candle, 21, 3)
    assert _simulator().run(candles) == _simulator().run(candles)


def test_unknown_entry_mode():
    with pytest.raises(ValueError):
        BacktestSimulator(SignalDetector(), RiskManager(), entry_mode="vwap")


def test_engine_runs_from_csv(tmp_path, long_spike_window, make_candle):
    candles = long_spike_window + _drift(make_candle, 21, 3)
    candles.append(make_candle(24, open=101.5, high=103.5, low=101.0, close=103.0))
    data_path = tmp_path / "klines.csv"
    candles_to_frame(candles).to_csv(data_path, index=False)

    engine = BacktestEngine(cfg_obj=AppConfig(), data_path=data_path, artifacts_dir=tmp_path / "out")
    res = engine.run()

    assert res.summary["num_candles"] == len(candles)
    assert res.summary["num_trades"] == 1
    assert res.summary["num_wins"] == 1
    assert res.summary["entry_mode"] == "close"
    assert (tmp_path / "out" / "trades.csv").exists()
    assert engine.result is not None


def test_engine_with_preloaded_candles(flat_candles):
    res = BacktestEngine(cfg_obj=AppConfig(), candles=flat_candles(40)).run()
    assert res.summary["num_trades"] == 0
    assert res.artifacts is None
