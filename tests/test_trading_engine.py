import asyncio
import threading
import time

import pytest

from broker.mock import DryRunBroker
from engine.trading_engine import TradingEngine
from market_data.state import MarketState, kline_topic, orderbook_topic
from shared.config.schema import AppConfig
from shared.models.models import OrderBookLevel, OrderBookSnapshot


class IdleStream:
    """不连网的 ingest：等待 shutdown 后退出。"""

    def __init__(self):
        self.started = False
        self.stopped = False

    async def run(self, shutdown):
        self.started = True
        await shutdown.wait()

    def stop(self):
        self.stopped = True


def _cfg(**decision):
    params = {"interval_s": 0.01, "cycle_timeout_s": 2.0}
    params.update(decision)
    return AppConfig.model_validate({"symbols": ["BTCUSDT"], "decision": params})


def _state(candles):
    state = MarketState()
    for c in candles:
        state.apply_kline_update(kline_topic("BTCUSDT"), c)
    book = OrderBookSnapshot(
        symbol="BTCUSDT",
        bids=[OrderBookLevel(100.95, 1.0)],
        asks=[OrderBookLevel(101.05, 1.0)],
    )
    state.apply_snapshot(orderbook_topic("BTCUSDT"), book)
    return state


def test_dry_run_emits_once_then_waits_for_fill(long_spike_window):
    broker = DryRunBroker(balance=1000.0, fill_open_orders=True)
    stream = IdleStream()
    engine = TradingEngine(
        cfg_obj=_cfg(),
        broker=broker,
        candle_provider=broker,
        state=_state(long_spike_window),
        stream=stream,
        max_cycles=2,
        install_signal_handlers=False,
    )

    res = engine.run()

    assert res.summary["cycles"] == 2
    assert res.summary["emitted"] == 1
    assert res.summary["skipped"] == {"open_orders": 1}
    assert res.summary["order_ids"] == ["dry-1"]
    assert len(broker.orders) == 1
    assert stream.started and stream.stopped


def test_slow_cycle_is_recorded_as_timeout(long_spike_window):
    class SlowBroker(DryRunBroker):
        def has_open_orders(self, category, symbol):
            time.sleep(0.3)
            return False

    broker = SlowBroker()
    engine = TradingEngine(
        cfg_obj=_cfg(cycle_timeout_s=0.05),
        broker=broker,
        candle_provider=broker,
        state=_state(long_spike_window),
        stream=IdleStream(),
        max_cycles=1,
        install_signal_handlers=False,
    )
    res = engine.run()
    assert res.summary["skipped"] == {"timeout": 1}


def test_stop_ends_loop(flat_candles):
    broker = DryRunBroker()
    engine = TradingEngine(
        cfg_obj=_cfg(interval_s=30.0),
        broker=broker,
        candle_provider=broker,
        state=_state(flat_candles(25)),
        stream=IdleStream(),
        install_signal_handlers=False,
    )

    async def _run():
        task = asyncio.create_task(engine.run_async())
        await asyncio.sleep(0.1)
        engine.stop()
        return await asyncio.wait_for(task, timeout=2.0)

    res = asyncio.run(_run())
    assert res.summary["cycles"] == 1
    assert res.summary["skipped"] == {"no_signal": 1}


def test_live_mode_requires_allow_live():
    cfg = AppConfig.model_validate({"mode": "live"})
    with pytest.raises(ValueError):
        TradingEngine(cfg_obj=cfg, stream=IdleStream(), install_signal_handlers=False).run()


def test_stop_from_another_thread(flat_candles):
    broker = DryRunBroker()
    engine = TradingEngine(
        cfg_obj=_cfg(interval_s=30.0),
        broker=broker,
        candle_provider=broker,
        state=_state(flat_candles(25)),
        stream=IdleStream(),
        install_signal_handlers=False,
    )

    def _stop_when_running():
        deadline = time.monotonic() + 5.0
        while engine._shutdown is None and time.monotonic() < deadline:
            time.sleep(0.01)
        time.sleep(0.1)
        engine.stop()

    stopper = threading.Thread(target=_stop_when_running, daemon=True)
    stopper.start()
    started = time.monotonic()
    res = engine.run()
    stopper.join(timeout=1.0)
    assert time.monotonic() - started < 5.0
    assert res.summary["cycles"] == 1
