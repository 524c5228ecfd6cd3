import pytest

from algo.risk.manager import RiskManager
from algo.strategy.signal_detector import SignalDetector
from broker.mock import DryRunBroker
from engine.decision import EMITTED, SKIPPED, DecisionOrchestrator
from market_data.state import MarketState, kline_topic, orderbook_topic
from shared.errors import ExternalServiceError
from shared.models.models import OrderBookLevel, OrderBookSnapshot, Signal, TradeLimits

SYMBOL = "BTCUSDT"


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def _book(bid=100.95, ask=101.05, size=1.0):
    bids = [OrderBookLevel(bid, size)] if bid else []
    asks = [OrderBookLevel(ask, size)] if ask else []
    return OrderBookSnapshot(symbol=SYMBOL, bids=bids, asks=asks)


def _state(candles, book=None, clock=None):
    state = MarketState(clock=clock or FakeClock())
    for c in candles:
        state.apply_kline_update(kline_topic(SYMBOL), c)
    if book is not None:
        state.apply_snapshot(orderbook_topic(SYMBOL), book)
    return state


def _orchestrator(state, broker, risk=None, candle_provider=None):
    return DecisionOrchestrator(
        state,
        SignalDetector(),
        risk or RiskManager(),
        executor=broker,
        account=broker,
        instruments=broker,
        candle_provider=candle_provider,
    )


def test_long_signal_emits_formatted_order(long_spike_window):
    broker = DryRunBroker(balance=1000.0)
    orch = _orchestrator(_state(long_spike_window, _book()), broker)

    outcome = orch.run_cycle(SYMBOL)

    assert outcome.status == EMITTED
    assert outcome.emitted
    assert outcome.signal is Signal.LONG
    assert outcome.order_id == "dry-1"
    intent = broker.orders[0]
    assert intent == outcome.intent
    assert intent.side == "Buy"
    assert intent.price == pytest.approx(101.0)
    # ATR(9)=2.5 裁剪到 1%，加 0.05% 价差，再按 tick 0.1 对齐
    assert intent.stop_loss == pytest.approx(99.9)
    assert intent.take_profit == pytest.approx(103.1)
    assert intent.quantity == pytest.approx(9.09)
    assert intent.client_order_id.startswith("vpa_")


def test_short_signal_emits_sell(short_spike_window):
    broker = DryRunBroker(balance=1000.0)
    orch = _orchestrator(_state(short_spike_window, _book(98.95, 99.05)), broker)
    outcome = orch.run_cycle(SYMBOL)
    assert outcome.emitted
    assert broker.orders[0].side == "Sell"
    assert broker.orders[0].stop_loss > broker.orders[0].price > broker.orders[0].take_profit


def test_same_candle_gives_same_client_order_id(long_spike_window):
    first, second = DryRunBroker(), DryRunBroker()
    _orchestrator(_state(long_spike_window, _book()), first).run_cycle(SYMBOL)
    _orchestrator(_state(long_spike_window, _book()), second).run_cycle(SYMBOL)
    assert first.orders[0].client_order_id == second.orders[0].client_order_id


def test_open_orders_block_cycle(long_spike_window):
    broker = DryRunBroker()
    broker.open_orders[SYMBOL] = ["existing"]
    outcome = _orchestrator(_state(long_spike_window, _book()), broker).run_cycle(SYMBOL)
    assert outcome.status == SKIPPED
    assert outcome.reason == "open_orders"
    assert broker.orders == []


def test_second_cycle_blocked_when_orders_rest(long_spike_window):
    broker = DryRunBroker(fill_open_orders=True)
    orch = _orchestrator(_state(long_spike_window, _book()), broker)
    assert orch.run_cycle(SYMBOL).emitted
    assert orch.run_cycle(SYMBOL).reason == "open_orders"
    assert len(broker.orders) == 1


def test_flat_market_has_no_signal(flat_candles):
    outcome = _orchestrator(_state(flat_candles(25), _book(99.95, 100.05)), DryRunBroker()).run_cycle(SYMBOL)
    assert outcome.reason == "no_signal"
    assert outcome.signal is Signal.NONE


def test_short_cache_without_provider(flat_candles):
    outcome = _orchestrator(_state(flat_candles(5), _book()), DryRunBroker()).run_cycle(SYMBOL)
    assert outcome.reason == "insufficient_data"


def test_provider_fallback_drops_unclosed_tail(long_spike_window, make_candle):
    history = long_spike_window + [make_candle(21, confirm=False)]
    broker = DryRunBroker(candles={SYMBOL: history})
    orch = _orchestrator(_state([], _book()), broker, candle_provider=broker)
    outcome = orch.run_cycle(SYMBOL)
    assert outcome.emitted
    assert outcome.signal is Signal.LONG


def test_stale_candles_skip(long_spike_window):
    clock = FakeClock()
    state = _state(long_spike_window, _book(), clock=clock)
    clock.now += 120.0
    outcome = _orchestrator(state, DryRunBroker()).run_cycle(SYMBOL)
    assert outcome.reason == "stale_data"


def test_stale_orderbook_skip(long_spike_window):
    clock = FakeClock()
    state = _state([], _book(), clock=clock)
    clock.now += 30.0
    for c in long_spike_window:
        state.apply_kline_update(kline_topic(SYMBOL), c)
    outcome = _orchestrator(state, DryRunBroker()).run_cycle(SYMBOL)
    assert outcome.reason == "stale_data"


def test_missing_or_one_sided_orderbook(long_spike_window):
    assert _orchestrator(_state(long_spike_window), DryRunBroker()).run_cycle(SYMBOL).reason == "insufficient_data"
    one_sided = _state(long_spike_window, _book(bid=None))
    assert _orchestrator(one_sided, DryRunBroker()).run_cycle(SYMBOL).reason == "insufficient_data"


def test_price_divergence(long_spike_window):
    outcome = _orchestrator(_state(long_spike_window, _book(104.95, 105.05)), DryRunBroker()).run_cycle(SYMBOL)
    assert outcome.reason == "price_divergence"
    assert outcome.signal is Signal.LONG


def test_quantity_below_minimum(long_spike_window):
    limits = {SYMBOL: TradeLimits(symbol=SYMBOL, min_qty=100.0, qty_step=0.001, tick_size=0.1)}
    broker = DryRunBroker(limits=limits)
    outcome = _orchestrator(_state(long_spike_window, _book()), broker).run_cycle(SYMBOL)
    assert outcome.reason == "quantity_too_small"


def test_min_notional(long_spike_window):
    limits = {SYMBOL: TradeLimits(symbol=SYMBOL, min_qty=0.001, qty_step=0.001, tick_size=0.1, min_notional=5000.0)}
    outcome = _orchestrator(_state(long_spike_window, _book()), DryRunBroker(limits=limits)).run_cycle(SYMBOL)
    assert outcome.reason == "quantity_too_small"


def test_zero_balance_is_degenerate(long_spike_window):
    outcome = _orchestrator(_state(long_spike_window, _book()), DryRunBroker(balance=0.0)).run_cycle(SYMBOL)
    assert outcome.reason == "degenerate"


def test_notional_above_balance(long_spike_window):
    risk = RiskManager(risk_per_trade=0.5)
    outcome = _orchestrator(_state(long_spike_window, _book()), DryRunBroker(), risk=risk).run_cycle(SYMBOL)
    assert outcome.reason == "insufficient_balance"


class _FailingBroker(DryRunBroker):
    def __init__(self, exc, **kwargs):
        super().__init__(**kwargs)
        self.exc = exc

    def place_limit_order(self, *args, **kwargs):
        raise self.exc


def test_external_failure_maps_to_reason(long_spike_window):
    broker = _FailingBroker(ExternalServiceError("order rejected: retCode=10001"))
    outcome = _orchestrator(_state(long_spike_window, _book()), broker).run_cycle(SYMBOL)
    assert outcome.status == SKIPPED
    assert outcome.reason == "external_error"


def test_network_timeout_maps_to_external_error(long_spike_window):
    broker = _FailingBroker(TimeoutError("read timed out"))
    outcome = _orchestrator(_state(long_spike_window, _book()), broker).run_cycle(SYMBOL)
    assert outcome.reason == "external_error"


def test_unexpected_error_is_contained(long_spike_window):
    broker = _FailingBroker(KeyError("boom"))
    outcome = _orchestrator(_state(long_spike_window, _book()), broker).run_cycle(SYMBOL)
    assert outcome.reason == "error"


def test_orderbook_kept_fresh_by_deltas(long_spike_window):
    clock = FakeClock()
    state = _state([], clock=clock)
    state.apply_message(
        {"topic": orderbook_topic(SYMBOL), "type": "snapshot", "ts": 1, "data": {"b": [["100.95", "1"]], "a": [["101.05", "1"]]}}
    )
    for step in range(1, 31):
        clock.now += 1.0
        state.apply_message(
            {"topic": orderbook_topic(SYMBOL), "type": "delta", "ts": 1 + step, "data": {"b": [["100.9", "2"]], "a": []}}
        )
    for c in long_spike_window:
        state.apply_kline_update(kline_topic(SYMBOL), c)

    outcome = _orchestrator(state, DryRunBroker()).run_cycle(SYMBOL)
    assert outcome.reason != "stale_data"
    assert outcome.emitted
