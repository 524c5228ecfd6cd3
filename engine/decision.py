"""决策周期编排（DecisionOrchestrator）。

一个周期 = 查挂单 -> 取 K 线/盘口 -> 信号 -> 止损止盈 -> 盘口偏离校验 ->
交易对约束 -> 定仓 -> 余额校验 -> 下单。任何一步不满足都以 `skipped` 结束，
不重试，下一个周期从头再来。
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from algo.risk.manager import RiskManager
from algo.strategy.signal_detector import SignalDetector
from broker.abstract_broker import AccountProvider, CandleProvider, InstrumentProvider, OrderExecutor
from market_data.state import MarketState, kline_topic, orderbook_topic, weighted_mid_price
from shared.errors import ComputationDegenerateError, DataInsufficientError, DataStaleError, EngineError
from shared.models.models import Candle, OrderBookSnapshot, OrderIntent, RiskLevels, Signal, TradeLimits
from shared.utils.client_order_id import make_client_order_id
from shared.utils.logging import setup_logger
from shared.utils.precision import round_to_step

EMITTED = "emitted"
SKIPPED = "skipped"


@dataclass(frozen=True)
class DecisionOutcome:
    """单个决策周期的结果。"""

    symbol: str
    status: str                      # "emitted" / "skipped"
    reason: str | None = None
    signal: Signal = Signal.NONE
    intent: OrderIntent | None = None
    order_id: str | None = None

    @property
    def emitted(self) -> bool:
        return self.status == EMITTED


class DecisionOrchestrator:
    """单个交易对的决策周期执行器。

    Parameters
    ----------
    state:
        行情缓存（K 线 + 盘口）。
    detector, risk:
        信号判定与风控。
    executor, account, instruments:
        下单/挂单查询、余额、交易对约束（通常是同一个 broker）。
    candle_provider:
        缓存 K 线不足时的回退源，可为 None。
    """

    def __init__(
        self,
        state: MarketState,
        detector: SignalDetector,
        risk: RiskManager,
        executor: OrderExecutor,
        account: AccountProvider,
        instruments: InstrumentProvider,
        candle_provider: CandleProvider | None = None,
        *,
        quote_asset: str = "USDT",
        kline_interval: str = "1",
        orderbook_depth: int = 50,
        mid_price_levels: int = 5,
        max_price_divergence: float = 0.002,
        candle_stale_after_s: float = 90.0,
        orderbook_stale_after_s: float = 10.0,
        strategy_id: str = "vpa",
        logger=None,
    ):
        self.state = state
        self.detector = detector
        self.risk = risk
        self.executor = executor
        self.account = account
        self.instruments = instruments
        self.candle_provider = candle_provider
        self.quote_asset = quote_asset
        self.kline_interval = str(kline_interval)
        self.orderbook_depth = int(orderbook_depth)
        self.mid_price_levels = int(mid_price_levels)
        self.max_price_divergence = float(max_price_divergence)
        self.candle_stale_after_s = float(candle_stale_after_s)
        self.orderbook_stale_after_s = float(orderbook_stale_after_s)
        self.strategy_id = strategy_id
        self.logger = logger or setup_logger("decision")

    @classmethod
    def from_config(cls, cfg, state: MarketState, detector: SignalDetector, risk: RiskManager, broker: Any, candle_provider=None):
        """由 `AppConfig` 构建（broker 同时提供下单/余额/交易对约束）。"""
        d = cfg.decision
        return cls(
            state,
            detector,
            risk,
            executor=broker,
            account=broker,
            instruments=broker,
            candle_provider=candle_provider,
            quote_asset=cfg.exchange.quote_asset,
            kline_interval=d.kline_interval,
            orderbook_depth=d.orderbook_depth,
            mid_price_levels=d.mid_price_levels,
            max_price_divergence=d.max_price_divergence,
            candle_stale_after_s=d.candle_stale_after_s,
            orderbook_stale_after_s=d.orderbook_stale_after_s,
        )

    # ---------- 周期入口 ----------

    def run_cycle(self, symbol: str, category: str = "linear") -> DecisionOutcome:
        """执行一个决策周期，异常全部转为 `skipped` 结果。"""
        try:
            return self._run(symbol, category)
        except EngineError as exc:
            return self._skip(symbol, exc.reason, str(exc))
        except (TimeoutError, OSError) as exc:
            return self._skip(symbol, "external_error", str(exc))
        except Exception as exc:
            self.logger.exception("Decision cycle for %s failed unexpectedly", symbol)
            return self._skip(symbol, "error", str(exc))

    def _run(self, symbol: str, category: str) -> DecisionOutcome:
        if self.executor.has_open_orders(category, symbol):
            return self._skip(symbol, "open_orders")

        window = self._fetch_window(symbol)
        book = self._fetch_orderbook(symbol)

        signal = self.detector.evaluate(window)
        if signal is Signal.NONE:
            return self._skip(symbol, "no_signal", self.detector.last_skip_reason)

        entry = window[-1].close
        levels = self.risk.calculate_risk_levels(signal, entry, window)

        mid = weighted_mid_price(book, self.mid_price_levels)
        if mid <= 0:
            raise DataInsufficientError(f"order book for {symbol} has an empty side")
        divergence = abs(mid - entry) / entry
        if divergence > self.max_price_divergence:
            return self._skip(
                symbol,
                "price_divergence",
                f"mid={mid:.8f} entry={entry:.8f} divergence={divergence:.5f}",
                signal,
            )

        limits = self.instruments.get_trade_limits(category, symbol)
        levels = self._format_levels(signal, levels, limits)

        balance = self.account.get_available_balance(self.quote_asset)
        sizing = self.risk.calculate_position_size(
            levels.entry_price, levels.stop_loss, balance, qty_step=limits.qty_step or None
        )
        qty = sizing.quantity
        if qty <= 0:
            return self._skip(symbol, "degenerate", f"zero quantity (balance={balance})", signal)
        notional = levels.entry_price * qty
        if qty < limits.min_qty or (limits.min_notional and notional < limits.min_notional):
            return self._skip(
                symbol,
                "quantity_too_small",
                f"qty={qty} min_qty={limits.min_qty} notional={notional:.4f} min_notional={limits.min_notional}",
                signal,
            )
        if notional > balance:
            return self._skip(
                symbol, "insufficient_balance", f"notional={notional:.4f} balance={balance:.4f}", signal
            )

        intent = OrderIntent(
            symbol=symbol,
            category=category,
            side=signal.order_side,
            price=levels.entry_price,
            quantity=qty,
            stop_loss=levels.stop_loss,
            take_profit=levels.take_profit,
            client_order_id=make_client_order_id(
                strategy_id=self.strategy_id,
                symbol=symbol,
                side=signal.order_side,
                candle_start=window[-1].start,
            ),
        )
        order_id = self.executor.place_limit_order(
            intent.symbol,
            intent.side,
            intent.price,
            intent.quantity,
            intent.stop_loss,
            intent.take_profit,
            category=intent.category,
            client_order_id=intent.client_order_id,
        )
        self.logger.info(
            "Order emitted %s %s qty=%s price=%s sl=%s tp=%s id=%s",
            symbol,
            intent.side,
            intent.quantity,
            intent.price,
            intent.stop_loss,
            intent.take_profit,
            order_id,
        )
        return DecisionOutcome(symbol=symbol, status=EMITTED, signal=signal, intent=intent, order_id=order_id)

    # ---------- 数据获取 ----------

    def _fetch_window(self, symbol: str) -> list[Candle]:
        count = self.detector.required_window
        topic = kline_topic(symbol, self.kline_interval)
        candles, ok = self.state.get_closed_candles(topic, count)
        if ok:
            age = self.state.last_update_age(topic)
            if age is None or age > self.candle_stale_after_s:
                raise DataStaleError(f"{topic} last update {age}s ago")
            return candles

        if self.candle_provider is None:
            raise DataInsufficientError(f"{topic} has fewer than {count + 1} cached candles")
        fetched = self.candle_provider.get_recent_candles(symbol, self.kline_interval, count + 1)
        if fetched and not fetched[-1].confirm:
            fetched = fetched[:-1]
        if len(fetched) < count:
            raise DataInsufficientError(f"{symbol}: need {count} closed candles, provider returned {len(fetched)}")
        self.logger.info("Using %d candles from provider for %s (cache short)", count, symbol)
        return fetched[-count:]

    def _fetch_orderbook(self, symbol: str) -> OrderBookSnapshot:
        topic = orderbook_topic(symbol, self.orderbook_depth)
        book, found = self.state.get_sorted_orderbook(topic)
        if not found or book is None:
            raise DataInsufficientError(f"no order book for {topic}")
        age = self.state.last_update_age(topic)
        if age is None or age > self.orderbook_stale_after_s:
            raise DataStaleError(f"{topic} last update {age}s ago")
        return book

    # ---------- 工具 ----------

    def _format_levels(self, signal: Signal, levels: RiskLevels, limits: TradeLimits) -> RiskLevels:
        tick = limits.tick_size or None
        formatted = RiskLevels(
            entry_price=round_to_step(levels.entry_price, tick),
            stop_loss=round_to_step(levels.stop_loss, tick),
            take_profit=round_to_step(levels.take_profit, tick),
        )
        if not formatted.is_valid(signal):
            raise ComputationDegenerateError(f"levels collapse at tick {tick}: {levels} -> {formatted}")
        return formatted

    def _skip(self, symbol: str, reason: str, detail: str | None = None, signal: Signal = Signal.NONE) -> DecisionOutcome:
        if detail:
            self.logger.info("Skip %s: %s (%s)", symbol, reason, detail)
        else:
            self.logger.info("Skip %s: %s", symbol, reason)
        return DecisionOutcome(symbol=symbol, status=SKIPPED, reason=reason, signal=signal)
