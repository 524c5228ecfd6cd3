"""实盘/干跑交易引擎（TradingEngine）。

配置 → 行情订阅（ingest 协程）→ 每个交易对一个定时决策协程 → 总结。
决策周期在线程池中同步执行，超过 `cycle_timeout_s` 记为跳过；收到
SIGINT/SIGTERM 或达到 `max_cycles` 后不再启动新周期，已在执行的周期跑完。
"""

from __future__ import annotations

import asyncio
import signal
from collections import Counter
from typing import Any

from algo.factors.engine import IndicatorEngine
from algo.risk.manager import RiskManager
from algo.strategy.signal_detector import SignalDetector
from broker.abstract_broker import Broker, CandleProvider
from broker.bybit import BybitBroker
from broker.mock import DryRunBroker
from engine.base_engine import BaseEngine, EngineResult
from engine.decision import SKIPPED, DecisionOrchestrator, DecisionOutcome
from market_data.state import MarketState, kline_topic, orderbook_topic
from market_data.stream import BybitStreamClient
from shared.config.config_loader import load_config
from shared.utils.logging import setup_logger


class TradingEngine(BaseEngine):
    """异步运行时。

    Parameters
    ----------
    cfg_path, cfg_obj:
        配置文件路径或已解析的配置对象（后者优先）。
    broker:
        可注入的 broker（测试用）；缺省按 `cfg.mode` 构建。
    stream:
        可注入的 ingest 客户端（需提供 `run(shutdown)` 与 `stop()`）。
    max_cycles:
        每个交易对最多执行的决策周期数（None 表示一直运行）。
    """

    def __init__(
        self,
        *,
        cfg_path: str = "config/config.yml",
        cfg_obj=None,
        broker: Broker | None = None,
        candle_provider: CandleProvider | None = None,
        state: MarketState | None = None,
        stream: Any = None,
        max_cycles: int | None = None,
        install_signal_handlers: bool = True,
    ):
        self._cfg_path = cfg_path
        self._cfg_obj = cfg_obj
        self._broker = broker
        self._candle_provider = candle_provider
        self._state = state
        self._stream = stream
        self._max_cycles = max_cycles
        self._install_signal_handlers = install_signal_handlers

        self.cfg = None
        self.broker: Broker | None = None
        self.outcomes: list[DecisionOutcome] = []
        self._shutdown: asyncio.Event | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self.logger = setup_logger("engine")

    def run(self) -> EngineResult:
        return asyncio.run(self.run_async())

    def stop(self) -> None:
        """请求停机；可在事件循环线程或其他线程调用。"""
        shutdown, loop = self._shutdown, self._loop
        if shutdown is None:
            return
        if loop is None or loop.is_closed():
            shutdown.set()
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            shutdown.set()
        else:
            loop.call_soon_threadsafe(shutdown.set)

    async def run_async(self) -> EngineResult:
        cfg = self._load_cfg()
        self.cfg = cfg
        d = cfg.decision

        state = self._state or MarketState(max_candles=d.max_cached_candles)
        broker = self._broker or self._build_broker(cfg)
        self.broker = broker
        candle_provider = self._candle_provider or self._build_candle_provider(cfg, broker)

        indicators = IndicatorEngine(ttl_seconds=cfg.indicators.ttl_s)
        detector = SignalDetector.from_config(cfg.signal, indicators=indicators)
        risk = RiskManager.from_config(cfg.risk)
        orchestrator = DecisionOrchestrator.from_config(
            cfg, state, detector, risk, broker, candle_provider=candle_provider
        )

        self._loop = asyncio.get_running_loop()
        self._shutdown = asyncio.Event()
        self._maybe_install_signal_handlers()

        topics: list[str] = []
        for symbol in cfg.symbols:
            topics.append(orderbook_topic(symbol, d.orderbook_depth))
            topics.append(kline_topic(symbol, d.kline_interval))
        stream = self._stream or BybitStreamClient(cfg.exchange.ws_url, topics, state)
        self.logger.info("Starting engine mode=%s symbols=%s topics=%s", cfg.mode, cfg.symbols, topics)

        ingest_task = asyncio.create_task(stream.run(self._shutdown))
        decision_tasks = [
            asyncio.create_task(self._decision_loop(orchestrator, symbol, cfg.exchange.category))
            for symbol in cfg.symbols
        ]
        try:
            await asyncio.gather(*decision_tasks)
        finally:
            self._shutdown.set()
            stream.stop()
            try:
                await asyncio.wait_for(ingest_task, timeout=5.0)
            except asyncio.TimeoutError:
                ingest_task.cancel()
                self.logger.warning("Ingest task did not stop in time, cancelled")

        summary = self._build_summary()
        self.logger.info("Engine stopped: %s", summary)
        return EngineResult(summary=summary)

    async def _decision_loop(self, orchestrator: DecisionOrchestrator, symbol: str, category: str) -> None:
        d = self.cfg.decision
        cycles = 0
        while not self._shutdown.is_set():
            outcome = await self._run_cycle(orchestrator, symbol, category, d.cycle_timeout_s)
            self.outcomes.append(outcome)
            cycles += 1
            if self._max_cycles is not None and cycles >= self._max_cycles:
                break
            try:
                await asyncio.wait_for(self._shutdown.wait(), timeout=d.interval_s)
            except asyncio.TimeoutError:
                continue

    async def _run_cycle(
        self,
        orchestrator: DecisionOrchestrator,
        symbol: str,
        category: str,
        timeout_s: float,
    ) -> DecisionOutcome:
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(orchestrator.run_cycle, symbol, category),
                timeout=timeout_s,
            )
        except asyncio.TimeoutError:
            self.logger.warning("Decision cycle for %s exceeded %.1fs, skipped", symbol, timeout_s)
            return DecisionOutcome(symbol=symbol, status=SKIPPED, reason="timeout")

    def _maybe_install_signal_handlers(self) -> None:
        if not self._install_signal_handlers:
            return
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self._on_signal, sig)
            except (NotImplementedError, RuntimeError):
                # Windows / 非主线程没有 add_signal_handler
                self.logger.debug("Signal handler for %s not installed", sig)

    def _on_signal(self, sig) -> None:
        self.logger.info("Received %s, shutting down...", getattr(sig, "name", sig))
        self.stop()

    def _load_cfg(self):
        return self._cfg_obj or load_config(self._cfg_path)

    @staticmethod
    def _build_broker(cfg) -> Broker:
        if cfg.mode == "dry-run":
            return DryRunBroker(balance=cfg.equity_base, quote_asset=cfg.exchange.quote_asset)
        if not cfg.exchange.allow_live:
            raise ValueError("mode=live requires exchange.allow_live=true")
        return BybitBroker.from_config(cfg.exchange)

    @staticmethod
    def _build_candle_provider(cfg, broker: Broker) -> CandleProvider:
        if isinstance(broker, BybitBroker):
            return broker
        # 干跑也用公共 K 线接口补齐预热数据（不需要 API key）
        return BybitBroker(base_url=cfg.exchange.base_url, timeout_s=cfg.exchange.timeout_s)

    def _build_summary(self) -> dict[str, Any]:
        reasons = Counter(o.reason for o in self.outcomes if o.status == SKIPPED)
        return {
            "cycles": len(self.outcomes),
            "emitted": sum(1 for o in self.outcomes if o.emitted),
            "skipped": dict(reasons),
            "order_ids": [o.order_id for o in self.outcomes if o.order_id],
        }
