"""Bybit v5 公共行情 WebSocket 订阅（盘口快照 + K 线）。"""

from __future__ import annotations

import asyncio
import json
from typing import Any

import websockets

from market_data.state import MarketState
from shared.utils.logging import setup_logger


def parse_message(raw: str | bytes) -> dict[str, Any] | None:
    """解码一帧推送。

    订阅回执、pong 等控制帧（没有 `topic`）返回 None；非 JSON 同样返回 None。
    """
    try:
        data = json.loads(raw)
    except (TypeError, ValueError):
        return None
    if not isinstance(data, dict) or not data.get("topic"):
        return None
    return data


class BybitStreamClient:
    """把推送消息写入 `MarketState` 的 ingest 任务。

    Parameters
    ----------
    ws_url:
        公共行情地址，如 `wss://stream.bybit.com/v5/public/linear`。
    topics:
        订阅 topic 列表，如 `["orderbook.50.BTCUSDT", "kline.1.BTCUSDT"]`。
    state:
        行情缓存。
    ping_interval:
        心跳间隔（秒），Bybit 要求 20s 内有 `{"op": "ping"}`。
    reconnect_delay:
        断线后重连等待（秒）。
    """

    def __init__(
        self,
        ws_url: str,
        topics: list[str],
        state: MarketState,
        ping_interval: float = 20.0,
        reconnect_delay: float = 3.0,
        connect=None,
        logger=None,
    ):
        self.ws_url = ws_url
        self.topics = list(topics)
        self.state = state
        self.ping_interval = float(ping_interval)
        self.reconnect_delay = float(reconnect_delay)
        self._connect = connect or websockets.connect
        self.logger = logger or setup_logger("ingest")
        self._stop = asyncio.Event()
        self.ws = None
        self.messages_applied = 0

    def stop(self) -> None:
        self._stop.set()

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    async def run(self, shutdown: asyncio.Event | None = None) -> None:
        """连接-订阅-接收循环，直到 `stop()` 或 `shutdown` 被置位。"""
        watcher = None
        if shutdown is not None:
            watcher = asyncio.create_task(self._watch_shutdown(shutdown))
        try:
            while not self._stop.is_set():
                try:
                    async with self._connect(self.ws_url) as ws:
                        self.ws = ws
                        self.logger.info("Connected to Bybit WS: %s", self.ws_url)
                        await ws.send(json.dumps({"op": "subscribe", "args": self.topics}))
                        await self._message_loop(ws)
                except asyncio.CancelledError:
                    raise
                except Exception as exc:  # pragma: no cover - 网络异常重连
                    if self._stop.is_set():
                        break
                    self.logger.warning("WS error %s, reconnecting in %.0fs...", exc, self.reconnect_delay)
                finally:
                    self.ws = None
                if self._stop.is_set():
                    break
                try:
                    await asyncio.wait_for(self._stop.wait(), timeout=self.reconnect_delay)
                except asyncio.TimeoutError:
                    continue
        finally:
            if watcher is not None:
                watcher.cancel()
            self.logger.info("Ingest stopped (applied=%d)", self.messages_applied)

    async def _watch_shutdown(self, shutdown: asyncio.Event) -> None:
        await shutdown.wait()
        self.stop()
        ws = self.ws
        if ws is not None:
            await ws.close()

    async def _message_loop(self, ws) -> None:
        pinger = asyncio.create_task(self._ping_loop(ws))
        try:
            async for raw in ws:
                if self._stop.is_set():
                    break
                msg = parse_message(raw)
                if msg is None:
                    continue
                if self.state.apply_message(msg):
                    self.messages_applied += 1
        finally:
            pinger.cancel()

    async def _ping_loop(self, ws) -> None:
        while True:
            await asyncio.sleep(self.ping_interval)
            await ws.send(json.dumps({"op": "ping"}))
