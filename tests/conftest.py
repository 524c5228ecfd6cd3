import sys
from pathlib import Path

import pytest

# 确保项目根目录在 sys.path，便于测试内直接以顶层包名导入
ROOT = Path(__file__).resolve().parents[1]
root_str = str(ROOT)
if root_str not in sys.path:
    sys.path.insert(0, root_str)

from shared.models.models import Candle  # noqa: E402

MINUTE_MS = 60_000
T0 = 1_700_000_000_000


def _candle(i: int, *, open=100.0, high=None, low=None, close=100.0, volume=100.0, symbol="BTCUSDT", confirm=True):
    hi = high if high is not None else max(open, close) + 1.0
    lo = low if low is not None else min(open, close) - 1.0
    start = T0 + i * MINUTE_MS
    return Candle(
        symbol=symbol,
        start=start,
        end=start + MINUTE_MS - 1,
        open=float(open),
        high=float(hi),
        low=float(lo),
        close=float(close),
        volume=float(volume),
        confirm=confirm,
    )


@pytest.fixture
def make_candle():
    """按序号生成 1 分钟 K 线：`make_candle(i, open=..., close=..., volume=...)`。"""
    return _candle


@pytest.fixture
def flat_candles():
    """n 根开收 100、高低 101/99、量 100 的平盘 K 线。"""

    def _make(n: int, start_index: int = 0):
        return [_candle(start_index + i) for i in range(n)]

    return _make


@pytest.fixture
def long_spike_window(flat_candles):
    """20 根平盘 + 1 根放量阳线（low 击穿、close 高于 SMA20）。"""
    window = flat_candles(20)
    window.append(_candle(20, open=99.0, high=101.5, low=95.0, close=101.0, volume=300.0))
    return window


@pytest.fixture
def short_spike_window(flat_candles):
    """20 根平盘 + 1 根放量阴线（high 突破、close 低于 SMA20）。"""
    window = flat_candles(20)
    window.append(_candle(20, open=101.0, high=105.0, low=98.5, close=99.0, volume=300.0))
    return window
