"""行情数据模块（market_data）。

该包聚合：
- 行情状态缓存（盘口快照 + K 线序列，见 `market_data/state.py`）
- Bybit 公共 WebSocket 订阅（见 `market_data/stream.py`）
- 历史 K 线 CSV 加载（见 `market_data/loader.py`）
"""

from market_data.loader import candles_to_frame, load_candles_from_csv
from market_data.state import MarketState, kline_topic, orderbook_topic, weighted_mid_price
from market_data.stream import BybitStreamClient, parse_message

__all__ = [
    "MarketState",
    "BybitStreamClient",
    "parse_message",
    "load_candles_from_csv",
    "candles_to_frame",
    "kline_topic",
    "orderbook_topic",
    "weighted_mid_price",
]
