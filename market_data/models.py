"""对外导出数据模型（稳定入口）。

模型定义位于 `shared/models/models.py`；上层代码统一从 `market_data.models` 导入行情结构。
"""

from shared.models.models import Candle, OrderBookLevel, OrderBookSnapshot

__all__ = ["Candle", "OrderBookLevel", "OrderBookSnapshot"]
