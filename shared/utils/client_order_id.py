"""订单幂等 ID（Bybit `orderLinkId`）生成。

要求：
- 同一根 K 线上的同一方向信号只对应一个 ID，重启/重跑不会重复下单；
- 长度不超过交易所限制（36 字符），用 hash 缩短。
"""

from __future__ import annotations

import hashlib


def make_client_order_id(
    *,
    strategy_id: str,
    symbol: str,
    side: str,
    candle_start: int,
    prefix: str = "vpa",
) -> str:
    raw = "|".join([str(strategy_id), str(symbol), str(side), str(int(candle_start))])
    digest = hashlib.sha256(raw.encode("utf-8")).hexdigest()[:24]
    return f"{prefix}_{digest}"
