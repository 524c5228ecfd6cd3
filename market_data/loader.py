"""历史 K 线加载（回测用）。

支持两种 CSV 表头：
- `timestamp,open,high,low,close,volume`（毫秒时间戳，按 1 分钟推 end）；
- `start,end,open,high,low,close,volume[,turnover]`。
"""

from __future__ import annotations

from pathlib import Path

import pandas as pd

from market_data.state import interval_to_ms
from shared.models.models import Candle

_PRICE_COLS = ["open", "high", "low", "close", "volume"]


def _to_ms(col: pd.Series) -> pd.Series:
    """数字时间戳（秒/毫秒）或 ISO 字符串统一转毫秒。"""
    if pd.api.types.is_numeric_dtype(col):
        ms = col.astype("int64")
        return ms.where(ms > 1e12, ms * 1000)
    dt = pd.to_datetime(col, utc=True)
    return (dt - pd.Timestamp(0, tz="UTC")) // pd.Timedelta(milliseconds=1)


def load_candles_from_csv(path: str | Path, symbol: str = "BTCUSDT", interval: str = "1") -> list[Candle]:
    """读取 CSV 为按时间升序、去重后的已收盘 K 线列表。

    Raises
    ------
    FileNotFoundError
        文件不存在。
    ValueError
        缺少必需列。
    """
    csv_path = Path(path)
    if not csv_path.exists():
        raise FileNotFoundError(f"Kline file not found: {csv_path}")

    df = pd.read_csv(csv_path)
    df.columns = [str(c).strip().lower() for c in df.columns]
    ts_col = "start" if "start" in df.columns else "timestamp"
    missing = [c for c in [ts_col, *_PRICE_COLS] if c not in df.columns]
    if missing:
        raise ValueError(f"CSV {csv_path} missing columns: {missing}")

    df = df.dropna(subset=[ts_col, *_PRICE_COLS])
    df["start"] = _to_ms(df[ts_col])
    if "end" in df.columns:
        df["end"] = _to_ms(df["end"])
    else:
        df["end"] = df["start"] + interval_to_ms(interval) - 1
    df = df.drop_duplicates(subset="start", keep="last").sort_values("start")

    has_symbol = "symbol" in df.columns
    has_turnover = "turnover" in df.columns
    candles: list[Candle] = []
    for row in df.itertuples(index=False):
        candles.append(
            Candle(
                symbol=str(row.symbol) if has_symbol else symbol,
                start=int(row.start),
                end=int(row.end),
                open=float(row.open),
                high=float(row.high),
                low=float(row.low),
                close=float(row.close),
                volume=float(row.volume),
                turnover=float(row.turnover) if has_turnover else 0.0,
                confirm=True,
                interval=interval,
            )
        )
    return candles


def candles_to_frame(candles: list[Candle]) -> pd.DataFrame:
    """K 线列表转 DataFrame（列：start/end/open/high/low/close/volume）。"""
    return pd.DataFrame(
        {
            "start": [c.start for c in candles],
            "end": [c.end for c in candles],
            "open": [c.open for c in candles],
            "high": [c.high for c in candles],
            "low": [c.low for c in candles],
            "close": [c.close for c in candles],
            "volume": [c.volume for c in candles],
        },
        columns=["start", "end", *_PRICE_COLS],
    )
