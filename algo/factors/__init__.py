"""技术指标（EMA/SMA/RSI/ATR/MACD）与带 TTL 缓存的计算引擎。"""
