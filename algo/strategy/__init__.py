"""信号检测与趋势过滤。"""
