"""止损/止盈与仓位计算。"""
