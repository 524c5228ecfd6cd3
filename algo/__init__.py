"""策略算法层：指标、信号、风控。"""
