"""外部协作方：K 线、下单、账户、交易对约束。"""
