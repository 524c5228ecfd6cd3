"""日志、精度、订单 ID 等小工具。"""
