"""引擎错误分类。

决策周期内的所有失败都落在这里的某一类上：
- 周期级失败（数据不足/过期/计算退化/外部服务失败）只会让本次周期跳过；
- MalformedMessage 只影响单条行情消息，消息被丢弃，状态不变。

没有任何一类允许终止进程。
"""

from __future__ import annotations


class EngineError(RuntimeError):
    """引擎错误基类，`reason` 用作跳过原因。"""

    reason = "error"

    def __init__(self, message: str = "", *, reason: str | None = None):
        super().__init__(message or self.reason)
        if reason is not None:
            self.reason = reason


class DataInsufficientError(EngineError):
    """收盘 K 线/盘口档位不够。"""

    reason = "insufficient_data"


# 指标层沿用的名字
InsufficientDataError = DataInsufficientError


class DataStaleError(EngineError):
    """最后一次更新早于过期阈值。"""

    reason = "stale_data"


class ComputationDegenerateError(EngineError):
    """风险距离为 0、指标为 NaN/Inf 等退化计算。"""

    reason = "degenerate"


class ExternalServiceError(EngineError):
    """行情/下单/余额等外部调用失败（含超时）。"""

    reason = "external_error"


class MalformedMessageError(EngineError):
    """无法解析的推送消息或乱序 K 线。"""

    reason = "malformed_message"
