"""执行引擎基类。

回测与实盘运行时都以 `XxxEngine.run() -> EngineResult` 对外提供能力。
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class EngineResult:
    """引擎运行结果（统一出口）。"""

    summary: dict[str, Any]
    artifacts: dict[str, Any] | None = None


class BaseEngine(ABC):
    @abstractmethod
    def run(self) -> EngineResult:
        raise NotImplementedError
