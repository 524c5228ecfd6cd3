"""统一日志入口。

所有模块通过 `setup_logger("decision")` 之类的短名字拿 logger，实际挂在
`vpa.` 命名空间下，handler 只在根 `vpa` logger 上挂一次。
级别可用环境变量 `VPA_LOG_LEVEL`（DEBUG/INFO/WARNING...）覆盖。
"""

import logging
import os

ROOT_LOGGER = "vpa"
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s - %(message)s"


def _resolve_level(level: int | str | None) -> int:
    raw = level if level is not None else os.environ.get("VPA_LOG_LEVEL", "INFO")
    if isinstance(raw, int):
        return raw
    resolved = logging.getLevelName(str(raw).strip().upper())
    return resolved if isinstance(resolved, int) else logging.INFO


def setup_logger(name: str = "engine", level: int | str | None = None) -> logging.Logger:
    root = logging.getLogger(ROOT_LOGGER)
    if not root.handlers:
        ch = logging.StreamHandler()
        ch.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(ch)
        root.setLevel(_resolve_level(level))
    if name == ROOT_LOGGER or name.startswith(ROOT_LOGGER + "."):
        logger = logging.getLogger(name)
    else:
        logger = logging.getLogger(f"{ROOT_LOGGER}.{name}")
    if level is not None:
        logger.setLevel(_resolve_level(level))
    return logger
