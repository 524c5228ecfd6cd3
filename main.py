"""VPA 剥头皮引擎统一命令行入口。

该模块提供单一入口 `main.py`，通过子命令驱动不同任务：

- `runner`：实时/干跑主循环。订阅行情，定时执行决策周期。
- `backtest`：单次回测。在历史 K 线上重放信号并统计胜率/收益。
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from typing import Any

from rich import box
from rich.console import Console
from rich.table import Table

from engine.backtest_engine import BacktestEngine
from engine.trading_engine import TradingEngine


@dataclass
class CliArgs:
    """命令行参数结构。"""
    config: str
    task: str
    max_cycles: int | None = None  # 每个交易对跑多少个决策周期后退出（dry-run/调试）
    data: str | None = None        # 回测 CSV 路径，覆盖配置中的 backtest.data_path
    artifacts_dir: str | None = None


def build_parser() -> argparse.ArgumentParser:
    """构建 CLI 参数解析器。"""
    parser = argparse.ArgumentParser(prog="vpa-scalper", description="VPA 剥头皮引擎统一入口")

    def _add_config_arg(p: argparse.ArgumentParser, *, default: Any) -> None:
        p.add_argument(
            "--config",
            default=default,
            help="配置文件路径 (默认: config/config.yml)",
        )

    # 允许 `python main.py --config ... backtest`（全局）与 `python main.py backtest --config ...`（子命令）
    _add_config_arg(parser, default="config/config.yml")

    sub = parser.add_subparsers(dest="task")

    p_runner = sub.add_parser("runner", help="实盘/干跑主循环")
    _add_config_arg(p_runner, default=argparse.SUPPRESS)
    p_runner.add_argument(
        "--max-cycles",
        type=int,
        default=None,
        help="每个交易对跑多少个决策周期后退出（用于 dry-run/测试）",
    )

    p_backtest = sub.add_parser("backtest", help="单次回测")
    _add_config_arg(p_backtest, default=argparse.SUPPRESS)
    p_backtest.add_argument("--data", type=str, default=None, help="K 线 CSV 路径")
    p_backtest.add_argument("--artifacts-dir", type=str, default=None, help="导出 trades.csv 的目录")

    return parser


def parse_args(argv: list[str] | None = None) -> CliArgs:
    """解析命令行参数；未指定子命令时默认 `runner`。"""
    parser = build_parser()
    ns = parser.parse_args(argv)
    task = ns.task or "runner"
    config = getattr(ns, "config", "config/config.yml")
    return CliArgs(
        config=str(config),
        task=task,
        max_cycles=getattr(ns, "max_cycles", None),
        data=getattr(ns, "data", None),
        artifacts_dir=getattr(ns, "artifacts_dir", None),
    )


def print_backtest_summary(summary: dict[str, Any], console: Console | None = None) -> None:
    console = console or Console()
    table = Table(title="回测结果", box=box.ROUNDED)
    table.add_column("指标", style="cyan")
    table.add_column("数值", justify="right")
    table.add_row("K 线数量", str(summary.get("num_candles", 0)))
    table.add_row("交易次数", str(summary["num_trades"]))
    table.add_row("止盈 (wins)", str(summary["num_wins"]))
    table.add_row("止损 (losses)", str(summary["num_losses"]))
    table.add_row("超时 (timeouts)", str(summary["num_timeouts"]))
    table.add_row("胜率", f"{summary['win_rate'] * 100:.2f}%")
    table.add_row("总收益", f"{summary['total_pnl'] * 100:.4f}%")
    console.print(table)


def main(argv: list[str] | None = None) -> Any:
    """程序主入口。

    Returns
    -------
    Any
        对应子命令的 summary dict。
    """
    args = parse_args(argv)

    if args.task == "runner":
        return TradingEngine(cfg_path=args.config, max_cycles=args.max_cycles).run().summary

    if args.task == "backtest":
        result = BacktestEngine(cfg_path=args.config, data_path=args.data, artifacts_dir=args.artifacts_dir).run()
        print_backtest_summary(result.summary)
        return result.summary

    raise ValueError(f"Unknown task: {args.task}")


if __name__ == "__main__":
    main()
