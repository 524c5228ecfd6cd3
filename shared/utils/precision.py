"""精度与步进工具（用于 qty/price 的裁剪与展示稳定）。"""

from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_FLOOR, ROUND_HALF_UP


def decimals_from_step(step: float) -> int:
    """根据 step（通常是 10 的负次幂）推导小数位数。"""
    try:
        d = Decimal(str(step))
    except InvalidOperation:
        return 0
    if d == 0:
        return 0
    exp = d.as_tuple().exponent
    return max(0, -int(exp))


def snap_to_decimals(value: float, decimals: int) -> float:
    """把 float “钉死”到指定小数位，避免 repr 出现 0.30000000000004 这类噪声。"""
    d = int(decimals)
    if d < 0:
        return float(value)
    return float(f"{float(value):.{d}f}")


def _to_step(value: float, step: float | None, rounding: str) -> float:
    if step is None:
        return float(value)
    s = float(step)
    if s <= 0:
        return float(value)

    v = Decimal(str(value))
    sd = Decimal(str(step))
    n = (v / sd).to_integral_value(rounding=rounding)
    out = n * sd
    decs = decimals_from_step(s)
    if decs > 0:
        out = out.quantize(Decimal(1).scaleb(-decs))
    else:
        out = out.quantize(Decimal(1))
    return snap_to_decimals(float(out), decs)


def floor_to_step(value: float, step: float | None) -> float:
    """把 value 向下裁剪到 step 的整数倍（数量用，避免超额下单）。"""
    return _to_step(value, step, ROUND_FLOOR)


def round_to_step(value: float, step: float | None) -> float:
    """把 value 四舍五入到 step 的整数倍（价格按 tick 对齐）。"""
    return _to_step(value, step, ROUND_HALF_UP)
