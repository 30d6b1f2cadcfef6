"""Округление количеств и цен под шаги биржи (stepSize / tickSize)"""
from decimal import Decimal, ROUND_CEILING, ROUND_FLOOR


def decimals_from_step(step: float) -> int:
    """Число знаков после запятой для шага вида 0.001"""
    s = f"{float(step):.10f}".rstrip("0").rstrip(".")
    if "." in s:
        return len(s.split(".")[1])
    return 0


def _round_dir(value: float, step: float, rounding) -> float:
    # шаг 0 или мусор: не квантуем, делить на него нельзя
    if step is None or float(step) <= 0:
        return float(value)

    d_step = Decimal(str(step))
    d_val = Decimal(str(value))
    q = (d_val / d_step).to_integral_value(rounding=rounding) * d_step

    decs = decimals_from_step(step)
    return float(f"{q:.{decs}f}")


def round_to_step(value: float, step: float) -> float:
    """Округляет ВНИЗ к кратности шага. Результат никогда не больше value."""
    return _round_dir(value, step, ROUND_FLOOR)


def round_up_to_step(value: float, step: float) -> float:
    """Округляет ВВЕРХ к кратности шага (зеркально round_to_step)"""
    return _round_dir(value, step, ROUND_CEILING)


def format_by_step(value: float, step: float) -> str:
    """Строка с ровно нужным числом знаков, иначе Binance ругается на точность"""
    if step is None or float(step) <= 0:
        return f"{float(value):.8f}".rstrip("0").rstrip(".")
    return f"{float(value):.{decimals_from_step(step)}f}"
