"""
Правило храповика (ratchet) для стоп-лосса.

Одно правило на оба направления: различия между LONG и SHORT-bias собраны в
таблицу RULES и выбираются один раз на позицию/скан. Этим же правилом
пользуются и живой контроллер стопов (stop_loss.py), и бэктест (backtest.py).
"""
import operator
from dataclasses import dataclass
from typing import Callable, Optional

from models import Candle, TrendDirection
from precision import round_to_step, round_up_to_step


@dataclass(frozen=True)
class TrendRule:
    direction: TrendDirection
    # экстремум цены в нашу сторону: max для лонга, min для шорта
    extreme_fn: Callable[[float, float], float]
    # "кандидат строже текущего стопа": > для лонга, < для шорта
    tighter_cmp: Callable[[float, float], bool]
    # сторона ордеров
    entry_side: str
    exit_side: str
    # +1 / -1: в какую сторону от экстремума стоит стоп
    stop_sign: int

    def stop_from_extreme(self, extreme: float, stop_loss_pct: float) -> float:
        return extreme * (1.0 - self.stop_sign * stop_loss_pct / 100.0)

    def favorable_price(self, candle: Candle) -> float:
        """Цена свечи, обновляющая экстремум: high для лонга, low для шорта"""
        return candle.high if self.direction is TrendDirection.POSITIVE else candle.low

    def is_price_breached(self, price: float, stop_level: float) -> bool:
        if self.direction is TrendDirection.POSITIVE:
            return price <= stop_level
        return price >= stop_level

    def is_breached(self, candle: Candle, stop_level: float) -> bool:
        """Касание или пробой стопа внутри свечи"""
        adverse = candle.low if self.direction is TrendDirection.POSITIVE else candle.high
        return self.is_price_breached(adverse, stop_level)

    def quantize(self, price: float, tick_size: float) -> float:
        if self.direction is TrendDirection.POSITIVE:
            return round_to_step(price, tick_size)
        return round_up_to_step(price, tick_size)


RULES = {
    TrendDirection.POSITIVE: TrendRule(
        direction=TrendDirection.POSITIVE,
        extreme_fn=max,
        tighter_cmp=operator.gt,
        entry_side="BUY",
        exit_side="SELL",
        stop_sign=1,
    ),
    TrendDirection.NEGATIVE: TrendRule(
        direction=TrendDirection.NEGATIVE,
        extreme_fn=min,
        tighter_cmp=operator.lt,
        entry_side="SELL",
        exit_side="BUY",
        stop_sign=-1,
    ),
}


def rule_for(direction: TrendDirection) -> TrendRule:
    return RULES[direction]


def candidate_stop(direction: TrendDirection, price: float, stop_loss_pct: float, tick_size: float = 0.0) -> float:
    """Стоп-кандидат от текущей цены, округлённый под tickSize"""
    rule = RULES[direction]
    return rule.quantize(rule.stop_from_extreme(price, stop_loss_pct), tick_size)


def is_tighter(direction: TrendDirection, candidate: float, current: Optional[float]) -> bool:
    """Строго ли кандидат лучше защищает позицию. Равенство улучшением не считается."""
    if current is None:
        return True
    return RULES[direction].tighter_cmp(candidate, current)


def tighten(direction: TrendDirection, current: Optional[float], candidate: float) -> float:
    """Храповик: новый стоп = более защитный из двух. Никогда не ослабляет."""
    return candidate if is_tighter(direction, candidate, current) else current


def ratchet(
    direction: TrendDirection,
    current_stop: Optional[float],
    price: float,
    stop_loss_pct: float,
    tick_size: float = 0.0,
) -> Optional[float]:
    """Один шаг храповика: новый стоп, если он строже текущего, иначе None (ничего не делать)"""
    candidate = candidate_stop(direction, price, stop_loss_pct, tick_size)
    if is_tighter(direction, candidate, current_stop):
        return candidate
    return None


def stop_limit_price(direction: TrendDirection, stop_price: float, offset_pct: float, tick_size: float = 0.0) -> float:
    """Лимитная цена стоп-лимита: на offset_pct дальше стопа"""
    rule = RULES[direction]
    return rule.quantize(rule.stop_from_extreme(stop_price, offset_pct), tick_size)
