"""Модели данных для бота"""
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Sequence


class TrendDirection(Enum):
    """Направление тренда: POSITIVE: вход на росте, NEGATIVE: на падении"""
    POSITIVE = "positive"
    NEGATIVE = "negative"

    @classmethod
    def parse(cls, value: str) -> "TrendDirection":
        if str(value).strip().lower() == "negative":
            return cls.NEGATIVE
        return cls.POSITIVE

    @property
    def label(self) -> str:
        return self.value.capitalize()


class ProtectionMode(Enum):
    """NATIVE: трейлинг-стоп ведёт биржа, SYNTHETIC: мы сами переставляем стоп-лимит"""
    NATIVE = "native"
    SYNTHETIC = "synthetic"


@dataclass(frozen=True)
class Candle:
    open: float
    high: float
    low: float
    close: float

    @classmethod
    def from_kline(cls, row: Sequence) -> "Candle":
        """Свеча из сырой строки kline Binance: [1]=open, [2]=high, [3]=low, [4]=close.

        Поднимает ValueError, если строка короткая или поле не парсится.
        """
        try:
            return cls(
                open=float(row[1]),
                high=float(row[2]),
                low=float(row[3]),
                close=float(row[4]),
            )
        except (IndexError, TypeError, ValueError) as e:
            raise ValueError(f"Битая свеча {row!r}: {e}") from e


@dataclass
class Signal:
    """Структура данных для торгового сигнала"""
    symbol: str
    overall_growth_pct: float
    recent_growth_pct: float
    avg_fluctuation_abs: float
    avg_fluctuation_pct: float
    trend: TrendDirection = TrendDirection.POSITIVE


@dataclass(frozen=True)
class SymbolFilters:
    """Фильтры символа с биржи (шаг цены, шаг лота, минимумы)"""
    symbol: str
    tick_size: float
    step_size: float
    min_qty: float
    min_price: float
    min_notional: float
    allow_trailing_stop: bool = False
    order_types: tuple = ()

    def supports(self, order_type: str) -> bool:
        return order_type in self.order_types

    def violation(self, qty: float, price: float) -> Optional[str]:
        """Причина, по которой биржа отклонит ордер, или None"""
        if qty <= 0 or qty < self.min_qty:
            return f"qty {qty:.8g} < minQty {self.min_qty:.8g}"
        if price <= 0 or price < self.min_price:
            return f"price {price:.8g} < minPrice {self.min_price:.8g}"
        if qty * price < self.min_notional:
            return f"notional {qty * price:.8g} < minNotional {self.min_notional:.8g}"
        return None


@dataclass
class OpenOrder:
    symbol: str
    type: str
    side: str
    price: float
    orig_qty: float
    stop_price: float
    order_id: int

    @classmethod
    def from_api(cls, raw: dict) -> "OpenOrder":
        return cls(
            symbol=raw.get("symbol", ""),
            type=raw.get("type", ""),
            side=raw.get("side", ""),
            price=float(raw.get("price", 0) or 0),
            orig_qty=float(raw.get("origQty", 0) or 0),
            stop_price=float(raw.get("stopPrice", 0) or 0),
            order_id=int(raw.get("orderId", 0) or 0),
        )


@dataclass
class TrackedPosition:
    """Открытая позиция под защитой стопа.

    entry_price фиксируется при входе и больше не меняется.
    current_stop_price двигается только в защитную сторону.
    order_id = None означает, что позиция сейчас без защитного ордера.
    """
    symbol: str
    entry_price: float
    quantity: float
    current_stop_price: float
    protection_mode: ProtectionMode
    trend: TrendDirection = TrendDirection.POSITIVE
    order_id: Optional[int] = None
    # ширина рынка на момент входа, уходит в журнал
    trend_label: str = ""
    opened_at: float = field(default_factory=time.time)

    @property
    def is_protected(self) -> bool:
        return self.order_id is not None


@dataclass
class RealizedTrade:
    symbol: str
    entry_price: float
    exit_price: float
    quantity: float
    multiplier: float
    entry_index: int
    # None: позиция не закрылась до конца окна, закрыта по последнему close
    exit_index: Optional[int]
