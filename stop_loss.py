"""
Контроллер стоп-лоссов: храповик по открытым позициям.

NATIVE позиции ведёт сама биржа (трейлинг-стоп), мы только ловим выход.
SYNTHETIC позиции переставляем сами: отмена старого стоп-лимита и
выставление нового, каждый шаг сверяется с биржей при ошибке.
Словарь позиций под asyncio.Lock, который не держится во время сетевых вызовов.
"""
import asyncio
import logging
from typing import Dict, List, Optional

from binance_api import avg_fill_price, fmt_price, fmt_qty, run_blocking
from config import ConfigProvider, Settings
from ledger import STOP_SET, TradeLedger
from models import OpenOrder, ProtectionMode, SymbolFilters, TrackedPosition, TrendDirection
from precision import round_to_step
from ratchet import candidate_stop, is_tighter, rule_for, stop_limit_price, tighten
from telegram_handler import TelegramNotifier, format_exit_message, format_stop_message

PROTECTIVE_TYPES = ("STOP_LOSS", "STOP_LOSS_LIMIT")
WORKING_STATUSES = ("NEW", "PARTIALLY_FILLED", "PENDING_NEW")


def find_protective_order(orders: List[OpenOrder], symbol: str, exit_side: str) -> Optional[OpenOrder]:
    for o in orders:
        if o.symbol == symbol and o.type in PROTECTIVE_TYPES and o.side == exit_side:
            return o
    return None


def place_protective_order(
    api,
    settings: Settings,
    symbol: str,
    trend: TrendDirection,
    mode: ProtectionMode,
    qty: float,
    stop_price: float,
    filters: SymbolFilters,
) -> int:
    """Ставит защитный ордер и возвращает его orderId (синхронно, для to_thread)"""
    rule = rule_for(trend)
    qty_str = fmt_qty(qty, filters)
    if mode is ProtectionMode.NATIVE:
        resp = api.place_trailing_stop(symbol, rule.exit_side, qty_str, settings.stop_loss_percent)
    else:
        limit = stop_limit_price(trend, stop_price, settings.stop_limit_offset_percent, filters.tick_size)
        resp = api.place_stop_limit(
            symbol, rule.exit_side, qty_str, fmt_price(stop_price, filters), fmt_price(limit, filters)
        )
    order_id = resp.get("orderId") if isinstance(resp, dict) else None
    if order_id is None:
        raise RuntimeError(f"Биржа не вернула orderId для защитного ордера {symbol}: {resp}")
    return int(order_id)


class StopLossController:
    def __init__(
        self,
        api,
        provider: ConfigProvider,
        ledger: TradeLedger,
        notifier: Optional[TelegramNotifier] = None,
    ):
        self.api = api
        self.provider = provider
        self.ledger = ledger
        self.notifier = notifier
        self._positions: Dict[str, TrackedPosition] = {}
        self._lock = asyncio.Lock()
        self._symbol_locks: Dict[str, asyncio.Lock] = {}

    @property
    def settings(self) -> Settings:
        return self.provider.current()

    async def _call(self, fn, *args):
        return await run_blocking(fn, *args, timeout=self.settings.request_timeout_seconds)

    async def _notify(self, text: str):
        if self.notifier is not None:
            await self.notifier.notify(text)

    def symbol_lock(self, symbol: str) -> asyncio.Lock:
        return self._symbol_locks.setdefault(symbol, asyncio.Lock())

    # -------- Состояние --------

    async def track(self, position: TrackedPosition):
        async with self._lock:
            self._positions[position.symbol] = position
        logging.info(
            f"🛡️ {position.symbol}: на контроле ({position.protection_mode.value}), "
            f"вход {position.entry_price:.6g}, стоп {position.current_stop_price:.6g}, order_id={position.order_id}"
        )

    async def snapshot(self) -> List[TrackedPosition]:
        async with self._lock:
            return list(self._positions.values())

    async def is_tracking(self, symbol: str) -> bool:
        async with self._lock:
            return symbol in self._positions

    async def open_count(self) -> int:
        async with self._lock:
            return len(self._positions)

    async def commit(self, position: TrackedPosition, **changes) -> bool:
        """Применяет изменения, только если в словаре всё ещё тот же объект позиции"""
        async with self._lock:
            if self._positions.get(position.symbol) is not position:
                logging.warning(f"⚠️ {position.symbol}: позиция сменилась во время обновления, изменения отброшены")
                return False
            for name, value in changes.items():
                setattr(position, name, value)
            return True

    async def _retire(self, position: TrackedPosition, exit_price: float, reason: str) -> bool:
        async with self._lock:
            if self._positions.get(position.symbol) is not position:
                return False
            del self._positions[position.symbol]
            self._symbol_locks.pop(position.symbol, None)

        rule = rule_for(position.trend)
        self.ledger.record(
            position.symbol,
            rule.exit_side,
            exit_price,
            position.quantity,
            stop_loss_price=position.current_stop_price,
            reason=reason,
            trend_label=position.trend_label,
        )
        logging.info(f"🔴 {position.symbol}: позиция закрыта по {exit_price:.6g} ({reason})")
        await self._notify(format_exit_message(position, exit_price))
        return True

    # -------- Цикл --------

    async def run_forever(self, stop_event: asyncio.Event):
        logging.info("Запуск цикла стоп-лоссов...")
        while not stop_event.is_set():
            try:
                await self.tick()
            except Exception:
                logging.exception("Ошибка в цикле стоп-лоссов")
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.settings.stop_loss_loop_interval_seconds)
            except asyncio.TimeoutError:
                pass
        logging.info("Цикл стоп-лоссов остановлен")

    async def tick(self) -> List[TrackedPosition]:
        """Один проход храповика по всем позициям. Возвращает позиции после прохода."""
        positions = await self.snapshot()
        if not positions:
            logging.debug("Нет позиций под защитой")
            return []

        settings = self.settings
        try:
            open_orders = await self._call(self.api.get_open_orders)
        except Exception as e:
            logging.error(f"❌ Не удалось получить открытые ордера, проход стопов пропущен: {e}")
            return positions

        semaphore = asyncio.Semaphore(settings.max_concurrency)

        async def guarded(position: TrackedPosition):
            async with semaphore, self.symbol_lock(position.symbol):
                try:
                    await self._update_position(position, open_orders, settings)
                except Exception:
                    logging.exception(f"Ошибка обновления стопа для {position.symbol}")

        await asyncio.gather(*(guarded(p) for p in positions))
        return await self.snapshot()

    async def _query_order(self, position: TrackedPosition) -> Optional[dict]:
        try:
            return await self._call(self.api.get_order, position.symbol, position.order_id)
        except Exception as e:
            logging.warning(f"⚠️ {position.symbol}: не удалось получить статус ордера {position.order_id}: {e}")
            return None

    async def _update_position(self, position: TrackedPosition, open_orders: List[OpenOrder], settings: Settings):
        symbol = position.symbol
        trend = position.trend
        rule = rule_for(trend)

        open_ids = {o.order_id for o in open_orders}

        # Защитный ордер пропал из открытых: исполнен или снят
        if position.order_id is not None and position.order_id not in open_ids:
            order = await self._query_order(position)
            if order is None:
                return
            status = order.get("status", "")
            if status == "FILLED":
                await self._retire(position, avg_fill_price(order, position.current_stop_price), "stop filled")
                return
            if status not in WORKING_STATUSES:
                logging.warning(f"⚠️ {symbol}: защитный ордер {position.order_id} в статусе {status}, позиция без защиты")
                if not await self.commit(position, order_id=None):
                    return

        if not position.is_protected:
            existing = find_protective_order(open_orders, symbol, rule.exit_side)
            if existing is not None:
                await self._adopt(position, existing)
                return

        if position.protection_mode is ProtectionMode.NATIVE and position.is_protected:
            return

        try:
            price = await self._call(self.api.get_price, symbol)
            filters = await self._call(self.api.get_symbol_filters, symbol)
        except Exception as e:
            logging.warning(f"⏭️ {symbol}: нет цены или фильтров, пропускаем ({e})")
            return

        candidate = candidate_stop(trend, price, settings.stop_loss_percent, filters.tick_size)
        current = position.current_stop_price

        if position.is_protected:
            if not is_tighter(trend, candidate, current):
                logging.info(f"{symbol}: цена {price:.6g}, стоп {current:.6g} остаётся (кандидат {candidate:.6g})")
                return
            target = candidate
        else:
            if rule.is_price_breached(price, current):
                await self._exit_at_market(position, price, filters)
                return
            target = tighten(trend, current, candidate)

        qty = round_to_step(position.quantity, filters.step_size)
        problem = filters.violation(qty, target)
        if problem:
            logging.warning(f"⚠️ {symbol}: перенос стопа на {target:.6g} пропущен: {problem}")
            return

        if position.is_protected and not await self._cancel_for_replace(position):
            return

        try:
            new_id = await self._call(
                place_protective_order, self.api, settings, symbol, trend,
                position.protection_mode, qty, target, filters,
            )
        except Exception as e:
            logging.error(f"❌ {symbol}: не удалось поставить стоп {target:.6g}: {e}")
            await self.adopt_or_leave_unprotected(position)
            return

        if not await self.commit(position, current_stop_price=target, order_id=new_id):
            return
        self.ledger.record(
            symbol, STOP_SET, price, qty,
            stop_loss_price=target,
            reason="ratchet" if target != current else "re-protect",
            trend_label=position.trend_label,
        )
        logging.info(f"🔒 {symbol}: стоп {current:.6g} → {target:.6g} (цена {price:.6g}, order_id={new_id})")
        await self._notify(format_stop_message(position, current))

    async def _cancel_for_replace(self, position: TrackedPosition) -> bool:
        """Снимает старый стоп. True: можно ставить новый."""
        symbol, order_id = position.symbol, position.order_id
        try:
            await self._call(self.api.cancel_order, symbol, order_id)
        except Exception as e:
            logging.warning(f"⚠️ {symbol}: отмена ордера {order_id} не прошла ({e}), сверяемся с биржей")
            try:
                live = await self._call(self.api.get_open_orders, symbol)
            except Exception as e2:
                logging.error(f"❌ {symbol}: сверка открытых ордеров не удалась ({e2}), состояние не меняем")
                return False
            if any(o.order_id == order_id for o in live):
                logging.info(f"{symbol}: ордер {order_id} всё ещё активен, перенос стопа отложен")
                return False
            order = await self._query_order(position)
            if order is None:
                return False
            if order.get("status") == "FILLED":
                await self._retire(position, avg_fill_price(order, position.current_stop_price), "stop filled")
                return False
            logging.warning(f"⚠️ {symbol}: ордер {order_id} уже снят ({order.get('status')}), ставим новый")
        return await self.commit(position, order_id=None)

    async def adopt_or_leave_unprotected(self, position: TrackedPosition) -> Optional[bool]:
        """
        Сверка после неудачной постановки защиты.
        True: ордер всё же встал и взят в позицию. False: на бирже его нет,
        позиция без защиты. None: сверка не удалась, повторять постановку нельзя.
        """
        symbol = position.symbol
        rule = rule_for(position.trend)
        try:
            live = await self._call(self.api.get_open_orders, symbol)
        except Exception as e:
            logging.error(f"❌ {symbol}: сверка после ошибки не удалась ({e}), позиция без защиты")
            await self.commit(position, order_id=None)
            return None

        adopted = find_protective_order(live, symbol, rule.exit_side)
        if adopted is not None:
            await self._adopt(position, adopted)
            return True

        await self.commit(position, order_id=None)
        logging.warning(f"⚠️ {symbol}: позиция без защиты, повторим на следующем проходе")
        return False

    async def _adopt(self, position: TrackedPosition, order: OpenOrder):
        stop = position.current_stop_price
        if order.stop_price > 0:
            stop = tighten(position.trend, stop, order.stop_price)
        mode = ProtectionMode.NATIVE if order.type == "STOP_LOSS" else ProtectionMode.SYNTHETIC
        if await self.commit(position, order_id=order.order_id, current_stop_price=stop, protection_mode=mode):
            logging.info(f"ℹ️ {position.symbol}: найден выставленный защитный ордер {order.order_id}, берём его")

    async def _exit_at_market(self, position: TrackedPosition, price: float, filters: SymbolFilters):
        """Цена ушла за стоп, пока позиция была без ордера: закрываемся по рынку"""
        symbol = position.symbol
        rule = rule_for(position.trend)
        qty = round_to_step(position.quantity, filters.step_size)
        logging.warning(
            f"⚠️ {symbol}: цена {price:.6g} за стопом {position.current_stop_price:.6g} без защиты, выходим по рынку"
        )
        try:
            resp = await self._call(self.api.place_market_order, symbol, rule.exit_side, fmt_qty(qty, filters))
        except Exception as e:
            logging.error(f"❌ {symbol}: рыночный выход не удался: {e}")
            return
        await self._retire(position, avg_fill_price(resp, price), "stop breached while unprotected")

    # -------- Восстановление после рестарта --------

    async def recover(self, open_orders: List[OpenOrder]) -> List[TrackedPosition]:
        """Поднимает позиции из живых защитных ордеров. Цена входа берётся из журнала."""
        settings = self.settings
        recovered = []
        for order in open_orders:
            if order.type not in PROTECTIVE_TYPES or await self.is_tracking(order.symbol):
                continue

            trend = TrendDirection.POSITIVE if order.side == "SELL" else TrendDirection.NEGATIVE
            mode = ProtectionMode.NATIVE if order.type == "STOP_LOSS" else ProtectionMode.SYNTHETIC

            entry = self.ledger.last_entry(order.symbol)
            trend_label = ""
            if entry is not None:
                entry_price = float(entry["price"])
                trend_label = entry.get("trend_label", "")
            else:
                try:
                    entry_price = await self._call(self.api.get_price, order.symbol)
                except Exception as e:
                    logging.error(f"❌ {order.symbol}: нет входа в журнале и цены с биржи, не восстанавливаем ({e})")
                    continue
                logging.warning(f"⚠️ {order.symbol}: вход не найден в журнале, берём текущую цену {entry_price:.6g}")

            stop = order.stop_price or candidate_stop(trend, entry_price, settings.stop_loss_percent)
            position = TrackedPosition(
                symbol=order.symbol,
                entry_price=entry_price,
                quantity=order.orig_qty,
                current_stop_price=stop,
                protection_mode=mode,
                trend=trend,
                order_id=order.order_id,
                trend_label=trend_label,
            )
            await self.track(position)
            recovered.append(position)

        if recovered:
            logging.info(f"♻️ Восстановлено позиций: {len(recovered)}")
        return recovered
