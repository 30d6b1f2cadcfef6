"""
Модуль для открытия позиций на Binance Spot по сигналам сканера
"""

import asyncio
import logging
import uuid
from typing import Optional

from binance_api import UNKNOWN_ORDER_CODE, BinanceAPIError, avg_fill_price, fmt_qty, run_blocking
from config import ConfigProvider, Settings
from ledger import STOP_SET, TradeLedger
from models import ProtectionMode, Signal, SymbolFilters, TrackedPosition, TrendDirection
from precision import round_to_step
from ratchet import candidate_stop, rule_for
from stop_loss import StopLossController, place_protective_order
from telegram_handler import TelegramNotifier, format_entry_message

PROTECT_ATTEMPTS = 3
ENTRY_LOOKUP_ATTEMPTS = 3


def split_symbol(symbol: str, quote_assets) -> Optional[str]:
    """BTCUSDC -> BTC для известных quote-активов"""
    for quote in sorted(quote_assets, key=len, reverse=True):
        if symbol.endswith(quote) and len(symbol) > len(quote):
            return symbol[: -len(quote)]
    return None


def new_client_order_id() -> str:
    return f"mrb_{uuid.uuid4().hex[:24]}"


class BinanceTrader:
    """Вход в позицию и постановка защитного стопа"""

    def __init__(
        self,
        api,
        provider: ConfigProvider,
        controller: StopLossController,
        ledger: TradeLedger,
        notifier: Optional[TelegramNotifier] = None,
    ):
        self.api = api
        self.provider = provider
        self.controller = controller
        self.ledger = ledger
        self.notifier = notifier

    async def _call(self, fn, *args):
        return await run_blocking(fn, *args, timeout=self.provider.current().request_timeout_seconds)

    async def _notify(self, text: str):
        if self.notifier is not None:
            await self.notifier.notify(text)

    async def open_position(self, signal: Signal, quote_budget: float, trend_label: str = "") -> Optional[TrackedPosition]:
        """
        Открывает позицию на основе сигнала.
        Возвращает TrackedPosition или None, если вход пропущен/не удался.
        После исполнения рыночного ордера позиция всегда попадает в журнал и
        под контроль, даже если защиту поставить не вышло.
        """
        settings = self.provider.current()
        symbol = signal.symbol
        trend = signal.trend

        if not settings.enable_trading:
            logging.info(f"ℹ️ Торговля выключена (ENABLE_TRADING=0), сигнал {symbol} только в лог")
            return None

        if await self.controller.is_tracking(symbol):
            logging.info(f"⏭️ Пропускаем {symbol} - уже есть позиция под защитой")
            return None

        open_trades = await self.controller.open_count()
        if open_trades >= settings.max_open_trades:
            logging.info(f"⏭️ Пропускаем {symbol} - открыто {open_trades} из {settings.max_open_trades} сделок")
            return None

        rule = rule_for(trend)

        try:
            filters = await self._call(self.api.get_symbol_filters, symbol)
            price = await self._call(self.api.get_price, symbol)
        except Exception as e:
            logging.error(f"❌ {symbol}: не удалось получить фильтры/цену: {e}")
            return None

        qty = round_to_step(quote_budget / price, filters.step_size) if price > 0 else 0.0
        problem = filters.violation(qty, price)
        if problem:
            logging.warning(f"❌ {symbol}: вход на {quote_budget:.2f} отклонён: {problem}")
            return None

        logging.info(f"Открываем {rule.entry_side} {symbol}: qty={qty} по ~{price:.6g} (бюджет {quote_budget:.2f})")
        order = await self._place_entry(symbol, rule.entry_side, fmt_qty(qty, filters), settings)
        if order is None:
            return None

        entry_price = avg_fill_price(order, price)
        logging.info(f"✅ Ордер на вход {symbol} исполнен: orderId={order.get('orderId')}, цена {entry_price:.6g}")

        await asyncio.sleep(settings.order_settle_seconds)

        confirmed = await self._confirmed_quantity(symbol, trend, order, qty, filters, settings)
        self.ledger.record(
            symbol, rule.entry_side, entry_price, confirmed,
            reason="momentum entry", trend_label=trend_label,
        )

        native = settings.trailing_stop_enabled and filters.allow_trailing_stop
        position = TrackedPosition(
            symbol=symbol,
            entry_price=entry_price,
            quantity=confirmed,
            current_stop_price=candidate_stop(trend, entry_price, settings.stop_loss_percent, filters.tick_size),
            protection_mode=ProtectionMode.NATIVE if native else ProtectionMode.SYNTHETIC,
            trend=trend,
            order_id=None,
            trend_label=trend_label,
        )

        # контроллер не трогает символ, пока ставим первую защиту
        async with self.controller.symbol_lock(symbol):
            await self.controller.track(position)
            await self._protect(position, filters, settings)

        if position.order_id is not None:
            self.ledger.record(
                symbol, STOP_SET, entry_price, confirmed,
                stop_loss_price=position.current_stop_price,
                reason=f"initial {position.protection_mode.value}",
                trend_label=trend_label,
            )
        await self._notify(format_entry_message(position))
        return position

    async def _place_entry(self, symbol: str, side: str, qty: str, settings: Settings) -> Optional[dict]:
        """
        Рыночный ордер на вход. Если ответ потерян (таймаут, 5xx), статус
        проверяется по newClientOrderId: ордер мог исполниться без нас.
        """
        client_id = new_client_order_id()
        try:
            return await self._call(self.api.place_market_order, symbol, side, qty, client_id)
        except BinanceAPIError as e:
            if e.status is not None and e.status < 500:
                logging.error(f"❌ Ошибка при открытии позиции для {symbol}: {e}")
                return None
            error = e
        except Exception as e:
            error = e

        logging.warning(f"⚠️ {symbol}: ответ на рыночный ордер потерян ({error}), сверяемся с биржей")
        for attempt in range(1, ENTRY_LOOKUP_ATTEMPTS + 1):
            await asyncio.sleep(settings.order_settle_seconds)
            try:
                order = await self._call(self.api.get_order_by_client_id, symbol, client_id)
            except BinanceAPIError as e:
                if e.code == UNKNOWN_ORDER_CODE:
                    logging.error(f"❌ {symbol}: рыночный ордер до биржи не дошёл ({error})")
                    return None
                logging.warning(f"⚠️ {symbol}: сверка ордера {client_id} не удалась ({attempt}/{ENTRY_LOOKUP_ATTEMPTS}): {e}")
                continue
            except Exception as e:
                logging.warning(f"⚠️ {symbol}: сверка ордера {client_id} не удалась ({attempt}/{ENTRY_LOOKUP_ATTEMPTS}): {e}")
                continue

            if float(order.get("executedQty", 0) or 0) > 0:
                logging.info(f"ℹ️ {symbol}: ордер {client_id} всё же исполнен ({order.get('status')})")
                return order
            logging.error(f"❌ {symbol}: рыночный ордер {client_id} не исполнен ({order.get('status')})")
            return None

        logging.error(f"❌ {symbol}: статус рыночного ордера {client_id} неизвестен, нужна ручная проверка")
        await self._notify(f"⚠️ {symbol}: статус рыночного ордера {client_id} неизвестен, проверьте счёт вручную")
        return None

    async def _confirmed_quantity(
        self,
        symbol: str,
        trend: TrendDirection,
        order: dict,
        requested: float,
        filters: SymbolFilters,
        settings: Settings,
    ) -> float:
        """
        Лонг: свободный баланс базового актива (за вычетом комиссии), шорт: executedQty.
        Если баланс прочитать не удалось, берётся executedQty из ответа ордера.
        """
        executed = round_to_step(float(order.get("executedQty", 0) or 0), filters.step_size) or requested
        if trend is not TrendDirection.POSITIVE:
            return executed

        base = split_symbol(symbol, settings.quote_assets)
        if base is None:
            logging.warning(f"⚠️ {symbol}: не удалось определить базовый актив, берём executedQty={executed}")
            return executed
        try:
            balance = await self._call(self.api.get_account_balance, base)
        except Exception as e:
            logging.warning(f"⚠️ {symbol}: не удалось получить баланс {base} ({e}), берём executedQty={executed}")
            return executed
        return round_to_step(balance, filters.step_size) or executed

    async def _protect(self, position: TrackedPosition, filters: SymbolFilters, settings: Settings):
        """
        Несколько попыток поставить защиту. Перед каждым повтором сверка с биржей:
        если ордер всё же встал, он берётся в позицию. Нативный трейлинг при ошибке
        заменяется стоп-лимитом.
        """
        symbol = position.symbol
        problem = filters.violation(position.quantity, position.current_stop_price)
        if problem:
            logging.error(f"❌ {symbol}: защиту поставить нельзя ({problem}), позиция ведётся без стопа")
            return

        for attempt in range(1, PROTECT_ATTEMPTS + 1):
            mode = position.protection_mode
            try:
                order_id = await self._call(
                    place_protective_order, self.api, settings, symbol, position.trend,
                    mode, position.quantity, position.current_stop_price, filters,
                )
            except Exception as e:
                logging.error(f"Ошибка при установке стопа для {symbol} (попытка {attempt}/{PROTECT_ATTEMPTS}): {e}")
                found = await self.controller.adopt_or_leave_unprotected(position)
                if found is not False:
                    # ордер взят или состояние биржи неизвестно: дальше ведёт контроллер
                    return
                if mode is ProtectionMode.NATIVE:
                    logging.info(f"ℹ️ {symbol}: переключаемся на стоп-лимит")
                    await self.controller.commit(position, protection_mode=ProtectionMode.SYNTHETIC)
                continue

            await self.controller.commit(position, order_id=order_id)
            logging.info(
                f"✅ Защита {mode.value} для {symbol} выставлена: стоп {position.current_stop_price:.6g}, orderId={order_id}"
            )
            return

        logging.error(f"❌ {symbol}: позиция открыта без защиты, контроллер повторит постановку")
