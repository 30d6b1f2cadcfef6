"""Модуль для уведомлений в Telegram о входах, переносах стопа и выходах"""
import asyncio
import logging
from typing import List, Optional

from telegram import Bot
from telegram.error import RetryAfter, TelegramError

from models import Signal, TrackedPosition


def format_signal_line(signal: Signal) -> str:
    return (
        f"Signal: {signal.symbol:<12} | Growth: {signal.overall_growth_pct:>6.2f}% | "
        f"Recent: {signal.recent_growth_pct:>6.2f}% | "
        f"Fluct: {signal.avg_fluctuation_abs:>7.4f} (~{signal.avg_fluctuation_pct:>4.2f}%)"
    )


def format_signals_message(trend_label: str, signals: List[Signal]) -> str:
    """Сводка скана в одном сообщении"""
    if not signals:
        return f"🤖 Momentum scan ({trend_label})\n\nСигналов по фильтрам пока нет. Рынок спит."
    lines = [f"🤖 Momentum scan ({trend_label}): {len(signals)} сигнал(ов)", ""]
    lines.extend(format_signal_line(s) for s in signals)
    return "\n".join(lines)


def format_entry_message(position: TrackedPosition) -> str:
    protection = position.protection_mode.value if position.is_protected else "⚠️ без защиты"
    return (
        f"🟢 Вход {position.symbol} ({position.trend.label})\n"
        f"• Цена входа: {position.entry_price:.6g}\n"
        f"• Кол-во: {position.quantity:.6g}\n"
        f"• Стоп: {position.current_stop_price:.6g} ({protection})"
    )


def format_stop_message(position: TrackedPosition, old_stop: float) -> str:
    return f"🔒 {position.symbol}: стоп {old_stop:.6g} → {position.current_stop_price:.6g}"


def format_exit_message(position: TrackedPosition, exit_price: float) -> str:
    pnl_pct = (exit_price / position.entry_price - 1.0) * 100.0 if position.entry_price else 0.0
    return (
        f"🔴 Выход {position.symbol}\n"
        f"• {position.entry_price:.6g} → {exit_price:.6g} ({pnl_pct:+.2f}%)\n"
        f"• Кол-во: {position.quantity:.6g}"
    )


class TelegramNotifier:
    """Отправка текстов в Telegram. Без токена: тихо выключен.

    Ошибки отправки только логируются: торговля от Telegram зависеть не должна.
    """

    def __init__(self, token: str = "", chat_ids: Optional[List[str]] = None, max_retries: int = 3):
        self.token = token or ""
        self.chat_ids = [str(c).strip() for c in (chat_ids or []) if str(c).strip()]
        self.max_retries = max_retries
        self.enabled = bool(self.token and self.chat_ids)
        if not self.enabled:
            logging.info("ℹ️ Telegram уведомления выключены (нет TELEGRAM_BOT_TOKEN/TELEGRAM_CHAT_ID)")

    @classmethod
    def from_settings(cls, settings) -> "TelegramNotifier":
        return cls(settings.telegram_bot_token, [settings.telegram_chat_id])

    async def notify(self, text: str) -> bool:
        if not self.enabled:
            return False
        ok = True
        try:
            async with Bot(token=self.token) as bot:
                for chat_id in self.chat_ids:
                    ok = await self._send(bot, chat_id, text) and ok
        except TelegramError as e:
            logging.warning(f"Не удалось отправить сообщение в Telegram: {e}")
            return False
        return ok

    async def _send(self, bot: Bot, chat_id: str, text: str) -> bool:
        for attempt in range(self.max_retries):
            try:
                await bot.send_message(chat_id=chat_id, text=text)
                return True
            except RetryAfter as e:
                retry_after = e.retry_after
                if hasattr(retry_after, "total_seconds"):
                    retry_after = retry_after.total_seconds()
                if attempt < self.max_retries - 1:
                    logging.warning(
                        f"Flood control в {chat_id}. Ожидание {retry_after} секунд перед попыткой {attempt + 2}/{self.max_retries}"
                    )
                    await asyncio.sleep(float(retry_after) + 1)
                    continue
                logging.error(f"Превышено максимальное количество попыток для {chat_id} из-за Flood control")
            except TelegramError as e:
                logging.warning(f"Ошибка при отправке в chat_id {chat_id}: {e}")
                return False
        return False
