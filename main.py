import asyncio
import logging
import signal
import sys
from datetime import datetime, timezone
from typing import List, Optional

from binance_api import BinanceAPI, run_blocking
from binance_trading import BinanceTrader
from config import ConfigProvider, Settings, setup_logging
from ledger import TradeLedger
from models import Signal, TrendDirection
from signal_logic import SignalScanner
from stop_loss import StopLossController
from telegram_handler import TelegramNotifier, format_signals_message

WEEKDAYS = ("mon", "tue", "wed", "thu", "fri", "sat", "sun")


def is_trading_day(settings: Settings, now: Optional[datetime] = None) -> bool:
    now = now or datetime.now(timezone.utc)
    return WEEKDAYS[now.weekday()] not in settings.excluded_days


def quote_budget_for(symbol: str, settings: Settings) -> float:
    for i, quote in enumerate(settings.quote_assets):
        if symbol.endswith(quote):
            return settings.transaction_amount_for(i)
    return settings.transaction_amount_for(len(settings.quote_assets))


async def run_once(
    api,
    provider: ConfigProvider,
    trader: BinanceTrader,
    notifier: Optional[TelegramNotifier] = None,
) -> List[Signal]:
    settings = provider.current()
    if not is_trading_day(settings):
        logging.info("Сегодня день из EXCLUDED_DAYS, сканирование пропущено")
        return []

    scanner = SignalScanner(api, settings)
    found: List[Signal] = []

    for trend in TrendDirection:
        signals = await scanner.discover_signals(settings.quote_assets, settings.transaction_amounts, trend)
        found.extend(signals)

        msg = format_signals_message(f"{trend.label}, рынок {scanner.last_market_trend}", signals)
        print("\n" + "=" * 80)
        print(msg)
        print("=" * 80 + "\n")
        if signals and notifier is not None:
            await notifier.notify(msg)

        if trend.value not in settings.trade_directions:
            if signals:
                logging.info(f"ℹ️ Направление {trend.label} не в TRADE_DIRECTIONS, сигналы только в лог")
            continue

        for sig in signals:
            await trader.open_position(sig, quote_budget_for(sig.symbol, settings), trend_label=scanner.last_market_trend)

    return found


async def discovery_loop(stop_event: asyncio.Event, api, provider: ConfigProvider, trader: BinanceTrader, notifier):
    while not stop_event.is_set():
        try:
            await run_once(api, provider, trader, notifier)
        except Exception as e:
            logging.exception(f"Ошибка в run_once: {e}")
        interval = provider.current().loop_interval_seconds
        logging.info(f"Спим {interval} секунд...")
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval)
        except asyncio.TimeoutError:
            pass
    logging.info("Цикл сканирования остановлен")


async def amain(env_file: Optional[str] = None):
    provider = ConfigProvider(env_file)
    settings = provider.current()
    setup_logging(settings)

    logging.info("Запускаем momentum-бота с храповиком стоп-лосса (Binance Spot).")
    logging.info(f"Текущие настройки: {settings}")

    api = BinanceAPI.from_settings(settings)
    ledger = TradeLedger(settings.trade_log_folder)
    notifier = TelegramNotifier.from_settings(settings)
    controller = StopLossController(api, provider, ledger, notifier)
    trader = BinanceTrader(api, provider, controller, ledger, notifier)

    if settings.enable_trading:
        try:
            open_orders = await run_blocking(api.get_open_orders, timeout=settings.request_timeout_seconds)
            await controller.recover(open_orders)
        except Exception as e:
            logging.error(f"❌ Не удалось восстановить позиции из открытых ордеров: {e}")

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            logging.debug(f"Сигнал {sig} не поддерживается этим event loop")

    await asyncio.gather(
        discovery_loop(stop_event, api, provider, trader, notifier),
        controller.run_forever(stop_event),
        provider.watch(stop_event),
    )
    logging.info("Бот остановлен")


def main(argv: Optional[List[str]] = None) -> int:
    argv = sys.argv[1:] if argv is None else argv
    env_file = argv[0] if argv else None
    try:
        asyncio.run(amain(env_file))
    except RuntimeError as e:
        logging.error(f"❌ Запуск невозможен: {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
