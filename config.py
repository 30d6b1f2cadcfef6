"""Модуль конфигурации - загрузка настроек из переменных окружения и vars.env"""
import os
import sys
import asyncio
import logging
import logging.handlers
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Tuple

from dotenv import dotenv_values

DEFAULT_ENV_FILE = "vars.env"
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"


def _split(raw: str) -> List[str]:
    return [x.strip() for x in (raw or "").split(",") if x.strip()]


def _floats(raw: str) -> List[float]:
    out = []
    for x in _split(raw):
        try:
            out.append(float(x))
        except ValueError:
            logging.warning(f"Пропускаем нечисловое значение '{x}' в списке настроек")
    return out


@dataclass(frozen=True)
class Settings:
    """Снимок настроек. Компоненты получают его явно, глобального состояния нет."""

    # Сканер
    lookback_period: int = 48
    recent_window: int = 4
    kline_interval: str = "1h"
    min_volume_usd: float = 1_000_000.0
    quote_assets: Tuple[str, ...] = ("USDC",)
    transaction_amounts: Tuple[float, ...] = (100.0,)
    excluded_symbols: Tuple[str, ...] = ()
    excluded_days: Tuple[str, ...] = ()
    loop_interval_seconds: int = 3600

    # Стоп-лосс
    stop_loss_percent: float = 5.0
    stop_loss_loop_interval_seconds: int = 900
    stop_limit_offset_percent: float = 0.5
    trailing_stop_enabled: bool = True
    max_open_trades: int = 5
    trade_directions: Tuple[str, ...] = ("positive",)

    # Исполнение
    enable_trading: bool = False
    order_settle_seconds: float = 2.0
    request_timeout_seconds: float = 10.0
    max_concurrency: int = 5

    # Бэктест
    bt_stop_loss_options: Tuple[float, ...] = (3.0, 5.0, 10.0)

    # Журнал сделок и логи
    trade_log_folder: str = "trade_logs"
    log_dir: str = "log"
    log_file: str = "app.log"
    log_to_file: bool = False
    log_level: str = "INFO"

    # Binance
    binance_base_url: str = "https://api.binance.com"
    binance_api_key: str = field(default="", repr=False)
    binance_api_secret: str = field(default="", repr=False)

    # Telegram (необязательно)
    telegram_bot_token: str = field(default="", repr=False)
    telegram_chat_id: str = ""

    def transaction_amount_for(self, index: int) -> float:
        """Бюджет для i-го quote-актива; если список короче: 10.0, как было в старом боте"""
        if 0 <= index < len(self.transaction_amounts):
            return self.transaction_amounts[index]
        return 10.0

    def validate(self) -> "Settings":
        """Проверка обязательных параметров. Ошибка здесь: единственная фатальная."""
        if self.lookback_period < 2:
            raise RuntimeError(f"LOOKBACK_PERIOD должен быть >= 2, сейчас {self.lookback_period}")
        if not 1 <= self.recent_window <= self.lookback_period:
            raise RuntimeError(
                f"LAST_HOURS_PERIOD должен быть в диапазоне 1..{self.lookback_period}, сейчас {self.recent_window}"
            )
        if not 0 < self.stop_loss_percent < 100:
            raise RuntimeError(f"STOP_LOSS_PERCENT должен быть в (0, 100), сейчас {self.stop_loss_percent}")
        if not self.quote_assets:
            raise RuntimeError("Не задан QUOTE_ASSETS")
        if self.enable_trading and not (self.binance_api_key and self.binance_api_secret):
            raise RuntimeError("Торговля включена, но не заданы BINANCE_API_KEY/BINANCE_API_SECRET")
        return self


def settings_from_mapping(env: Mapping[str, Optional[str]]) -> Settings:
    """Собирает Settings из словаря переменных (os.environ + vars.env)"""

    def get(key: str, default: str) -> str:
        value = env.get(key)
        return default if value is None or str(value).strip() == "" else str(value).strip()

    def flag(key: str, default: str) -> bool:
        return get(key, default).lower() in ("1", "true", "yes", "on")

    return Settings(
        lookback_period=int(get("LOOKBACK_PERIOD", "48")),
        recent_window=int(get("LAST_HOURS_PERIOD", "4")),
        kline_interval=get("KLINE_INTERVAL", "1h"),
        min_volume_usd=float(get("MIN_VOLUME_USD", "1000000")),
        quote_assets=tuple(a.upper() for a in _split(get("QUOTE_ASSETS", "USDC"))),
        transaction_amounts=tuple(_floats(get("TRANSACTION_AMOUNTS", "100"))),
        excluded_symbols=tuple(s.upper() for s in _split(get("EXCLUDED_TOKENS", ""))),
        excluded_days=tuple(d.lower()[:3] for d in _split(get("EXCLUDED_DAYS", ""))),
        loop_interval_seconds=int(get("LOOP_TIME_SECONDS", "3600")),
        stop_loss_percent=float(get("STOP_LOSS_PERCENT", "5")),
        stop_loss_loop_interval_seconds=int(get("ORDER_UPDATE_INTERVAL", "900")),
        stop_limit_offset_percent=float(get("STOP_LIMIT_OFFSET_PERCENT", "0.5")),
        trailing_stop_enabled=flag("TRAILING_STOP_ENABLED", "1"),
        max_open_trades=int(get("MAX_OPEN_TRADES", "5")),
        trade_directions=tuple(d.lower() for d in _split(get("TRADE_DIRECTIONS", "positive"))),
        enable_trading=flag("ENABLE_TRADING", "0"),
        order_settle_seconds=float(get("ORDER_SETTLE_SECONDS", "2")),
        request_timeout_seconds=float(get("REQUEST_TIMEOUT_SECONDS", "10")),
        max_concurrency=max(1, int(get("MAX_CONCURRENCY", "5"))),
        bt_stop_loss_options=tuple(_floats(get("BT_STOP_LOSS_OPTIONS", "3,5,10"))),
        trade_log_folder=get("TRADE_LOG_FOLDER", "trade_logs"),
        log_dir=get("LOG_DIR", "log"),
        log_file=get("LOG_FILE", "app.log"),
        log_to_file=flag("LOG_TO_FILE", "0"),
        log_level=get("LOG_LEVEL", "INFO").upper(),
        binance_base_url=get("BINANCE_SPOT_BASE", "https://api.binance.com"),
        binance_api_key=get("BINANCE_API_KEY", ""),
        binance_api_secret=get("BINANCE_API_SECRET", ""),
        telegram_bot_token=get("TELEGRAM_BOT_TOKEN", ""),
        telegram_chat_id=get("TELEGRAM_CHAT_ID", ""),
    )


def load_settings(env_file: Optional[str] = None) -> Settings:
    """Читает vars.env поверх os.environ (значения из файла важнее, чтобы работал reload)"""
    path = env_file or os.getenv("ENV_FILE", DEFAULT_ENV_FILE)
    env: Dict[str, Optional[str]] = dict(os.environ)
    if os.path.exists(path):
        env.update(dotenv_values(path))
    else:
        logging.debug(f"Файл настроек {path} не найден, используем только переменные окружения")
    return settings_from_mapping(env).validate()


class ConfigProvider:
    """Хранит текущий снимок настроек и умеет перечитывать его при изменении файла"""

    def __init__(self, env_file: Optional[str] = None, settings: Optional[Settings] = None):
        self.env_file = env_file or os.getenv("ENV_FILE", DEFAULT_ENV_FILE)
        self._settings = settings or load_settings(self.env_file)
        self._mtime = self._file_mtime()

    def current(self) -> Settings:
        return self._settings

    def _file_mtime(self) -> Optional[float]:
        try:
            return os.path.getmtime(self.env_file)
        except OSError:
            return None

    def reload(self) -> bool:
        """Перечитывает файл. Битый конфиг не заменяет рабочий, только пишем в лог."""
        try:
            new_settings = load_settings(self.env_file)
        except (RuntimeError, ValueError) as e:
            logging.error(f"❌ Новый конфиг {self.env_file} отклонён: {e}")
            return False
        if new_settings == self._settings:
            return False
        self._settings = new_settings
        logging.info(f"🔄 Конфигурация перечитана: {new_settings}")
        return True

    async def watch(self, stop_event: asyncio.Event, poll_seconds: float = 5.0):
        """Следит за mtime файла настроек и перезагружает при изменении"""
        while not stop_event.is_set():
            mtime = self._file_mtime()
            if mtime is not None and mtime != self._mtime:
                self._mtime = mtime
                logging.info(f"Файл {self.env_file} изменился, перечитываем...")
                self.reload()
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=poll_seconds)
            except asyncio.TimeoutError:
                pass


def setup_logging(settings: Settings) -> None:
    """Настройка логирования: консоль или файл с ежедневной ротацией"""
    level = getattr(logging, settings.log_level, logging.INFO)
    if settings.log_to_file:
        os.makedirs(settings.log_dir, exist_ok=True)
        handler: logging.Handler = logging.handlers.TimedRotatingFileHandler(
            os.path.join(settings.log_dir, settings.log_file),
            when="midnight",
            backupCount=14,
            encoding="utf-8",
        )
    else:
        handler = logging.StreamHandler(sys.stdout)

    logging.basicConfig(level=level, format=LOG_FORMAT, handlers=[handler], force=True)
    # requests/urllib3 слишком болтливы на DEBUG
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
