"""Модуль поиска сигналов: моментум по 24h тикерам и окну свечей"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set

import numpy as np
import pandas as pd

from binance_api import run_blocking
from config import Settings
from models import Candle, Signal, TrendDirection

OVERALL_GROWTH_THRESHOLD = 10.0
STRONG_CANDLE_PCT = 0.5


def expand_holdings_to_pairs(holdings: Dict[str, float], quote_assets: Iterable[str]) -> List[str]:
    """Ненулевые балансы -> все пары с каждым quote-активом (BTC -> BTCUSDC, BTCUSDT, ...)"""
    pairs = []
    for base, amount in holdings.items():
        if amount > 0:
            for quote in quote_assets:
                if base != quote:
                    pairs.append(f"{base}{quote}")
    return pairs


def filter_tradable_tickers(
    tickers: List[Dict[str, Any]],
    invested: Set[str],
    excluded: Iterable[str],
    min_volume: float,
) -> List[str]:
    """Символы с объёмом >= min_volume, не в позиции и не в чёрном списке"""
    if not tickers:
        return []
    df = pd.DataFrame(tickers)
    df["symbol"] = df["symbol"].astype(str).str.upper()
    df["priceChangePercent"] = pd.to_numeric(df["priceChangePercent"], errors="coerce")
    df["quoteVolume"] = pd.to_numeric(df["quoteVolume"], errors="coerce").fillna(0.0)

    df = df.dropna(subset=["priceChangePercent"])
    df = df[df["quoteVolume"] >= min_volume]
    df = df[~df["symbol"].isin(set(invested) | set(excluded))]
    return df["symbol"].tolist()


def market_breadth(tickers: List[Dict[str, Any]]) -> str:
    """Positive, если хотя бы половина рынка в плюсе за 24ч"""
    if not tickers:
        return "Unknown"
    changes = pd.to_numeric(pd.Series([t.get("priceChangePercent") for t in tickers]), errors="coerce").fillna(0.0)
    ratio = float((changes > 0).mean())
    return "Positive" if ratio >= 0.5 else "Negative"


def _growth(open_price: float, close_price: float) -> float:
    return (close_price - open_price) / open_price * 100.0


def calculate_fluctuations(candles: Sequence[Candle]):
    """Средний размах свечи: абсолютный и в % от low"""
    valid = [c for c in candles if c.high > 0 and c.low > 0]
    if not valid:
        return 0.0, 0.0
    highs = np.array([c.high for c in valid])
    lows = np.array([c.low for c in valid])
    diff = highs - lows
    return float(diff.mean()), float((diff / lows * 100.0).mean())


def evaluate_klines(
    symbol: str,
    klines: Sequence[Sequence[Any]],
    lookback: int,
    recent: int,
    trend: TrendDirection,
) -> Optional[Signal]:
    """Чистая оценка окна свечей. None: сигнала нет (мало свечей, битые данные или фильтр)."""
    if len(klines) < lookback or len(klines) < 2:
        return None
    try:
        candles = [Candle.from_kline(row) for row in klines]
    except ValueError as e:
        logging.debug(f"{symbol}: пропускаем окно: {e}")
        return None
    if any(c.open <= 0 for c in candles):
        return None

    first, prev, last = candles[0], candles[-2], candles[-1]
    overall_growth = _growth(first.open, last.close)
    current_trend_up = last.close > prev.close

    recent_candles = candles[-max(1, recent):]
    recent_growth = _growth(recent_candles[0].open, recent_candles[-1].close)

    # 2 сильные зелёные свечи подряд
    two_strong_green = all(
        c.close > c.open and _growth(c.open, c.close) >= STRONG_CANDLE_PCT
        for c in (prev, last)
    )

    if trend is TrendDirection.POSITIVE:
        valid = (
            overall_growth >= OVERALL_GROWTH_THRESHOLD
            and current_trend_up
            and recent_growth > 0.0
            and two_strong_green
        )
    else:
        valid = (
            overall_growth <= -OVERALL_GROWTH_THRESHOLD
            and not current_trend_up
            and recent_growth < 0.0
        )

    if not valid:
        return None

    avg_abs, avg_pct = calculate_fluctuations(candles)
    return Signal(
        symbol=symbol,
        overall_growth_pct=overall_growth,
        recent_growth_pct=recent_growth,
        avg_fluctuation_abs=avg_abs,
        avg_fluctuation_pct=avg_pct,
        trend=trend,
    )


class SignalScanner:
    """Один проход сканера рынка. После прохода в last_market_trend лежит ширина рынка."""

    def __init__(self, api, settings: Settings):
        self.api = api
        self.settings = settings
        self.last_market_trend = "Unknown"

    async def _fetch(self, fn, *args):
        return await run_blocking(fn, *args, timeout=self.settings.request_timeout_seconds)

    async def discover_signals(
        self,
        assets: Sequence[str],
        per_asset_budget: Sequence[float],
        trend: TrendDirection,
    ) -> List[Signal]:
        s = self.settings
        logging.info(f"[{datetime.now(timezone.utc):%Y-%m-%d %H:%M:%S}] Старт сканирования рынка ({trend.label})...")

        # без снимка рынка и аккаунта скан бессмыслен, ждём следующий цикл
        try:
            tickers = await self._fetch(self.api.get_24h_tickers)
            open_symbols = await self._fetch(self.api.get_open_order_symbols)
            balances = await self._fetch(self.api.get_balances)
        except Exception as e:
            logging.error(f"❌ Скан прерван, не удалось получить снимок рынка/аккаунта: {e}")
            return []

        self.last_market_trend = market_breadth(tickers)

        invested = set(open_symbols)
        invested.update(expand_holdings_to_pairs(balances, s.quote_assets))

        tradable = filter_tradable_tickers(tickers, invested, s.excluded_symbols, s.min_volume_usd)
        logging.info(
            f"Тикеров: {len(tickers)}, в позиции: {len(invested)}, к проверке: {len(tradable)}, рынок: {self.last_market_trend}"
        )

        semaphore = asyncio.Semaphore(s.max_concurrency)
        signals: List[Signal] = []

        for i, asset in enumerate(assets):
            budget = per_asset_budget[i] if i < len(per_asset_budget) else s.transaction_amount_for(i)
            balance = balances.get(asset, 0.0)
            if balance < budget:
                logging.info(f"⏭️ {asset}: баланс {balance:.2f} меньше суммы сделки {budget:.2f}, пропускаем актив")
                continue

            candidates = [sym for sym in tradable if sym.endswith(asset)]
            results = await asyncio.gather(
                *(self._evaluate_symbol(sym, trend, semaphore) for sym in candidates)
            )
            signals.extend(sig for sig in results if sig is not None)

        signals.sort(key=lambda sig: abs(sig.overall_growth_pct), reverse=True)
        logging.info(f"Найдено сигналов: {len(signals)}")
        return signals

    async def _evaluate_symbol(self, symbol: str, trend: TrendDirection, semaphore: asyncio.Semaphore) -> Optional[Signal]:
        s = self.settings
        async with semaphore:
            try:
                klines = await self._fetch(self.api.get_klines, symbol, s.kline_interval, s.lookback_period)
            except Exception as e:
                logging.warning(f"Klines error for {symbol}: {e}")
                return None
        return evaluate_klines(symbol, klines, s.lookback_period, s.recent_window, trend)


async def discover_signals(
    api,
    assets: Sequence[str],
    per_asset_budget: Sequence[float],
    trend: TrendDirection,
    settings: Settings,
) -> List[Signal]:
    return await SignalScanner(api, settings).discover_signals(assets, per_asset_budget, trend)
