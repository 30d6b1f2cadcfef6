"""
Бэктест храповика стоп-лосса на исторических свечах.

simulate(): чистая функция без I/O: та же логика, что у живого контроллера
стопов (ratchet.py), только вместо опроса цены идёт проход по массиву свечей.
"""
import argparse
import logging
import sys
from typing import Any, List, Optional, Sequence, Tuple

import pandas as pd

from models import Candle, RealizedTrade, TrendDirection
from ratchet import candidate_stop, rule_for, tighten


def parse_candles(raw: Sequence[Sequence[Any]]) -> List[Candle]:
    """Сырые klines -> свечи. Битые строки отбрасываются."""
    candles = []
    for row in raw:
        try:
            candles.append(Candle.from_kline(row))
        except ValueError as e:
            logging.debug(f"Пропускаем свечу: {e}")
    return candles


def simulate(
    candles: Sequence[Candle],
    stop_loss_pct: float,
    trend: TrendDirection = TrendDirection.POSITIVE,
    symbol: str = "",
) -> Tuple[float, List[RealizedTrade]]:
    """Симуляция входов с перезаходом и трейлинг-стопом.

    Вход по open свечи i, дальше ведём экстремум (high для лонга, low для шорта)
    и стоп от него. Сделка закрывается на первой свече j >= i, где low (high)
    коснулся стопа, ровно по цене стопа. Следующий вход: по open свечи j+1.
    Если стоп не сработал до конца ряда: закрываем по close последней свечи
    с exit_index=None.

    Returns:
        (итоговый множитель капитала, список сделок)
    """
    rule = rule_for(trend)
    final_multiplier = 1.0
    trades: List[RealizedTrade] = []
    n = len(candles)
    i = 0

    while i < n:
        entry_price = candles[i].open
        extreme = entry_price
        stop_level = candidate_stop(trend, extreme, stop_loss_pct)
        exit_index: Optional[int] = None

        for j in range(i, n):
            candle = candles[j]
            extreme = rule.extreme_fn(extreme, rule.favorable_price(candle))
            stop_level = tighten(trend, stop_level, candidate_stop(trend, extreme, stop_loss_pct))
            if rule.is_breached(candle, stop_level):
                exit_index = j
                break

        exit_price = stop_level if exit_index is not None else candles[-1].close
        multiplier = exit_price / entry_price
        final_multiplier *= multiplier
        trades.append(
            RealizedTrade(
                symbol=symbol,
                entry_price=entry_price,
                exit_price=exit_price,
                quantity=1.0,
                multiplier=multiplier,
                entry_index=i,
                exit_index=exit_index,
            )
        )
        if exit_index is None:
            break
        i = exit_index + 1

    return final_multiplier, trades


def backtest_trade(
    api,
    symbol: str,
    interval: str,
    limit: int,
    stop_loss_pct: float,
    trend: TrendDirection,
) -> Tuple[float, List[RealizedTrade]]:
    """Тянет свечи с биржи и прогоняет simulate()"""
    raw = api.get_klines(symbol, interval, limit)
    if not raw:
        raise RuntimeError(f"No kline data received for {symbol}")
    candles = parse_candles(raw)
    if not candles:
        raise RuntimeError(f"No candle data available after parsing for {symbol}")
    return simulate(candles, stop_loss_pct, trend, symbol=symbol)


def sweep_stop_loss(
    candles: Sequence[Candle],
    options: Sequence[float],
    trend: TrendDirection = TrendDirection.POSITIVE,
) -> pd.DataFrame:
    """Перебор процентов стоп-лосса; лучший результат: первой строкой"""
    rows = []
    for pct in options:
        multiplier, trades = simulate(candles, pct, trend)
        rows.append({
            "stop_loss_pct": float(pct),
            "final_multiplier": multiplier,
            "profit_pct": (multiplier - 1.0) * 100.0,
            "trades": len(trades),
        })
    df = pd.DataFrame(rows, columns=["stop_loss_pct", "final_multiplier", "profit_pct", "trades"])
    return df.sort_values("final_multiplier", ascending=False).reset_index(drop=True)


def format_trades(trades: Sequence[RealizedTrade]) -> str:
    lines = []
    for t in trades:
        if t.exit_index is not None:
            lines.append(
                f"  Trade from candle {t.entry_index + 1}: entry at {t.entry_price:.6g}, "
                f"exit at {t.exit_price:.6g}, multiplier: {t.multiplier:.4f}"
            )
        else:
            lines.append(
                f"  Final trade starting at candle {t.entry_index + 1}: entry at {t.entry_price:.6g}, "
                f"exit at {t.exit_price:.6g} (final), multiplier: {t.multiplier:.4f}"
            )
    return "\n".join(lines)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Бэктест трейлинг-стопа на свечах Binance")
    parser.add_argument("token", help="Торговая пара, например FARMUSDT")
    parser.add_argument("interval", help="Таймфрейм свечей (1h, 15m, ...)")
    parser.add_argument("limit", type=int, help="Сколько свечей брать (например 48)")
    parser.add_argument("trend", choices=["positive", "negative"], help="Направление тренда")
    parser.add_argument("stop_loss", type=float, help="Стоп-лосс в процентах (5 = 5%%)")
    parser.add_argument("--sweep", action="store_true", help="Перебрать BT_STOP_LOSS_OPTIONS из конфига")
    parser.add_argument("--env-file", default=None, help="Файл настроек (по умолчанию vars.env)")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    from binance_api import BinanceAPI
    from config import load_settings, setup_logging

    args = build_parser().parse_args(argv)
    settings = load_settings(args.env_file)
    setup_logging(settings)
    api = BinanceAPI(base_url=settings.binance_base_url, timeout=settings.request_timeout_seconds)
    trend = TrendDirection.parse(args.trend)

    print(
        f"Running backtest for {args.token} over {args.limit} candles with interval {args.interval} "
        f"for {trend.label} trend and stop loss {args.stop_loss}%..."
    )
    try:
        raw = api.get_klines(args.token, args.interval, args.limit)
    except Exception as e:
        logging.error(f"Backtest error: {e}")
        return 1

    candles = parse_candles(raw)
    if not candles:
        logging.error(f"Backtest error: no candle data for {args.token}")
        return 1

    multiplier, trades = simulate(candles, args.stop_loss, trend, symbol=args.token)
    print(f"Backtest result: Final multiplier = {multiplier:.4f} (Total Profit: {(multiplier - 1.0) * 100:+.2f}%)")
    print("Trade details:")
    print(format_trades(trades))

    if args.sweep:
        options = settings.bt_stop_loss_options or (args.stop_loss,)
        print("\nStop-loss sweep:")
        print(sweep_stop_loss(candles, options, trend).to_string(index=False))
    return 0


if __name__ == "__main__":
    sys.exit(main())
