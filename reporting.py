"""
Отчёт по журналу сделок: закрытые сделки, прибыль по дням/неделям/месяцам и токенам.

    python reporting.py [--folder trade_logs] [--symbol KAITOUSDC]
"""
import argparse
import glob
import logging
import os
import sys
from typing import List, Optional, Tuple

import pandas as pd

from ledger import BUY, FIELDS, SELL

REALIZED_COLUMNS = [
    "symbol", "side", "entry_time", "exit_time",
    "entry_price", "exit_price", "qty", "profit", "profit_pct",
]


def load_ledger(folder: str) -> pd.DataFrame:
    """Все CSV журнала одним DataFrame, по времени"""
    frames = []
    for path in sorted(glob.glob(os.path.join(folder, "*.csv"))):
        try:
            frames.append(pd.read_csv(path, dtype=str))
        except (OSError, pd.errors.ParserError) as e:
            logging.warning(f"Пропускаем {path}: {e}")
    if not frames:
        return pd.DataFrame(columns=FIELDS)

    df = pd.concat(frames, ignore_index=True)
    df["timestamp"] = pd.to_datetime(df["timestamp"], utc=True, errors="coerce")
    for col in ("price", "qty", "quote_amount", "stop_loss_price"):
        df[col] = pd.to_numeric(df[col], errors="coerce")
    df = df.dropna(subset=["timestamp", "price", "qty"])
    return df.sort_values("timestamp", kind="stable").reset_index(drop=True)


def realized_trades(ledger: pd.DataFrame) -> pd.DataFrame:
    """Пары вход -> выход по каждому символу. STOP_SET на прибыль не влияет.

    Вход: первое BUY/SELL без открытой позиции (BUY: лонг, SELL: шорт),
    выход: противоположное действие.
    """
    rows = []
    open_entries = {}
    for entry in ledger[ledger["action"].isin([BUY, SELL])].itertuples(index=False):
        opened = open_entries.get(entry.symbol)
        if opened is None:
            open_entries[entry.symbol] = entry
            continue
        if entry.action == opened.action:
            continue

        sign = 1.0 if opened.action == BUY else -1.0
        qty = float(opened.qty)
        profit = sign * (float(entry.price) - float(opened.price)) * qty
        rows.append({
            "symbol": entry.symbol,
            "side": "long" if sign > 0 else "short",
            "entry_time": opened.timestamp,
            "exit_time": entry.timestamp,
            "entry_price": float(opened.price),
            "exit_price": float(entry.price),
            "qty": qty,
            "profit": profit,
            "profit_pct": sign * (float(entry.price) / float(opened.price) - 1.0) * 100.0,
        })
        del open_entries[entry.symbol]

    return pd.DataFrame(rows, columns=REALIZED_COLUMNS)


def summarize(realized: pd.DataFrame, period: str) -> pd.DataFrame:
    """Прибыль и число сделок по периоду: day, week (ISO) или month"""
    if realized.empty:
        return pd.DataFrame(columns=["period", "profit", "trades"])

    ts = pd.to_datetime(realized["exit_time"], utc=True)
    if period == "day":
        key = ts.dt.strftime("%Y-%m-%d")
    elif period == "week":
        iso = ts.dt.isocalendar()
        key = iso["year"].astype(str) + "-W" + iso["week"].astype(int).map("{:02d}".format)
    elif period == "month":
        key = ts.dt.strftime("%Y-%m")
    else:
        raise ValueError(f"Неизвестный период: {period}")

    out = realized.assign(period=key.values).groupby("period").agg(
        profit=("profit", "sum"), trades=("profit", "size")
    )
    return out.reset_index().sort_values("period").reset_index(drop=True)


def profit_by_token(realized: pd.DataFrame) -> pd.Series:
    if realized.empty:
        return pd.Series(dtype=float)
    return realized.groupby("symbol")["profit"].sum().sort_values(ascending=False)


def win_loss_ratio(realized: pd.DataFrame) -> Tuple[float, float, int]:
    """Доля токенов в плюсе/минусе по суммарной прибыли (0 считается плюсом)"""
    totals = profit_by_token(realized)
    if totals.empty:
        return 0.0, 0.0, 0
    total = len(totals)
    wins = int((totals >= 0).sum())
    return wins / total * 100.0, (total - wins) / total * 100.0, total


def format_report(realized: pd.DataFrame, quote: str = "USDC") -> str:
    lines = ["📊 === Realized Profit Summary ===", f"Total Realized Trades: {len(realized)}"]
    if realized.empty:
        return "\n".join(lines)

    for title, period in (("📆 Daily Summary:", "day"), ("📅 Weekly Summary:", "week"), ("🗓 Monthly Summary:", "month")):
        lines.append(title)
        for row in summarize(realized, period).itertuples(index=False):
            lines.append(f"{row.period} → Profit: {row.profit:.2f} {quote} ({row.trades} trades)")

    totals = profit_by_token(realized)
    lines.append(f"\n🚀 Most profitable token: {totals.index[0]} → {totals.iloc[0]:.2f} {quote}")
    lines.append(f"❌ Least profitable token: {totals.index[-1]} → {totals.iloc[-1]:.2f} {quote}")

    win, loss, tokens = win_loss_ratio(realized)
    lines.append(f"\n📈 Win/Loss Ratio: {win:.1f}% win vs {loss:.1f}% loss ({tokens} tokens total)")
    return "\n".join(lines)


def format_symbol_trades(realized: pd.DataFrame, symbol: str, quote: str = "USDC") -> str:
    lines = [f"\n🔍 Realized trades for token: {symbol}\n"]
    subset = realized[realized["symbol"] == symbol]
    for t in subset.itertuples(index=False):
        lines.append(
            f"📅 {t.entry_time:%Y-%m-%d %H:%M} → {t.exit_time:%Y-%m-%d %H:%M} | {t.side} "
            f"@ {t.entry_price:.5f} → {t.exit_price:.5f} | Qty: {t.qty:<7.4f} | "
            f"Profit: {t.profit:>6.2f} {quote} ({t.profit_pct:+.2f}%)"
        )
    lines.append(f"\n💰 Total profit on {symbol}: {subset['profit'].sum():.2f} {quote}")
    return "\n".join(lines)


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Отчёт по журналу сделок")
    parser.add_argument("--folder", default=None, help="Папка журнала (по умолчанию TRADE_LOG_FOLDER)")
    parser.add_argument("--symbol", default=None, help="Показать сделки по одному токену")
    parser.add_argument("--env-file", default=None)
    args = parser.parse_args(argv)

    folder = args.folder
    if folder is None:
        from config import load_settings
        folder = load_settings(args.env_file).trade_log_folder

    print(f"📁 Scanning {folder}")
    realized = realized_trades(load_ledger(folder))
    print(format_report(realized))
    if args.symbol:
        print(format_symbol_trades(realized, args.symbol.upper()))
    return 0


if __name__ == "__main__":
    sys.exit(main())
