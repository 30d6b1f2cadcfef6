"""Журнал сделок: одна CSV-строка на каждое событие (BUY / STOP_SET / SELL)"""
import csv
import glob
import logging
import os
from datetime import datetime, timezone
from typing import Dict, Optional

FIELDS = [
    "timestamp",
    "symbol",
    "action",
    "price",
    "qty",
    "quote_amount",
    "stop_loss_price",
    "reason",
    "trend_label",
]

BUY = "BUY"
STOP_SET = "STOP_SET"
SELL = "SELL"
ACTIONS = (BUY, STOP_SET, SELL)


class TradeLedger:
    """Append-only журнал: файл на каждый UTC-день в папке trade_log_folder"""

    def __init__(self, folder: str):
        self.folder = folder
        os.makedirs(folder, exist_ok=True)

    def _path_for(self, ts: datetime) -> str:
        return os.path.join(self.folder, f"trades_{ts:%Y-%m-%d}.csv")

    def record(
        self,
        symbol: str,
        action: str,
        price: float,
        qty: float,
        stop_loss_price: float = 0.0,
        reason: str = "",
        trend_label: str = "",
        ts: Optional[datetime] = None,
    ) -> Dict[str, str]:
        """Синхронно дописывает строку. Ошибка записи не глотается."""
        if action not in ACTIONS:
            raise ValueError(f"Неизвестное действие для журнала: {action}")

        ts = ts or datetime.now(timezone.utc)
        row = {
            "timestamp": ts.isoformat(timespec="seconds"),
            "symbol": symbol,
            "action": action,
            "price": f"{float(price):.8g}",
            "qty": f"{float(qty):.8g}",
            "quote_amount": f"{float(price) * float(qty):.8g}",
            "stop_loss_price": f"{float(stop_loss_price):.8g}",
            "reason": reason,
            "trend_label": trend_label,
        }

        path = self._path_for(ts)
        is_new = not os.path.exists(path)
        with open(path, "a", newline="", encoding="utf-8") as f:
            writer = csv.DictWriter(f, fieldnames=FIELDS)
            if is_new:
                writer.writeheader()
            writer.writerow(row)

        logging.info(f"📝 {action} {symbol}: price={row['price']} qty={row['qty']} stop={row['stop_loss_price']} ({reason})")
        return row

    def last_entry(self, symbol: str) -> Optional[Dict[str, str]]:
        """Вход по ещё не закрытой позиции символа (нужен для восстановления после рестарта).

        Вход: первое BUY/SELL без открытой позиции, выход: противоположное действие.
        """
        entry = None
        for path in sorted(glob.glob(os.path.join(self.folder, "*.csv"))):
            with open(path, newline="", encoding="utf-8") as f:
                for row in csv.DictReader(f):
                    action = row.get("action")
                    if row.get("symbol") != symbol or action not in (BUY, SELL):
                        continue
                    if entry is None:
                        entry = row
                    elif action != entry.get("action"):
                        entry = None
        return entry
