from datetime import datetime, timezone

import pytest

from ledger import TradeLedger
from reporting import format_report, format_symbol_trades, load_ledger, realized_trades, summarize, win_loss_ratio


def _ts(day, hour=0):
    return datetime(2024, 1, day, hour, tzinfo=timezone.utc)


@pytest.fixture
def folder(tmp_path):
    ledger = TradeLedger(str(tmp_path))
    ledger.record("AAAUSDC", "BUY", 10.0, 2.0, ts=_ts(1, 1))
    ledger.record("AAAUSDC", "STOP_SET", 10.0, 2.0, stop_loss_price=9.5, ts=_ts(1, 2))
    ledger.record("AAAUSDC", "SELL", 12.0, 2.0, ts=_ts(1, 5))
    ledger.record("BBBUSDC", "BUY", 5.0, 4.0, ts=_ts(8, 1))
    ledger.record("BBBUSDC", "SELL", 4.0, 4.0, ts=_ts(9, 1))
    # шорт: вход SELL, выход BUY
    ledger.record("CCCUSDC", "SELL", 20.0, 1.0, ts=_ts(9, 2))
    ledger.record("CCCUSDC", "BUY", 18.0, 1.0, ts=_ts(9, 3))
    # незакрытая позиция в отчёт не попадает
    ledger.record("DDDUSDC", "BUY", 1.0, 1.0, ts=_ts(10, 1))
    return str(tmp_path)


def test_realized_trades_pairs_entries_and_exits(folder):
    realized = realized_trades(load_ledger(folder))
    assert list(realized["symbol"]) == ["AAAUSDC", "BBBUSDC", "CCCUSDC"]
    assert list(realized["profit"]) == pytest.approx([4.0, -4.0, 2.0])
    assert list(realized["side"]) == ["long", "long", "short"]
    assert realized.iloc[0]["profit_pct"] == pytest.approx(20.0)


def test_summaries(folder):
    realized = realized_trades(load_ledger(folder))
    daily = summarize(realized, "day")
    assert list(daily["period"]) == ["2024-01-01", "2024-01-09"]
    assert list(daily["profit"]) == pytest.approx([4.0, -2.0])
    weekly = summarize(realized, "week")
    assert list(weekly["period"]) == ["2024-W01", "2024-W02"]
    monthly = summarize(realized, "month")
    assert list(monthly["trades"]) == [3]
    with pytest.raises(ValueError):
        summarize(realized, "year")


def test_win_loss_ratio(folder):
    win, loss, tokens = win_loss_ratio(realized_trades(load_ledger(folder)))
    assert tokens == 3
    assert win == pytest.approx(200 / 3)
    assert loss == pytest.approx(100 / 3)


def test_report_text(folder):
    realized = realized_trades(load_ledger(folder))
    text = format_report(realized)
    assert "Total Realized Trades: 3" in text
    assert "Most profitable token: AAAUSDC" in text
    assert "Least profitable token: BBBUSDC" in text
    assert "Total profit on CCCUSDC: 2.00" in format_symbol_trades(realized, "CCCUSDC")


def test_empty_folder(tmp_path):
    realized = realized_trades(load_ledger(str(tmp_path)))
    assert realized.empty
    assert win_loss_ratio(realized) == (0.0, 0.0, 0)
    assert "Total Realized Trades: 0" in format_report(realized)
