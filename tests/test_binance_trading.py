import asyncio
import csv
import dataclasses
import glob
import os

from binance_trading import BinanceTrader, split_symbol
from ledger import TradeLedger
from models import ProtectionMode, Signal, TrackedPosition, TrendDirection
from stop_loss import StopLossController


def _signal(trend=TrendDirection.POSITIVE):
    return Signal("FOOUSDC", 12.0, 3.0, 0.5, 1.2, trend)


def _setup(api, make_provider, filters, notifier=None, **settings):
    settings.setdefault("enable_trading", True)
    provider = make_provider(**settings)
    ledger = TradeLedger(provider.current().trade_log_folder)
    controller = StopLossController(api, provider, ledger, notifier)
    trader = BinanceTrader(api, provider, controller, ledger, notifier)
    api.filters["FOOUSDC"] = filters
    api.prices["FOOUSDC"] = 10.0
    api.balances["FOO"] = 9.99
    return trader, controller, ledger


def _actions(ledger):
    rows = []
    for path in sorted(glob.glob(os.path.join(ledger.folder, "*.csv"))):
        with open(path, newline="", encoding="utf-8") as f:
            rows.extend(csv.DictReader(f))
    return [r["action"] for r in rows]


def test_split_symbol():
    assert split_symbol("BTCUSDC", ("USDC", "USDT")) == "BTC"
    assert split_symbol("USDC", ("USDC",)) is None


def test_trading_disabled_only_logs(api, make_provider, filters):
    trader, _, _ = _setup(api, make_provider, filters, enable_trading=False)
    assert asyncio.run(trader.open_position(_signal(), 100.0)) is None
    assert api.calls == []


def test_entry_places_synthetic_stop(api, make_provider, filters, notifier):
    trader, controller, ledger = _setup(api, make_provider, filters, notifier)

    position = asyncio.run(trader.open_position(_signal(), 100.0, trend_label="Positive"))

    assert position is not None
    assert position.protection_mode is ProtectionMode.SYNTHETIC
    assert position.entry_price == 10.0
    assert position.quantity == 9.99
    assert position.current_stop_price == 9.5
    assert position.is_protected
    market = [args for name, args in api.calls if name == "place_market_order"]
    assert market == [("FOOUSDC", "BUY", "10.000")]
    assert asyncio.run(controller.is_tracking("FOOUSDC"))
    assert _actions(ledger) == ["BUY", "STOP_SET"]
    assert notifier.messages


def test_entry_uses_native_trailing_when_allowed(api, make_provider, filters):
    native_filters = dataclasses.replace(filters, allow_trailing_stop=True)
    trader, _, _ = _setup(api, make_provider, native_filters)

    position = asyncio.run(trader.open_position(_signal(), 100.0))

    assert position.protection_mode is ProtectionMode.NATIVE
    trailing = [args for name, args in api.calls if name == "place_trailing_stop"]
    assert trailing == [("FOOUSDC", "SELL", "9.990", 5.0)]


def test_native_failure_falls_back_to_stop_limit(api, make_provider, filters):
    native_filters = dataclasses.replace(filters, allow_trailing_stop=True)
    trader, _, _ = _setup(api, make_provider, native_filters)
    api.fail["place_trailing_stop"] = RuntimeError("not supported")

    position = asyncio.run(trader.open_position(_signal(), 100.0))

    assert position.protection_mode is ProtectionMode.SYNTHETIC
    assert position.is_protected
    assert "place_stop_limit" in api.names()


def test_entry_below_min_notional_is_rejected(api, make_provider, filters):
    trader, _, _ = _setup(api, make_provider, filters)
    assert asyncio.run(trader.open_position(_signal(), 1.0)) is None
    assert "place_market_order" not in api.names()


def test_max_open_trades_cap(api, make_provider, filters):
    trader, controller, _ = _setup(api, make_provider, filters, max_open_trades=1)
    asyncio.run(controller.track(TrackedPosition(
        symbol="BARUSDC", entry_price=1.0, quantity=10.0, current_stop_price=0.95,
        protection_mode=ProtectionMode.SYNTHETIC, order_id=5,
    )))
    assert asyncio.run(trader.open_position(_signal(), 100.0)) is None
    assert "place_market_order" not in api.names()


def test_short_bias_entry_sells_and_uses_executed_qty(api, make_provider, filters):
    trader, _, ledger = _setup(api, make_provider, filters)

    position = asyncio.run(trader.open_position(_signal(TrendDirection.NEGATIVE), 100.0))

    assert position.quantity == 10.0
    assert position.current_stop_price == 10.5
    market = [args for name, args in api.calls if name == "place_market_order"]
    assert market[0][1] == "SELL"
    stops = [args for name, args in api.calls if name == "place_stop_limit"]
    assert stops[0][1] == "BUY"
    assert _actions(ledger) == ["SELL", "STOP_SET"]


def test_failed_protection_tracks_position_unprotected(api, make_provider, filters):
    trader, controller, ledger = _setup(api, make_provider, filters)
    api.fail["place_stop_limit"] = RuntimeError("rejected")

    position = asyncio.run(trader.open_position(_signal(), 100.0))

    assert position is not None
    assert not position.is_protected
    assert asyncio.run(controller.is_tracking("FOOUSDC"))
    assert api.names().count("place_stop_limit") == 3
    assert _actions(ledger) == ["BUY"]


def test_balance_failure_falls_back_to_executed_qty(api, make_provider, filters):
    trader, controller, ledger = _setup(api, make_provider, filters)
    api.fail["get_account_balance"] = RuntimeError("timeout")

    position = asyncio.run(trader.open_position(_signal(), 100.0))

    assert position is not None
    assert position.quantity == 10.0
    assert position.is_protected
    assert asyncio.run(controller.is_tracking("FOOUSDC"))
    assert _actions(ledger) == ["BUY", "STOP_SET"]


def test_lost_entry_response_is_recovered_by_client_id(api, make_provider, filters):
    trader, controller, ledger = _setup(api, make_provider, filters)
    api.lost_responses["place_market_order"] = 1

    position = asyncio.run(trader.open_position(_signal(), 100.0))

    assert position is not None
    assert position.entry_price == 10.0
    assert api.names().count("place_market_order") == 1
    assert "get_order_by_client_id" in api.names()
    assert asyncio.run(controller.is_tracking("FOOUSDC"))
    assert _actions(ledger) == ["BUY", "STOP_SET"]


def test_entry_that_never_reached_exchange_is_dropped(api, make_provider, filters):
    trader, controller, ledger = _setup(api, make_provider, filters)
    api.fail["place_market_order"] = TimeoutError("connect timeout")

    assert asyncio.run(trader.open_position(_signal(), 100.0)) is None
    assert "get_order_by_client_id" in api.names()
    assert not asyncio.run(controller.is_tracking("FOOUSDC"))
    assert _actions(ledger) == []


def test_fill_below_min_qty_is_tracked_unprotected(api, make_provider, filters):
    tight = dataclasses.replace(filters, min_qty=10.0)
    trader, controller, ledger = _setup(api, make_provider, tight)

    position = asyncio.run(trader.open_position(_signal(), 100.0))

    assert position is not None
    assert position.quantity == 9.99
    assert not position.is_protected
    assert asyncio.run(controller.is_tracking("FOOUSDC"))
    assert "place_stop_limit" not in api.names()
    assert _actions(ledger) == ["BUY"]


def test_lost_stop_response_adopts_placed_order(api, make_provider, filters):
    trader, _, ledger = _setup(api, make_provider, filters)
    api.lost_responses["place_stop_limit"] = 1

    position = asyncio.run(trader.open_position(_signal(), 100.0))

    assert api.names().count("place_stop_limit") == 1
    assert len(api.open_orders) == 1
    assert position.order_id == api.open_orders[0].order_id
    assert _actions(ledger) == ["BUY", "STOP_SET"]


def test_lost_trailing_response_keeps_native_order(api, make_provider, filters):
    native_filters = dataclasses.replace(filters, allow_trailing_stop=True)
    trader, _, _ = _setup(api, make_provider, native_filters)
    api.lost_responses["place_trailing_stop"] = 1

    position = asyncio.run(trader.open_position(_signal(), 100.0))

    assert position.protection_mode is ProtectionMode.NATIVE
    assert "place_stop_limit" not in api.names()
    assert [o.type for o in api.open_orders] == ["STOP_LOSS"]
    assert position.order_id == api.open_orders[0].order_id


def test_failed_reconciliation_stops_retrying(api, make_provider, filters):
    trader, controller, _ = _setup(api, make_provider, filters)
    api.fail["place_stop_limit"] = RuntimeError("timeout")
    api.fail["get_open_orders"] = RuntimeError("timeout")

    position = asyncio.run(trader.open_position(_signal(), 100.0))

    assert not position.is_protected
    assert api.names().count("place_stop_limit") == 1
    assert asyncio.run(controller.is_tracking("FOOUSDC"))
