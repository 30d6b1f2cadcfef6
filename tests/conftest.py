import sys
from pathlib import Path

import pytest

# корень репозитория в sys.path, чтобы тесты импортировали модули напрямую
ROOT = Path(__file__).resolve().parents[1]
root_str = str(ROOT)
if root_str not in sys.path:
    sys.path.insert(0, root_str)

from binance_api import UNKNOWN_ORDER_CODE, BinanceAPIError  # noqa: E402
from config import ConfigProvider, Settings  # noqa: E402
from models import OpenOrder, SymbolFilters  # noqa: E402


def kline(o, h, l, c, t=0):
    """Строка kline в формате Binance (12 полей, числа строками)"""
    return [t, str(o), str(h), str(l), str(c), "1000", t + 3599999, "100000", 10, "500", "50000", "0"]


class FakeBinanceAPI:
    """Синхронная подмена BinanceAPI: состояние в словарях, все вызовы пишутся в calls"""

    def __init__(self):
        self.tickers = []
        self.klines = {}
        self.kline_errors = set()
        self.prices = {}
        self.filters = {}
        self.balances = {}
        self.open_orders = []
        self.orders = {}
        self.fail = {}
        # ордер доходит до биржи, но ответ теряется: имя метода -> число таких вызовов
        self.lost_responses = {}
        self.client_orders = {}
        self.calls = []
        self._next_id = 1000

    def _hit(self, name, *args):
        self.calls.append((name, args))
        exc = self.fail.get(name)
        if exc is not None:
            raise exc

    def _lose_response(self, name):
        left = self.lost_responses.get(name, 0)
        if left > 0:
            self.lost_responses[name] = left - 1
            raise TimeoutError(f"{name}: response lost")

    def names(self):
        return [name for name, _ in self.calls]

    def _new_id(self):
        self._next_id += 1
        return self._next_id

    # -------- market --------

    def get_24h_tickers(self):
        self._hit("get_24h_tickers")
        return list(self.tickers)

    def get_klines(self, symbol, interval="1h", limit=48):
        self._hit("get_klines", symbol, interval, limit)
        if symbol in self.kline_errors:
            raise RuntimeError(f"klines unavailable for {symbol}")
        return self.klines.get(symbol, [])

    def get_price(self, symbol):
        self._hit("get_price", symbol)
        return self.prices[symbol]

    def get_symbol_filters(self, symbol):
        self._hit("get_symbol_filters", symbol)
        return self.filters[symbol]

    # -------- account --------

    def get_balances(self):
        self._hit("get_balances")
        return dict(self.balances)

    def get_account_balance(self, asset):
        self._hit("get_account_balance", asset)
        return self.balances.get(asset, 0.0)

    def get_open_orders(self, symbol=None):
        self._hit("get_open_orders", symbol)
        return [o for o in self.open_orders if symbol is None or o.symbol == symbol]

    def get_open_order_symbols(self):
        self._hit("get_open_order_symbols")
        return sorted({o.symbol for o in self.open_orders})

    def get_order(self, symbol, order_id):
        self._hit("get_order", symbol, order_id)
        return self.orders.get(order_id, {"orderId": order_id, "status": "CANCELED"})

    def get_order_by_client_id(self, symbol, client_order_id):
        self._hit("get_order_by_client_id", symbol, client_order_id)
        order_id = self.client_orders.get(client_order_id)
        if order_id is None:
            raise BinanceAPIError("Order does not exist.", 400, UNKNOWN_ORDER_CODE)
        return self.orders[order_id]

    # -------- orders --------

    def place_market_order(self, symbol, side, qty, client_order_id=None):
        self._hit("place_market_order", symbol, side, qty)
        price = self.prices[symbol]
        order_id = self._new_id()
        order = {
            "orderId": order_id,
            "status": "FILLED",
            "executedQty": qty,
            "cummulativeQuoteQty": str(float(qty) * price),
        }
        self.orders[order_id] = order
        if client_order_id:
            self.client_orders[client_order_id] = order_id
        self._lose_response("place_market_order")
        return order

    def place_trailing_stop(self, symbol, side, qty, callback_rate_pct, activation_price=None):
        self._hit("place_trailing_stop", symbol, side, qty, callback_rate_pct)
        resp = self._add_open(symbol, "STOP_LOSS", side, qty, 0.0)
        self._lose_response("place_trailing_stop")
        return resp

    def place_stop_limit(self, symbol, side, qty, stop_price, limit_price):
        self._hit("place_stop_limit", symbol, side, qty, stop_price, limit_price)
        resp = self._add_open(symbol, "STOP_LOSS_LIMIT", side, qty, float(stop_price), float(limit_price))
        self._lose_response("place_stop_limit")
        return resp

    def cancel_order(self, symbol, order_id):
        self._hit("cancel_order", symbol, order_id)
        self.open_orders = [o for o in self.open_orders if o.order_id != order_id]
        self.orders[order_id] = {"orderId": order_id, "status": "CANCELED"}
        return self.orders[order_id]

    def _add_open(self, symbol, order_type, side, qty, stop_price, price=0.0):
        order_id = self._new_id()
        self.open_orders.append(
            OpenOrder(symbol=symbol, type=order_type, side=side, price=price,
                      orig_qty=float(qty), stop_price=stop_price, order_id=order_id)
        )
        self.orders[order_id] = {"orderId": order_id, "status": "NEW"}
        return {"orderId": order_id, "status": "NEW"}


class FakeNotifier:
    def __init__(self):
        self.messages = []

    async def notify(self, text):
        self.messages.append(text)
        return True


@pytest.fixture
def api():
    return FakeBinanceAPI()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def make_provider(tmp_path):
    def _make(**overrides):
        overrides.setdefault("order_settle_seconds", 0.0)
        overrides.setdefault("trade_log_folder", str(tmp_path / "trade_logs"))
        return ConfigProvider(env_file=str(tmp_path / "missing.env"), settings=Settings(**overrides))

    return _make


@pytest.fixture
def filters():
    return SymbolFilters(
        symbol="FOOUSDC",
        tick_size=0.01,
        step_size=0.001,
        min_qty=0.001,
        min_price=0.01,
        min_notional=5.0,
        allow_trailing_stop=False,
        order_types=("LIMIT", "MARKET", "STOP_LOSS_LIMIT"),
    )
