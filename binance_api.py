"""
Модуль для работы с Binance Spot API v3 (публичные данные + подписанные запросы)
"""

import time
import asyncio
import hmac
import hashlib
import logging
from urllib.parse import urlencode
from typing import Any, Dict, List, Optional

import requests

from models import OpenOrder, SymbolFilters
from precision import format_by_step

AUTH_ERROR_CODES = (-2014, -2015)
UNKNOWN_ORDER_CODE = -2013


class BinanceAPIError(RuntimeError):
    """Ошибка Binance: HTTP-статус и код из тела ответа"""

    def __init__(self, message: str, status: Optional[int] = None, code: Optional[int] = None):
        super().__init__(message)
        self.status = status
        self.code = code


class BinanceAPI:
    """Класс для работы с Binance Spot API"""

    def __init__(
        self,
        base_url: str = "https://api.binance.com",
        api_key: str = "",
        api_secret: str = "",
        timeout: float = 10.0,
        session: Optional[requests.Session] = None,
    ):
        self.base = base_url.rstrip("/")
        self.key = api_key or ""
        self.secret = api_secret or ""
        self.timeout = timeout
        self.session = session or requests.Session()

        if self.key and self.secret:
            logging.info(f"Binance API инициализирован: base_url={self.base}")
            logging.info(f"  API Key: {self.key[:6]}... (первые 6 символов)")
            if "testnet" in self.base.lower():
                logging.info("  ⚠️ Используется TESTNET (демо-торговля)")
            else:
                logging.info("  ⚠️ Используется MAINNET (реальная торговля!)")
        else:
            logging.warning("Binance API ключи не заданы: доступны только публичные данные")

    @classmethod
    def from_settings(cls, settings) -> "BinanceAPI":
        return cls(
            base_url=settings.binance_base_url,
            api_key=settings.binance_api_key,
            api_secret=settings.binance_api_secret,
            timeout=settings.request_timeout_seconds,
        )

    # -------- Market --------

    def get_24h_tickers(self) -> List[Dict[str, Any]]:
        """Все 24h тикеры одним запросом: symbol, priceChangePercent, quoteVolume (строки)"""
        data = self._get("/api/v3/ticker/24hr", {})
        return [
            {
                "symbol": x.get("symbol", ""),
                "priceChangePercent": x.get("priceChangePercent", "0"),
                "quoteVolume": x.get("quoteVolume", "0"),
                "lastPrice": x.get("lastPrice", "0"),
            }
            for x in data
        ]

    def get_klines(self, symbol: str, interval: str = "1h", limit: int = 48) -> List[List[Any]]:
        """Сырые свечи: массивы из 12 полей, индекс 0 самая старая"""
        params = {"symbol": symbol, "interval": interval, "limit": int(limit)}
        return self._get("/api/v3/klines", params)

    def get_price(self, symbol: str) -> float:
        data = self._get("/api/v3/ticker/price", {"symbol": symbol})
        return float(data["price"])

    def get_exchange_info(self, symbol: Optional[str] = None) -> Dict[str, Any]:
        params = {"symbol": symbol} if symbol else {}
        return self._get("/api/v3/exchangeInfo", params)

    def get_symbol_filters(self, symbol: str) -> SymbolFilters:
        """Фильтры PRICE_FILTER / LOT_SIZE / NOTIONAL (или старый MIN_NOTIONAL) для символа"""
        info = self.get_exchange_info(symbol)
        symbols = info.get("symbols", []) or []
        if not symbols:
            raise BinanceAPIError(f"Символ {symbol} не найден в exchangeInfo")
        return parse_symbol_filters(symbols[0])

    # -------- Account / Trade --------

    def get_account_info(self) -> Dict[str, Any]:
        return self._get("/api/v3/account", {"omitZeroBalances": "true"}, auth=True)

    def get_balances(self) -> Dict[str, float]:
        """asset -> free"""
        balances = self.get_account_info().get("balances", []) or []
        return {b["asset"]: float(b.get("free", 0) or 0) for b in balances}

    def get_account_balance(self, asset: str) -> float:
        return self.get_balances().get(asset.upper(), 0.0)

    def get_open_orders(self, symbol: Optional[str] = None) -> List[OpenOrder]:
        params = {"symbol": symbol} if symbol else {}
        raw = self._get("/api/v3/openOrders", params, auth=True)
        return [OpenOrder.from_api(o) for o in raw]

    def get_open_order_symbols(self) -> List[str]:
        return sorted({o.symbol for o in self.get_open_orders()})

    def get_order(self, symbol: str, order_id: int) -> Dict[str, Any]:
        return self._get("/api/v3/order", {"symbol": symbol, "orderId": order_id}, auth=True)

    def get_order_by_client_id(self, symbol: str, client_order_id: str) -> Dict[str, Any]:
        """Статус ордера по нашему newClientOrderId (-2013, если биржа его не видела)"""
        return self._get("/api/v3/order", {"symbol": symbol, "origClientOrderId": client_order_id}, auth=True)

    def place_market_order(
        self, symbol: str, side: str, qty: str, client_order_id: Optional[str] = None
    ) -> Dict[str, Any]:
        payload = {
            "symbol": symbol,
            "side": side,
            "type": "MARKET",
            "quantity": qty,
            "newOrderRespType": "FULL",
        }
        if client_order_id:
            payload["newClientOrderId"] = client_order_id
        return self._post("/api/v3/order", payload)

    def place_market_buy(self, symbol: str, qty: str, client_order_id: Optional[str] = None) -> Dict[str, Any]:
        return self.place_market_order(symbol, "BUY", qty, client_order_id)

    def place_trailing_stop(
        self,
        symbol: str,
        side: str,
        qty: str,
        callback_rate_pct: float,
        activation_price: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Нативный трейлинг: STOP_LOSS с trailingDelta в BIPS (1% = 100)"""
        payload = {
            "symbol": symbol,
            "side": side,
            "type": "STOP_LOSS",
            "quantity": qty,
            "trailingDelta": int(round(callback_rate_pct * 100)),
        }
        if activation_price is not None:
            payload["stopPrice"] = activation_price
        return self._post("/api/v3/order", payload)

    def place_stop_limit(self, symbol: str, side: str, qty: str, stop_price: str, limit_price: str) -> Dict[str, Any]:
        payload = {
            "symbol": symbol,
            "side": side,
            "type": "STOP_LOSS_LIMIT",
            "timeInForce": "GTC",
            "quantity": qty,
            "stopPrice": stop_price,
            "price": limit_price,
        }
        return self._post("/api/v3/order", payload)

    def cancel_order(self, symbol: str, order_id: int) -> Dict[str, Any]:
        return self._request("DELETE", "/api/v3/order", {"symbol": symbol, "orderId": order_id}, auth=True)

    # -------- HTTP helpers --------

    def _get(self, path: str, params: Dict[str, Any], auth: bool = False) -> Any:
        return self._request("GET", path, params, auth=auth)

    def _post(self, path: str, body: Dict[str, Any]) -> Any:
        return self._request("POST", path, body, auth=True)

    def _request(self, method: str, path: str, params: Dict[str, Any], auth: bool = False) -> Any:
        url = self.base + path
        headers = None
        if auth:
            params, headers = self._sign(params)

        r = self.session.request(method, url, params=params, headers=headers, timeout=self.timeout)

        try:
            data = r.json() if r.content else {}
        except ValueError:
            data = {}

        if r.status_code >= 400:
            code = data.get("code") if isinstance(data, dict) else None
            msg = data.get("msg", r.text) if isinstance(data, dict) else r.text
            if r.status_code == 401 or code in AUTH_ERROR_CODES:
                logging.error("❌ Binance API: Невалидный API ключ. Проверьте BINANCE_API_KEY/BINANCE_API_SECRET")
                logging.error(f"   code: {code}, msg: {msg}")
                logging.error(f"   base_url: {self.base}")
                raise BinanceAPIError(f"Binance API authentication failed: {msg}", r.status_code, code)
            raise BinanceAPIError(f"Binance API error (HTTP {r.status_code}, code={code}): {msg}", r.status_code, code)

        return data

    def _sign(self, params: Dict[str, Any]):
        if not self.key or not self.secret:
            raise BinanceAPIError("API ключи не настроены")

        signed = dict(params)
        signed["timestamp"] = int(time.time() * 1000)
        signed["recvWindow"] = 5000
        query = urlencode(signed)
        signed["signature"] = hmac.new(self.secret.encode(), query.encode(), hashlib.sha256).hexdigest()
        return signed, {"X-MBX-APIKEY": self.key}


def parse_symbol_filters(raw: Dict[str, Any]) -> SymbolFilters:
    """Разбирает запись символа из exchangeInfo в SymbolFilters"""
    by_type = {f.get("filterType"): f for f in raw.get("filters", []) or []}
    price_f = by_type.get("PRICE_FILTER", {})
    lot_f = by_type.get("LOT_SIZE", {})
    notional_f = by_type.get("NOTIONAL") or by_type.get("MIN_NOTIONAL") or {}
    return SymbolFilters(
        symbol=raw.get("symbol", ""),
        tick_size=float(price_f.get("tickSize", 0) or 0),
        step_size=float(lot_f.get("stepSize", 0) or 0),
        min_qty=float(lot_f.get("minQty", 0) or 0),
        min_price=float(price_f.get("minPrice", 0) or 0),
        min_notional=float(notional_f.get("minNotional", 0) or 0),
        allow_trailing_stop=bool(raw.get("allowTrailingStop", False)),
        order_types=tuple(raw.get("orderTypes", []) or []),
    )


def avg_fill_price(order: Dict[str, Any], fallback: float) -> float:
    """Средняя цена исполнения из ответа ордера (cummulativeQuoteQty / executedQty)"""
    executed = float(order.get("executedQty", 0) or 0)
    quote = float(order.get("cummulativeQuoteQty", 0) or 0)
    if executed > 0 and quote > 0:
        return quote / executed
    return fallback


def fmt_qty(qty: float, filters: SymbolFilters) -> str:
    return format_by_step(qty, filters.step_size)


def fmt_price(price: float, filters: SymbolFilters) -> str:
    return format_by_step(price, filters.tick_size)


async def run_blocking(fn, *args, timeout: float = 10.0):
    """Синхронный вызов requests в отдельном потоке с общим таймаутом"""
    return await asyncio.wait_for(asyncio.to_thread(fn, *args), timeout=timeout)
