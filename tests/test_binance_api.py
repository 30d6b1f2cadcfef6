from unittest.mock import MagicMock

import pytest

from binance_api import UNKNOWN_ORDER_CODE, BinanceAPI, BinanceAPIError


def _api(status=200, body=None):
    response = MagicMock()
    response.status_code = status
    response.content = b"{}"
    response.json.return_value = body if body is not None else {}
    response.text = str(body)
    session = MagicMock()
    session.request.return_value = response
    return BinanceAPI(api_key="key", api_secret="secret", session=session), session


def test_market_buy_sends_client_order_id():
    api, session = _api(body={"orderId": 7, "status": "FILLED"})

    assert api.place_market_buy("FOOUSDC", "1.000", "mrb_abc")["orderId"] == 7

    method, url = session.request.call_args.args
    params = session.request.call_args.kwargs["params"]
    assert method == "POST"
    assert url.endswith("/api/v3/order")
    assert params["side"] == "BUY"
    assert params["type"] == "MARKET"
    assert params["newClientOrderId"] == "mrb_abc"
    assert "signature" in params
    assert session.request.call_args.kwargs["headers"] == {"X-MBX-APIKEY": "key"}


def test_market_order_without_client_id_omits_it():
    api, session = _api(body={"orderId": 8})
    api.place_market_order("FOOUSDC", "SELL", "2.000")
    assert "newClientOrderId" not in session.request.call_args.kwargs["params"]


def test_unknown_client_order_raises_with_code():
    api, session = _api(status=400, body={"code": UNKNOWN_ORDER_CODE, "msg": "Order does not exist."})

    with pytest.raises(BinanceAPIError) as err:
        api.get_order_by_client_id("FOOUSDC", "mrb_missing")

    assert err.value.code == UNKNOWN_ORDER_CODE
    assert err.value.status == 400
    assert session.request.call_args.kwargs["params"]["origClientOrderId"] == "mrb_missing"
