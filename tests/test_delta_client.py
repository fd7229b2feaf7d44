"""
Tests for the Delta Exchange REST adapter.

Tests cover:
- Request signing and auth headers
- Payload normalization across field spellings
- Order, cancel, leverage request shapes
- Error mapping and GET retries
"""

import hashlib
import hmac
import json
from typing import List

import httpx
import pytest

from gridpilot.core.errors import ExchangeAuthError, ExchangeError
from gridpilot.core.models import OrderStatus, Side
from gridpilot.execution.delta_client import (
    DeltaExchange,
    parse_fills,
    parse_mark_price,
    parse_positions,
    parse_products,
    parse_wallet,
    sign_request,
)
from gridpilot.execution.exchange_port import OrderIntent

PRODUCTS = {
    "success": True,
    "result": [
        {
            "id": 27,
            "symbol": "BTCUSD",
            "contract_value": "0.001",
            "tick_size": "0.5",
            "product_specs": {"min_order_size": 1},
        },
        {"id": 3136, "symbol": "ETHUSD", "contract_value": "0.01"},
        {"symbol": "NOID"},
    ],
}


class Router:
    """MockTransport handler keyed by (method, path)."""

    def __init__(self):
        self.routes = {}
        self.requests: List[httpx.Request] = []

    def add(self, method, path, *responses):
        self.routes[(method, path)] = list(responses)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        queue = self.routes.get((request.method, request.url.path))
        if not queue:
            return httpx.Response(404, json={"success": False, "error": {"code": "not_found"}})
        item = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(item, Exception):
            raise item
        status, payload = item
        return httpx.Response(status, json=payload)


@pytest.fixture
def router():
    r = Router()
    r.add("GET", "/v2/products", (200, PRODUCTS))
    return r


def make_client(router, key="k3y", secret="s3cret", retries=1):
    client = httpx.AsyncClient(transport=httpx.MockTransport(router))
    return DeltaExchange(
        "https://api.india.delta.exchange",
        api_key=key,
        api_secret=secret,
        client=client,
        get_retries=retries,
    )


class TestSigning:

    def test_signature_matches_hmac(self):
        expected = hmac.new(b"sec", b"GET1700000000/v2/orders?x=1", hashlib.sha256).hexdigest()
        assert sign_request("sec", "get", "1700000000", "/v2/orders?x=1") == expected

    @pytest.mark.asyncio
    async def test_signed_request_headers(self, router):
        router.add("GET", "/v2/wallet/balances", (200, {"result": []}))
        ex = make_client(router)
        await ex.list_wallet_balances()
        req = router.requests[-1]
        assert req.headers["api-key"] == "k3y"
        ts = req.headers["timestamp"]
        assert req.headers["signature"] == sign_request("s3cret", "GET", ts, "/v2/wallet/balances")

    @pytest.mark.asyncio
    async def test_public_request_unsigned(self, router):
        router.add("GET", "/v2/tickers/BTCUSD", (200, {"result": {"mark_price": "45000.5"}}))
        ex = make_client(router, key=None, secret=None)
        assert await ex.get_mark_price("btcusd") == 45000.5
        assert "signature" not in router.requests[-1].headers

    @pytest.mark.asyncio
    async def test_missing_credentials(self, router):
        ex = make_client(router, key=None, secret=None)
        with pytest.raises(ExchangeAuthError):
            await ex.list_wallet_balances()


class TestParsing:

    def test_mark_price_spellings(self):
        assert parse_mark_price({"result": {"markPrice": 10}}) == 10.0
        assert parse_mark_price({"result": {"close": "11"}}) == 11.0
        assert parse_mark_price({"result": {"mark_price": "junk", "last_price": 12}}) == 12.0
        assert parse_mark_price({"result": None}) is None

    def test_products(self):
        specs = parse_products(PRODUCTS)
        assert set(specs) == {"BTCUSD", "ETHUSD"}
        btc = specs["BTCUSD"]
        assert btc.product_id == 27
        assert btc.contract_value == 0.001
        assert btc.min_order_size == 1.0
        assert btc.tick_size == 0.5
        assert specs["ETHUSD"].min_order_size == 1.0

    def test_positions_side_from_field_or_sign(self):
        payload = {"result": [
            {"product_symbol": "BTCUSD", "size": -3, "entry_price": "44000"},
            {"product": {"symbol": "BTCUSD"}, "net_size": 2, "side": "long"},
            {"product_symbol": "ETHUSD", "size": 5},
            {"product_symbol": "BTCUSD", "size": 0},
        ]}
        positions = parse_positions(payload, "BTCUSD")
        assert [(p.side, p.size_abs) for p in positions] == [(Side.SELL, 3.0), (Side.BUY, 2.0)]
        assert positions[0].entry_price == 44000.0

    def test_fills_microsecond_timestamps(self):
        payload = {"result": [
            {"product_symbol": "BTCUSD", "side": "buy", "size": 1, "price": "45000", "created_at_ms": 1_700_000_000_000_000},
            {"product_symbol": "BTCUSD", "side": "hold", "size": 1, "price": 1},
        ]}
        fills = parse_fills(payload, "BTCUSD")
        assert len(fills) == 1
        assert fills[0].ts == 1_700_000_000_000

    def test_wallet(self):
        payload = {"result": [
            {"asset_symbol": "usd", "balance": "100.5", "balance_inr": "8400"},
            {"asset": "BTC", "balance": None},
        ]}
        wallets = parse_wallet(payload)
        assert len(wallets) == 1
        assert wallets[0].asset == "USD"
        assert wallets[0].balance_inr == 8400.0


class TestTrading:

    @pytest.mark.asyncio
    async def test_place_market_order(self, router):
        router.add("POST", "/v2/orders", (200, {"success": True, "result": {"id": 991}}))
        ex = make_client(router)
        placed = await ex.place_order(OrderIntent(symbol="BTCUSD", side=Side.SELL, size=2.0, reduce_only=True))
        assert placed.order_id == "991"
        assert placed.status is OrderStatus.SUBMITTED
        body = json.loads(router.requests[-1].content)
        assert body == {"product_id": 27, "side": "sell", "order_type": "market_order", "size": 2, "reduce_only": True}

    @pytest.mark.asyncio
    async def test_cancel_sends_id_in_body(self, router):
        router.add("DELETE", "/v2/orders", (200, {"success": True, "result": {}}))
        ex = make_client(router)
        await ex.cancel_order("991", "BTCUSD")
        body = json.loads(router.requests[-1].content)
        assert body == {"id": 991, "product_id": 27}

    @pytest.mark.asyncio
    async def test_set_leverage(self, router):
        router.add("POST", "/v2/products/27/orders/leverage", (200, {"success": True, "result": {}}))
        ex = make_client(router)
        await ex.set_leverage("BTCUSD", 10)
        assert json.loads(router.requests[-1].content) == {"leverage": "10"}

    @pytest.mark.asyncio
    async def test_unknown_symbol(self, router):
        ex = make_client(router)
        with pytest.raises(ExchangeError):
            await ex.get_product("DOGEUSD")

    @pytest.mark.asyncio
    async def test_products_cached(self, router):
        router.add("GET", "/v2/tickers/BTCUSD", (200, {"result": {"mark_price": 1}}))
        ex = make_client(router)
        await ex.get_product("BTCUSD")
        await ex.get_product("ETHUSD")
        assert sum(1 for r in router.requests if r.url.path == "/v2/products") == 1

    @pytest.mark.asyncio
    async def test_list_positions_filters_product(self, router):
        router.add("GET", "/v2/positions/margined", (200, {"result": [{"product_symbol": "BTCUSD", "size": 4}]}))
        ex = make_client(router)
        positions = await ex.list_positions("BTCUSD")
        assert positions[0].size_abs == 4
        assert router.requests[-1].url.params["product_ids"] == "27"


class TestErrors:

    @pytest.mark.asyncio
    async def test_error_payload_mapped(self, router):
        router.add("POST", "/v2/orders", (400, {"success": False, "error": {"code": "insufficient_margin", "context": {"x": 1}}}))
        ex = make_client(router)
        with pytest.raises(ExchangeError) as exc_info:
            await ex.place_order(OrderIntent(symbol="BTCUSD", side=Side.BUY, size=1))
        assert exc_info.value.status == 400
        assert str(exc_info.value).startswith("insufficient_margin")

    @pytest.mark.asyncio
    async def test_auth_error(self, router):
        router.add("GET", "/v2/wallet/balances", (401, {"success": False, "error": {"code": "invalid_api_key"}}))
        ex = make_client(router)
        with pytest.raises(ExchangeAuthError):
            await ex.list_wallet_balances()

    @pytest.mark.asyncio
    async def test_get_retries_server_errors(self, router):
        router.add(
            "GET", "/v2/tickers/BTCUSD",
            (502, {"success": False, "error": "bad gateway"}),
            (200, {"result": {"mark_price": 45000}}),
        )
        ex = make_client(router, retries=1)
        assert await ex.get_mark_price("BTCUSD") == 45000.0
        assert sum(1 for r in router.requests if r.url.path == "/v2/tickers/BTCUSD") == 2

    @pytest.mark.asyncio
    async def test_get_does_not_retry_client_errors(self, router):
        router.add("GET", "/v2/tickers/BTCUSD", (404, {"success": False, "error": {"code": "not_found"}}))
        ex = make_client(router, retries=2)
        with pytest.raises(ExchangeError):
            await ex.get_mark_price("BTCUSD")
        assert sum(1 for r in router.requests if r.url.path == "/v2/tickers/BTCUSD") == 1

    @pytest.mark.asyncio
    async def test_order_not_retried(self, router):
        router.add("POST", "/v2/orders", (503, {"success": False, "error": "unavailable"}))
        ex = make_client(router)
        with pytest.raises(ExchangeError):
            await ex.place_order(OrderIntent(symbol="BTCUSD", side=Side.BUY, size=1))
        assert sum(1 for r in router.requests if r.url.path == "/v2/orders") == 1

    @pytest.mark.asyncio
    async def test_network_error(self, router):
        router.add("GET", "/v2/tickers/BTCUSD", httpx.ConnectError("refused"))
        ex = make_client(router, retries=0)
        with pytest.raises(ExchangeError):
            await ex.get_mark_price("BTCUSD")
