"""
Async signed REST client for Delta Exchange (India and Global).

All payload field-name guessing lives here: the exchange emits several
spellings for the same value depending on endpoint and region, and the
parse_* helpers collapse them into the normalized port types.
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import logging
import random
import time
from typing import Any, Dict, List, Mapping, Optional
from urllib.parse import urlencode

import httpx

from gridpilot.core.errors import ExchangeAuthError, ExchangeError
from gridpilot.core.json_utils import dumps, loads
from gridpilot.core.models import OrderStatus, Side
from gridpilot.core.utils import norm_symbol, pick_float, to_float
from gridpilot.execution.exchange_port import (
    ExchangeFill,
    ExchangePosition,
    OrderIntent,
    PlacedOrder,
    ProductSpec,
    WalletBalance,
)
from gridpilot.infra.logging_cfg import log_event

log = logging.getLogger("gridpilot")

DELTA_GLOBAL_BASE_URL = "https://api.delta.exchange"
DELTA_INDIA_BASE_URL = "https://api.india.delta.exchange"

PRODUCTS_TTL_SEC = 300.0
USER_AGENT = "gridpilot/0.4 (+https://localhost)"


def sign_request(api_secret: str, method: str, timestamp: str, path: str, body: str = "") -> str:
    """HMAC-SHA256 hex over method + timestamp + path(+query) + body."""
    message = method.upper() + timestamp + path + body
    return hmac.new(api_secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).hexdigest()


# ----------------------------------------------------------------------
# Payload normalization
# ----------------------------------------------------------------------

def _result(payload: Any) -> Any:
    if isinstance(payload, Mapping) and "result" in payload:
        return payload["result"]
    return payload


def parse_mark_price(payload: Any) -> Optional[float]:
    ticker = _result(payload)
    if not isinstance(ticker, Mapping):
        return None
    return pick_float(ticker, ("mark_price", "markPrice", "last_price", "lastPrice", "close"))


def _pick_product_id(raw: Mapping[str, Any]) -> Optional[int]:
    nested = raw.get("product") if isinstance(raw.get("product"), Mapping) else {}
    for cand in (raw.get("id"), raw.get("product_id"), raw.get("productId"), nested.get("id"), nested.get("product_id")):
        val = to_float(cand)
        if val is not None:
            return int(val)
    return None


def _pick_symbol(raw: Mapping[str, Any]) -> str:
    nested = raw.get("product") if isinstance(raw.get("product"), Mapping) else {}
    for cand in (raw.get("symbol"), raw.get("product_symbol"), raw.get("productSymbol"), nested.get("symbol")):
        if isinstance(cand, str) and cand.strip():
            return norm_symbol(cand)
    return ""


def parse_products(payload: Any) -> Dict[str, ProductSpec]:
    out: Dict[str, ProductSpec] = {}
    rows = _result(payload)
    if not isinstance(rows, list):
        return out
    for raw in rows:
        if not isinstance(raw, Mapping):
            continue
        symbol = _pick_symbol(raw)
        product_id = _pick_product_id(raw)
        if not symbol or product_id is None:
            continue
        specs = raw.get("product_specs") if isinstance(raw.get("product_specs"), Mapping) else {}
        min_size = to_float(specs.get("min_order_size"))
        out[symbol] = ProductSpec(
            symbol=symbol,
            product_id=product_id,
            lot_step=1.0,
            min_order_size=min_size if min_size and min_size > 0 else 1.0,
            contract_value=to_float(raw.get("contract_value")) or 1.0,
            tick_size=to_float(raw.get("tick_size")),
        )
    return out


def _signed_size(raw: Mapping[str, Any]) -> Optional[float]:
    return pick_float(raw, ("size", "position_size", "positionSize", "net_size", "netSize"))


def parse_positions(payload: Any, symbol: Optional[str] = None) -> List[ExchangePosition]:
    rows = _result(payload)
    if isinstance(rows, Mapping):
        rows = [rows]
    if not isinstance(rows, list):
        return []
    want = norm_symbol(symbol) if symbol else ""
    out: List[ExchangePosition] = []
    for raw in rows:
        if not isinstance(raw, Mapping):
            continue
        sym = _pick_symbol(raw)
        if want and sym and sym != want:
            continue
        size = _signed_size(raw)
        if size is None or size == 0:
            continue
        side_raw = str(raw.get("side") or "").lower()
        if side_raw in ("buy", "long"):
            side = Side.BUY
        elif side_raw in ("sell", "short"):
            side = Side.SELL
        else:
            side = Side.BUY if size > 0 else Side.SELL
        out.append(ExchangePosition(
            symbol=sym or want,
            side=side,
            size_abs=abs(size),
            entry_price=pick_float(raw, ("entry_price", "entryPrice", "avg_entry_price")),
            unrealized_pnl=pick_float(raw, ("unrealized_pnl", "unrealizedPnl")),
            unrealized_pnl_inr=to_float(raw.get("unrealized_pnl_inr")),
        ))
    return out


def parse_fills(payload: Any, symbol: str) -> List[ExchangeFill]:
    rows = _result(payload)
    if not isinstance(rows, list):
        return []
    want = norm_symbol(symbol)
    out: List[ExchangeFill] = []
    for raw in rows:
        if not isinstance(raw, Mapping):
            continue
        sym = _pick_symbol(raw)
        if want and sym and sym != want:
            continue
        try:
            side = Side(str(raw.get("side") or "").lower())
        except ValueError:
            continue
        size = pick_float(raw, ("size", "fill_size", "quantity"))
        price = pick_float(raw, ("price", "fill_price", "average_fill_price"))
        if size is None or price is None:
            continue
        ts = pick_float(raw, ("created_at_ms", "timestamp", "ts")) or 0.0
        # Delta reports microseconds in `created_at` style numeric fields
        if ts > 1e14:
            ts /= 1000.0
        order_id = raw.get("order_id", raw.get("orderId"))
        out.append(ExchangeFill(
            symbol=sym or want,
            side=side,
            size=abs(size),
            price=price,
            ts=int(ts),
            order_id=str(order_id) if order_id is not None else None,
            realized_pnl=pick_float(raw, ("realized_pnl", "realizedPnl")),
        ))
    return out


def parse_wallet(payload: Any) -> List[WalletBalance]:
    rows = _result(payload)
    if not isinstance(rows, list):
        return []
    out: List[WalletBalance] = []
    for raw in rows:
        if not isinstance(raw, Mapping):
            continue
        asset = str(raw.get("asset_symbol") or raw.get("asset") or "").upper()
        bal = to_float(raw.get("balance"))
        if not asset or bal is None:
            continue
        out.append(WalletBalance(asset=asset, balance=bal, balance_inr=to_float(raw.get("balance_inr"))))
    return out


def _error_message(payload: Any, status: int) -> str:
    if isinstance(payload, Mapping):
        err = payload.get("error")
        if isinstance(err, Mapping):
            code = err.get("code")
            ctx = err.get("context")
            if code:
                return f"{code}{f' {ctx}' if ctx else ''}"
        if err:
            return str(err)
        if payload.get("message"):
            return str(payload["message"])
    return f"HTTP {status}"


# ----------------------------------------------------------------------
# Client
# ----------------------------------------------------------------------

class DeltaExchange:
    """
    ExchangePort over Delta's v2 REST API.

    GETs retry with jittered exponential backoff. Order placement is never
    retried here: a failed placement surfaces to the engine, which keeps the
    level armed for the next genuine crossing.
    """

    def __init__(
        self,
        base_url: str = DELTA_INDIA_BASE_URL,
        api_key: Optional[str] = None,
        api_secret: Optional[str] = None,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
        get_retries: int = 2,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key or ""
        self.api_secret = api_secret or ""
        self.get_retries = get_retries
        # If a shared client is passed in, we won't close it in close(); otherwise we own the client.
        if client is not None:
            self.client = client
            self._owns_client = False
        else:
            self.client = httpx.AsyncClient(base_url=self.base_url, timeout=timeout)
            self._owns_client = True
        self._products: Dict[str, ProductSpec] = {}
        self._products_ts = 0.0

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    @property
    def has_credentials(self) -> bool:
        return bool(self.api_key and self.api_secret)

    def _headers(self, method: str, path: str, body: str, signed: bool) -> Dict[str, str]:
        headers = {
            "content-type": "application/json",
            "accept": "application/json, text/plain, */*",
            "user-agent": USER_AGENT,
        }
        if signed:
            if not self.has_credentials:
                raise ExchangeAuthError("missing Delta credentials (set DELTA_API_KEY / DELTA_API_SECRET)")
            timestamp = str(int(time.time()))
            headers["api-key"] = self.api_key
            headers["timestamp"] = timestamp
            headers["signature"] = sign_request(self.api_secret, method, timestamp, path, body)
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Mapping[str, Any]] = None,
        body: Optional[Mapping[str, Any]] = None,
        signed: bool = False,
    ) -> Any:
        query = urlencode({k: v for k, v in (params or {}).items() if v is not None})
        full_path = f"{path}?{query}" if query else path
        body_str = dumps(body) if body is not None else ""
        headers = self._headers(method, full_path, body_str, signed)

        try:
            resp = await self.client.request(
                method,
                self.base_url + full_path,
                headers=headers,
                content=body_str.encode("utf-8") if body_str else None,
            )
        except httpx.HTTPError as exc:
            raise ExchangeError(f"{method} {path} failed: {exc}") from exc

        try:
            payload = loads(resp.content) if resp.content else None
        except ValueError:
            payload = resp.text

        if resp.status_code >= 400 or (isinstance(payload, Mapping) and payload.get("success") is False):
            msg = _error_message(payload, resp.status_code)
            log_event(log, "delta_http_error", level=logging.WARNING, method=method, path=path, status=resp.status_code, msg=msg)
            if resp.status_code in (401, 403):
                raise ExchangeAuthError(msg, status=resp.status_code, payload=payload)
            raise ExchangeError(msg, status=resp.status_code, payload=payload)
        return payload

    async def _get(self, path: str, params: Optional[Mapping[str, Any]] = None, signed: bool = False) -> Any:
        backoff = 0.2
        for attempt in range(self.get_retries + 1):
            try:
                return await self._request("GET", path, params=params, signed=signed)
            except ExchangeAuthError:
                raise
            except ExchangeError as exc:
                # client errors other than rate limiting will not change on retry
                if exc.status is not None and exc.status < 500 and exc.status != 429:
                    raise
                if attempt >= self.get_retries:
                    raise
                await asyncio.sleep(backoff + random.uniform(0, backoff * 0.5))
                backoff *= 2

    # ------------------------------------------------------------------
    # Public data
    # ------------------------------------------------------------------

    async def get_mark_price(self, symbol: str) -> Optional[float]:
        payload = await self._get(f"/v2/tickers/{norm_symbol(symbol)}")
        return parse_mark_price(payload)

    async def _load_products(self) -> Dict[str, ProductSpec]:
        now = time.monotonic()
        if self._products and now - self._products_ts < PRODUCTS_TTL_SEC:
            return self._products
        payload = await self._get("/v2/products")
        self._products = parse_products(payload)
        self._products_ts = now
        return self._products

    async def get_product(self, symbol: str) -> ProductSpec:
        sym = norm_symbol(symbol)
        products = await self._load_products()
        spec = products.get(sym)
        if spec is None:
            raise ExchangeError(f"unknown product symbol: {sym}")
        return spec

    # ------------------------------------------------------------------
    # Trading
    # ------------------------------------------------------------------

    async def place_order(self, intent: OrderIntent) -> PlacedOrder:
        product = await self.get_product(intent.symbol)
        body: Dict[str, Any] = {
            "product_id": product.product_id,
            "side": intent.side.value,
            "order_type": "limit_order" if intent.order_type == "limit" else "market_order",
            "size": int(intent.size) if float(intent.size).is_integer() else intent.size,
        }
        if intent.order_type == "limit" and intent.price is not None:
            body["limit_price"] = str(intent.price)
        if intent.reduce_only:
            body["reduce_only"] = True
        payload = await self._request("POST", "/v2/orders", body=body, signed=True)
        result = _result(payload)
        order_id = ""
        if isinstance(result, Mapping):
            raw_id = result.get("id", result.get("order_id"))
            order_id = str(raw_id) if raw_id is not None else ""
        log_event(log, "delta_order_placed", symbol=product.symbol, side=intent.side.value, size=body["size"], order_id=order_id)
        return PlacedOrder(order_id=order_id, size=float(body["size"]), status=OrderStatus.SUBMITTED)

    async def cancel_order(self, order_id: str, symbol: Optional[str] = None) -> None:
        body: Dict[str, Any] = {"id": int(order_id) if str(order_id).isdigit() else order_id}
        if symbol:
            product = await self.get_product(symbol)
            body["product_id"] = product.product_id
        await self._request("DELETE", "/v2/orders", body=body, signed=True)

    async def set_leverage(self, symbol: str, leverage: float) -> None:
        product = await self.get_product(symbol)
        await self._request(
            "POST",
            f"/v2/products/{product.product_id}/orders/leverage",
            body={"leverage": str(leverage)},
            signed=True,
        )

    # ------------------------------------------------------------------
    # Account
    # ------------------------------------------------------------------

    async def list_positions(self, symbol: Optional[str] = None) -> List[ExchangePosition]:
        params: Dict[str, Any] = {}
        if symbol:
            product = await self.get_product(symbol)
            params["product_ids"] = product.product_id
        payload = await self._get("/v2/positions/margined", params=params, signed=True)
        return parse_positions(payload, symbol)

    async def list_fills(self, symbol: str, since_ms: Optional[int] = None) -> List[ExchangeFill]:
        product = await self.get_product(symbol)
        params: Dict[str, Any] = {"product_ids": product.product_id}
        if since_ms is not None:
            params["start_time"] = int(since_ms) * 1000  # microseconds
        payload = await self._get("/v2/fills", params=params, signed=True)
        return parse_fills(payload, symbol)

    async def list_wallet_balances(self) -> List[WalletBalance]:
        payload = await self._get("/v2/wallet/balances", signed=True)
        return parse_wallet(payload)

