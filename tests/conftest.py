"""Shared test helpers: an in-process fake of the futures REST API."""
import contextlib
import hashlib
import hmac
from collections import defaultdict
from typing import Any, Dict, List, Optional, Tuple

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

API_KEY = "test-key"
API_SECRET = "test-secret"

BTC_FILTERS = [
    {"filterType": "PRICE_FILTER", "minPrice": "556.80", "maxPrice": "4529764", "tickSize": "0.10"},
    {"filterType": "LOT_SIZE", "minQty": "0.001", "maxQty": "1000", "stepSize": "0.001"},
    {"filterType": "MARKET_LOT_SIZE", "minQty": "0.001", "maxQty": "120", "stepSize": "0.001"},
    {"filterType": "MIN_NOTIONAL", "notional": "100"},
]


def make_exchange_info(symbols: Optional[Dict[str, List[dict]]] = None) -> Dict[str, Any]:
    symbols = symbols or {"BTCUSDT": BTC_FILTERS}
    return {
        "rateLimits": [{"rateLimitType": "REQUEST_WEIGHT", "interval": "MINUTE", "intervalNum": 1, "limit": 2400}],
        "symbols": [{"symbol": s, "filters": f} for s, f in symbols.items()],
    }


def flat_klines(count: int, *, high: str = "110", low: str = "100", close: str = "105", start: int = 0) -> List[list]:
    """Candles with high-low=10 and closes inside the range (ATR == 10)."""
    return [
        [start + i * 60000, close, high, low, close, "1.0", start + i * 60000 + 59999]
        for i in range(count)
    ]


class FakeExchange:
    """Scriptable stand-in for the exchange REST endpoints.

    ``script[path]`` holds queued ``(status, body)`` replies served before the
    default handler; every request is recorded in ``calls[path]``.
    """

    def __init__(self):
        self.server_time = 1_700_000_000_000
        self.exchange_info = make_exchange_info()
        self.klines = flat_klines(24)
        self.price = "50000.00"
        self.script: Dict[str, List[Tuple[int, Any]]] = defaultdict(list)
        self.calls: Dict[str, List[Dict[str, str]]] = defaultdict(list)
        self.bad_signatures = 0
        self.next_order_id = 1

        self.app = web.Application()
        self.app.router.add_get("/fapi/v1/time", self.handle_time)
        self.app.router.add_get("/fapi/v1/exchangeInfo", self.handle_exchange_info)
        self.app.router.add_get("/fapi/v1/klines", self.handle_klines)
        self.app.router.add_get("/fapi/v1/ticker/price", self.handle_price)
        self.app.router.add_get("/fapi/v2/account", self.handle_account)
        self.app.router.add_post("/fapi/v1/order", self.handle_order)

    def _scripted(self, request: web.Request) -> Optional[web.Response]:
        self.calls[request.path].append(dict(request.query))
        queue = self.script[request.path]
        if queue:
            status, body = queue.pop(0)
            return web.json_response(body, status=status)
        return None

    def _verify(self, request: web.Request) -> Optional[web.Response]:
        payload, sep, signature = request.query_string.partition("&signature=")
        expected = hmac.new(API_SECRET.encode(), payload.encode(), hashlib.sha256).hexdigest()
        if not sep or signature != expected or request.headers.get("X-MBX-APIKEY") != API_KEY:
            self.bad_signatures += 1
            return web.json_response({"code": -1022, "msg": "Signature for this request is not valid."}, status=400)
        return None

    async def handle_time(self, request):
        scripted = self._scripted(request)
        if scripted is not None:
            return scripted
        return web.json_response({"serverTime": self.server_time})

    async def handle_exchange_info(self, request):
        scripted = self._scripted(request)
        if scripted is not None:
            return scripted
        return web.json_response(self.exchange_info)

    async def handle_klines(self, request):
        scripted = self._scripted(request)
        if scripted is not None:
            return scripted
        return web.json_response(self.klines)

    async def handle_price(self, request):
        scripted = self._scripted(request)
        if scripted is not None:
            return scripted
        return web.json_response({"symbol": request.query.get("symbol"), "price": self.price})

    async def handle_account(self, request):
        scripted = self._scripted(request)
        if scripted is not None:
            return scripted
        bad = self._verify(request)
        if bad is not None:
            return bad
        return web.json_response({"totalWalletBalance": "1000.00", "assets": []})

    async def handle_order(self, request):
        scripted = self._scripted(request)
        if scripted is not None:
            return scripted
        bad = self._verify(request)
        if bad is not None:
            return bad
        q = request.query
        oid = self.next_order_id
        self.next_order_id += 1
        if q["type"] in ("MARKET", "LIMIT"):
            # market entries fill at the last price, limit entries rest
            filled = q["type"] == "MARKET"
            return web.json_response({
                "orderId": oid,
                "symbol": q["symbol"],
                "side": q["side"],
                "type": q["type"],
                "status": "FILLED" if filled else "NEW",
                "avgPrice": self.price if filled else "0.00",
                "price": q.get("price", "0"),
                "executedQty": q["quantity"] if filled else "0",
                "origQty": q["quantity"],
            })
        return web.json_response({
            "orderId": oid,
            "symbol": q["symbol"],
            "side": q["side"],
            "type": q["type"],
            "status": "NEW",
            "stopPrice": q["stopPrice"],
        })

    def orders(self) -> List[Dict[str, str]]:
        return self.calls["/fapi/v1/order"]

    @contextlib.asynccontextmanager
    async def running(self):
        server = TestServer(self.app)
        await server.start_server()
        try:
            yield str(server.make_url("/")).rstrip("/")
        finally:
            await server.close()


@pytest.fixture
def fake_exchange():
    return FakeExchange()


@pytest.fixture
def make_client():
    """Factory for a client with fast retries pointed at ``base_url``."""
    from order_gateway.binance_client import BinanceFuturesClient

    def factory(base_url: str, **kwargs) -> BinanceFuturesClient:
        kwargs.setdefault("retry_base_delay", 0.001)
        kwargs.setdefault("max_backoff_seconds", 0.01)
        kwargs.setdefault("timeout", 5)
        return BinanceFuturesClient(API_KEY, API_SECRET, base_url=base_url, **kwargs)

    return factory
