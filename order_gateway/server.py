"""aiohttp HTTP layer over the order gateway.

Routes:
    GET  /api/health              liveness + clock status
    GET  /api/time                exchange-adjusted time
    GET  /api/price               last price (?symbol=)
    GET  /api/account             signed account snapshot
    GET  /api/klines              candle pass-through (?symbol=&interval=&limit=)
    GET  /api/atr                 ATR (?symbol=&interval=&period=)
    GET  /api/filters/{symbol}    instrument filters
    POST /api/validate            check an order against filters
    POST /api/stops               ATR-based (or fallback) SL/TP for an entry price
    POST /api/order               place an entry with optional SL/TP bracket

Every GatewayError becomes a JSON body ``{error, kind, stage, ...}`` so a
client can tell whether a position was opened before something failed.
"""
import json
import time
from decimal import Decimal
from typing import Any, Dict, Optional

import pydantic
from aiohttp import web
from pydantic import BaseModel, ConfigDict, Field

from .bracket import OrderRequest
from .errors import (
    ExchangeRejection,
    GatewayError,
    InsufficientData,
    OrderPlacementError,
    SignatureOrTimestampError,
    TransientNetworkError,
    ValidationError,
)
from .gateway import OrderGateway
from .logging_setup import logger


class OrderBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    side: str
    quantity: Decimal
    symbol: Optional[str] = None
    type: str = "MARKET"
    price: Optional[Decimal] = None
    place_sltp: bool = Field(True, alias="placeSLTP")
    stop_loss_price: Optional[Decimal] = Field(None, alias="stopLossPrice")
    take_profit_price: Optional[Decimal] = Field(None, alias="takeProfitPrice")


class ValidateBody(BaseModel):
    symbol: Optional[str] = None
    quantity: Decimal
    price: Optional[Decimal] = None


class StopsBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    side: str
    entry_price: Decimal = Field(alias="entryPrice")
    symbol: Optional[str] = None


def error_status(error: GatewayError) -> int:
    if isinstance(error, OrderPlacementError) and error.outcome_unknown:
        # the entry may have executed; never answer with a retryable status
        return 504
    cause = error.cause if isinstance(error, OrderPlacementError) else error
    if isinstance(cause, ValidationError):
        return 400
    if isinstance(cause, InsufficientData):
        return 422
    if isinstance(cause, TransientNetworkError):
        return 503
    if isinstance(cause, (SignatureOrTimestampError, ExchangeRejection)):
        return 502
    return 500


def error_body(error: GatewayError) -> Dict[str, Any]:
    body = {"error": error.message}
    body.update(error.to_dict())
    body.setdefault("stage", None)
    return body


@web.middleware
async def error_middleware(request: web.Request, handler):
    try:
        return await handler(request)
    except GatewayError as e:
        logger.warning(f"Request failed | path={request.path} kind={e.kind} error={e.message}")
        return web.json_response(error_body(e), status=error_status(e))
    except pydantic.ValidationError as e:
        return web.json_response(
            {"error": "Invalid request body", "kind": "validation", "stage": "validation", "details": e.errors(include_url=False)},
            status=400,
            dumps=_dumps,
        )
    except web.HTTPException:
        raise
    except Exception as e:
        logger.exception(f"Unhandled error | path={request.path} error={e!r}")
        return web.json_response(
            {"error": "Internal server error", "kind": "internal", "stage": None, "message": str(e)},
            status=500,
        )


def cors_middleware(origin: str):
    @web.middleware
    async def middleware(request: web.Request, handler):
        if request.method == "OPTIONS":
            response = web.Response()
        else:
            response = await handler(request)
        response.headers["Access-Control-Allow-Origin"] = origin
        response.headers["Access-Control-Allow-Methods"] = "GET, POST, OPTIONS"
        response.headers["Access-Control-Allow-Headers"] = "Content-Type"
        return response

    return middleware


def _dumps(obj: Any) -> str:
    return json.dumps(obj, default=str)


def _query_int(request: web.Request, name: str, default: int, *, minimum: int = 1) -> int:
    raw = request.query.get(name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValidationError(f"{name} must be an integer, got {raw!r}", rule="INPUT")
    if value < minimum:
        raise ValidationError(f"{name} must be >= {minimum}, got {value}", rule="INPUT")
    return value


class GatewayServer:
    def __init__(self, gateway: OrderGateway, *, host: str = "0.0.0.0", port: int = 3001, cors_origin: str = "*"):
        self.gateway = gateway
        self.host = host
        self.port = port
        self.started_at = time.time()
        self.app = web.Application(middlewares=[cors_middleware(cors_origin), error_middleware])
        self._setup_routes()

    def _setup_routes(self):
        self.app.router.add_get("/api/health", self.handle_health)
        self.app.router.add_get("/api/time", self.handle_time)
        self.app.router.add_get("/api/price", self.handle_price)
        self.app.router.add_get("/api/account", self.handle_account)
        self.app.router.add_get("/api/klines", self.handle_klines)
        self.app.router.add_get("/api/atr", self.handle_atr)
        self.app.router.add_get("/api/filters/{symbol}", self.handle_filters)
        self.app.router.add_post("/api/validate", self.handle_validate)
        self.app.router.add_post("/api/stops", self.handle_stops)
        self.app.router.add_post("/api/order", self.handle_order)
        self.app.on_startup.append(self._on_startup)
        self.app.on_cleanup.append(self._on_cleanup)

    @property
    def default_symbol(self) -> str:
        return self.gateway.config.exchange.default_symbol

    async def _json_body(self, request: web.Request) -> Dict[str, Any]:
        try:
            data = await request.json()
        except ValueError:
            raise ValidationError("Request body must be JSON", rule="INPUT")
        if not isinstance(data, dict):
            raise ValidationError("Request body must be a JSON object", rule="INPUT")
        return data

    async def handle_health(self, request: web.Request):
        clock = self.gateway.clock
        return web.json_response({
            "status": "ok",
            "timestamp": int(time.time() * 1000),
            "uptimeSeconds": round(time.time() - self.started_at, 1),
            "clockSynced": clock.is_synced,
            "clockOffsetMs": clock.offset_ms,
        })

    async def handle_time(self, request: web.Request):
        clock = self.gateway.clock
        return web.json_response({
            "adjustedTime": self.gateway.get_adjusted_time(),
            "offsetMs": clock.offset_ms,
            "synced": clock.is_synced,
        })

    async def handle_price(self, request: web.Request):
        symbol = request.query.get("symbol", self.default_symbol).upper()
        price = await self.gateway.get_price(symbol)
        return web.json_response({"symbol": symbol, "price": str(price)})

    async def handle_account(self, request: web.Request):
        return web.json_response(await self.gateway.get_account())

    async def handle_klines(self, request: web.Request):
        symbol = request.query.get("symbol", self.default_symbol).upper()
        interval = request.query.get("interval", "5m")
        limit = _query_int(request, "limit", 100)
        return web.json_response(await self.gateway.get_klines(symbol, interval, limit))

    async def handle_atr(self, request: web.Request):
        risk = self.gateway.config.risk
        symbol = request.query.get("symbol", self.default_symbol).upper()
        interval = request.query.get("interval", risk.atr_interval)
        period = _query_int(request, "period", risk.atr_period)
        atr = await self.gateway.compute_atr(symbol, interval, period)
        return web.json_response({
            "symbol": symbol,
            "interval": interval,
            "period": period,
            "atr": str(atr),
            "timestamp": int(time.time() * 1000),
        })

    async def handle_filters(self, request: web.Request):
        filters = await self.gateway.get_filters(request.match_info["symbol"])
        return web.json_response(filters.to_dict())

    async def handle_validate(self, request: web.Request):
        body = ValidateBody.model_validate(await self._json_body(request))
        symbol = (body.symbol or self.default_symbol).upper()
        filters = await self.gateway.validate_order(symbol, body.quantity, body.price)
        return web.json_response({"valid": True, "symbol": symbol, "filters": filters.to_dict()})

    async def handle_stops(self, request: web.Request):
        body = StopsBody.model_validate(await self._json_body(request))
        levels = await self.gateway.compute_dynamic_stops(
            body.side, body.entry_price, symbol=(body.symbol or self.default_symbol).upper()
        )
        return web.json_response(levels.to_dict())

    async def handle_order(self, request: web.Request):
        data = await self._json_body(request)
        logger.info(f"Received order request | body={data}")
        body = OrderBody.model_validate(data)
        order = OrderRequest.create(
            symbol=body.symbol or self.default_symbol,
            side=body.side,
            quantity=body.quantity,
            type=body.type,
            price=body.price,
            place_sltp=body.place_sltp,
            stop_loss_price=body.stop_loss_price,
            take_profit_price=body.take_profit_price,
        )
        result = await self.gateway.place_bracket_order(order)
        payload = result.to_dict()
        if result.position_unprotected:
            payload["warning"] = "Entry filled but the position has NO protective orders"
        elif result.filled and result.protection_requested and not result.fully_protected:
            payload["warning"] = "Entry filled but only one protective order was placed"
        return web.json_response(payload, dumps=_dumps)

    async def _on_startup(self, app):
        await self.gateway.start()

    async def _on_cleanup(self, app):
        await self.gateway.stop()

    def run(self):
        web.run_app(self.app, host=self.host, port=self.port)
