"""Order gateway facade: component wiring and the operations the route layer calls."""
from decimal import Decimal
from typing import Any, Dict, List, Optional

from .binance_client import BinanceFuturesClient
from .bracket import BracketOrderOrchestrator, BracketResult, OrderRequest
from .clock_sync import ClockSync
from .config import GatewayConfig
from .errors import ValidationError
from .filters import InstrumentFilterCache, InstrumentFilters
from .logging_setup import logger
from .order_state import OrderSide
from .secrets import BinanceCredentials
from .validator import OrderValidator, to_decimal
from .volatility import StopLevels, VolatilityEngine


class OrderGateway:
    """Own the exchange session, clock, caches and order pipeline.

    Shared state (clock offset, instrument filters) lives in the ClockSync
    and InstrumentFilterCache instances created here and injected into the
    components that read it.

    Usage:
        async with OrderGateway(config, credentials) as gateway:
            result = await gateway.place_bracket_order(request)
    """

    def __init__(self, config: GatewayConfig, credentials: BinanceCredentials, *, client: Optional[BinanceFuturesClient] = None):
        self.config = config
        ex = config.exchange
        self.client = client or BinanceFuturesClient(
            credentials.api_key,
            credentials.api_secret,
            base_url=ex.base_url,
            recv_window_ms=ex.recv_window_ms,
            timeout=ex.timeout,
            max_retries=ex.max_retries,
            retry_base_delay=ex.retry_base_delay,
            max_backoff_seconds=ex.max_backoff_seconds,
        )
        self.clock = ClockSync(self.client.server_time, interval_seconds=config.clock.sync_interval_seconds)
        self.client.clock = self.clock

        self.filter_cache = InstrumentFilterCache(self.client.exchange_info, ttl_seconds=config.filters.ttl_seconds)
        self.validator = OrderValidator(self.filter_cache)

        risk = config.risk
        self.volatility = VolatilityEngine(
            self.client.klines,
            default_symbol=ex.default_symbol,
            interval=risk.atr_interval,
            period=risk.atr_period,
            candle_margin=risk.atr_candle_margin,
            multiplier=risk.atr_multiplier,
            risk_reward_ratio=risk.risk_reward_ratio,
            fallback_risk_pct=risk.fallback_risk_pct,
        )
        self.orchestrator = BracketOrderOrchestrator(
            self.client,
            self.validator,
            self.volatility,
            working_type=risk.working_type,
            close_position=risk.close_position,
        )

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.stop()

    async def start(self) -> None:
        """Open the HTTP session and start the periodic clock sync."""
        await self.client.start()
        self.clock.start()
        logger.info(f"Order gateway started | base_url={self.client.base_url}")

    async def stop(self) -> None:
        await self.clock.stop()
        await self.client.close()
        logger.info("Order gateway stopped")

    def get_adjusted_time(self) -> int:
        return self.clock.current_adjusted_time()

    async def get_filters(self, symbol: str) -> InstrumentFilters:
        return await self.filter_cache.filters_for(symbol)

    async def get_rate_limits(self) -> List[Dict[str, Any]]:
        return await self.filter_cache.rate_limits()

    async def validate_order(self, symbol: str, quantity: Any, price: Any = None) -> InstrumentFilters:
        return await self.validator.validate(symbol, quantity, price)

    async def compute_atr(self, symbol: Optional[str] = None, interval: Optional[str] = None, period: Optional[int] = None) -> Decimal:
        return await self.volatility.atr(symbol, interval, period)

    async def compute_dynamic_stops(self, side: Any, entry_price: Any, *, symbol: Optional[str] = None) -> StopLevels:
        price = to_decimal(entry_price, "entryPrice")
        if price <= 0:
            raise ValidationError(f"entryPrice must be positive, got {entry_price}", rule="INPUT")
        return await self.volatility.dynamic_stops_for(OrderSide.parse(side), price, symbol=symbol)

    async def place_bracket_order(self, request: OrderRequest) -> BracketResult:
        return await self.orchestrator.place_order(request)

    async def get_price(self, symbol: Optional[str] = None) -> Decimal:
        return await self.client.ticker_price((symbol or self.config.exchange.default_symbol).upper())

    async def get_klines(self, symbol: Optional[str] = None, interval: str = "5m", limit: int = 100) -> List[list]:
        return await self.client.klines((symbol or self.config.exchange.default_symbol).upper(), interval, limit)

    async def get_account(self) -> Dict[str, Any]:
        return await self.client.account()
