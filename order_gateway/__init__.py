"""
Binance Futures Order Gateway.

An authenticated order-execution gateway between a trading client and the
Binance USD-M futures REST API featuring:
- HMAC-SHA256 signed requests over a canonical, sorted query string
- Periodic exchange clock synchronization (offset kept on sync failure)
- Instrument filter cache (TTL epochs, single-flight refresh)
- Decimal-exact validation of quantity/price against lot, tick and notional rules
- ATR-based stop-loss / take-profit levels with a percentage fallback
- Bracket placement: entry, then independent best-effort protective legs
- aiohttp HTTP route layer, structured logging via loguru, YAML configuration

Core Modules:
    clock_sync: Local-to-exchange clock offset
    binance_client: Signed and public REST requests, retry policy
    filters: Instrument filters and their TTL cache
    validator: Order checks against instrument filters
    volatility: Candles, true range, ATR, protective levels
    order_state: Sides, types, bracket lifecycle state machine
    bracket: Bracket order orchestration
    gateway: Component wiring and the public operations
    server: HTTP routes
    config: Configuration loading
    secrets: Credential management

Example:
    >>> from order_gateway.config import GatewayConfig
    >>> from order_gateway.gateway import OrderGateway
    >>> from order_gateway.bracket import OrderRequest
    >>> from order_gateway.secrets import load_credentials
    >>>
    >>> async def buy():
    ...     async with OrderGateway(GatewayConfig.default(), load_credentials()) as gw:
    ...         req = OrderRequest.create("BTCUSDT", "BUY", "0.002")
    ...         return await gw.place_bracket_order(req)
"""

__version__ = "0.1.0"
__all__ = [
    "clock_sync",
    "binance_client",
    "filters",
    "validator",
    "volatility",
    "order_state",
    "bracket",
    "gateway",
    "server",
    "config",
    "secrets",
    "errors",
]
