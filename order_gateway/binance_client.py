import asyncio
import hashlib
import hmac
import json
import random
import time
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Mapping, Optional
from urllib.parse import urlencode

import aiohttp
from yarl import URL

from .errors import (
    ExchangeRejection,
    GatewayError,
    RateLimitError,
    SignatureOrTimestampError,
    TransientNetworkError,
)
from .logging_setup import logger

# -1021: timestamp outside recvWindow, -1022: signature invalid
TIMESTAMP_ERROR_CODES = frozenset({-1021, -1022})
# -1007: backend timeout, execution status unknown
UNKNOWN_STATUS_CODE = -1007
IDEMPOTENT_METHODS = frozenset({"GET"})


def canonical_query(params: Mapping[str, str]) -> str:
    """Join params as ``key=value`` pairs sorted by key (byte order).

    Values must already be strings: the signed string has to be the exact
    string that goes on the wire, so no numeric formatting happens here.
    """
    for key, value in params.items():
        if not isinstance(value, str):
            raise TypeError(
                f"Signed parameter {key!r} must be a pre-formatted string, got {type(value).__name__}"
            )
    keys = sorted(params, key=lambda k: k.encode("utf-8"))
    return "&".join(f"{k}={params[k]}" for k in keys)


def sign_query(query: str, secret: str) -> str:
    """HMAC-SHA256 of ``query`` keyed by ``secret``, lowercase hex."""
    return hmac.new(secret.encode("utf-8"), query.encode("utf-8"), hashlib.sha256).hexdigest()


class BinanceFuturesClient:
    """Async Binance USD-M futures REST client using aiohttp.

    Features:
    - Signed requests: canonical sorted query string + HMAC-SHA256 signature,
      ``X-MBX-APIKEY`` header, timestamp taken from the attached ClockSync.
    - Unauthenticated market-data requests on the same session.
    - Jittered exponential backoff for transient failures, bounded by
      ``max_retries``. Requests that may have reached the exchange (timeouts,
      5xx, -1007) are only retried for GET; every retry is re-signed.
    - Timestamp/signature rejections are never retried and trigger an
      immediate clock resync.

    Usage:
        async with BinanceFuturesClient(key, secret) as client:
            info = await client.exchange_info()
    """

    def __init__(
        self,
        api_key: str,
        api_secret: str,
        *,
        base_url: str = "https://testnet.binancefuture.com",
        recv_window_ms: int = 60000,
        timeout: float = 45.0,
        max_retries: int = 5,
        retry_base_delay: float = 1.0,
        max_backoff_seconds: float = 30.0,
        clock=None,
    ):
        self.api_key = api_key
        self.api_secret = api_secret
        self.base_url = base_url.rstrip("/")
        self.recv_window_ms = recv_window_ms
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_base_delay = retry_base_delay
        self.max_backoff_seconds = max_backoff_seconds
        self.clock = clock
        self.session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def start(self) -> None:
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession()

    async def close(self) -> None:
        if self.session:
            await self.session.close()

    def _timestamp_ms(self) -> int:
        if self.clock is not None:
            return self.clock.current_adjusted_time()
        return int(time.time() * 1000)

    def build_signed_query(self, params: Optional[Mapping[str, str]] = None, *, timestamp: Optional[int] = None) -> str:
        """Return ``<canonical query>&signature=<hex>`` for ``params``.

        ``timestamp`` and ``recvWindow`` are added here; callers supply
        every other value as a string.
        """
        merged: Dict[str, str] = dict(params or {})
        merged["timestamp"] = str(timestamp if timestamp is not None else self._timestamp_ms())
        merged["recvWindow"] = str(self.recv_window_ms)
        query = canonical_query(merged)
        signature = sign_query(query, self.api_secret)
        logger.debug(f"Signed query | query={query} signature={signature}")
        return f"{query}&signature={signature}"

    @staticmethod
    def _jittered_backoff(attempt: int, base: float = 1.0, max_backoff: float = 30.0) -> float:
        """Compute jittered exponential backoff."""
        delay = base * (2 ** attempt)
        delay = min(delay, max_backoff)
        jitter = delay * 0.25 * (2 * random.random() - 1)
        return max(0, delay + jitter)

    @staticmethod
    def _get_retry_after(headers: Mapping[str, str]) -> Optional[float]:
        """Extract the Retry-After header (seconds)."""
        if "Retry-After" in headers:
            try:
                return float(headers["Retry-After"])
            except (ValueError, TypeError):
                return None
        return None

    @staticmethod
    def classify_error(status: int, text: str, headers: Mapping[str, str]) -> GatewayError:
        """Map an HTTP error response onto the gateway error taxonomy."""
        try:
            body = json.loads(text) if text else {}
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}
        code = body.get("code")
        msg = body.get("msg") or text or f"HTTP {status}"

        if code in TIMESTAMP_ERROR_CODES:
            return SignatureOrTimestampError(msg, code=code, status=status)
        if status in (418, 429):
            return RateLimitError(
                msg,
                retry_after=BinanceFuturesClient._get_retry_after(headers),
                code=code,
                status=status,
            )
        if status == 408 or status >= 500 or code == UNKNOWN_STATUS_CODE:
            return TransientNetworkError(msg, outcome_unknown=True, code=code, status=status)
        return ExchangeRejection(msg, code=code, status=status)

    def _should_retry(self, method: str, error: TransientNetworkError, attempt: int) -> bool:
        if attempt >= self.max_retries:
            return False
        return method in IDEMPOTENT_METHODS or not error.outcome_unknown

    async def _dispatch(self, method: str, url: str, headers: Dict[str, str]) -> Any:
        if not self.session:
            raise GatewayError("Session not initialized; use 'async with' or start()")

        try:
            async with self.session.request(
                method,
                URL(url, encoded=True),
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            ) as resp:
                text = await resp.text()
                if resp.status >= 400:
                    raise self.classify_error(resp.status, text, resp.headers)
        except asyncio.TimeoutError as e:
            raise TransientNetworkError(f"Request timeout: {e}", outcome_unknown=True)
        except aiohttp.ClientConnectorError as e:
            raise TransientNetworkError(f"Connection failed: {e}", outcome_unknown=False)
        except aiohttp.ClientError as e:
            raise TransientNetworkError(f"Request failed: {e}", outcome_unknown=True)

        if not text:
            return None
        try:
            return json.loads(text)
        except ValueError:
            raise ExchangeRejection(f"Malformed response body: {text[:200]}", status=resp.status)

    async def _send(self, method: str, endpoint: str, params: Optional[Mapping[str, Any]], *, signed: bool) -> Any:
        method = method.upper()
        path = endpoint if endpoint.startswith("/") else f"/{endpoint}"
        headers: Dict[str, str] = {}
        if signed:
            headers["X-MBX-APIKEY"] = self.api_key

        attempt = 0
        while True:
            if signed:
                query = self.build_signed_query(params)
            else:
                query = urlencode(params or {})
            url = f"{self.base_url}{path}?{query}" if query else f"{self.base_url}{path}"

            try:
                return await self._dispatch(method, url, headers)
            except SignatureOrTimestampError as e:
                logger.error(f"Signature/timestamp rejected | method={method} path={path} code={e.code} msg={e.message}")
                if self.clock is not None:
                    await self.clock.sync()
                raise
            except TransientNetworkError as e:
                if not self._should_retry(method, e, attempt):
                    raise
                delay = self._jittered_backoff(attempt, base=self.retry_base_delay, max_backoff=self.max_backoff_seconds)
                if isinstance(e, RateLimitError) and e.retry_after:
                    delay = min(max(delay, e.retry_after), self.max_backoff_seconds)
                logger.warning(
                    f"Transient failure, retrying | method={method} path={path} attempt={attempt + 1} delay={delay:.2f}s error={e.message}"
                )
                await asyncio.sleep(delay)
                attempt += 1

    async def signed_request(self, endpoint: str, method: str = "GET", params: Optional[Mapping[str, str]] = None) -> Any:
        """Issue an authenticated request (string-valued params only)."""
        return await self._send(method, endpoint, params, signed=True)

    async def public_request(self, endpoint: str, method: str = "GET", params: Optional[Mapping[str, Any]] = None) -> Any:
        """Issue an unauthenticated market-data request."""
        return await self._send(method, endpoint, params, signed=False)

    async def server_time(self) -> int:
        data = await self.public_request("/fapi/v1/time")
        try:
            return int(data["serverTime"])
        except (TypeError, KeyError, ValueError):
            raise ExchangeRejection(f"Unexpected server time payload: {data!r}")

    async def exchange_info(self) -> Dict[str, Any]:
        return await self.public_request("/fapi/v1/exchangeInfo")

    async def klines(self, symbol: str, interval: str, limit: int) -> List[list]:
        return await self.public_request(
            "/fapi/v1/klines", params={"symbol": symbol, "interval": interval, "limit": limit}
        )

    async def ticker_price(self, symbol: str) -> Decimal:
        data = await self.public_request("/fapi/v1/ticker/price", params={"symbol": symbol})
        try:
            return Decimal(str(data["price"]))
        except (TypeError, KeyError, InvalidOperation):
            raise ExchangeRejection(f"Unexpected ticker payload: {data!r}")

    async def account(self) -> Dict[str, Any]:
        return await self.signed_request("/fapi/v2/account")

    async def place_order(self, params: Mapping[str, str]) -> Dict[str, Any]:
        order = await self.signed_request("/fapi/v1/order", "POST", params)
        logger.info(
            f"Order accepted | symbol={params.get('symbol')} side={params.get('side')} type={params.get('type')} "
            f"order_id={order.get('orderId') if order else None} status={order.get('status') if order else None}"
        )
        return order
