"""Per-symbol trading constraints and their TTL cache.

The exchange publishes constraints for every instrument in one
``exchangeInfo`` document. The cache keeps one parsed snapshot of that
document per epoch; an epoch expires after ``ttl_seconds`` and the next
access refetches it. Concurrent misses share a single fetch.
"""
import asyncio
import time
from dataclasses import asdict, dataclass
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .errors import ExchangeRejection, UnknownSymbolError
from .logging_setup import logger


def _dec(value: Any, default: str = "0") -> Decimal:
    if value is None or value == "":
        return Decimal(default)
    return Decimal(str(value))


@dataclass(frozen=True)
class InstrumentFilters:
    """Trading constraints for one symbol.

    A zero ``max_price`` or ``tick_size`` means the exchange does not enforce
    that bound, matching how the exchange publishes disabled price filters.
    """

    symbol: str
    min_qty: Decimal
    max_qty: Decimal
    step_size: Decimal
    min_price: Decimal
    max_price: Decimal
    tick_size: Decimal
    min_notional: Decimal

    @classmethod
    def from_exchange_symbol(cls, entry: Dict[str, Any]) -> "InstrumentFilters":
        """Parse one element of ``exchangeInfo.symbols``."""
        by_type = {f.get("filterType"): f for f in entry.get("filters", [])}
        lot = by_type.get("LOT_SIZE") or by_type.get("MARKET_LOT_SIZE") or {}
        price = by_type.get("PRICE_FILTER", {})
        # futures publish ``notional``; spot publishes ``minNotional``
        notional = by_type.get("MIN_NOTIONAL") or by_type.get("NOTIONAL") or {}
        return cls(
            symbol=str(entry.get("symbol", "")).upper(),
            min_qty=_dec(lot.get("minQty")),
            max_qty=_dec(lot.get("maxQty")),
            step_size=_dec(lot.get("stepSize")),
            min_price=_dec(price.get("minPrice")),
            max_price=_dec(price.get("maxPrice")),
            tick_size=_dec(price.get("tickSize")),
            min_notional=_dec(notional.get("notional", notional.get("minNotional"))),
        )

    def to_dict(self) -> Dict[str, str]:
        return {k: str(v) for k, v in asdict(self).items()}


@dataclass(frozen=True)
class _Snapshot:
    filters: Dict[str, InstrumentFilters]
    rate_limits: List[Dict[str, Any]]
    fetched_at: float


class InstrumentFilterCache:
    """TTL-gated, single-flight cache of instrument filters.

    Args:
        fetch_exchange_info: Async callable returning the exchangeInfo document
        ttl_seconds: Epoch length
        monotonic: Clock used for TTL checks (injectable for tests)
    """

    def __init__(
        self,
        fetch_exchange_info: Callable[[], Awaitable[Dict[str, Any]]],
        *,
        ttl_seconds: float = 3600.0,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.fetch_exchange_info = fetch_exchange_info
        self.ttl_seconds = ttl_seconds
        self.monotonic = monotonic
        self._snapshot: Optional[_Snapshot] = None
        self._refresh_lock = asyncio.Lock()
        self.fetch_count = 0

    def _fresh(self) -> Optional[_Snapshot]:
        snap = self._snapshot
        if snap is not None and self.monotonic() - snap.fetched_at < self.ttl_seconds:
            return snap
        return None

    async def _current(self) -> _Snapshot:
        snap = self._fresh()
        if snap is not None:
            return snap

        async with self._refresh_lock:
            # a concurrent miss may have refreshed while we waited
            snap = self._fresh()
            if snap is not None:
                return snap

            self.fetch_count += 1
            info = await self.fetch_exchange_info()
            if not isinstance(info, dict) or "symbols" not in info:
                raise ExchangeRejection("exchangeInfo response has no symbol list")

            filters = {}
            for entry in info["symbols"]:
                parsed = InstrumentFilters.from_exchange_symbol(entry)
                filters[parsed.symbol] = parsed

            snap = _Snapshot(
                filters=filters,
                rate_limits=list(info.get("rateLimits", [])),
                fetched_at=self.monotonic(),
            )
            # one reference swap; readers see either the old or the new epoch
            self._snapshot = snap
            logger.info(f"Instrument filters refreshed | symbols={len(filters)} ttl_s={self.ttl_seconds}")
            return snap

    async def filters_for(self, symbol: str) -> InstrumentFilters:
        """Return filters for ``symbol``, refetching if the epoch expired.

        Raises:
            UnknownSymbolError: symbol absent from the instrument list
            GatewayError: exchange unreachable or malformed response
        """
        snap = await self._current()
        key = symbol.upper()
        try:
            return snap.filters[key]
        except KeyError:
            raise UnknownSymbolError(key)

    async def rate_limits(self) -> List[Dict[str, Any]]:
        """Exchange rate-limit table from the current snapshot."""
        snap = await self._current()
        return snap.rate_limits

    def invalidate(self) -> None:
        self._snapshot = None
