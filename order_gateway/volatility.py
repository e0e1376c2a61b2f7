"""
Average True Range and volatility-based protective price levels.

ATR here is the simple mean of the most recent ``period`` true ranges,
where for each candle after the first:

    TR = max(high - low, |high - prev_close|, |low - prev_close|)

Stop levels from ATR (``mult`` = ATR multiplier, ``rr`` = risk/reward):

    BUY:  stop = entry - atr*mult    take = entry + atr*mult*rr
    SELL: stop = entry + atr*mult    take = entry - atr*mult*rr

The ATR path can fail (no data, network). The percentage path
(``risk_pct`` of the entry price, same ``rr``) cannot, and
``with_fallback`` composes the two.

Examples:
    >>> from decimal import Decimal
    >>> candles = [Candle(i, Decimal("110"), Decimal("100"), Decimal("105"), Decimal("1")) for i in range(3)]
    >>> average_true_range(candles, period=2)
    Decimal('10')
    >>> atr_stops(OrderSide.BUY, Decimal("100"), Decimal("2"), Decimal("1.5"), Decimal("2"))
    StopLevels(stop_loss_price=Decimal('97.0'), take_profit_price=Decimal('106.0'), method='atr', atr=Decimal('2'))
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, TypeVar

from .errors import GatewayError, InsufficientData
from .logging_setup import logger
from .order_state import OrderSide

T = TypeVar("T")


@dataclass(frozen=True)
class Candle:
    """One OHLCV bar (only the fields ATR needs)."""

    open_time: int
    high: Decimal
    low: Decimal
    close: Decimal
    volume: Decimal

    @classmethod
    def from_kline(cls, row: Sequence[Any]) -> "Candle":
        """Parse an exchange kline row ``[openTime, open, high, low, close, volume, ...]``."""
        return cls(
            open_time=int(row[0]),
            high=Decimal(str(row[2])),
            low=Decimal(str(row[3])),
            close=Decimal(str(row[4])),
            volume=Decimal(str(row[5])),
        )


def candles_from_klines(rows: Sequence[Sequence[Any]]) -> List[Candle]:
    """Parse kline rows into candles ordered oldest to newest, one per open time."""
    by_time: Dict[int, Candle] = {}
    for row in rows:
        candle = Candle.from_kline(row)
        by_time[candle.open_time] = candle
    return [by_time[t] for t in sorted(by_time)]


def true_ranges(candles: Sequence[Candle]) -> List[Decimal]:
    """True range for every candle that has a predecessor (len = n - 1)."""
    out = []
    for prev, cur in zip(candles, candles[1:]):
        out.append(max(
            cur.high - cur.low,
            abs(cur.high - prev.close),
            abs(cur.low - prev.close),
        ))
    return out


def average_true_range(candles: Sequence[Candle], period: int) -> Decimal:
    """Mean of the last ``period`` true ranges.

    Raises:
        ValueError: period < 1
        InsufficientData: fewer than ``period + 1`` candles
    """
    if period < 1:
        raise ValueError(f"ATR period must be >= 1, got {period}")
    ranges = true_ranges(candles)
    if len(ranges) < period:
        raise InsufficientData(
            f"Need {period + 1} candles for ATR({period}), got {len(candles)}"
        )
    window = ranges[-period:]
    return sum(window, Decimal(0)) / Decimal(period)


@dataclass(frozen=True)
class StopLevels:
    """Stop-loss / take-profit pair and how it was derived."""

    stop_loss_price: Decimal
    take_profit_price: Decimal
    method: str
    atr: Optional[Decimal] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stopLossPrice": str(self.stop_loss_price),
            "takeProfitPrice": str(self.take_profit_price),
            "method": self.method,
            "atr": str(self.atr) if self.atr is not None else None,
        }


def atr_stops(
    side: OrderSide,
    entry_price: Decimal,
    atr: Decimal,
    multiplier: Decimal,
    risk_reward_ratio: Decimal,
) -> StopLevels:
    risk = atr * multiplier
    reward = risk * risk_reward_ratio
    if side is OrderSide.BUY:
        return StopLevels(entry_price - risk, entry_price + reward, "atr", atr)
    return StopLevels(entry_price + risk, entry_price - reward, "atr", atr)


def percentage_stops(
    side: OrderSide,
    entry_price: Decimal,
    risk_pct: Decimal,
    risk_reward_ratio: Decimal,
) -> StopLevels:
    """Fixed-percentage levels. Total: never raises for valid Decimals."""
    if side is OrderSide.BUY:
        return StopLevels(
            entry_price * (1 - risk_pct),
            entry_price * (1 + risk_pct * risk_reward_ratio),
            "percentage",
        )
    return StopLevels(
        entry_price * (1 + risk_pct),
        entry_price * (1 - risk_pct * risk_reward_ratio),
        "percentage",
    )


async def with_fallback(
    primary: Callable[[], Awaitable[T]],
    fallback: Callable[[GatewayError], T],
) -> T:
    """Run ``primary``; on any gateway error return ``fallback(error)``."""
    try:
        return await primary()
    except GatewayError as e:
        return fallback(e)


class VolatilityEngine:
    """Compute ATR from exchange candles and derive protective levels.

    Args:
        fetch_klines: Async callable ``(symbol, interval, limit) -> kline rows``
        default_symbol: Symbol used when callers do not name one
        interval: Candle interval for ATR (e.g. ``15m``)
        period: ATR lookback
        candle_margin: Extra candles fetched beyond ``period`` (at least 1)
        multiplier: ATR multiple for the stop distance
        risk_reward_ratio: Take-profit distance as a multiple of stop distance
        fallback_risk_pct: Stop distance as a fraction of entry when ATR fails
    """

    def __init__(
        self,
        fetch_klines: Callable[[str, str, int], Awaitable[List[list]]],
        *,
        default_symbol: str = "BTCUSDT",
        interval: str = "15m",
        period: int = 14,
        candle_margin: int = 10,
        multiplier: Decimal = Decimal("1.5"),
        risk_reward_ratio: Decimal = Decimal("2"),
        fallback_risk_pct: Decimal = Decimal("0.02"),
    ):
        self.fetch_klines = fetch_klines
        self.default_symbol = default_symbol
        self.interval = interval
        self.period = period
        self.candle_margin = max(1, candle_margin)
        self.multiplier = multiplier
        self.risk_reward_ratio = risk_reward_ratio
        self.fallback_risk_pct = fallback_risk_pct

    async def atr(self, symbol: Optional[str] = None, interval: Optional[str] = None, period: Optional[int] = None) -> Decimal:
        """ATR for ``symbol`` over the most recent candles.

        Raises:
            InsufficientData: not enough history, or zero volatility
            GatewayError: candle fetch failed
        """
        symbol = (symbol or self.default_symbol).upper()
        interval = interval or self.interval
        period = self.period if period is None else period
        if period < 1:
            raise ValueError(f"ATR period must be >= 1, got {period}")

        rows = await self.fetch_klines(symbol, interval, period + self.candle_margin)
        if not isinstance(rows, list):
            raise InsufficientData(f"Unexpected klines payload for {symbol}")
        try:
            candles = candles_from_klines(rows)
        except (IndexError, TypeError, ValueError, ArithmeticError) as e:
            raise InsufficientData(f"Malformed klines for {symbol}: {e}")
        value = average_true_range(candles, period)
        if value <= 0:
            raise InsufficientData(f"ATR for {symbol} is zero; no volatility in window")
        logger.info(f"Calculated ATR | symbol={symbol} interval={interval} period={period} atr={value}")
        return value

    def fallback_stops(self, side: OrderSide, entry_price: Decimal) -> StopLevels:
        return percentage_stops(side, entry_price, self.fallback_risk_pct, self.risk_reward_ratio)

    async def dynamic_stops_for(self, side: OrderSide, entry_price: Decimal, *, symbol: Optional[str] = None) -> StopLevels:
        """ATR-based levels, falling back to the percentage rule. Never raises GatewayError."""

        async def from_atr() -> StopLevels:
            atr = await self.atr(symbol)
            return atr_stops(side, entry_price, atr, self.multiplier, self.risk_reward_ratio)

        def from_percentage(error: GatewayError) -> StopLevels:
            logger.warning(
                f"ATR unavailable, using percentage SL/TP | symbol={symbol or self.default_symbol} "
                f"risk_pct={self.fallback_risk_pct} error={error}"
            )
            return self.fallback_stops(side, entry_price)

        return await with_fallback(from_atr, from_percentage)
