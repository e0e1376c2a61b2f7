"""Order validation against exchange instrument filters.

All checks run on Decimal values. Grid membership (step size for
quantity, tick size for price) is tested by rounding to the nearest grid
point and comparing exactly, so ``step_size=0.001`` accepts ``0.002`` and
rejects ``0.0015`` regardless of how many decimals the grid has.

Rules, in order; the first failure wins:
    1. min_qty <= quantity <= max_qty
    2. quantity is a multiple of step_size
    3. min_price <= price <= max_price, price is a multiple of tick_size
    4. quantity * price >= min_notional
"""
from decimal import ROUND_HALF_EVEN, Decimal, InvalidOperation
from typing import Any, Optional

from .errors import ValidationError
from .filters import InstrumentFilterCache, InstrumentFilters


def to_decimal(value: Any, field: str) -> Decimal:
    """Coerce user input to Decimal via its string form."""
    if isinstance(value, Decimal):
        result = value
    else:
        try:
            result = Decimal(str(value))
        except (InvalidOperation, ValueError):
            raise ValidationError(f"{field} is not a number: {value!r}", rule="INPUT")
    if not result.is_finite():
        raise ValidationError(f"{field} must be finite: {value!r}", rule="INPUT")
    return result


def on_grid(value: Decimal, step: Decimal) -> bool:
    """True when ``value`` is an integer multiple of ``step`` (step <= 0 disables)."""
    if step <= 0:
        return True
    nearest = (value / step).to_integral_value(rounding=ROUND_HALF_EVEN)
    return nearest * step == value


def snap_to_grid(value: Decimal, step: Decimal, rounding: str = ROUND_HALF_EVEN) -> Decimal:
    """Move ``value`` onto the ``step`` grid using ``rounding``."""
    if step <= 0:
        return value
    return (value / step).to_integral_value(rounding=rounding) * step


def format_decimal(value: Decimal) -> str:
    """Plain (non-exponent) string without trailing zeros, as sent on the wire."""
    text = format(value, "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text or "0"


def check_order(
    filters: InstrumentFilters,
    quantity: Decimal,
    price: Optional[Decimal] = None,
    *,
    reference_price: Optional[Decimal] = None,
) -> None:
    """Raise ValidationError if the order breaks any instrument rule.

    ``reference_price`` is used only for the notional rule when no limit
    price is given (market orders priced at the last trade).
    """
    if quantity <= 0:
        raise ValidationError(f"Quantity must be positive, got {quantity}", rule="INPUT")

    if quantity < filters.min_qty:
        raise ValidationError(
            f"Quantity ({format_decimal(quantity)}) must be at least {format_decimal(filters.min_qty)}",
            rule="LOT_SIZE",
        )
    if filters.max_qty > 0 and quantity > filters.max_qty:
        raise ValidationError(
            f"Quantity ({format_decimal(quantity)}) must be at most {format_decimal(filters.max_qty)}",
            rule="LOT_SIZE",
        )
    if not on_grid(quantity, filters.step_size):
        raise ValidationError(
            f"Quantity ({format_decimal(quantity)}) is not a multiple of step size {format_decimal(filters.step_size)}",
            rule="LOT_SIZE",
        )

    if price is not None:
        if price <= 0:
            raise ValidationError(f"Price must be positive, got {price}", rule="INPUT")
        if price < filters.min_price:
            raise ValidationError(
                f"Price ({format_decimal(price)}) must be at least {format_decimal(filters.min_price)}",
                rule="PRICE_FILTER",
            )
        if filters.max_price > 0 and price > filters.max_price:
            raise ValidationError(
                f"Price ({format_decimal(price)}) must be at most {format_decimal(filters.max_price)}",
                rule="PRICE_FILTER",
            )
        if not on_grid(price, filters.tick_size):
            raise ValidationError(
                f"Price ({format_decimal(price)}) is not a multiple of tick size {format_decimal(filters.tick_size)}",
                rule="PRICE_FILTER",
            )

    notional_price = price if price is not None else reference_price
    if notional_price is not None:
        notional = quantity * notional_price
        if notional < filters.min_notional:
            raise ValidationError(
                f"Notional value ({notional.quantize(Decimal('0.01'))}) must be at least {format_decimal(filters.min_notional)}",
                rule="MIN_NOTIONAL",
            )


class OrderValidator:
    """Validate proposed orders against cached instrument filters."""

    def __init__(self, filter_cache: InstrumentFilterCache):
        self.filter_cache = filter_cache

    async def validate(
        self,
        symbol: str,
        quantity: Any,
        price: Any = None,
        *,
        reference_price: Optional[Decimal] = None,
    ) -> InstrumentFilters:
        """Check an order; return the filters it was checked against.

        Raises:
            ValidationError: on the first violated rule (or unknown symbol)
            GatewayError: if filters could not be fetched
        """
        qty = to_decimal(quantity, "quantity")
        px = to_decimal(price, "price") if price is not None else None
        filters = await self.filter_cache.filters_for(symbol)
        check_order(filters, qty, px, reference_price=reference_price)
        return filters
