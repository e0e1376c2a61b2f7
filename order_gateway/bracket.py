"""
Bracket order placement: entry order plus stop-loss / take-profit exits.

Typical Flow:
    1. Validate the request against instrument filters (nothing is sent on failure)
    2. Submit the entry order; a rejection ends the lifecycle, and a timeout or
       5xx ends it with an unknown outcome (the entry may exist)
    3. If the entry filled immediately and protection was requested, take the
       caller's explicit SL/TP (sidedness-checked) or compute them from ATR
    4. Place the stop-loss and take-profit legs independently

Protective legs are best-effort. Each leg's outcome is recorded as data in
BracketResult; a failing leg never cancels its sibling and never rolls back
the entry. Only validation and entry failures raise (OrderPlacementError).
"""
import asyncio
from dataclasses import dataclass, field
from decimal import ROUND_CEILING, ROUND_FLOOR, Decimal
from typing import Any, Dict, List, Optional

from .errors import ExchangeRejection, GatewayError, OrderPlacementError, ValidationError
from .filters import InstrumentFilters
from .logging_setup import logger
from .order_state import BracketState, BracketStateMachine, OrderSide, OrderType
from .validator import OrderValidator, format_decimal, snap_to_grid, to_decimal
from .volatility import StopLevels, VolatilityEngine

STOP_LOSS = "stop_loss"
TAKE_PROFIT = "take_profit"

_LEG_ORDER_TYPES = {
    STOP_LOSS: "STOP_MARKET",
    TAKE_PROFIT: "TAKE_PROFIT_MARKET",
}


@dataclass
class OrderRequest:
    """Caller-supplied order, parsed to Decimal / enums.

    Attributes:
        symbol: Instrument, upper-cased
        side: BUY or SELL
        type: MARKET or LIMIT
        quantity: Order quantity
        price: Limit price (required for LIMIT)
        place_sltp: Attach protective orders if the entry fills immediately
        stop_loss_price: Explicit stop-loss trigger (overrides ATR)
        take_profit_price: Explicit take-profit trigger (overrides ATR)
    """

    symbol: str
    side: OrderSide
    type: OrderType
    quantity: Decimal
    price: Optional[Decimal] = None
    place_sltp: bool = True
    stop_loss_price: Optional[Decimal] = None
    take_profit_price: Optional[Decimal] = None

    @classmethod
    def create(
        cls,
        symbol: str,
        side: Any,
        quantity: Any,
        type: Any = "MARKET",
        price: Any = None,
        place_sltp: bool = True,
        stop_loss_price: Any = None,
        take_profit_price: Any = None,
    ) -> "OrderRequest":
        """Build a request from loosely-typed input.

        Raises:
            ValidationError: unknown side/type, non-numeric values, LIMIT without price
        """
        order_type = OrderType.parse(type)
        req = cls(
            symbol=str(symbol).upper(),
            side=OrderSide.parse(side),
            type=order_type,
            quantity=to_decimal(quantity, "quantity"),
            price=to_decimal(price, "price") if price is not None else None,
            place_sltp=bool(place_sltp),
            stop_loss_price=to_decimal(stop_loss_price, "stopLossPrice") if stop_loss_price is not None else None,
            take_profit_price=to_decimal(take_profit_price, "takeProfitPrice") if take_profit_price is not None else None,
        )
        if order_type is OrderType.LIMIT and req.price is None:
            raise ValidationError("LIMIT orders require a price", rule="INPUT")
        return req


@dataclass
class LegOutcome:
    """Result of one protective leg: a placed order or an error."""

    leg: str
    trigger_price: Decimal
    order: Optional[Dict[str, Any]] = None
    error: Optional[GatewayError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"leg": self.leg, "triggerPrice": format_decimal(self.trigger_price)}
        if self.ok:
            out["order"] = self.order
        else:
            out["error"] = self.error.to_dict()
        return out


@dataclass
class BracketResult:
    """Outcome of a bracket order whose entry reached the exchange.

    Partial success is a valid terminal state: ``stop_loss`` and
    ``take_profit`` are independent, and ``protection_error`` is set when no
    leg was attempted although the entry filled.
    """

    entry_order: Dict[str, Any]
    filled: bool
    protection_requested: bool
    entry_price: Optional[Decimal] = None
    levels: Optional[StopLevels] = None
    stop_loss: Optional[LegOutcome] = None
    take_profit: Optional[LegOutcome] = None
    protection_error: Optional[GatewayError] = None
    states: List[BracketState] = field(default_factory=list)

    @property
    def fully_protected(self) -> bool:
        return bool(self.stop_loss and self.stop_loss.ok and self.take_profit and self.take_profit.ok)

    @property
    def position_unprotected(self) -> bool:
        """Entry filled, protection was requested, and no protective order is live."""
        if not (self.filled and self.protection_requested):
            return False
        legs = [leg for leg in (self.stop_loss, self.take_profit) if leg is not None]
        return not any(leg.ok for leg in legs)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "entryOrder": self.entry_order,
            "filled": self.filled,
            "entryPrice": format_decimal(self.entry_price) if self.entry_price is not None else None,
            "stopLoss": self.stop_loss.to_dict() if self.stop_loss else None,
            "takeProfit": self.take_profit.to_dict() if self.take_profit else None,
            "levels": self.levels.to_dict() if self.levels else None,
            "fullyProtected": self.fully_protected,
            "positionUnprotected": self.position_unprotected,
            "states": [s.value for s in self.states],
        }
        if self.protection_error is not None:
            out["protectionError"] = dict(self.protection_error.to_dict(), stage="protective")
        return out


def check_sidedness(side: OrderSide, entry_price: Decimal, stop_loss: Decimal, take_profit: Decimal) -> None:
    """BUY needs stop < entry < take; SELL needs take < entry < stop."""
    if side is OrderSide.BUY:
        ok = stop_loss < entry_price < take_profit
        expected = "stopLoss < entryPrice < takeProfit"
    else:
        ok = take_profit < entry_price < stop_loss
        expected = "takeProfit < entryPrice < stopLoss"
    if not ok:
        raise ValidationError(
            f"{side.value} protective prices must satisfy {expected}: "
            f"stopLoss={format_decimal(stop_loss)} entry={format_decimal(entry_price)} "
            f"takeProfit={format_decimal(take_profit)}",
            rule="SIDEDNESS",
        )


def snap_levels(side: OrderSide, levels: StopLevels, tick_size: Decimal) -> StopLevels:
    """Put both levels on the tick grid, rounding away from the entry."""
    if side is OrderSide.BUY:
        sl = snap_to_grid(levels.stop_loss_price, tick_size, ROUND_FLOOR)
        tp = snap_to_grid(levels.take_profit_price, tick_size, ROUND_CEILING)
    else:
        sl = snap_to_grid(levels.stop_loss_price, tick_size, ROUND_CEILING)
        tp = snap_to_grid(levels.take_profit_price, tick_size, ROUND_FLOOR)
    return StopLevels(sl, tp, levels.method, levels.atr)


def _order_decimal(order: Dict[str, Any], key: str) -> Optional[Decimal]:
    raw = order.get(key)
    if raw is None or raw == "":
        return None
    try:
        value = Decimal(str(raw))
    except (ArithmeticError, ValueError, TypeError):
        value = None
    if value is None or not value.is_finite():
        raise ExchangeRejection(f"Filled entry reports an unreadable {key}: {raw!r}")
    return value


def fill_price(entry_order: Dict[str, Any]) -> Optional[Decimal]:
    """Average fill price, falling back to the order price; None if neither is set.

    Raises:
        ExchangeRejection: a price field is present but not a finite number
    """
    for key in ("avgPrice", "price"):
        value = _order_decimal(entry_order, key)
        if value is not None and value > 0:
            return value
    return None


def executed_quantity(entry_order: Dict[str, Any], requested: Decimal) -> Decimal:
    """Filled quantity reported by the exchange, else the requested quantity."""
    value = _order_decimal(entry_order, "executedQty")
    return value if value is not None and value > 0 else requested


class BracketOrderOrchestrator:
    """Place an entry order and, once filled, its protective exits.

    Args:
        client: Exchange client (``place_order``, ``ticker_price``)
        validator: OrderValidator for instrument checks
        volatility: VolatilityEngine for ATR-based levels
        working_type: Price type that triggers the exits (MARK_PRICE / CONTRACT_PRICE)
        close_position: Send ``closePosition=true`` instead of quantity + reduceOnly
    """

    def __init__(
        self,
        client,
        validator: OrderValidator,
        volatility: VolatilityEngine,
        *,
        working_type: str = "MARK_PRICE",
        close_position: bool = False,
    ):
        self.client = client
        self.validator = validator
        self.volatility = volatility
        self.working_type = working_type
        self.close_position = close_position

    async def _reference_price(self, request: OrderRequest) -> Optional[Decimal]:
        """Last price for market-order notional checks; None if unavailable."""
        if request.type is OrderType.LIMIT:
            return None
        try:
            return await self.client.ticker_price(request.symbol)
        except GatewayError as e:
            logger.warning(f"Price unavailable for notional check, skipping | symbol={request.symbol} error={e}")
            return None

    def _entry_params(self, request: OrderRequest) -> Dict[str, str]:
        params = {
            "symbol": request.symbol,
            "side": request.side.value,
            "type": request.type.value,
            "quantity": format_decimal(request.quantity),
            "newOrderRespType": "RESULT",
            "positionSide": "BOTH",
        }
        if request.type is OrderType.LIMIT:
            params["price"] = format_decimal(request.price)
            params["timeInForce"] = "GTC"
        return params

    def _leg_params(self, request: OrderRequest, leg: str, trigger: Decimal, quantity: Decimal) -> Dict[str, str]:
        params = {
            "symbol": request.symbol,
            "side": request.side.opposite.value,
            "type": _LEG_ORDER_TYPES[leg],
            "stopPrice": format_decimal(trigger),
            "workingType": self.working_type,
            "timeInForce": "GTC",
        }
        if self.close_position:
            params["closePosition"] = "true"
        else:
            params["quantity"] = format_decimal(quantity)
            params["reduceOnly"] = "true"
        return params

    async def _place_leg(self, request: OrderRequest, leg: str, trigger: Decimal, quantity: Decimal) -> LegOutcome:
        if trigger <= 0:
            error = ValidationError(f"{leg} trigger must be positive, got {format_decimal(trigger)}", rule="PRICE_FILTER")
            logger.error(f"Protective leg not placed | leg={leg} symbol={request.symbol} error={error}")
            return LegOutcome(leg=leg, trigger_price=trigger, error=error)
        try:
            order = await self.client.place_order(self._leg_params(request, leg, trigger, quantity))
        except GatewayError as e:
            logger.error(f"Protective leg failed | leg={leg} symbol={request.symbol} trigger={trigger} error={e}")
            return LegOutcome(leg=leg, trigger_price=trigger, error=e)
        logger.info(
            f"Protective leg placed | leg={leg} symbol={request.symbol} trigger={trigger} order_id={order.get('orderId') if order else None}"
        )
        return LegOutcome(leg=leg, trigger_price=trigger, order=order)

    async def _protective_levels(self, request: OrderRequest, entry_price: Decimal) -> StopLevels:
        """Explicit prices where given, ATR (or fallback) for the rest."""
        explicit_sl = request.stop_loss_price
        explicit_tp = request.take_profit_price
        if explicit_sl is not None and explicit_tp is not None:
            check_sidedness(request.side, entry_price, explicit_sl, explicit_tp)
            return StopLevels(explicit_sl, explicit_tp, "explicit")

        dynamic = await self.volatility.dynamic_stops_for(request.side, entry_price, symbol=request.symbol)
        if explicit_sl is None and explicit_tp is None:
            return dynamic
        levels = StopLevels(
            explicit_sl if explicit_sl is not None else dynamic.stop_loss_price,
            explicit_tp if explicit_tp is not None else dynamic.take_profit_price,
            "mixed",
            dynamic.atr,
        )
        check_sidedness(request.side, entry_price, levels.stop_loss_price, levels.take_profit_price)
        return levels

    async def place_order(self, request: OrderRequest) -> BracketResult:
        """Run one bracket order lifecycle.

        Raises:
            OrderPlacementError: validation failed (stage ``validation``) or the
                entry failed (stage ``entry``). No position exists unless
                ``outcome_unknown`` is True, in which case the entry may have executed.
        """
        sm = BracketStateMachine()

        try:
            reference = await self._reference_price(request)
            filters: InstrumentFilters = await self.validator.validate(
                request.symbol,
                request.quantity,
                request.price if request.type is OrderType.LIMIT else None,
                reference_price=reference,
            )
        except GatewayError as e:
            sm.advance(BracketState.DONE)
            logger.warning(f"Order rejected by validation | symbol={request.symbol} error={e}")
            raise OrderPlacementError("validation", e)

        sm.advance(BracketState.ENTRY_SUBMITTED)
        try:
            entry = await self.client.place_order(self._entry_params(request))
        except GatewayError as e:
            error = OrderPlacementError("entry", e)
            if error.outcome_unknown:
                sm.advance(BracketState.ENTRY_UNKNOWN)
                logger.error(
                    f"ENTRY OUTCOME UNKNOWN, check open orders and positions before resubmitting | "
                    f"symbol={request.symbol} side={request.side.value} error={e}"
                )
            else:
                sm.advance(BracketState.ENTRY_REJECTED)
                logger.error(f"Entry order rejected | symbol={request.symbol} side={request.side.value} error={e}")
            sm.advance(BracketState.DONE)
            raise error

        entry = entry or {}
        filled = entry.get("status") == "FILLED"
        result = BracketResult(
            entry_order=entry,
            filled=filled,
            protection_requested=request.place_sltp,
            states=sm.history,
        )
        logger.info(
            f"Entry order placed | order_id={entry.get('orderId')} symbol={request.symbol} "
            f"side={request.side.value} status={entry.get('status')}"
        )

        if not filled:
            # resting orders never get protective legs attached here
            sm.advance(BracketState.DONE)
            return result

        sm.advance(BracketState.ENTRY_FILLED)
        try:
            result.entry_price = fill_price(entry)
            if not request.place_sltp:
                sm.advance(BracketState.DONE)
                return result
            if result.entry_price is None:
                raise ExchangeRejection("Filled entry reports no fill price")
            quantity = executed_quantity(entry, request.quantity)
            levels = await self._protective_levels(request, result.entry_price)
        except GatewayError as e:
            result.protection_error = e
            sm.advance(BracketState.DONE)
            if request.place_sltp:
                logger.error(
                    f"POSITION OPEN WITHOUT PROTECTION | order_id={entry.get('orderId')} "
                    f"symbol={request.symbol} error={e}"
                )
            else:
                logger.warning(f"Filled entry has no readable fill price | order_id={entry.get('orderId')} error={e}")
            return result

        levels = snap_levels(request.side, levels, filters.tick_size)
        result.levels = levels

        sm.advance(BracketState.PROTECTIVE_PLACEMENT)
        result.stop_loss, result.take_profit = await asyncio.gather(
            self._place_leg(request, STOP_LOSS, levels.stop_loss_price, quantity),
            self._place_leg(request, TAKE_PROFIT, levels.take_profit_price, quantity),
        )
        sm.advance(BracketState.DONE)

        if result.position_unprotected:
            logger.error(
                f"POSITION OPEN WITHOUT PROTECTION | order_id={entry.get('orderId')} symbol={request.symbol} "
                f"stop_loss_error={result.stop_loss.error} take_profit_error={result.take_profit.error}"
            )
        elif not result.fully_protected:
            logger.warning(f"Position partially protected | order_id={entry.get('orderId')} symbol={request.symbol}")
        return result
