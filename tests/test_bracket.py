from decimal import Decimal

import pytest

from conftest import flat_klines, make_exchange_info
from order_gateway.bracket import (
    BracketOrderOrchestrator,
    OrderRequest,
    check_sidedness,
    fill_price,
    snap_levels,
)
from order_gateway.errors import (
    ExchangeRejection,
    OrderPlacementError,
    TransientNetworkError,
    ValidationError,
)
from order_gateway.filters import InstrumentFilterCache
from order_gateway.order_state import BracketState, OrderSide
from order_gateway.validator import OrderValidator
from order_gateway.volatility import StopLevels, VolatilityEngine

D = Decimal


class FakeClient:
    """In-memory exchange client; ``fail`` maps an order type to the error it raises."""

    def __init__(self, price="50000", fail=None, entry_fields=None):
        self.price = price
        self.fail = fail or {}
        self.entry_fields = entry_fields or {}
        self.orders = []

    async def ticker_price(self, symbol):
        if isinstance(self.price, Exception):
            raise self.price
        return D(self.price)

    async def place_order(self, params):
        self.orders.append(dict(params))
        error = self.fail.get(params["type"])
        if error is not None:
            raise error
        oid = len(self.orders)
        if params["type"] == "MARKET":
            entry = {"orderId": oid, "status": "FILLED", "avgPrice": "50000.00", "executedQty": params["quantity"]}
            entry.update(self.entry_fields)
            return entry
        if params["type"] == "LIMIT":
            return {"orderId": oid, "status": "NEW", "avgPrice": "0.00", "price": params["price"], "executedQty": "0"}
        return {"orderId": oid, "status": "NEW", "stopPrice": params["stopPrice"]}

    def legs(self):
        return [o for o in self.orders if o["type"] not in ("MARKET", "LIMIT")]


def make_orchestrator(client, klines=None, **kwargs):
    async def exchange_info():
        return make_exchange_info()

    async def fetch_klines(symbol, interval, limit):
        if isinstance(klines, Exception):
            raise klines
        return klines if klines is not None else flat_klines(24)

    validator = OrderValidator(InstrumentFilterCache(exchange_info, ttl_seconds=60))
    volatility = VolatilityEngine(fetch_klines, multiplier=D("1.5"), risk_reward_ratio=D("2"))
    return BracketOrderOrchestrator(client, validator, volatility, **kwargs)


def test_order_request_create():
    req = OrderRequest.create("btcusdt", "buy", "0.01")
    assert req.symbol == "BTCUSDT"
    assert req.side is OrderSide.BUY
    assert req.quantity == D("0.01")
    assert req.place_sltp is True
    with pytest.raises(ValidationError, match="LIMIT orders require a price"):
        OrderRequest.create("BTCUSDT", "BUY", "0.01", type="LIMIT")


def test_check_sidedness():
    check_sidedness(OrderSide.BUY, D("100"), D("95"), D("110"))
    check_sidedness(OrderSide.SELL, D("100"), D("105"), D("90"))
    with pytest.raises(ValidationError) as exc_info:
        check_sidedness(OrderSide.BUY, D("100"), D("105"), D("110"))
    assert exc_info.value.rule == "SIDEDNESS"
    with pytest.raises(ValidationError):
        check_sidedness(OrderSide.SELL, D("100"), D("95"), D("90"))


def test_snap_levels_rounds_away_from_entry():
    levels = StopLevels(D("49000.05"), D("51000.01"), "explicit")
    buy = snap_levels(OrderSide.BUY, levels, D("0.10"))
    assert buy.stop_loss_price == D("49000.0")
    assert buy.take_profit_price == D("51000.1")

    sell = snap_levels(OrderSide.SELL, StopLevels(D("51000.01"), D("49000.05"), "explicit"), D("0.10"))
    assert sell.stop_loss_price == D("51000.1")
    assert sell.take_profit_price == D("49000.0")


def test_fill_price_prefers_average():
    assert fill_price({"avgPrice": "50010.5", "price": "50000"}) == D("50010.5")
    assert fill_price({"avgPrice": "0.00", "price": "50000"}) == D("50000")
    assert fill_price({"avgPrice": "0"}) is None
    with pytest.raises(ExchangeRejection, match="unreadable avgPrice"):
        fill_price({"avgPrice": "N/A", "price": "50000"})


@pytest.mark.asyncio
async def test_market_buy_with_atr_bracket():
    client = FakeClient()
    result = await make_orchestrator(client).place_order(OrderRequest.create("BTCUSDT", "BUY", "0.01"))

    assert result.filled
    assert result.fully_protected
    assert result.entry_price == D("50000.00")
    assert result.levels.method == "atr"
    assert result.states == [
        BracketState.VALIDATING,
        BracketState.ENTRY_SUBMITTED,
        BracketState.ENTRY_FILLED,
        BracketState.PROTECTIVE_PLACEMENT,
        BracketState.DONE,
    ]

    entry = client.orders[0]
    assert entry == {
        "symbol": "BTCUSDT",
        "side": "BUY",
        "type": "MARKET",
        "quantity": "0.01",
        "newOrderRespType": "RESULT",
        "positionSide": "BOTH",
    }
    legs = {o["type"]: o for o in client.legs()}
    assert legs["STOP_MARKET"]["stopPrice"] == "49985"
    assert legs["TAKE_PROFIT_MARKET"]["stopPrice"] == "50030"
    for leg in legs.values():
        assert leg["side"] == "SELL"
        assert leg["quantity"] == "0.01"
        assert leg["reduceOnly"] == "true"
        assert leg["workingType"] == "MARK_PRICE"
        assert "closePosition" not in leg


@pytest.mark.asyncio
async def test_sell_legs_are_buy_side():
    client = FakeClient()
    result = await make_orchestrator(client).place_order(OrderRequest.create("BTCUSDT", "SELL", "0.01"))
    assert result.fully_protected
    legs = {o["type"]: o for o in client.legs()}
    assert legs["STOP_MARKET"]["side"] == "BUY"
    assert legs["STOP_MARKET"]["stopPrice"] == "50015"
    assert legs["TAKE_PROFIT_MARKET"]["stopPrice"] == "49970"


@pytest.mark.asyncio
async def test_stop_loss_failure_keeps_take_profit():
    client = FakeClient(fail={"STOP_MARKET": ExchangeRejection("Order would immediately trigger.", code=-2021)})
    result = await make_orchestrator(client).place_order(OrderRequest.create("BTCUSDT", "BUY", "0.01"))

    assert result.filled
    assert not result.stop_loss.ok
    assert result.stop_loss.error.code == -2021
    assert result.take_profit.ok
    assert not result.fully_protected
    assert not result.position_unprotected
    # entry is never rolled back
    assert [o["type"] for o in client.orders].count("MARKET") == 1
    body = result.to_dict()
    assert body["stopLoss"]["error"]["kind"] == "exchange_rejection"
    assert body["takeProfit"]["order"]["status"] == "NEW"


@pytest.mark.asyncio
async def test_both_legs_failing_leaves_position_unprotected():
    down = TransientNetworkError("timeout")
    client = FakeClient(fail={"STOP_MARKET": down, "TAKE_PROFIT_MARKET": down})
    result = await make_orchestrator(client).place_order(OrderRequest.create("BTCUSDT", "BUY", "0.01"))
    assert result.filled
    assert result.position_unprotected
    assert result.to_dict()["positionUnprotected"] is True


@pytest.mark.asyncio
async def test_validation_failure_sends_nothing():
    client = FakeClient()
    with pytest.raises(OrderPlacementError) as exc_info:
        await make_orchestrator(client).place_order(OrderRequest.create("BTCUSDT", "BUY", "0.0015"))
    err = exc_info.value
    assert err.stage == "validation"
    assert isinstance(err.cause, ValidationError)
    assert err.to_dict()["rule"] == "LOT_SIZE"
    assert client.orders == []


@pytest.mark.asyncio
async def test_market_notional_checked_against_last_price():
    client = FakeClient(price="50000")
    with pytest.raises(OrderPlacementError) as exc_info:
        await make_orchestrator(client).place_order(OrderRequest.create("BTCUSDT", "BUY", "0.001"))
    assert exc_info.value.cause.rule == "MIN_NOTIONAL"
    assert client.orders == []


@pytest.mark.asyncio
async def test_notional_check_skipped_when_price_unavailable():
    client = FakeClient(price=TransientNetworkError("down"))
    result = await make_orchestrator(client).place_order(
        OrderRequest.create("BTCUSDT", "BUY", "0.001", place_sltp=False)
    )
    assert result.filled


@pytest.mark.asyncio
async def test_entry_rejection_is_terminal():
    client = FakeClient(fail={"MARKET": ExchangeRejection("Margin is insufficient.", code=-2019)})
    with pytest.raises(OrderPlacementError) as exc_info:
        await make_orchestrator(client).place_order(OrderRequest.create("BTCUSDT", "BUY", "0.01"))
    err = exc_info.value
    assert err.stage == "entry"
    assert err.kind == "exchange_rejection"
    assert err.message == "Margin is insufficient."
    assert client.legs() == []


@pytest.mark.asyncio
async def test_resting_limit_gets_no_legs():
    client = FakeClient()
    result = await make_orchestrator(client).place_order(
        OrderRequest.create("BTCUSDT", "BUY", "0.01", type="LIMIT", price="49000")
    )
    assert not result.filled
    assert client.legs() == []
    assert client.orders[0]["price"] == "49000"
    assert client.orders[0]["timeInForce"] == "GTC"
    assert result.states == [BracketState.VALIDATING, BracketState.ENTRY_SUBMITTED, BracketState.DONE]
    assert not result.position_unprotected


@pytest.mark.asyncio
async def test_explicit_levels_violating_sidedness():
    client = FakeClient()
    result = await make_orchestrator(client).place_order(
        OrderRequest.create("BTCUSDT", "BUY", "0.01", stop_loss_price="51000", take_profit_price="52000")
    )
    assert result.filled
    assert client.legs() == []
    assert result.protection_error.rule == "SIDEDNESS"
    assert result.position_unprotected
    assert result.to_dict()["protectionError"]["stage"] == "protective"
    assert result.states[-2:] == [BracketState.ENTRY_FILLED, BracketState.DONE]


@pytest.mark.asyncio
async def test_explicit_levels_snapped_to_tick():
    client = FakeClient()
    result = await make_orchestrator(client).place_order(
        OrderRequest.create("BTCUSDT", "BUY", "0.01", stop_loss_price="49000.05", take_profit_price="51000.01")
    )
    assert result.levels.method == "explicit"
    legs = {o["type"]: o for o in client.legs()}
    assert legs["STOP_MARKET"]["stopPrice"] == "49000"
    assert legs["TAKE_PROFIT_MARKET"]["stopPrice"] == "51000.1"


@pytest.mark.asyncio
async def test_single_explicit_level_completed_from_atr():
    client = FakeClient()
    result = await make_orchestrator(client).place_order(
        OrderRequest.create("BTCUSDT", "BUY", "0.01", stop_loss_price="49900")
    )
    assert result.levels.method == "mixed"
    assert result.levels.stop_loss_price == D("49900")
    assert result.levels.take_profit_price == D("50030.0")


@pytest.mark.asyncio
async def test_atr_failure_uses_percentage_levels():
    client = FakeClient()
    result = await make_orchestrator(client, klines=TransientNetworkError("down")).place_order(
        OrderRequest.create("BTCUSDT", "BUY", "0.01")
    )
    assert result.levels.method == "percentage"
    legs = {o["type"]: o for o in client.legs()}
    assert legs["STOP_MARKET"]["stopPrice"] == "49000"
    assert legs["TAKE_PROFIT_MARKET"]["stopPrice"] == "52000"


@pytest.mark.asyncio
async def test_no_protection_requested():
    client = FakeClient()
    result = await make_orchestrator(client).place_order(
        OrderRequest.create("BTCUSDT", "BUY", "0.01", place_sltp=False)
    )
    assert result.filled
    assert client.legs() == []
    assert not result.position_unprotected
    assert result.states[-1] is BracketState.DONE


@pytest.mark.asyncio
async def test_close_position_legs():
    client = FakeClient()
    await make_orchestrator(client, close_position=True, working_type="CONTRACT_PRICE").place_order(
        OrderRequest.create("BTCUSDT", "BUY", "0.01")
    )
    for leg in client.legs():
        assert leg["closePosition"] == "true"
        assert leg["workingType"] == "CONTRACT_PRICE"
        assert "quantity" not in leg
        assert "reduceOnly" not in leg


@pytest.mark.asyncio
async def test_entry_timeout_reports_unknown_outcome():
    client = FakeClient(fail={"MARKET": TransientNetworkError("Request timeout", outcome_unknown=True)})
    with pytest.raises(OrderPlacementError) as exc_info:
        await make_orchestrator(client).place_order(OrderRequest.create("BTCUSDT", "BUY", "0.01"))
    err = exc_info.value
    assert err.stage == "entry"
    assert err.outcome_unknown
    body = err.to_dict()
    assert body["outcomeUnknown"] is True
    assert body["kind"] == "transient_network"
    assert len(client.orders) == 1
    assert client.legs() == []


@pytest.mark.asyncio
async def test_entry_rejection_has_known_outcome():
    client = FakeClient(fail={"MARKET": ExchangeRejection("Margin is insufficient.", code=-2019)})
    with pytest.raises(OrderPlacementError) as exc_info:
        await make_orchestrator(client).place_order(OrderRequest.create("BTCUSDT", "BUY", "0.01"))
    assert not exc_info.value.outcome_unknown
    assert exc_info.value.to_dict()["outcomeUnknown"] is False


@pytest.mark.asyncio
async def test_validation_failure_has_known_outcome():
    client = FakeClient()
    with pytest.raises(OrderPlacementError) as exc_info:
        await make_orchestrator(client).place_order(OrderRequest.create("BTCUSDT", "BUY", "0.0015"))
    assert not exc_info.value.outcome_unknown


@pytest.mark.asyncio
async def test_unreadable_fill_price_leaves_position_unprotected():
    client = FakeClient(entry_fields={"avgPrice": "N/A"})
    result = await make_orchestrator(client).place_order(OrderRequest.create("BTCUSDT", "BUY", "0.01"))
    assert result.filled
    assert result.entry_price is None
    assert isinstance(result.protection_error, ExchangeRejection)
    assert "unreadable avgPrice" in result.protection_error.message
    assert result.position_unprotected
    assert result.to_dict()["protectionError"]["stage"] == "protective"
    assert result.states[-2:] == [BracketState.ENTRY_FILLED, BracketState.DONE]
    assert len(client.orders) == 1


@pytest.mark.asyncio
async def test_unreadable_executed_quantity_leaves_position_unprotected():
    client = FakeClient(entry_fields={"executedQty": "abc"})
    result = await make_orchestrator(client).place_order(OrderRequest.create("BTCUSDT", "BUY", "0.01"))
    assert result.filled
    assert "unreadable executedQty" in result.protection_error.message
    assert result.position_unprotected
    assert client.legs() == []


@pytest.mark.asyncio
async def test_unreadable_fill_price_without_protection_returns_result():
    client = FakeClient(entry_fields={"avgPrice": "N/A"})
    result = await make_orchestrator(client).place_order(
        OrderRequest.create("BTCUSDT", "BUY", "0.01", place_sltp=False)
    )
    assert result.filled
    assert result.entry_price is None
    assert not result.position_unprotected
    assert client.legs() == []
