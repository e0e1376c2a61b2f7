"""Error taxonomy shared by every gateway component.

Each error carries a ``kind`` so callers (and the HTTP layer) can tell a
retryable network hiccup from a terminal rejection without parsing messages.

    TransientNetworkError      retryable; timeouts, refused connections, rate limits
    SignatureOrTimestampError  never retried; clock drift or canonicalization bug
    ValidationError            caller input violates instrument or sidedness rules
    InsufficientData           not enough candle history for ATR
    ExchangeRejection          exchange refused the request for business reasons
"""
from typing import Any, Dict, Optional


class GatewayError(Exception):
    """Base class for all gateway errors."""

    kind = "gateway_error"

    def __init__(self, message: str, *, code: Optional[int] = None, status: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.status = status

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"kind": self.kind, "message": self.message}
        if self.code is not None:
            out["code"] = self.code
        if self.status is not None:
            out["status"] = self.status
        return out


class TransientNetworkError(GatewayError):
    """Network-layer failure worth retrying.

    ``outcome_unknown`` is True when the request may have reached the exchange
    (timeouts, 5xx, -1007); such failures are only retried for GET requests.
    """

    kind = "transient_network"

    def __init__(self, message: str, *, outcome_unknown: bool = True, code: Optional[int] = None, status: Optional[int] = None):
        super().__init__(message, code=code, status=status)
        self.outcome_unknown = outcome_unknown

    def to_dict(self) -> Dict[str, Any]:
        out = super().to_dict()
        out["outcomeUnknown"] = self.outcome_unknown
        return out


class RateLimitError(TransientNetworkError):
    """Raised when the exchange rate-limits us and backoff is exhausted."""

    kind = "rate_limited"

    def __init__(self, message: str, *, retry_after: Optional[float] = None, code: Optional[int] = None, status: Optional[int] = None):
        super().__init__(message, outcome_unknown=False, code=code, status=status)
        self.retry_after = retry_after


class SignatureOrTimestampError(GatewayError):
    kind = "signature_or_timestamp"


class ValidationError(GatewayError):
    """Order input violates an instrument constraint or a sidedness rule.

    ``rule`` names the violated constraint (``LOT_SIZE``, ``PRICE_FILTER``,
    ``MIN_NOTIONAL``, ``SIDEDNESS``, ...).
    """

    kind = "validation"

    def __init__(self, message: str, *, rule: str = "INPUT"):
        super().__init__(message)
        self.rule = rule

    def to_dict(self) -> Dict[str, Any]:
        out = super().to_dict()
        out["rule"] = self.rule
        return out


class UnknownSymbolError(ValidationError):
    def __init__(self, symbol: str):
        super().__init__(f"Symbol {symbol} not found in exchange instrument list", rule="SYMBOL")
        self.symbol = symbol


class InsufficientData(GatewayError):
    kind = "insufficient_data"


class ExchangeRejection(GatewayError):
    kind = "exchange_rejection"


class OrderPlacementError(GatewayError):
    """Terminal failure of a bracket order, tagged with the stage that failed.

    ``stage`` is ``"validation"`` or ``"entry"``. Validation failures and
    exchange rejections leave no position. An entry that failed with an
    unknown outcome (timeout, 5xx, -1007) may still have been executed:
    ``outcome_unknown`` is True and the caller must check open orders and
    positions before resubmitting. Failures after the entry filled are
    reported in BracketResult.
    """

    def __init__(self, stage: str, cause: GatewayError):
        super().__init__(cause.message, code=cause.code, status=cause.status)
        self.stage = stage
        self.cause = cause
        self.kind = cause.kind

    def to_dict(self) -> Dict[str, Any]:
        out = self.cause.to_dict()
        out["stage"] = self.stage
        out["outcomeUnknown"] = self.outcome_unknown
        return out

    @property
    def outcome_unknown(self) -> bool:
        """True when the entry may have reached the exchange despite the error."""
        return self.stage == "entry" and bool(getattr(self.cause, "outcome_unknown", False))
