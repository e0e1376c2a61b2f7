"""
Order sides, types and the bracket order lifecycle state machine.

State Transitions:
    VALIDATING → ENTRY_SUBMITTED → ENTRY_FILLED → PROTECTIVE_PLACEMENT → DONE
                                 ↘ ENTRY_REJECTED → DONE
                                 ↘ ENTRY_UNKNOWN → DONE     (timeout or 5xx; entry may exist)
    VALIDATING → DONE                      (validation failure, nothing sent)
    ENTRY_SUBMITTED → DONE                 (resting entry, or no protection requested)
    ENTRY_FILLED → DONE                    (explicit stops failed the sidedness check)

Examples:
    >>> sm = BracketStateMachine()
    >>> sm.advance(BracketState.ENTRY_SUBMITTED)
    >>> sm.advance(BracketState.ENTRY_FILLED)
    >>> sm.state
    <BracketState.ENTRY_FILLED: 'entry_filled'>
"""

from enum import Enum
from typing import List

from .errors import ValidationError


class OrderSide(str, Enum):
    """Order side: BUY or SELL."""

    BUY = "BUY"
    SELL = "SELL"

    @classmethod
    def parse(cls, value) -> "OrderSide":
        try:
            return cls(str(value).upper())
        except ValueError:
            raise ValidationError(f"Unknown side: {value!r}", rule="INPUT")

    @property
    def opposite(self) -> "OrderSide":
        return OrderSide.SELL if self is OrderSide.BUY else OrderSide.BUY


class OrderType(str, Enum):
    """Entry order types accepted by the gateway."""

    MARKET = "MARKET"
    LIMIT = "LIMIT"

    @classmethod
    def parse(cls, value) -> "OrderType":
        try:
            return cls(str(value).upper())
        except ValueError:
            raise ValidationError(f"Unsupported order type: {value!r}", rule="INPUT")


class BracketState(str, Enum):
    """Bracket order lifecycle states."""

    VALIDATING = "validating"
    ENTRY_SUBMITTED = "entry_submitted"
    ENTRY_REJECTED = "entry_rejected"
    ENTRY_UNKNOWN = "entry_unknown"
    ENTRY_FILLED = "entry_filled"
    PROTECTIVE_PLACEMENT = "protective_placement"
    DONE = "done"


_TRANSITIONS = {
    BracketState.VALIDATING: {BracketState.ENTRY_SUBMITTED, BracketState.DONE},
    BracketState.ENTRY_SUBMITTED: {
        BracketState.ENTRY_FILLED,
        BracketState.ENTRY_REJECTED,
        BracketState.ENTRY_UNKNOWN,
        BracketState.DONE,
    },
    BracketState.ENTRY_REJECTED: {BracketState.DONE},
    BracketState.ENTRY_UNKNOWN: {BracketState.DONE},
    BracketState.ENTRY_FILLED: {BracketState.PROTECTIVE_PLACEMENT, BracketState.DONE},
    BracketState.PROTECTIVE_PLACEMENT: {BracketState.DONE},
    BracketState.DONE: set(),
}


class BracketStateMachine:
    """Track one bracket order through its lifecycle.

    Attributes:
        state: Current BracketState
        history: Every state visited, in order
    """

    def __init__(self) -> None:
        self.state = BracketState.VALIDATING
        self.history: List[BracketState] = [self.state]

    def advance(self, new_state: BracketState) -> None:
        """Move to ``new_state``.

        Raises:
            RuntimeError: If the transition is not part of the lifecycle
        """
        if new_state not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"Illegal bracket transition {self.state.value} -> {new_state.value}")
        self.state = new_state
        self.history.append(new_state)

    @property
    def entry_filled(self) -> bool:
        return BracketState.ENTRY_FILLED in self.history
