"""
Order execution state machine.

Tracks one execute-order unit from limit placement to a terminal state.

State Transitions:
    PLACED -> POLLING -> FILLED
                      -> TIMED_OUT -> CANCELLING -> FILLED          (cancel lost the race)
                                                 -> MARKET_FALLBACK -> FILLED | FAILED
                                                 -> FAILED          (slippage guard)
    any non-terminal state -> FAILED

Examples:
    >>> sm = ExecutionStateMachine("BTC-USD")
    >>> sm.transition(ExecutionState.POLLING)
    >>> sm.transition(ExecutionState.FILLED)
    >>> sm.is_terminal
    True
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, auto
from typing import Dict, FrozenSet, List, Optional

from .errors import InvalidTransitionError
from .models import utcnow


class ExecutionState(Enum):
    PLACED = auto()  # limit order accepted by the exchange
    POLLING = auto()
    TIMED_OUT = auto()  # fill timeout elapsed with the limit still open
    CANCELLING = auto()
    MARKET_FALLBACK = auto()  # market order placed
    FILLED = auto()
    FAILED = auto()


TRANSITIONS: Dict[ExecutionState, FrozenSet[ExecutionState]] = {
    ExecutionState.PLACED: frozenset({ExecutionState.POLLING, ExecutionState.FAILED}),
    ExecutionState.POLLING: frozenset({ExecutionState.FILLED, ExecutionState.TIMED_OUT, ExecutionState.FAILED}),
    ExecutionState.TIMED_OUT: frozenset({ExecutionState.CANCELLING, ExecutionState.FAILED}),
    ExecutionState.CANCELLING: frozenset({ExecutionState.FILLED, ExecutionState.MARKET_FALLBACK, ExecutionState.FAILED}),
    ExecutionState.MARKET_FALLBACK: frozenset({ExecutionState.FILLED, ExecutionState.FAILED}),
    ExecutionState.FILLED: frozenset(),
    ExecutionState.FAILED: frozenset(),
}


@dataclass
class StateChange:
    state: ExecutionState
    at: datetime
    note: str = ""


@dataclass
class ExecutionStateMachine:
    """State container for one execution; the executor drives it and owns all I/O."""

    symbol: str
    state: ExecutionState = ExecutionState.PLACED
    limit_order_id: Optional[str] = None
    market_order_id: Optional[str] = None
    history: List[StateChange] = field(default_factory=list)

    def __post_init__(self):
        self.history.append(StateChange(self.state, utcnow()))

    def can_transition(self, new_state: ExecutionState) -> bool:
        return new_state in TRANSITIONS[self.state]

    def transition(self, new_state: ExecutionState, note: str = "") -> None:
        """Move to ``new_state``.

        Raises:
            InvalidTransitionError: if the move is not in TRANSITIONS
        """
        if not self.can_transition(new_state):
            raise InvalidTransitionError(f"{self.symbol}: {self.state.name} -> {new_state.name} not allowed")
        self.state = new_state
        self.history.append(StateChange(new_state, utcnow(), note))

    def fail(self, note: str = "") -> None:
        if not self.is_terminal:
            self.transition(ExecutionState.FAILED, note)

    @property
    def is_terminal(self) -> bool:
        return not TRANSITIONS[self.state]

    @property
    def path(self) -> List[ExecutionState]:
        return [c.state for c in self.history]
