"""
Settlement protocol as a pure state machine.

``transition(state, event)`` returns the next state and the commands an outer
driver must execute; executing a command yields the next event. Nothing here
touches the network, so every path can be exercised directly.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple, Type

from wager_client.config import TerminalState, WagerStatus
from wager_client.errors import InvalidTransitionError


class ProtocolState(str, Enum):
    IDLE = "idle"
    VALIDATING = "validating"
    DEBITING = "debiting"
    IN_PLAY = "in_play"
    SETTLING = "settling"
    NEEDS_RECONCILIATION = "needs_reconciliation"
    DONE = "done"
    ABORTED = "aborted"


WAGER_STATUS = {
    ProtocolState.IDLE: WagerStatus.PENDING,
    ProtocolState.VALIDATING: WagerStatus.PENDING,
    ProtocolState.DEBITING: WagerStatus.PENDING,
    ProtocolState.IN_PLAY: WagerStatus.ACTIVE,
    ProtocolState.SETTLING: WagerStatus.ACTIVE,
    ProtocolState.NEEDS_RECONCILIATION: WagerStatus.ACTIVE,
    ProtocolState.DONE: WagerStatus.RESOLVED,
    ProtocolState.ABORTED: WagerStatus.RESOLVED,
}


# events

@dataclass(frozen=True)
class Begin:
    stake: int


@dataclass(frozen=True)
class BalanceRead:
    balance: int
    stake: int
    reserve_fee: int


@dataclass(frozen=True)
class DebitConfirmed:
    remote_reference: Optional[str] = None


@dataclass(frozen=True)
class DebitFailed:
    reason: str


@dataclass(frozen=True)
class RoundAdvanced:
    terminal_state: Optional[TerminalState] = None
    payout: int = 0


@dataclass(frozen=True)
class CreditConfirmed:
    payout: int
    remote_reference: Optional[str] = None


@dataclass(frozen=True)
class CreditUnconfirmed:
    reason: str


@dataclass(frozen=True)
class SettlementRetryRequested:
    payout: int


@dataclass(frozen=True)
class ForceEnded:
    pass


# commands

@dataclass(frozen=True)
class ReadBalance:
    pass


@dataclass(frozen=True)
class RejectInsufficientFunds:
    balance: int
    required: int


@dataclass(frozen=True)
class SubmitDebit:
    amount: int


@dataclass(frozen=True)
class ReportDebitFailed:
    reason: str


@dataclass(frozen=True)
class StartRound:
    pass


@dataclass(frozen=True)
class SubmitCredit:
    payout: int


@dataclass(frozen=True)
class ReportCreditUnconfirmed:
    reason: str


@dataclass(frozen=True)
class RefreshBalance:
    pass


Transition = Tuple[ProtocolState, List[object]]


def required_amount(stake: int, reserve_fee: int) -> int:
    return stake + reserve_fee


def _begin(event: Begin) -> Transition:
    return ProtocolState.VALIDATING, [ReadBalance()]


def _balance_read(event: BalanceRead) -> Transition:
    required = required_amount(event.stake, event.reserve_fee)
    if event.balance < required:
        return ProtocolState.ABORTED, [RejectInsufficientFunds(balance=event.balance, required=required)]
    return ProtocolState.DEBITING, [SubmitDebit(amount=event.stake)]


def _debit_confirmed(event: DebitConfirmed) -> Transition:
    return ProtocolState.IN_PLAY, [StartRound()]


def _debit_failed(event: DebitFailed) -> Transition:
    return ProtocolState.ABORTED, [ReportDebitFailed(reason=event.reason)]


def _round_advanced(event: RoundAdvanced) -> Transition:
    if event.terminal_state is None:
        return ProtocolState.IN_PLAY, []
    return ProtocolState.SETTLING, [SubmitCredit(payout=event.payout)]


def _credit_confirmed(event: CreditConfirmed) -> Transition:
    return ProtocolState.DONE, [RefreshBalance()]


def _credit_unconfirmed(event: CreditUnconfirmed) -> Transition:
    return ProtocolState.NEEDS_RECONCILIATION, [ReportCreditUnconfirmed(reason=event.reason)]


def _retry_settlement(event: SettlementRetryRequested) -> Transition:
    return ProtocolState.SETTLING, [SubmitCredit(payout=event.payout)]


def _force_ended(event: ForceEnded) -> Transition:
    return ProtocolState.DONE, [RefreshBalance()]


_TABLE: Dict[Tuple[ProtocolState, Type], Callable[..., Transition]] = {
    (ProtocolState.IDLE, Begin): _begin,
    (ProtocolState.VALIDATING, BalanceRead): _balance_read,
    (ProtocolState.DEBITING, DebitConfirmed): _debit_confirmed,
    (ProtocolState.DEBITING, DebitFailed): _debit_failed,
    (ProtocolState.IN_PLAY, RoundAdvanced): _round_advanced,
    (ProtocolState.SETTLING, CreditConfirmed): _credit_confirmed,
    (ProtocolState.SETTLING, CreditUnconfirmed): _credit_unconfirmed,
    (ProtocolState.NEEDS_RECONCILIATION, SettlementRetryRequested): _retry_settlement,
}

_FORCE_ENDABLE = frozenset({
    ProtocolState.IN_PLAY,
    ProtocolState.SETTLING,
    ProtocolState.NEEDS_RECONCILIATION,
})


def transition(state: ProtocolState, event) -> Transition:
    if isinstance(event, ForceEnded):
        if state not in _FORCE_ENDABLE:
            raise InvalidTransitionError(f"cannot force-end a wager in state {state.value}")
        return _force_ended(event)
    handler = _TABLE.get((state, type(event)))
    if handler is None:
        raise InvalidTransitionError(f"{type(event).__name__} not valid in state {state.value}")
    return handler(event)
