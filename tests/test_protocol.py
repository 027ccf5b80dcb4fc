import pytest

from wager_client.config import TerminalState, WagerStatus
from wager_client.errors import InvalidTransitionError
from wager_client.protocol import (
    WAGER_STATUS,
    BalanceRead,
    Begin,
    CreditConfirmed,
    CreditUnconfirmed,
    DebitConfirmed,
    DebitFailed,
    ForceEnded,
    ProtocolState,
    ReadBalance,
    RefreshBalance,
    RejectInsufficientFunds,
    ReportCreditUnconfirmed,
    ReportDebitFailed,
    RoundAdvanced,
    SettlementRetryRequested,
    StartRound,
    SubmitCredit,
    SubmitDebit,
    transition,
)


def test_happy_path():
    state, commands = transition(ProtocolState.IDLE, Begin(stake=100))
    assert (state, commands) == (ProtocolState.VALIDATING, [ReadBalance()])

    state, commands = transition(state, BalanceRead(balance=2_000, stake=100, reserve_fee=1_000))
    assert (state, commands) == (ProtocolState.DEBITING, [SubmitDebit(amount=100)])

    state, commands = transition(state, DebitConfirmed(remote_reference="r"))
    assert (state, commands) == (ProtocolState.IN_PLAY, [StartRound()])

    state, commands = transition(state, RoundAdvanced())
    assert (state, commands) == (ProtocolState.IN_PLAY, [])

    state, commands = transition(state, RoundAdvanced(terminal_state=TerminalState.WON, payout=250))
    assert (state, commands) == (ProtocolState.SETTLING, [SubmitCredit(payout=250)])

    state, commands = transition(state, CreditConfirmed(payout=250))
    assert (state, commands) == (ProtocolState.DONE, [RefreshBalance()])
    assert WAGER_STATUS[state] is WagerStatus.RESOLVED


def test_balance_must_cover_stake_plus_reserve_fee():
    state, commands = transition(ProtocolState.VALIDATING, BalanceRead(balance=1_099, stake=100, reserve_fee=1_000))
    assert state is ProtocolState.ABORTED
    assert commands == [RejectInsufficientFunds(balance=1_099, required=1_100)]

    state, _ = transition(ProtocolState.VALIDATING, BalanceRead(balance=1_100, stake=100, reserve_fee=1_000))
    assert state is ProtocolState.DEBITING


def test_failed_debit_aborts():
    state, commands = transition(ProtocolState.DEBITING, DebitFailed(reason="rejected"))
    assert state is ProtocolState.ABORTED
    assert commands == [ReportDebitFailed(reason="rejected")]


def test_unconfirmed_credit_waits_for_retry():
    state, commands = transition(ProtocolState.SETTLING, CreditUnconfirmed(reason="timeout"))
    assert state is ProtocolState.NEEDS_RECONCILIATION
    assert commands == [ReportCreditUnconfirmed(reason="timeout")]
    assert WAGER_STATUS[state] is WagerStatus.ACTIVE

    state, commands = transition(state, SettlementRetryRequested(payout=40))
    assert (state, commands) == (ProtocolState.SETTLING, [SubmitCredit(payout=40)])


@pytest.mark.parametrize(
    "state",
    [ProtocolState.IN_PLAY, ProtocolState.SETTLING, ProtocolState.NEEDS_RECONCILIATION],
)
def test_force_end_from_open_states(state):
    assert transition(state, ForceEnded()) == (ProtocolState.DONE, [RefreshBalance()])


@pytest.mark.parametrize(
    "state, event",
    [
        (ProtocolState.IDLE, ForceEnded()),
        (ProtocolState.DONE, ForceEnded()),
        (ProtocolState.IDLE, DebitConfirmed()),
        (ProtocolState.IN_PLAY, Begin(stake=1)),
        (ProtocolState.DONE, RoundAdvanced()),
        (ProtocolState.ABORTED, SettlementRetryRequested(payout=0)),
        (ProtocolState.SETTLING, RoundAdvanced(terminal_state=TerminalState.LOST)),
    ],
)
def test_invalid_transitions_raise(state, event):
    with pytest.raises(InvalidTransitionError):
        transition(state, event)
