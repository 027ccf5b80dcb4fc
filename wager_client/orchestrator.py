"""
Settlement orchestrator: validate -> debit -> play -> credit -> refresh.

The protocol itself lives in ``wager_client.protocol``; this module executes
its commands against the remote ledger. Debit and credit share one rule: after
a failed submission the remote source of truth is queried before anything is
resubmitted, so a retried call can never move funds twice.
"""
import asyncio
import random
from collections import OrderedDict
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, Iterable, Optional, Union

from wager_client import db as records
from wager_client.amounts import DecimalAmount, FixedPointAmount, normalize
from wager_client.config import (
    GameVariant,
    IdentityKind,
    LegKind,
    LegStatus,
    Mode,
    Purpose,
    TerminalState,
    WagerStatus,
    remote_status_map,
    settings,
)
from wager_client.contracts.ledger_contracts import LedgerActionRequest, LedgerCreditRequest, LedgerDebitRequest
from wager_client.database import SessionLocal
from wager_client.errors import (
    ActiveSessionExistsError,
    CreditUnconfirmedError,
    DebitFailedError,
    DemoModeError,
    InsufficientFundsError,
    InvalidParametersError,
    NotActiveError,
    RemoteError,
    SessionBusyError,
    UnknownWagerError,
)
from wager_client.games import grid, wheel
from wager_client.games.grid import GameSession
from wager_client.games.wheel import SpinResult
from wager_client.handles import HandleStore, backoff_delays
from wager_client.helpers import derive_idempotency_key, new_wager_id
from wager_client.logging_config import get_logger
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
from wager_client.schemas.app_schemas import GameParams, PlayerAction, SettlementResult, WagerHandle
from wager_client.schemas.ledger_schemas import SessionSnapshot

logger = get_logger(__name__)

ACCEPTED_STATUSES = frozenset({"ok", "confirmed", "duplicate"})


@dataclass
class LedgerAccount:
    account_id: str
    balance: int = 0
    scale_factor: int = settings.scale_factor
    last_synced_at: Optional[datetime] = None


@dataclass
class Wager:
    wager_id: str
    account_id: str
    stake: int
    variant: GameVariant
    params: GameParams
    remote_authoritative: bool = False
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    state: ProtocolState = ProtocolState.IDLE
    grid: Optional[GameSession] = None
    spin: Optional[SpinResult] = None
    terminal_state: Optional[TerminalState] = None
    payout: int = 0
    debit_reference: Optional[str] = None
    credit_reference: Optional[str] = None
    credit_status: Optional[LegStatus] = None
    credit_baseline: Optional[int] = None
    final_snapshot: Optional[SessionSnapshot] = None
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)
    cancelled: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    @property
    def status(self) -> WagerStatus:
        return WAGER_STATUS[self.state]


def _tag_stake(stake, unit: Optional[str]):
    if unit == "decimal":
        return DecimalAmount(stake if not isinstance(stake, float) else str(stake))
    if unit == "fixed":
        return FixedPointAmount(int(stake))
    return stake


class SettlementOrchestrator:
    def __init__(
        self,
        handles: HandleStore,
        session_factory=SessionLocal,
        account_id: Optional[str] = None,
        rng: Optional[random.Random] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        remote_authoritative: Optional[Iterable[GameVariant]] = None,
    ):
        self.handles = handles
        self.session_factory = session_factory
        self.account = LedgerAccount(account_id=account_id or settings.account_id)
        self.rng = rng or random.SystemRandom()
        self.sleep = sleep
        self.remote_authoritative = frozenset(
            settings.remote_authoritative_variants if remote_authoritative is None else remote_authoritative
        )
        self.wagers: Dict[str, Wager] = OrderedDict()
        self._open_wager_id: Optional[str] = None
        self._placing = asyncio.Lock()

    # ---- read side -------------------------------------------------------

    def get_cached_balance(self) -> int:
        return self.account.balance

    def get_mode(self) -> Mode:
        return self.handles.mode

    def get_wager(self, wager_id: str) -> Wager:
        wager = self.wagers.get(wager_id)
        if wager is None:
            raise UnknownWagerError(f"unknown wager {wager_id}", wager_id=wager_id)
        return wager

    async def refresh_balance(self) -> LedgerAccount:
        account_id = self.account.account_id
        balance = await self.handles.call(
            IdentityKind.ANONYMOUS, Purpose.LEDGER, lambda client: client.get_balance(account_id)
        )
        self.account.balance = balance
        self.account.last_synced_at = datetime.now(timezone.utc)
        return self.account

    async def run_balance_refresher(self, interval: Optional[float] = None) -> None:
        interval = interval if interval is not None else settings.balance_refresh_seconds
        while True:
            try:
                await self.refresh_balance()
            except (RemoteError, DemoModeError) as exc:
                logger.warning("Periodic balance refresh failed account=%s error=%s", self.account.account_id, exc)
            await self.sleep(interval)

    # ---- upward API ------------------------------------------------------

    async def place_wager(
        self,
        stake: Union[int, float, str, DecimalAmount, FixedPointAmount],
        variant: GameVariant,
        params: Optional[GameParams] = None,
        unit: Optional[str] = None,
    ) -> Wager:
        if self.get_mode() is Mode.DEMO:
            raise DemoModeError("wagers cannot be placed in demo mode")
        params = params or GameParams()
        amount = normalize(_tag_stake(stake, unit))
        self._check_params(variant, params)

        # guard and registration must not interleave with another placement
        async with self._placing:
            await self._ensure_no_active_session()
            wager = Wager(
                wager_id=new_wager_id(),
                account_id=self.account.account_id,
                stake=amount.value,
                variant=variant,
                params=params,
                remote_authoritative=variant in self.remote_authoritative,
            )
            self.wagers[wager.wager_id] = wager
            self._open_wager_id = wager.wager_id
        logger.info(
            "Placing wager wagerId=%s variant=%s stake=%s remoteAuthoritative=%s",
            wager.wager_id,
            variant.value,
            wager.stake,
            wager.remote_authoritative,
        )
        async with wager.lock:
            await self._drive(wager, Begin(stake=wager.stake))
        return wager

    async def apply_player_action(self, wager_id: str, action: PlayerAction) -> SessionSnapshot:
        wager = self.get_wager(wager_id)
        self._reject_if_busy(wager)
        async with wager.lock:
            if wager.state is not ProtocolState.IN_PLAY:
                raise NotActiveError(f"wager is {wager.state.value}", wager_id=wager_id)
            if wager.variant is GameVariant.CONCEALMENT_GRID:
                event = await self._reveal(wager, action)
            else:
                event = await self._spin(wager, action)
            await self._drive(wager, event)
            return self.snapshot(wager)

    async def cash_out(self, wager_id: str) -> SettlementResult:
        wager = self.get_wager(wager_id)
        self._reject_if_busy(wager)
        async with wager.lock:
            if wager.state is not ProtocolState.IN_PLAY or wager.grid is None:
                raise NotActiveError(f"nothing to cash out for wager in state {wager.state.value}", wager_id=wager_id)
            cashed, payout = grid.cash_out(wager.grid)
            wager.grid = cashed
            wager.terminal_state = TerminalState.CASHED_OUT
            logger.info("Cash out wagerId=%s multiplier=%s payout=%s", wager_id, float(cashed.multiplier), payout)
            await self._drive(wager, RoundAdvanced(terminal_state=TerminalState.CASHED_OUT, payout=payout))
            return self.settlement_result(wager)

    async def retry_settlement(self, wager_id: str) -> SettlementResult:
        wager = self.get_wager(wager_id)
        self._reject_if_busy(wager)
        async with wager.lock:
            if wager.state is not ProtocolState.NEEDS_RECONCILIATION:
                raise NotActiveError(f"wager is {wager.state.value}, not awaiting reconciliation", wager_id=wager_id)
            wager.cancelled.clear()
            await self._drive(wager, SettlementRetryRequested(payout=wager.payout))
            return self.settlement_result(wager)

    async def force_end_session(self, wager_id: str) -> str:
        """
        Administrative discard of a stuck session. Only ever called on explicit operator action.
        """
        wager = self.wagers.get(wager_id)
        if wager is not None:
            self._reject_if_busy(wager)
        status = await self.handles.call(
            IdentityKind.AUTHENTICATED, Purpose.GAME, lambda client: client.force_end_session(wager_id)
        )
        logger.warning("Force-ended session wagerId=%s remoteStatus=%s", wager_id, status)
        if wager is not None and wager.status is not WagerStatus.RESOLVED:
            async with wager.lock:
                await self._drive(wager, ForceEnded())
        return status

    def cancel(self, wager_id: str) -> None:
        """Stop further local retries; a submitted debit or credit still runs to completion."""
        self.get_wager(wager_id).cancelled.set()

    # ---- views -----------------------------------------------------------

    def handle_view(self, wager: Wager) -> WagerHandle:
        return WagerHandle(
            wagerId=wager.wager_id,
            accountId=wager.account_id,
            stake=wager.stake,
            variant=wager.variant,
            status=wager.status.value,
            state=wager.state.value,
            createdAt=wager.created_at,
        )

    def snapshot(self, wager: Wager) -> SessionSnapshot:
        if wager.final_snapshot is not None:
            return wager.final_snapshot
        status = wager.terminal_state.value if wager.terminal_state else wager.state.value
        if wager.grid is not None:
            session = wager.grid
            return SessionSnapshot(
                wagerId=wager.wager_id,
                variant=wager.variant.value,
                status=status,
                stake=wager.stake,
                revealed=list(session.revealed),
                concealed=sorted(session.visible_concealed),
                multiplier=float(session.multiplier),
                payout=session.potential_payout,
            )
        return SessionSnapshot(
            wagerId=wager.wager_id,
            variant=wager.variant.value,
            status=status,
            stake=wager.stake,
            multiplier=float(wager.spin.multiplier) if wager.spin else 1.0,
            payout=wager.spin.payout if wager.spin else None,
            position=wager.spin.position if wager.spin else None,
        )

    def settlement_result(self, wager: Wager) -> SettlementResult:
        return SettlementResult(
            wagerId=wager.wager_id,
            terminalState=wager.terminal_state,
            payout=wager.payout,
            status=wager.credit_status or LegStatus.PENDING,
            remoteReference=wager.credit_reference,
            balance=self.account.balance,
        )

    # ---- guards ----------------------------------------------------------

    @staticmethod
    def _reject_if_busy(wager: Wager) -> None:
        if wager.lock.locked():
            raise SessionBusyError("another action is in progress for this wager", wager_id=wager.wager_id)

    @staticmethod
    def _check_params(variant: GameVariant, params: GameParams) -> None:
        if variant is GameVariant.CONCEALMENT_GRID:
            grid.check_parameters(params.totalCells, params.concealedCount)
        else:
            wheel.wheel_segments(params.segmentCount, params.riskLevel)
            if params.threshold < 0:
                raise InvalidParametersError("threshold cannot be negative")

    async def _ensure_no_active_session(self) -> None:
        open_wager = self.wagers.get(self._open_wager_id) if self._open_wager_id else None
        if open_wager is not None and open_wager.status is not WagerStatus.RESOLVED:
            raise ActiveSessionExistsError(
                f"wager {open_wager.wager_id} is still {open_wager.state.value}", wager_id=open_wager.wager_id
            )
        remote = await self._remote_active_session()
        if remote is not None and remote.status == "active":
            raise ActiveSessionExistsError(f"remote session {remote.wagerId} is still active", wager_id=remote.wagerId)

    async def _remote_active_session(self) -> Optional[SessionSnapshot]:
        account_id = self.account.account_id
        return await self.handles.call(
            IdentityKind.ANONYMOUS, Purpose.GAME, lambda client: client.get_active_session(account_id)
        )

    # ---- protocol driver -------------------------------------------------

    async def _drive(self, wager: Wager, event) -> None:
        pending = [event]
        try:
            while pending:
                current = pending.pop(0)
                previous = wager.state
                wager.state, commands = transition(wager.state, current)
                logger.info(
                    "Wager transition wagerId=%s %s -> %s event=%s",
                    wager.wager_id,
                    previous.value,
                    wager.state.value,
                    type(current).__name__,
                )
                for command in commands:
                    follow_up = await self._execute(wager, command)
                    if follow_up is not None:
                        pending.append(follow_up)
        finally:
            if wager.status is WagerStatus.RESOLVED and wager.final_snapshot is None:
                self._retire(wager)

    def _retire(self, wager: Wager) -> None:
        """Keep a frozen final view of a resolved wager and drop its game session."""
        wager.final_snapshot = self.snapshot(wager)
        wager.grid = None
        wager.spin = None
        if self._open_wager_id == wager.wager_id:
            self._open_wager_id = None
        resolved = [key for key, kept in self.wagers.items() if kept.status is WagerStatus.RESOLVED]
        for key in resolved[: max(len(resolved) - settings.wager_history_size, 0)]:
            del self.wagers[key]
        logger.info("Wager resolved wagerId=%s state=%s retained=%s", wager.wager_id, wager.state.value, len(self.wagers))

    async def _execute(self, wager: Wager, command):
        if isinstance(command, ReadBalance):
            account = await self.refresh_balance()
            return BalanceRead(balance=account.balance, stake=wager.stake, reserve_fee=settings.reserve_fee)
        if isinstance(command, RejectInsufficientFunds):
            raise InsufficientFundsError(
                f"balance {command.balance} below required {command.required}", wager_id=wager.wager_id
            )
        if isinstance(command, SubmitDebit):
            return await self._submit_debit(wager)
        if isinstance(command, ReportDebitFailed):
            raise DebitFailedError(f"debit failed: {command.reason}", wager_id=wager.wager_id)
        if isinstance(command, StartRound):
            self._start_round(wager)
            return None
        if isinstance(command, SubmitCredit):
            return await self._submit_credit(wager, command.payout)
        if isinstance(command, ReportCreditUnconfirmed):
            raise CreditUnconfirmedError(f"credit unconfirmed: {command.reason}", wager_id=wager.wager_id)
        if isinstance(command, RefreshBalance):
            try:
                await self.refresh_balance()
            except (RemoteError, DemoModeError) as exc:
                logger.warning("Balance refresh after settlement failed wagerId=%s error=%s", wager.wager_id, exc)
            return None
        raise TypeError(f"unknown command {command!r}")

    def _start_round(self, wager: Wager) -> None:
        if wager.variant is GameVariant.CONCEALMENT_GRID:
            wager.grid = grid.start(wager.params.totalCells, wager.params.concealedCount, self.rng, stake=wager.stake)

    # ---- debit -----------------------------------------------------------

    async def _submit_debit(self, wager: Wager):
        key = derive_idempotency_key(wager.wager_id, LegKind.DEBIT)
        with self.session_factory() as db:
            records.get_or_create_record(db, key, wager.wager_id, wager.account_id, LegKind.DEBIT, wager.stake)
        payload = LedgerDebitRequest.from_wager(wager, key).model_dump(mode="json")
        delays = backoff_delays()
        attempt = 0
        while True:
            attempt += 1
            try:
                response = await asyncio.shield(
                    self.handles.call(
                        IdentityKind.AUTHENTICATED,
                        Purpose.LEDGER,
                        lambda client: client.debit(wager.wager_id, payload, key),
                        attempts=1,
                    )
                )
            except DemoModeError as exc:
                self._mark(key, LegStatus.FAILED, last_error=str(exc))
                return DebitFailed(reason=str(exc))
            except RemoteError as exc:
                if not exc.transient:
                    self._mark(key, LegStatus.FAILED, last_error=str(exc))
                    return DebitFailed(reason=exc.kind.value)
                if await self._debit_reflected(wager):
                    logger.info("Debit recovered from active session wagerId=%s attempt=%s", wager.wager_id, attempt)
                    self._mark(key, LegStatus.CONFIRMED)
                    return DebitConfirmed()
                delay = next(delays, None)
                if delay is None or wager.cancelled.is_set():
                    logger.error("Debit not confirmed wagerId=%s attempts=%s kind=%s", wager.wager_id, attempt, exc.kind.value)
                    self._mark(key, LegStatus.FAILED, last_error=str(exc))
                    return DebitFailed(reason=exc.kind.value)
                logger.warning("Retrying debit wagerId=%s attempt=%s backoff=%s", wager.wager_id, attempt, delay)
                await self.sleep(delay)
                continue
            if response.status.lower() not in ACCEPTED_STATUSES:
                self._mark(key, LegStatus.FAILED, last_error=response.status)
                return DebitFailed(reason=response.status)
            wager.debit_reference = response.remoteReference
            self._mark(key, LegStatus.CONFIRMED, remote_reference=response.remoteReference)
            logger.info("Debit confirmed wagerId=%s remoteReference=%s", wager.wager_id, response.remoteReference)
            return DebitConfirmed(remote_reference=response.remoteReference)

    async def _debit_reflected(self, wager: Wager) -> bool:
        try:
            active = await self._remote_active_session()
        except (RemoteError, DemoModeError) as exc:
            logger.warning("Active session lookup failed wagerId=%s error=%s", wager.wager_id, exc)
            return False
        return active is not None and active.wagerId == wager.wager_id and active.status == "active"

    # ---- play ------------------------------------------------------------

    async def _reveal(self, wager: Wager, action: PlayerAction) -> RoundAdvanced:
        if action.action != "reveal" or action.index is None:
            raise InvalidParametersError("grid rounds accept 'reveal' with a cell index", wager_id=wager.wager_id)
        session, outcome = grid.reveal(wager.grid, action.index)
        if wager.remote_authoritative:
            remote = await self._remote_action(wager, action)
            session = self._adopt_grid(wager, session, remote, action.index)
        wager.grid = session
        logger.info(
            "Reveal wagerId=%s index=%s outcome=%s multiplier=%s",
            wager.wager_id,
            action.index,
            outcome.value,
            float(session.multiplier),
        )
        if session.terminal_state is None:
            return RoundAdvanced()
        wager.terminal_state = session.terminal_state
        return RoundAdvanced(terminal_state=session.terminal_state, payout=session.potential_payout)

    def _adopt_grid(self, wager: Wager, local: GameSession, remote: SessionSnapshot, index: int) -> GameSession:
        remote_terminal = remote_status_map.get(remote.status)
        remote_revealed = tuple(remote.revealed)
        if remote_revealed == local.revealed and remote_terminal == local.terminal_state:
            return local
        logger.warning(
            "Local and remote outcomes diverged wagerId=%s index=%s local=%s remote=%s; using remote",
            wager.wager_id,
            index,
            local.terminal_state,
            remote.status,
        )
        # an active remote round discloses no mines; cells it revealed are safe
        if remote.concealed:
            concealed = frozenset(remote.concealed)
        else:
            concealed = local.concealed_set - frozenset(remote_revealed)
        return replace(
            local,
            revealed=remote_revealed,
            concealed_set=concealed,
            terminal_state=remote_terminal,
            multiplier=grid.multiplier_after(local.total_cells, local.concealed_count, len(remote_revealed)),
            exploded_at=index if remote_terminal is TerminalState.LOST else None,
        )

    async def _spin(self, wager: Wager, action: PlayerAction) -> RoundAdvanced:
        if action.action != "spin":
            raise InvalidParametersError("wheel rounds accept 'spin'", wager_id=wager.wager_id)
        params = wager.params
        result = wheel.spin(params.segmentCount, params.riskLevel, self.rng, stake=wager.stake, threshold=params.threshold)
        if wager.remote_authoritative:
            remote = await self._remote_action(wager, action)
            if remote.position is not None and remote.position != result.position:
                logger.warning(
                    "Wheel outcome diverged wagerId=%s local=%s remote=%s; using remote",
                    wager.wager_id,
                    result.position,
                    remote.position,
                )
                segment = wheel.wheel_segments(params.segmentCount, params.riskLevel)[remote.position]
                result = SpinResult(
                    position=remote.position,
                    multiplier=segment.multiplier,
                    payout=remote.payout or 0,
                    threshold=result.threshold,
                )
        wager.spin = result
        wager.terminal_state = TerminalState.WON if result.won else TerminalState.LOST
        logger.info(
            "Spin wagerId=%s position=%s multiplier=%s payout=%s",
            wager.wager_id,
            result.position,
            float(result.multiplier),
            result.payout,
        )
        return RoundAdvanced(terminal_state=wager.terminal_state, payout=result.payout)

    async def _remote_action(self, wager: Wager, action: PlayerAction) -> SessionSnapshot:
        payload = LedgerActionRequest.from_player_action(action, wager.params).model_dump(mode="json")
        return await self.handles.call(
            IdentityKind.AUTHENTICATED,
            Purpose.GAME,
            lambda client: client.apply_action(wager.wager_id, payload),
            cancelled=wager.cancelled,
        )

    # ---- credit ----------------------------------------------------------

    async def _submit_credit(self, wager: Wager, payout: int):
        key = derive_idempotency_key(wager.wager_id, LegKind.CREDIT)
        with self.session_factory() as db:
            record = records.get_or_create_record(db, key, wager.wager_id, wager.account_id, LegKind.CREDIT, payout)
            if record.status == LegStatus.CONFIRMED.value:
                wager.payout = record.amount
                wager.credit_status = LegStatus.CONFIRMED
                return CreditConfirmed(payout=record.amount, remote_reference=record.remote_reference)
        wager.payout = payout
        if wager.credit_baseline is None:
            wager.credit_baseline = await self._balance_or_cached()
        payload = LedgerCreditRequest.from_wager(wager, payout, key).model_dump(mode="json")
        delays = backoff_delays()
        attempt = 0
        while True:
            attempt += 1
            try:
                response = await asyncio.shield(
                    self.handles.call(
                        IdentityKind.AUTHENTICATED,
                        Purpose.LEDGER,
                        lambda client: client.credit(wager.wager_id, payload, key),
                        attempts=1,
                    )
                )
            except (RemoteError, DemoModeError) as exc:
                if await self._credit_reflected(wager, payout):
                    logger.info("Credit already reflected wagerId=%s attempt=%s", wager.wager_id, attempt)
                    return self._confirm_credit(wager, key, payout, None)
                transient = isinstance(exc, RemoteError) and exc.transient
                delay = next(delays, None) if transient else None
                if delay is None or wager.cancelled.is_set():
                    logger.error("Credit unconfirmed wagerId=%s attempts=%s error=%s", wager.wager_id, attempt, exc)
                    wager.credit_status = LegStatus.FAILED
                    self._mark(key, LegStatus.FAILED, last_error=str(exc))
                    return CreditUnconfirmed(reason=str(exc))
                logger.warning("Retrying credit wagerId=%s attempt=%s backoff=%s", wager.wager_id, attempt, delay)
                await self.sleep(delay)
                continue
            if response.status.lower() not in ACCEPTED_STATUSES:
                wager.credit_status = LegStatus.FAILED
                self._mark(key, LegStatus.FAILED, last_error=response.status)
                return CreditUnconfirmed(reason=response.status)
            return self._confirm_credit(wager, key, response.payout, response.remoteReference)

    def _confirm_credit(self, wager: Wager, key: str, payout: int, remote_reference: Optional[str]) -> CreditConfirmed:
        wager.payout = payout
        wager.credit_status = LegStatus.CONFIRMED
        wager.credit_reference = remote_reference
        self._mark(key, LegStatus.CONFIRMED, remote_reference=remote_reference, amount=payout)
        logger.info("Credit confirmed wagerId=%s payout=%s remoteReference=%s", wager.wager_id, payout, remote_reference)
        return CreditConfirmed(payout=payout, remote_reference=remote_reference)

    async def _credit_reflected(self, wager: Wager, payout: int) -> bool:
        """
        True when the remote shows the round closed and, for a non-zero payout,
        the balance has grown by at least the payout since before the credit.
        """
        try:
            active = await self._remote_active_session()
            balance = await self.refresh_balance() if payout else None
        except (RemoteError, DemoModeError) as exc:
            logger.warning("Credit reconciliation lookup failed wagerId=%s error=%s", wager.wager_id, exc)
            return False
        if active is not None and active.wagerId == wager.wager_id and active.status == "active":
            return False
        if not payout:
            return True
        return balance.balance - wager.credit_baseline >= payout

    async def _balance_or_cached(self) -> int:
        try:
            return (await self.refresh_balance()).balance
        except (RemoteError, DemoModeError):
            return self.account.balance

    def _mark(self, key: str, status: LegStatus, **kwargs) -> None:
        with self.session_factory() as db:
            records.mark_record(db, key, status, **kwargs)
