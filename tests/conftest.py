import asyncio
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

# Point every engine at in-memory SQLite before the packages are imported.
os.environ.setdefault("DB_URL", "sqlite://")
os.environ.setdefault("LEDGER_DB_URL", "sqlite://")

import pytest
from sqlalchemy.orm import sessionmaker

from wager_client.config import IdentityKind
from wager_client.database import Base, build_engine
from wager_client.errors import RemoteError, RemoteErrorKind
from wager_client.handles import HandleStore
from wager_client import models  # noqa: F401  registers TransactionRecord
from wager_client.schemas.ledger_schemas import (
    CreditResponse,
    DebitResponse,
    SessionSnapshot,
    StatusResponse,
)

START_BALANCE = 1_000_000_000


class FakeLedger:
    """
    In-memory remote ledger shared by every FakeLedgerClient it hands out.

    ``fail(op, kind)`` queues an error for the next call of ``op``; with
    ``applied=True`` the call takes effect and only the response is lost.
    """

    def __init__(self, balance: int = START_BALANCE):
        self.balance = balance
        self.debits = {}
        self.credits = {}
        self.active = None
        self.failures = {}
        self.action_responses = []
        self.reject_authenticated = False
        self.handshakes = {IdentityKind.AUTHENTICATED: 0, IdentityKind.ANONYMOUS: 0}
        self.calls = {}
        self.clients = []

    def fail(self, op: str, kind: RemoteErrorKind = RemoteErrorKind.SERVER, times: int = 1, applied: bool = False):
        self.failures.setdefault(op, []).extend([(kind, applied)] * times)

    def count(self, op: str) -> int:
        return self.calls.get(op, 0)

    def _enter(self, op: str):
        self.calls[op] = self.calls.get(op, 0) + 1
        queued = self.failures.get(op)
        if queued:
            return queued.pop(0)
        return None

    def factory(self, identity_kind: IdentityKind) -> "FakeLedgerClient":
        client = FakeLedgerClient(self, identity_kind)
        self.clients.append(client)
        return client


class FakeLedgerClient:
    def __init__(self, ledger: FakeLedger, identity_kind: IdentityKind):
        self.ledger = ledger
        self.identity_kind = identity_kind
        self.closed = False

    @staticmethod
    def _raise(failure, op: str):
        kind, _ = failure
        raise RemoteError(kind, detail=f"injected {op} failure")

    async def handshake(self):
        ledger = self.ledger
        ledger.handshakes[self.identity_kind] += 1
        if self.identity_kind is IdentityKind.AUTHENTICATED and ledger.reject_authenticated:
            raise RemoteError(RemoteErrorKind.CREDENTIAL, detail="expired_delegation", status_code=401)
        failure = ledger._enter("handshake")
        if failure:
            self._raise(failure, "handshake")
        return StatusResponse(status="ok", rootKey="root")

    async def get_balance(self, account_id):
        failure = self.ledger._enter("get_balance")
        if failure:
            self._raise(failure, "get_balance")
        return self.ledger.balance

    async def get_active_session(self, account_id):
        await asyncio.sleep(0)  # a real lookup suspends on the network
        failure = self.ledger._enter("get_active_session")
        if failure:
            self._raise(failure, "get_active_session")
        return self.ledger.active

    async def debit(self, wager_id, payload, idempotency_key):
        ledger = self.ledger
        failure = ledger._enter("debit")
        if failure and not failure[1]:
            self._raise(failure, "debit")
        if wager_id not in ledger.debits:
            ledger.debits[wager_id] = payload["amount"]
            ledger.balance -= payload["amount"]
            ledger.active = SessionSnapshot(
                wagerId=wager_id, variant=payload["variant"], status="active", stake=payload["amount"]
            )
        if failure:
            self._raise(failure, "debit")
        return DebitResponse(status="OK", remoteReference=f"debit-{wager_id}")

    async def apply_action(self, wager_id, payload):
        failure = self.ledger._enter("apply_action")
        if failure:
            self._raise(failure, "apply_action")
        return self.ledger.action_responses.pop(0)

    async def credit(self, wager_id, payload, idempotency_key):
        ledger = self.ledger
        failure = ledger._enter("credit")
        if failure and not failure[1]:
            self._raise(failure, "credit")
        payout = payload["claimedPayout"] or 0
        if wager_id not in ledger.credits:
            ledger.credits[wager_id] = payout
            ledger.balance += payout
            ledger.active = None
        if failure:
            self._raise(failure, "credit")
        return CreditResponse(status="OK", payout=ledger.credits[wager_id], remoteReference=f"credit-{wager_id}")

    async def force_end_session(self, wager_id):
        self.ledger._enter("force_end_session")
        self.ledger.active = None
        return "force_ended"

    async def aclose(self):
        self.closed = True


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def ledger():
    return FakeLedger()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sleeper():
    return RecordingSleep()


@pytest.fixture
def handles(ledger, clock, sleeper):
    return HandleStore(client_factory=ledger.factory, clock=clock, ttl_seconds=300, sleep=sleeper)


@pytest.fixture
def session_factory():
    engine = build_engine("sqlite://")
    Base.metadata.create_all(bind=engine)
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)
