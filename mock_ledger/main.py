import logging
import os
import random
import uuid
from fractions import Fraction
from typing import List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy import JSON, Column, DateTime, Integer, String, UniqueConstraint
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.sql import func

from wager_client.config import TerminalState
from wager_client.database import build_engine
from wager_client.errors import InvalidIndexError
from wager_client.games import grid, wheel
from wager_client.security import signature_is_valid

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger("mock-ledger")

STARTING_BALANCE = int(os.getenv("LEDGER_STARTING_BALANCE", str(1_000 * 10**8)))
IDENTITY_TOKEN = os.getenv("LEDGER_IDENTITY_TOKEN", "dev-identity")
ROOT_KEY = os.getenv("LEDGER_ROOT_KEY", "mock-root-key")

DB_URL = os.getenv("LEDGER_DB_URL", "sqlite:////data/ledger.db")
engine = build_engine(DB_URL)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()

app = FastAPI(title="Mock Ledger")
rng = random.SystemRandom()


class DebitBody(BaseModel):
    accountId: str
    amount: int
    variant: str
    params: dict = {}
    idempotencyKey: Optional[str] = None


class CreditBody(BaseModel):
    accountId: str
    claimedPayout: Optional[int] = None
    terminalState: Optional[str] = None
    revealed: List[int] = []
    idempotencyKey: Optional[str] = None


class ActionBody(BaseModel):
    action: str
    index: Optional[int] = None
    params: Optional[dict] = None


class Account(Base):
    __tablename__ = "accounts"
    id = Column(String, primary_key=True)
    balance = Column(Integer, nullable=False)


class LedgerEntry(Base):
    __tablename__ = "ledger_entries"
    id = Column(Integer, primary_key=True)
    wager_id = Column(String, index=True, nullable=False)
    account_id = Column(String, index=True, nullable=False)
    direction = Column(String, nullable=False)
    amount = Column(Integer, nullable=False)
    reference = Column(String, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    __table_args__ = (UniqueConstraint("wager_id", "direction", name="uq_wager_direction"),)


class RemoteSession(Base):
    __tablename__ = "sessions"
    wager_id = Column(String, primary_key=True)
    account_id = Column(String, index=True, nullable=False)
    variant = Column(String, nullable=False)
    stake = Column(Integer, nullable=False)
    status = Column(String, nullable=False, default="active")
    params = Column(JSON, nullable=False)
    concealed = Column(JSON, nullable=False, default=list)
    revealed = Column(JSON, nullable=False, default=list)
    played_remotely = Column(Integer, nullable=False, default=0)
    position = Column(Integer, nullable=True)
    payout = Column(Integer, nullable=True)


Base.metadata.create_all(bind=engine)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def _error(status_code: int, code: str):
    return HTTPException(status_code=status_code, detail={"code": code})


@app.exception_handler(HTTPException)
async def ledger_error_handler(request: Request, exc: HTTPException):
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


async def verify_signature(request: Request, x_signature: str | None = Header(None), x_timestamp: str | None = Header(None)):
    if not x_signature or not x_timestamp:
        return
    body = await request.json() if request.method != "GET" else {}
    if not signature_is_valid(body or {}, x_signature, x_timestamp):
        raise _error(401, "signature_verification_failed")


def require_identity(authorization: str | None = Header(None, alias="Authorization")):
    if authorization != f"Bearer {IDENTITY_TOKEN}":
        raise _error(401, "expired_delegation")


def _account(db: Session, account_id: str) -> Account:
    account = db.get(Account, account_id)
    if account is None:
        account = Account(id=account_id, balance=STARTING_BALANCE)
        db.add(account)
        db.commit()
        db.refresh(account)
    return account


def _entry(db: Session, wager_id: str, direction: str) -> Optional[LedgerEntry]:
    return db.query(LedgerEntry).filter_by(wager_id=wager_id, direction=direction).first()


def _grid_session(row: RemoteSession) -> grid.GameSession:
    params = row.params
    terminal = None if row.status == "active" else TerminalState(row.status)
    revealed = tuple(row.revealed)
    return grid.GameSession(
        total_cells=params["totalCells"],
        concealed_count=params["concealedCount"],
        concealed_set=frozenset(row.concealed),
        stake=row.stake,
        revealed=revealed,
        multiplier=grid.multiplier_after(params["totalCells"], params["concealedCount"], len(revealed)),
        terminal_state=terminal,
    )


def _snapshot(row: RemoteSession) -> dict:
    terminal = row.status != "active"
    multiplier = 1.0
    if row.variant == "concealment_grid":
        multiplier = float(grid.multiplier_after(row.params["totalCells"], row.params["concealedCount"], len(row.revealed)))
    elif row.position is not None:
        segments = wheel.wheel_segments(row.params["segmentCount"], row.params["riskLevel"])
        multiplier = float(segments[row.position].multiplier)
    return {
        "wagerId": row.wager_id,
        "variant": row.variant,
        "status": row.status,
        "stake": row.stake,
        "revealed": list(row.revealed),
        "concealed": list(row.concealed) if terminal else [],
        "multiplier": multiplier,
        "payout": row.payout,
        "position": row.position,
    }


def _remote_payout(row: RemoteSession, body: CreditBody) -> int:
    if row.variant == "concealment_grid":
        if row.played_remotely:
            if row.status == "lost":
                return 0
            session = _grid_session(row)
            return grid.payout_for(row.stake, session.multiplier)
        if body.terminalState == "lost" or not body.revealed:
            return 0
        params = row.params
        ceiling = grid.payout_for(
            row.stake, grid.multiplier_after(params["totalCells"], params["concealedCount"], len(body.revealed))
        )
        return min(body.claimedPayout or 0, ceiling)
    if row.played_remotely:
        return row.payout or 0
    top = max(m for m, _ in wheel.RISK_TABLES[wheel.RiskLevel(row.params["riskLevel"])])
    return min(body.claimedPayout or 0, grid.payout_for(row.stake, Fraction(top)))


@app.get("/status")
async def status(authorization: str | None = Header(None, alias="Authorization")):
    if authorization is not None and authorization != f"Bearer {IDENTITY_TOKEN}":
        raise _error(401, "expired_delegation")
    return {"status": "ok", "rootKey": ROOT_KEY}


@app.get("/accounts/{account_id}/balance")
async def get_balance(account_id: str, db: Session = Depends(get_db)):
    return {"accountId": account_id, "balance": _account(db, account_id).balance}


@app.get("/accounts/{account_id}/active-session")
async def get_active_session(account_id: str, db: Session = Depends(get_db)):
    row = db.query(RemoteSession).filter_by(account_id=account_id, status="active").first()
    return _snapshot(row) if row else None


@app.post("/wagers/{wager_id}/debit", dependencies=[Depends(require_identity), Depends(verify_signature)])
async def debit(wager_id: str, body: DebitBody, db: Session = Depends(get_db)):
    existing = _entry(db, wager_id, "debit")
    if existing:
        logger.info("Existing debit found wagerId=%s, skipping new insert", wager_id)
        return {"status": "OK", "remoteReference": existing.reference}
    if db.query(RemoteSession).filter_by(account_id=body.accountId, status="active").first():
        raise _error(409, "session_active")
    account = _account(db, body.accountId)
    if account.balance < body.amount:
        raise _error(402, "insufficient_funds")
    account.balance -= body.amount
    concealed: List[int] = []
    if body.variant == "concealment_grid":
        concealed = sorted(grid.sample_without_replacement(body.params["totalCells"], body.params["concealedCount"], rng))
    reference = str(uuid.uuid4())
    db.add(LedgerEntry(wager_id=wager_id, account_id=body.accountId, direction="debit", amount=body.amount, reference=reference))
    db.add(RemoteSession(
        wager_id=wager_id,
        account_id=body.accountId,
        variant=body.variant,
        stake=body.amount,
        params=body.params,
        concealed=concealed,
        revealed=[],
    ))
    db.commit()
    logger.info("Stored debit wagerId=%s account=%s amount=%s", wager_id, body.accountId, body.amount)
    return {"status": "OK", "remoteReference": reference}


@app.post("/wagers/{wager_id}/actions", dependencies=[Depends(require_identity), Depends(verify_signature)])
async def apply_action(wager_id: str, body: ActionBody, db: Session = Depends(get_db)):
    row = db.get(RemoteSession, wager_id)
    if row is None:
        raise _error(404, "not_found")
    if row.status != "active":
        raise _error(409, "session_closed")
    row.played_remotely = 1
    if row.variant == "concealment_grid" and body.action == "reveal":
        try:
            session, _ = grid.reveal(_grid_session(row), body.index)
        except InvalidIndexError as exc:
            raise _error(422, "invalid_index") from exc
        row.revealed = list(session.revealed)
        if session.terminal_state is not None:
            row.status = session.terminal_state.value
    elif row.variant == "wheel" and body.action == "spin":
        params = body.params or row.params
        result = wheel.spin(params["segmentCount"], params["riskLevel"], rng, stake=row.stake, threshold=params.get("threshold", 0))
        row.position = result.position
        row.payout = result.payout
        row.status = "won" if result.won else "lost"
    else:
        raise _error(422, "unsupported_action")
    db.add(row)
    db.commit()
    logger.info("Applied action wagerId=%s action=%s status=%s", wager_id, body.action, row.status)
    return _snapshot(row)


@app.post("/wagers/{wager_id}/credit", dependencies=[Depends(require_identity), Depends(verify_signature)])
async def credit(wager_id: str, body: CreditBody, db: Session = Depends(get_db)):
    existing = _entry(db, wager_id, "credit")
    if existing:
        logger.info("Existing credit found wagerId=%s, skipping new insert", wager_id)
        return {"status": "OK", "payout": existing.amount, "remoteReference": existing.reference}
    row = db.get(RemoteSession, wager_id)
    if row is None:
        raise _error(404, "not_found")
    if row.status == "force_ended":
        raise _error(409, "session_closed")
    payout = _remote_payout(row, body)
    if row.status == "active":
        row.status = body.terminalState or "cashed_out"
    account = _account(db, row.account_id)
    account.balance += payout
    reference = str(uuid.uuid4())
    db.add(LedgerEntry(wager_id=wager_id, account_id=row.account_id, direction="credit", amount=payout, reference=reference))
    db.add(row)
    db.commit()
    logger.info("Stored credit wagerId=%s payout=%s", wager_id, payout)
    return {"status": "OK", "payout": payout, "remoteReference": reference}


@app.post("/wagers/{wager_id}/force-end", dependencies=[Depends(require_identity)])
async def force_end(wager_id: str, db: Session = Depends(get_db)):
    row = db.get(RemoteSession, wager_id)
    if row is None:
        raise _error(404, "not_found")
    if row.status == "active":
        row.status = "force_ended"
        db.add(row)
        db.commit()
        logger.warning("Force-ended session wagerId=%s", wager_id)
    return {"status": row.status}


@app.post("/admin/clear-db")
async def clear_db(db: Session = Depends(get_db)):
    """
    Dangerous: clears all mock ledger accounts, entries and sessions.
    """
    db.query(LedgerEntry).delete()
    db.query(RemoteSession).delete()
    db.query(Account).delete()
    db.commit()
    logger.warning("Cleared mock ledger via admin endpoint")
    return {"status": "cleared"}
