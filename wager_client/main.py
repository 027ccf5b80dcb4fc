import asyncio
from typing import Optional

from fastapi import Depends, FastAPI, Query, Request, Response
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from wager_client import db as records
from wager_client.amounts import format_amount
from wager_client.config import settings
from wager_client.database import Base, engine, get_db
from wager_client.errors import RemoteError, WagerError
from wager_client.handles import HandleStore
from wager_client.helpers import serialize_record
from wager_client.logging_config import get_logger
from wager_client.orchestrator import SettlementOrchestrator
from wager_client.reconciliation import generate_reconciliation_csv
from wager_client.schemas.app_schemas import (
    BalanceView,
    ModeView,
    PlaceWagerRequest,
    PlayerAction,
    SettlementResult,
    WagerHandle,
)
from wager_client.schemas.ledger_schemas import SessionSnapshot
from wager_client.security import require_bearer_token


logger = get_logger(__name__)

Base.metadata.create_all(bind=engine)
app = FastAPI(title="Wager Settlement Client")

_orchestrator: Optional[SettlementOrchestrator] = None


def get_orchestrator() -> SettlementOrchestrator:
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = SettlementOrchestrator(HandleStore())
    return _orchestrator


@app.on_event("startup")
async def startup_event():
    logger.info("Starting periodic balance refresher account=%s", settings.account_id)
    loop = asyncio.get_event_loop()
    loop.create_task(get_orchestrator().run_balance_refresher())


@app.exception_handler(WagerError)
async def wager_error_handler(request: Request, exc: WagerError):
    logger.info("Wager request failed path=%s error=%s detail=%s", request.url.path, type(exc).__name__, exc.detail)
    return JSONResponse(
        status_code=exc.http_status,
        content={"detail": exc.detail, "error": type(exc).__name__, "wagerId": exc.wager_id},
    )


@app.exception_handler(RemoteError)
async def remote_error_handler(request: Request, exc: RemoteError):
    logger.warning("Ledger unavailable path=%s kind=%s", request.url.path, exc.kind.value)
    return JSONResponse(status_code=503, content={"detail": str(exc), "error": exc.kind.value})


@app.post("/wagers", response_model=WagerHandle)
async def place_wager(request: PlaceWagerRequest, orchestrator: SettlementOrchestrator = Depends(get_orchestrator)):
    wager = await orchestrator.place_wager(request.stake, request.variant, request.params, unit=request.unit)
    return orchestrator.handle_view(wager)


@app.get("/wagers/{wager_id}", response_model=SessionSnapshot)
async def get_wager(wager_id: str, orchestrator: SettlementOrchestrator = Depends(get_orchestrator)):
    return orchestrator.snapshot(orchestrator.get_wager(wager_id))


@app.post("/wagers/{wager_id}/actions", response_model=SessionSnapshot)
async def apply_player_action(
    wager_id: str,
    action: PlayerAction,
    orchestrator: SettlementOrchestrator = Depends(get_orchestrator),
):
    return await orchestrator.apply_player_action(wager_id, action)


@app.post("/wagers/{wager_id}/cashout", response_model=SettlementResult)
async def cash_out(wager_id: str, orchestrator: SettlementOrchestrator = Depends(get_orchestrator)):
    return await orchestrator.cash_out(wager_id)


@app.post("/wagers/{wager_id}/settle", response_model=SettlementResult)
async def retry_settlement(wager_id: str, orchestrator: SettlementOrchestrator = Depends(get_orchestrator)):
    return await orchestrator.retry_settlement(wager_id)


@app.get("/balance", response_model=BalanceView)
async def get_balance(orchestrator: SettlementOrchestrator = Depends(get_orchestrator)):
    balance = orchestrator.get_cached_balance()
    return BalanceView(
        accountId=orchestrator.account.account_id,
        balance=balance,
        formatted=format_amount(balance),
        lastSyncedAt=orchestrator.account.last_synced_at,
    )


@app.get("/mode", response_model=ModeView)
async def get_mode(orchestrator: SettlementOrchestrator = Depends(get_orchestrator)):
    return ModeView(mode=orchestrator.get_mode())


@app.get("/transactions")
async def list_transactions(
    status: str | None = None,
    wager_id: str | None = Query(None, alias="wagerId"),
    db: Session = Depends(get_db),
):
    return [serialize_record(r) for r in records.list_records(db, status=status, wager_id=wager_id)]


@app.get("/reconciliation_data")
async def download_reconciliation_csv(orchestrator: SettlementOrchestrator = Depends(get_orchestrator)):
    csv_text, unconfirmed = await generate_reconciliation_csv(orchestrator.handles, orchestrator.session_factory)
    return Response(
        content=csv_text,
        media_type="text/csv",
        headers={
            "Content-Disposition": 'attachment; filename="reconciliation.csv"',
            "X-Unconfirmed-Count": str(unconfirmed),
        },
    )


@app.post("/admin/wagers/{wager_id}/force-end")
async def force_end_session(
    wager_id: str,
    _auth=Depends(require_bearer_token),
    orchestrator: SettlementOrchestrator = Depends(get_orchestrator),
):
    """
    Operator-only: discard a stuck session on the remote and resolve it locally.
    """
    status = await orchestrator.force_end_session(wager_id)
    return {"status": status, "wagerId": wager_id}


@app.post("/admin/mode/live")
async def restore_live_mode(
    _auth=Depends(require_bearer_token),
    orchestrator: SettlementOrchestrator = Depends(get_orchestrator),
):
    orchestrator.handles.restore_live()
    return ModeView(mode=orchestrator.get_mode())


@app.get("/health")
async def health():
    return {"status": "ok"}
