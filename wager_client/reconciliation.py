import csv
from io import StringIO
from typing import Dict, List, Optional, Tuple

from wager_client import db as records
from wager_client.config import IdentityKind, Purpose
from wager_client.database import SessionLocal
from wager_client.errors import DemoModeError, RemoteError
from wager_client.handles import HandleStore
from wager_client.logging_config import get_logger


logger = get_logger(__name__)

HEADER = ["idempotencyKey", "wagerId", "accountId", "kind", "amount", "localStatus", "remoteActive", "lastError"]


async def _remote_active_wagers(handles: HandleStore, account_ids: List[str]) -> Dict[str, Optional[str]]:
    """Active remote wager per account; None where the remote could not be asked."""
    active: Dict[str, Optional[str]] = {}
    for account_id in account_ids:
        try:
            snapshot = await handles.call(
                IdentityKind.ANONYMOUS,
                Purpose.GAME,
                lambda client, account_id=account_id: client.get_active_session(account_id),
            )
        except (RemoteError, DemoModeError) as exc:
            logger.warning("Could not query remote session account=%s error=%s", account_id, exc)
            active[account_id] = None
            continue
        active[account_id] = snapshot.wagerId if snapshot is not None and snapshot.status == "active" else ""
    return active


async def generate_reconciliation_csv(handles: HandleStore, session_factory=SessionLocal) -> Tuple[str, int]:
    """
    List every settlement leg that is not confirmed, with whether the remote
    still reports the wager as active. Returns CSV text plus the row count.
    """
    with session_factory() as db:
        pending = records.unconfirmed_records(db)
        rows: List[tuple] = [
            (r.idempotency_key, r.wager_id, r.account_id, r.kind, r.amount, r.status, r.last_error)
            for r in pending
        ]

    active = await _remote_active_wagers(handles, sorted({row[2] for row in rows}))

    output = StringIO()
    writer = csv.writer(output)
    writer.writerow(HEADER)
    for key, wager_id, account_id, kind, amount, status, last_error in rows:
        remote = active.get(account_id)
        remote_active = "unknown" if remote is None else remote == wager_id
        writer.writerow([key, wager_id, account_id, kind, amount, status, remote_active, last_error or ""])

    logger.info("Reconciliation complete with %s unconfirmed legs", len(rows))
    return output.getvalue(), len(rows)
