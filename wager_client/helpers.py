import uuid

from wager_client.config import LegKind
from wager_client.models import TransactionRecord


def new_wager_id() -> str:
    return str(uuid.uuid4())


def derive_idempotency_key(wager_id: str, kind: LegKind) -> str:
    return f"{wager_id}-{kind.value}"


def serialize_record(record: TransactionRecord) -> dict:
    return {
        "id": record.id,
        "idempotencyKey": record.idempotency_key,
        "wagerId": record.wager_id,
        "accountId": record.account_id,
        "kind": record.kind,
        "amount": record.amount,
        "status": record.status,
        "remoteReference": record.remote_reference,
        "lastError": record.last_error,
        "createdAt": record.created_at.isoformat() if record.created_at else None,
        "updatedAt": record.updated_at.isoformat() if record.updated_at else None,
    }
