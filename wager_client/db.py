from typing import List, Optional

from sqlalchemy.orm import Session

from wager_client.config import LegKind, LegStatus
from wager_client.models import TransactionRecord


def get_record(db: Session, idempotency_key: str) -> Optional[TransactionRecord]:
    return db.query(TransactionRecord).filter_by(idempotency_key=idempotency_key).first()


def get_or_create_record(
    db: Session,
    idempotency_key: str,
    wager_id: str,
    account_id: str,
    kind: LegKind,
    amount: int,
) -> TransactionRecord:
    """
    Records are keyed by idempotency key; a second create returns the first row untouched.
    """
    existing = get_record(db, idempotency_key)
    if existing:
        return existing
    record = TransactionRecord(
        idempotency_key=idempotency_key,
        wager_id=wager_id,
        account_id=account_id,
        kind=kind.value,
        amount=amount,
        status=LegStatus.PENDING.value,
    )
    db.add(record)
    db.commit()
    db.refresh(record)
    return record


def mark_record(
    db: Session,
    idempotency_key: str,
    status: LegStatus,
    remote_reference: Optional[str] = None,
    amount: Optional[int] = None,
    last_error: Optional[str] = None,
) -> TransactionRecord:
    record = get_record(db, idempotency_key)
    if record is None:
        raise KeyError(idempotency_key)
    record.status = status.value
    if remote_reference is not None:
        record.remote_reference = remote_reference
    if amount is not None:
        record.amount = amount
    record.last_error = last_error
    db.add(record)
    db.commit()
    db.refresh(record)
    return record


def list_records(db: Session, status: Optional[str] = None, wager_id: Optional[str] = None) -> List[TransactionRecord]:
    query = db.query(TransactionRecord)
    if status:
        query = query.filter(TransactionRecord.status == status)
    if wager_id:
        query = query.filter(TransactionRecord.wager_id == wager_id)
    return query.order_by(TransactionRecord.id).all()


def unconfirmed_records(db: Session) -> List[TransactionRecord]:
    return (
        db.query(TransactionRecord)
        .filter(TransactionRecord.status != LegStatus.CONFIRMED.value)
        .order_by(TransactionRecord.id)
        .all()
    )
