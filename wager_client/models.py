from sqlalchemy import Column, DateTime, Integer, String
from sqlalchemy.sql import func

from wager_client.database import Base


class TransactionRecord(Base):
    __tablename__ = "transaction_records"
    id = Column(Integer, primary_key=True)
    idempotency_key = Column(String, unique=True, index=True, nullable=False)
    wager_id = Column(String, index=True, nullable=False)
    account_id = Column(String, index=True, nullable=False)
    kind = Column(String, nullable=False)  # debit|credit
    amount = Column(Integer, nullable=False)
    status = Column(String, nullable=False)  # pending|confirmed|failed
    remote_reference = Column(String, nullable=True)
    last_error = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
