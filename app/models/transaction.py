"""
Transaction: immutable ledger entry.
Invariant: sum(amount of succeeded rows) == users.balance for every user.
external_ref: payment id at the gateway (YooKassa), set for gateway top-ups.
idempotency_key: unique per real-world event; a second credit with the same key is a no-op.
"""
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, String

from app.db.base import Base


class TransactionKind:
    TOP_UP = "top_up"
    DEBIT = "debit"
    REFUND = "refund"
    ADJUSTMENT = "adjustment"


class TransactionStatus:
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"

    TERMINAL = (SUCCEEDED, FAILED, CANCELED)


class Transaction(Base):
    __tablename__ = "transactions"
    __table_args__ = (
        Index("ix_transactions_status_created", "status", "created_at"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    kind = Column(String, nullable=False)
    amount = Column(Integer, nullable=False)                 # signed, minor units
    status = Column(String, nullable=False, default=TransactionStatus.PENDING)
    external_ref = Column(String, unique=True, nullable=True)
    idempotency_key = Column(String, unique=True, nullable=True)
    description = Column(String, nullable=True)
    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    reconciled_at = Column(DateTime(timezone=True), nullable=True)
