from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text

from app.db.base import Base, JSONType


class GenerationStatus:
    REQUESTED = "requested"
    COMPLETED = "completed"
    FAILED = "failed"


class FailureSource:
    PROVIDER = "provider"        # the paid API call itself failed
    POSTPROCESS = "postprocess"  # provider succeeded, our handling of the result failed


class Generation(Base):
    """One paid unit of service. Always created after its debit transaction."""

    __tablename__ = "generations"

    id = Column(String, primary_key=True, default=lambda: str(uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    transaction_id = Column(String, ForeignKey("transactions.id"), nullable=False, index=True)
    refund_transaction_id = Column(String, ForeignKey("transactions.id"), nullable=True)
    cost = Column(Integer, nullable=False)
    status = Column(String, nullable=False, default=GenerationStatus.REQUESTED)
    failure_source = Column(String, nullable=True)
    error = Column(Text, nullable=True)
    idempotency_key = Column(String, unique=True, nullable=True)
    config = Column(JSONType, nullable=True)      # generation parameters (ceiling color, texture, ...)
    result_url = Column(String, nullable=True)
    requested_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    completed_at = Column(DateTime(timezone=True), nullable=True)
