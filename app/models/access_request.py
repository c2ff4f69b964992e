from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import Column, DateTime, ForeignKey, String, Text

from app.db.base import Base


class Capability:
    ACCESS = "access"  # onboarding: use the paid service
    ADMIN = "admin"

    ALL = (ACCESS, ADMIN)


class AccessRequestStatus:
    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"


class AccessRequest(Base):
    """pending -> approved | denied. Both terminal."""

    __tablename__ = "access_requests"

    id = Column(String, primary_key=True, default=lambda: str(uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    capability = Column(String, nullable=False, default=Capability.ACCESS)
    company_id = Column(String, ForeignKey("companies.id"), nullable=True)
    status = Column(String, nullable=False, default=AccessRequestStatus.PENDING)
    reviewed_by_id = Column(String, ForeignKey("users.id"), nullable=True)
    comment = Column(Text, nullable=True)
    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    reviewed_at = Column(DateTime(timezone=True), nullable=True)
