from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import Boolean, CheckConstraint, Column, DateTime, ForeignKey, Integer, String

from app.db.base import Base


class UserRole:
    USER = "user"
    ADMIN = "admin"


class User(Base):
    __tablename__ = "users"
    __table_args__ = (CheckConstraint("balance >= 0", name="ck_users_balance_non_negative"),)

    id = Column(String, primary_key=True, default=lambda: str(uuid4()))
    telegram_id = Column(String, unique=True, nullable=False, index=True)
    company_id = Column(String, ForeignKey("companies.id"), nullable=True, index=True)
    name = Column(String, nullable=True)
    username = Column(String, nullable=True)   # @nickname
    # Minor units (kopecks). Written only by LedgerService.
    balance = Column(Integer, nullable=False, default=0)
    role = Column(String, nullable=False, default=UserRole.USER)
    has_access = Column(Boolean, nullable=False, default=False)  # granted by an approved access request
    is_blocked = Column(Boolean, nullable=False, default=False)
    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN

    def can_use_service(self) -> bool:
        """Admins always; others need approved access and must not be blocked."""
        if self.is_blocked:
            return False
        return self.is_admin or bool(self.has_access)
