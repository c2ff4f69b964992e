from datetime import datetime, time, timezone

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.exceptions import UnknownUserError
from app.models.access_request import AccessRequest
from app.models.company import Company
from app.models.generation import Generation
from app.models.transaction import Transaction, TransactionKind, TransactionStatus
from app.models.user import User, UserRole


class UserService:
    def __init__(self, db: Session):
        self.db = db

    def get_or_create_user(
        self,
        telegram_id: str,
        name: str | None = None,
        username: str | None = None,
    ) -> User:
        """Пользователь создаётся при первом обращении; admin_telegram_ids получают роль admin."""
        telegram_id = str(telegram_id)
        user = self.get_by_telegram_id(telegram_id)
        if user:
            if (name is not None and name != user.name) or (username is not None and username != user.username):
                if name is not None:
                    user.name = name
                if username is not None:
                    user.username = username
                self.db.add(user)
                self.db.commit()
                self.db.refresh(user)
            return user
        is_admin = telegram_id in settings.admin_telegram_ids_set
        user = User(
            telegram_id=telegram_id,
            name=name,
            username=username,
            balance=0,
            role=UserRole.ADMIN if is_admin else UserRole.USER,
            has_access=is_admin,
        )
        self.db.add(user)
        try:
            self.db.commit()
        except IntegrityError:
            # concurrent first contact
            self.db.rollback()
            return self.get_by_telegram_id(telegram_id)
        self.db.refresh(user)
        return user

    def get_by_telegram_id(self, telegram_id: str) -> User | None:
        return self.db.query(User).filter(User.telegram_id == str(telegram_id)).one_or_none()

    def get(self, user_id: str) -> User:
        user = self.db.query(User).filter(User.id == user_id).one_or_none()
        if user is None:
            raise UnknownUserError(user_id)
        return user

    def set_blocked(self, user_id: str, blocked: bool) -> User:
        user = self.get(user_id)
        user.is_blocked = blocked
        self.db.add(user)
        self.db.commit()
        self.db.refresh(user)
        return user

    # ------------------------------------------------------------------
    # Companies
    # ------------------------------------------------------------------

    def create_company(self, name: str) -> Company:
        company = Company(name=name, is_active=True)
        self.db.add(company)
        self.db.commit()
        self.db.refresh(company)
        return company

    def list_companies(self, include_inactive: bool = False) -> list[Company]:
        query = self.db.query(Company)
        if not include_inactive:
            query = query.filter(Company.is_active.is_(True))
        return query.order_by(Company.name).all()

    def get_company(self, company_id: str) -> Company | None:
        return self.db.query(Company).filter(Company.id == company_id).one_or_none()

    def deactivate_company(self, company_id: str) -> Company | None:
        """Компании не удаляются: пользователи и история остаются на месте."""
        company = self.get_company(company_id)
        if company is None:
            return None
        company.is_active = False
        self.db.add(company)
        self.db.commit()
        self.db.refresh(company)
        return company

    def assign_company(self, user: User, company_id: str | None) -> User:
        user.company_id = company_id
        self.db.add(user)
        self.db.commit()
        self.db.refresh(user)
        return user

    # ------------------------------------------------------------------
    # Admin reports
    # ------------------------------------------------------------------

    def low_balance_users(self, threshold: int | None = None) -> list[User]:
        """Активные пользователи, которым не хватает на следующую генерацию (по умолчанию)."""
        if threshold is None:
            threshold = settings.generation_cost
        return (
            self.db.query(User)
            .filter(User.balance < threshold, User.is_blocked.is_(False))
            .order_by(User.balance.asc())
            .all()
        )

    def stats(self) -> dict[str, int]:
        today_start = datetime.combine(datetime.now(timezone.utc).date(), time.min, tzinfo=timezone.utc)
        q = self.db.query
        return {
            "users": q(func.count(User.id)).scalar() or 0,
            "blocked": q(func.count(User.id)).filter(User.is_blocked.is_(True)).scalar() or 0,
            "companies": q(func.count(Company.id)).scalar() or 0,
            "total_balance": int(q(func.coalesce(func.sum(User.balance), 0)).scalar() or 0),
            "generations": q(func.count(Generation.id)).scalar() or 0,
            "access_requests": q(func.count(AccessRequest.id)).scalar() or 0,
            "today_generations": (
                q(func.count(Generation.id)).filter(Generation.requested_at >= today_start).scalar() or 0
            ),
            "today_top_ups": int(
                q(func.coalesce(func.sum(Transaction.amount), 0))
                .filter(
                    Transaction.kind == TransactionKind.TOP_UP,
                    Transaction.status == TransactionStatus.SUCCEEDED,
                    Transaction.created_at >= today_start,
                )
                .scalar()
                or 0
            ),
        }
