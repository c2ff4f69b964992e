"""
Admin API (X-Admin-Key): access requests, users and companies, manual credit,
ledger audit, statistics.
Reviewer identity is the admin's telegram id; the services check the role.
"""
import logging
import secrets

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.exceptions import PermissionDeniedError, UnknownUserError
from app.db.session import get_db
from app.models.transaction import Transaction, TransactionKind
from app.models.user import User
from app.schemas.admin import (
    AccessRequestOut,
    AssignCompanyIn,
    AuditLogOut,
    BlockIn,
    CompanyIn,
    CompanyOut,
    DriftOut,
    ManualCreditIn,
    ReviewIn,
    StatsOut,
    UserBalanceOut,
    UserOut,
)
from app.schemas.wallet import TransactionOut
from app.services.access_requests.service import AccessRequestService
from app.services.audit.service import AuditService
from app.services.ledger.service import LedgerService
from app.services.users.service import UserService

logger = logging.getLogger(__name__)


def require_admin_key(x_admin_key: str | None = Header(default=None)) -> None:
    if not settings.admin_api_key:
        raise HTTPException(status_code=503, detail="Admin API is disabled")
    if not x_admin_key or not secrets.compare_digest(x_admin_key, settings.admin_api_key):
        raise HTTPException(status_code=401, detail="Invalid admin key")


router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin_key)])


def _reviewer(db: Session, telegram_id: str) -> User:
    user = UserService(db).get_by_telegram_id(telegram_id)
    if user is None:
        raise UnknownUserError(telegram_id)
    return user


def _admin_reviewer(db: Session, telegram_id: str, action: str) -> User:
    reviewer = _reviewer(db, telegram_id)
    if not reviewer.is_admin or reviewer.is_blocked:
        raise PermissionDeniedError(f"Only administrators can {action}", {"reviewer_id": reviewer.id})
    return reviewer


# ---------- Access requests ----------
@router.get("/access-requests", response_model=list[AccessRequestOut])
def list_access_requests(db: Session = Depends(get_db)):
    return AccessRequestService(db).list_pending()


@router.post("/access-requests/{request_id}/approve", response_model=AccessRequestOut)
def approve_access_request(request_id: str, payload: ReviewIn, db: Session = Depends(get_db)):
    reviewer = _reviewer(db, payload.reviewer_telegram_id)
    return AccessRequestService(db).approve(request_id, reviewer.id, comment=payload.comment)


@router.post("/access-requests/{request_id}/deny", response_model=AccessRequestOut)
def deny_access_request(request_id: str, payload: ReviewIn, db: Session = Depends(get_db)):
    reviewer = _reviewer(db, payload.reviewer_telegram_id)
    return AccessRequestService(db).deny(request_id, reviewer.id, comment=payload.comment)


# ---------- Users ----------
@router.post("/users/{user_id}/block", response_model=UserOut)
def block_user(user_id: str, payload: BlockIn, db: Session = Depends(get_db)):
    """Блокировка / разблокировка. Заблокированный пользователь не может пополнять и генерировать."""
    reviewer = _admin_reviewer(db, payload.reviewer_telegram_id, "block users")
    users = UserService(db)
    user = users.set_blocked(user_id, payload.blocked)
    AuditService(db).log(
        actor_type="admin",
        actor_id=reviewer.id,
        action="user_blocked" if payload.blocked else "user_unblocked",
        entity_type="user",
        entity_id=user.id,
    )
    return user


@router.post("/users/{user_id}/company", response_model=UserOut)
def assign_company(user_id: str, payload: AssignCompanyIn, db: Session = Depends(get_db)):
    """Перевод пользователя в другую компанию; company_id=null убирает привязку."""
    reviewer = _admin_reviewer(db, payload.reviewer_telegram_id, "move users between companies")
    users = UserService(db)
    user = users.get(user_id)
    if payload.company_id is not None:
        company = users.get_company(payload.company_id)
        if company is None or not company.is_active:
            raise HTTPException(status_code=404, detail="Company not found or inactive")
    previous = user.company_id
    user = users.assign_company(user, payload.company_id)
    AuditService(db).log(
        actor_type="admin",
        actor_id=reviewer.id,
        action="company_assigned",
        entity_type="user",
        entity_id=user.id,
        payload={"from": previous, "to": payload.company_id},
    )
    return user


@router.get("/users/{user_id}/audit", response_model=list[AuditLogOut])
def user_audit(user_id: str, db: Session = Depends(get_db)):
    UserService(db).get(user_id)
    return AuditService(db).list_for_entity("user", user_id)


# ---------- Companies ----------
@router.get("/companies", response_model=list[CompanyOut])
def list_companies(include_inactive: bool = Query(default=False), db: Session = Depends(get_db)):
    return UserService(db).list_companies(include_inactive=include_inactive)


@router.post("/companies", response_model=CompanyOut, status_code=201)
def create_company(payload: CompanyIn, db: Session = Depends(get_db)):
    reviewer = _admin_reviewer(db, payload.reviewer_telegram_id, "create companies")
    company = UserService(db).create_company(payload.name)
    AuditService(db).log(
        actor_type="admin",
        actor_id=reviewer.id,
        action="company_created",
        entity_type="company",
        entity_id=company.id,
        payload={"name": company.name},
    )
    return company


@router.post("/companies/{company_id}/deactivate", response_model=CompanyOut)
def deactivate_company(company_id: str, payload: ReviewIn, db: Session = Depends(get_db)):
    reviewer = _admin_reviewer(db, payload.reviewer_telegram_id, "deactivate companies")
    company = UserService(db).deactivate_company(company_id)
    if company is None:
        raise HTTPException(status_code=404, detail="Company not found")
    AuditService(db).log(
        actor_type="admin",
        actor_id=reviewer.id,
        action="company_deactivated",
        entity_type="company",
        entity_id=company.id,
    )
    return company


# ---------- Ledger ----------
@router.post("/users/{user_id}/credit", response_model=TransactionOut)
def manual_credit(user_id: str, payload: ManualCreditIn, db: Session = Depends(get_db)):
    """Ручное пополнение (например, оплата по счёту). Idempotent by (user, reference)."""
    reviewer = _admin_reviewer(db, payload.reviewer_telegram_id, "credit balances")

    def audit(tx: Transaction) -> None:
        AuditService(db).record(
            actor_type="admin",
            actor_id=reviewer.id,
            action="manual_credit",
            entity_type="transaction",
            entity_id=tx.id,
            payload={"user_id": user_id, "amount": payload.amount, "reference": payload.reference},
        )

    return LedgerService(db).credit_balance(
        user_id,
        payload.amount,
        external_ref=None,
        idempotency_key=f"manual:{user_id}:{payload.reference}",
        kind=TransactionKind.TOP_UP,
        description=payload.description or "manual top-up",
        on_applied=audit,
    )


@router.get("/ledger/drift", response_model=list[DriftOut])
def ledger_drift(db: Session = Depends(get_db)):
    return [
        DriftOut(user_id=a.user_id, balance=a.balance, ledger_sum=a.ledger_sum)
        for a in LedgerService(db).find_drift()
    ]


# ---------- Reports ----------
@router.get("/stats", response_model=StatsOut)
def stats(db: Session = Depends(get_db)):
    return UserService(db).stats()


@router.get("/users/low-balance", response_model=list[UserBalanceOut])
def low_balance_users(
    threshold: int | None = Query(default=None, ge=0, description="Minor units; default = one generation"),
    db: Session = Depends(get_db),
):
    return UserService(db).low_balance_users(threshold)
