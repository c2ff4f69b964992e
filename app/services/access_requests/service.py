"""
AccessRequestService: заявки на доступ (onboarding) и на роль администратора.

pending -> approved | denied; both terminal. Only admins review.
Approval grants the capability in the same transaction as the status change.
"""
import logging
from datetime import datetime, timezone

from sqlalchemy.orm import Session

from app.core.exceptions import (
    AlreadyReviewedError,
    PermissionDeniedError,
    UnknownAccessRequestError,
    UnknownUserError,
)
from app.models.access_request import AccessRequest, AccessRequestStatus, Capability
from app.models.company import Company
from app.models.user import User, UserRole
from app.services.audit.service import AuditService

logger = logging.getLogger(__name__)


class AccessRequestService:
    def __init__(self, db: Session):
        self.db = db
        self.audit = AuditService(db)

    def submit(
        self,
        user_id: str,
        capability: str = Capability.ACCESS,
        company_id: str | None = None,
        comment: str | None = None,
    ) -> AccessRequest:
        """Создать заявку. Повторная заявка при уже ожидающей возвращает существующую."""
        if capability not in Capability.ALL:
            raise ValueError(f"unknown capability: {capability}")
        if self.db.query(User.id).filter(User.id == user_id).one_or_none() is None:
            raise UnknownUserError(user_id)

        existing = (
            self.db.query(AccessRequest)
            .filter(
                AccessRequest.user_id == user_id,
                AccessRequest.capability == capability,
                AccessRequest.status == AccessRequestStatus.PENDING,
            )
            .first()
        )
        if existing:
            return existing

        request = AccessRequest(
            user_id=user_id,
            capability=capability,
            company_id=company_id,
            comment=comment,
            status=AccessRequestStatus.PENDING,
        )
        self.db.add(request)
        self.db.commit()
        self.db.refresh(request)
        logger.info(
            "access_request_submitted",
            extra={"user_id": user_id, "capability": capability, "company_id": company_id},
        )
        return request

    def list_pending(self) -> list[AccessRequest]:
        return (
            self.db.query(AccessRequest)
            .filter(AccessRequest.status == AccessRequestStatus.PENDING)
            .order_by(AccessRequest.created_at)
            .all()
        )

    def approve(self, request_id: str, reviewer_id: str, comment: str | None = None) -> AccessRequest:
        return self._review(request_id, reviewer_id, AccessRequestStatus.APPROVED, comment)

    def deny(self, request_id: str, reviewer_id: str, comment: str | None = None) -> AccessRequest:
        return self._review(request_id, reviewer_id, AccessRequestStatus.DENIED, comment)

    def _review(
        self,
        request_id: str,
        reviewer_id: str,
        decision: str,
        comment: str | None,
    ) -> AccessRequest:
        try:
            reviewer = self.db.query(User).filter(User.id == reviewer_id).one_or_none()
            if reviewer is None or not reviewer.is_admin or reviewer.is_blocked:
                raise PermissionDeniedError(
                    "Only administrators can review access requests",
                    {"reviewer_id": reviewer_id},
                )

            request = (
                self.db.query(AccessRequest)
                .filter(AccessRequest.id == request_id)
                .with_for_update()
                .populate_existing()
                .one_or_none()
            )
            if request is None:
                raise UnknownAccessRequestError(request_id)
            if request.status != AccessRequestStatus.PENDING:
                raise AlreadyReviewedError(request_id, request.status)

            request.status = decision
            request.reviewed_by_id = reviewer.id
            request.reviewed_at = datetime.now(timezone.utc)
            if comment is not None:
                request.comment = comment
            self.db.add(request)

            if decision == AccessRequestStatus.APPROVED:
                self._grant(request)

            self.audit.record(
                actor_type="admin",
                actor_id=reviewer.id,
                action=f"access_request_{decision}",
                entity_type="access_request",
                entity_id=request.id,
                payload={
                    "user_id": request.user_id,
                    "capability": request.capability,
                    "company_id": request.company_id,
                    "comment": comment,
                },
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        self.db.refresh(request)
        logger.info(
            "access_request_reviewed",
            extra={
                "user_id": request.user_id,
                "capability": request.capability,
                "status": request.status,
                "reviewer_id": reviewer_id,
            },
        )
        return request

    def _grant(self, request: AccessRequest) -> None:
        user = (
            self.db.query(User)
            .filter(User.id == request.user_id)
            .with_for_update()
            .populate_existing()
            .one()
        )
        if request.capability == Capability.ADMIN:
            user.role = UserRole.ADMIN
            user.has_access = True
        else:
            user.has_access = True
            if request.company_id:
                company = self.db.query(Company).filter(Company.id == request.company_id).one_or_none()
                if company is not None and company.is_active:
                    user.company_id = company.id
                else:
                    logger.warning(
                        "access_request_company_skipped",
                        extra={"user_id": user.id, "company_id": request.company_id},
                    )
        self.db.add(user)
