"""
LedgerService: the only writer of users.balance.

Responsibilities:
- Credit (exactly once per idempotency key), settling pending gateway top-ups in place
- Debit for a generation with an atomic balance check
- Completing a generation, with a compensating refund on failure
- Reconciling gateway payment events
- Invariant audit: balance == sum(succeeded transactions)

Every mutating method is one unit of work: commit on success, rollback on any error.
Concurrent calls for one user serialize on the user row (SELECT ... FOR UPDATE);
balance changes are atomic UPDATEs, and the debit is guarded by balance >= cost.
"""
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.exceptions import (
    DuplicateEventError,
    InsufficientBalanceError,
    PaymentAmountMismatchError,
    ReconciliationError,
    UnknownGenerationError,
    UnknownPaymentError,
    UnknownUserError,
)
from app.models.generation import FailureSource, Generation, GenerationStatus
from app.models.transaction import Transaction, TransactionKind, TransactionStatus
from app.models.user import User
from app.schemas.payments import PaymentEvent
from app.utils.metrics import balance_rejected_total, generations_total, ledger_operations_total

logger = logging.getLogger(__name__)

# YooKassa cancellation_details.reason values that mean "nobody paid" rather than "payment failed"
NOT_PAID_REASONS = frozenset({
    "expired_on_confirmation",
    "expired_on_capture",
    "canceled_by_merchant",
    "deal_expired",
})


@dataclass(frozen=True)
class BalanceAudit:
    user_id: str
    balance: int
    ledger_sum: int

    @property
    def consistent(self) -> bool:
        return self.balance == self.ledger_sum


class LedgerService:
    def __init__(self, db: Session, refund_on_postprocess_failure: bool | None = None):
        self.db = db
        if refund_on_postprocess_failure is None:
            refund_on_postprocess_failure = settings.refund_on_postprocess_failure
        self.refund_on_postprocess_failure = refund_on_postprocess_failure

    @contextmanager
    def _unit_of_work(self):
        try:
            yield
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_balance(self, user_id: str) -> int:
        row = self.db.query(User.balance).filter(User.id == user_id).one_or_none()
        if row is None:
            raise UnknownUserError(user_id)
        return row.balance

    def list_transactions(self, user_id: str, limit: int = 50) -> list[Transaction]:
        """Последние транзакции пользователя, новые первыми."""
        return (
            self.db.query(Transaction)
            .filter(Transaction.user_id == user_id)
            .order_by(Transaction.created_at.desc())
            .limit(limit)
            .all()
        )

    def get_by_external_ref(self, external_ref: str) -> Transaction | None:
        return (
            self.db.query(Transaction)
            .filter(Transaction.external_ref == external_ref)
            .one_or_none()
        )

    def list_pending_top_ups(
        self,
        created_before: datetime,
        created_after: datetime | None = None,
        limit: int = 100,
    ) -> list[Transaction]:
        query = self.db.query(Transaction).filter(
            Transaction.kind == TransactionKind.TOP_UP,
            Transaction.status == TransactionStatus.PENDING,
            Transaction.created_at < created_before,
        )
        if created_after is not None:
            query = query.filter(Transaction.created_at >= created_after)
        return query.order_by(Transaction.created_at).limit(limit).all()

    # ------------------------------------------------------------------
    # Credit
    # ------------------------------------------------------------------

    def record_pending_top_up(
        self,
        user_id: str,
        amount: int,
        external_ref: str,
        description: str | None = None,
    ) -> Transaction:
        """
        Persist the pending top-up for a created payment intent.
        Must be committed before the user is redirected to checkout.
        Idempotent by external_ref.
        """
        if amount <= 0:
            raise ValueError("top-up amount must be positive")
        try:
            with self._unit_of_work():
                if self.db.query(User.id).filter(User.id == user_id).one_or_none() is None:
                    raise UnknownUserError(user_id)
                tx = Transaction(
                    user_id=user_id,
                    kind=TransactionKind.TOP_UP,
                    amount=amount,
                    status=TransactionStatus.PENDING,
                    external_ref=external_ref,
                    description=description,
                )
                self.db.add(tx)
                self.db.flush()
        except IntegrityError:
            existing = self.get_by_external_ref(external_ref)
            if existing is None:
                raise
            return existing
        logger.info(
            "top_up_pending_recorded",
            extra={"user_id": user_id, "payment_id": external_ref, "amount": amount},
        )
        return tx

    def credit_balance(
        self,
        user_id: str,
        amount: int,
        external_ref: str | None,
        idempotency_key: str,
        *,
        kind: str = TransactionKind.TOP_UP,
        description: str | None = None,
        on_applied: Callable[[Transaction], None] | None = None,
    ) -> Transaction:
        """
        Атомарно зачисляет amount на баланс пользователя.
        Idempotent: если транзакция с idempotency_key уже есть, возвращает её без изменений.
        A pending transaction with the same external_ref is settled in place,
        otherwise a new succeeded transaction is inserted.
        on_applied runs inside the same unit of work, only when this call applies the credit.
        """
        if amount <= 0:
            raise ValueError("credit amount must be positive")
        if not idempotency_key:
            raise ValueError("idempotency_key is required")

        existing = self._find_applied(idempotency_key, external_ref)
        if existing is not None:
            self._log_duplicate(existing, idempotency_key)
            return existing

        try:
            with self._unit_of_work():
                user = self._lock_user(user_id)
                tx = self._settle_or_insert_credit(
                    user, amount, external_ref, idempotency_key, kind, description
                )
                self._apply_delta(user.id, amount)
                self.db.flush()
                if on_applied is not None:
                    on_applied(tx)
        except (DuplicateEventError, IntegrityError):
            # Lost a race against a concurrent delivery of the same event
            existing = self._find_applied(idempotency_key, external_ref)
            if existing is None:
                raise
            self._log_duplicate(existing, idempotency_key)
            return existing

        ledger_operations_total.labels(operation="credit").inc()
        logger.info(
            "balance_credited",
            extra={
                "user_id": user_id,
                "transaction_id": tx.id,
                "payment_id": external_ref,
                "amount": amount,
                "balance": self.get_balance(user_id),
            },
        )
        return tx

    def _settle_or_insert_credit(
        self,
        user: User,
        amount: int,
        external_ref: str | None,
        idempotency_key: str,
        kind: str,
        description: str | None,
    ) -> Transaction:
        now = datetime.now(timezone.utc)
        pending = self.get_by_external_ref(external_ref) if external_ref else None
        if pending is None:
            tx = Transaction(
                user_id=user.id,
                kind=kind,
                amount=amount,
                status=TransactionStatus.SUCCEEDED,
                external_ref=external_ref,
                idempotency_key=idempotency_key,
                description=description,
                reconciled_at=now if external_ref else None,
            )
            self.db.add(tx)
            return tx

        if pending.status == TransactionStatus.SUCCEEDED:
            raise DuplicateEventError(f"payment {external_ref} already credited")
        if pending.status != TransactionStatus.PENDING:
            raise ReconciliationError(
                f"payment {external_ref} is already {pending.status}",
                {"payment_id": external_ref, "status": pending.status},
            )
        if pending.user_id != user.id:
            raise ReconciliationError(
                f"payment {external_ref} belongs to another user",
                {"payment_id": external_ref, "user_id": user.id},
            )
        if pending.amount != amount:
            raise PaymentAmountMismatchError(external_ref, pending.amount, amount)

        result = self.db.execute(
            update(Transaction)
            .where(Transaction.id == pending.id, Transaction.status == TransactionStatus.PENDING)
            .values(
                status=TransactionStatus.SUCCEEDED,
                idempotency_key=idempotency_key,
                reconciled_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise DuplicateEventError(f"payment {external_ref} settled concurrently")
        self.db.refresh(pending)
        return pending

    def _find_applied(self, idempotency_key: str, external_ref: str | None) -> Transaction | None:
        tx = (
            self.db.query(Transaction)
            .filter(Transaction.idempotency_key == idempotency_key)
            .one_or_none()
        )
        if tx is None and external_ref:
            tx = self.get_by_external_ref(external_ref)
            if tx is not None and tx.status != TransactionStatus.SUCCEEDED:
                return None
        return tx

    def _log_duplicate(self, tx: Transaction, idempotency_key: str) -> None:
        ledger_operations_total.labels(operation="duplicate").inc()
        logger.info(
            "credit_already_applied",
            extra={
                "transaction_id": tx.id,
                "user_id": tx.user_id,
                "idempotency_key": idempotency_key,
            },
        )

    # ------------------------------------------------------------------
    # Debit / generations
    # ------------------------------------------------------------------

    def debit_for_generation(
        self,
        user_id: str,
        cost: int,
        idempotency_key: str | None = None,
        config: dict | None = None,
    ) -> Generation:
        """
        Atomically check balance >= cost, write the debit and create a requested Generation.
        Raises InsufficientBalanceError with no mutation when the balance does not cover cost.
        The idempotency key is client-supplied, so it is stored scoped to the user.
        """
        if cost <= 0:
            raise ValueError("cost must be positive")
        scoped_key = f"{user_id}:{idempotency_key}" if idempotency_key else None
        if scoped_key:
            existing = self._get_generation_by_key(scoped_key)
            if existing is not None:
                return existing

        try:
            with self._unit_of_work():
                user = self._lock_user(user_id)
                if user.balance < cost:
                    raise InsufficientBalanceError(user.id, user.balance, cost)
                result = self.db.execute(
                    update(User)
                    .where(User.id == user.id, User.balance >= cost)
                    .values(balance=User.balance - cost)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 0:
                    raise InsufficientBalanceError(user.id, user.balance, cost)

                debit = Transaction(
                    user_id=user.id,
                    kind=TransactionKind.DEBIT,
                    amount=-cost,
                    status=TransactionStatus.SUCCEEDED,
                    idempotency_key=f"debit:{scoped_key}" if scoped_key else None,
                    description="generation",
                )
                self.db.add(debit)
                self.db.flush()
                generation = Generation(
                    user_id=user.id,
                    transaction_id=debit.id,
                    cost=cost,
                    status=GenerationStatus.REQUESTED,
                    idempotency_key=scoped_key,
                    config=config,
                )
                self.db.add(generation)
                self.db.flush()
        except InsufficientBalanceError as e:
            balance_rejected_total.inc()
            logger.info(
                "debit_rejected",
                extra={"user_id": user_id, "balance": e.balance, "cost": cost},
            )
            raise
        except IntegrityError:
            existing = self._get_generation_by_key(scoped_key) if scoped_key else None
            if existing is None:
                raise
            return existing

        ledger_operations_total.labels(operation="debit").inc()
        logger.info(
            "generation_debited",
            extra={"user_id": user_id, "generation_id": generation.id, "cost": cost},
        )
        return generation

    def complete_generation(
        self,
        generation_id: str,
        success: bool,
        failure_source: str = FailureSource.PROVIDER,
        error: str | None = None,
        result_url: str | None = None,
    ) -> Generation:
        """
        requested -> completed | failed. A failure issues a compensating refund
        (always for provider failures; for post-processing failures per policy).
        Completing an already terminal generation is a no-op.
        """
        generation = self.db.query(Generation).filter(Generation.id == generation_id).one_or_none()
        if generation is None:
            raise UnknownGenerationError(generation_id)

        refunded = False
        with self._unit_of_work():
            self._lock_user(generation.user_id)
            generation = (
                self.db.query(Generation)
                .filter(Generation.id == generation_id)
                .with_for_update()
                .populate_existing()
                .one()
            )
            if generation.status != GenerationStatus.REQUESTED:
                logger.info(
                    "generation_already_completed",
                    extra={"generation_id": generation_id, "status": generation.status},
                )
                return generation

            generation.completed_at = datetime.now(timezone.utc)
            if success:
                generation.status = GenerationStatus.COMPLETED
                generation.result_url = result_url
            else:
                generation.status = GenerationStatus.FAILED
                generation.failure_source = failure_source
                generation.error = error
                if self._should_refund(failure_source):
                    refund = Transaction(
                        user_id=generation.user_id,
                        kind=TransactionKind.REFUND,
                        amount=generation.cost,
                        status=TransactionStatus.SUCCEEDED,
                        idempotency_key=f"refund:{generation.id}",
                        description=f"refund for failed generation ({failure_source})",
                    )
                    self.db.add(refund)
                    self.db.flush()
                    self._apply_delta(generation.user_id, generation.cost)
                    generation.refund_transaction_id = refund.id
                    refunded = True
            self.db.add(generation)
            self.db.flush()

        generations_total.labels(status=generation.status).inc()
        if refunded:
            ledger_operations_total.labels(operation="refund").inc()
        logger.info(
            "generation_completed",
            extra={
                "generation_id": generation_id,
                "user_id": generation.user_id,
                "status": generation.status,
                "amount": generation.cost if refunded else 0,
                "error": error,
            },
        )
        return generation

    def _should_refund(self, failure_source: str) -> bool:
        if failure_source == FailureSource.POSTPROCESS:
            return self.refund_on_postprocess_failure
        return True

    def _get_generation_by_key(self, idempotency_key: str) -> Generation | None:
        return (
            self.db.query(Generation)
            .filter(Generation.idempotency_key == idempotency_key)
            .one_or_none()
        )

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    def reconcile_payment(self, event: PaymentEvent) -> Transaction:
        """
        Apply a gateway observation to the pending top-up it refers to, exactly once.
        Raises UnknownPaymentError when no local transaction references the payment.
        """
        tx = self.get_by_external_ref(event.payment_id)
        if tx is None:
            logger.warning(
                "reconcile_unknown_payment",
                extra={"payment_id": event.payment_id, "event": event.event},
            )
            raise UnknownPaymentError(event.payment_id)

        if event.is_succeeded:
            if tx.status == TransactionStatus.SUCCEEDED:
                self._log_duplicate(tx, event.payment_id)
                return tx
            if tx.status != TransactionStatus.PENDING:
                logger.error(
                    "reconcile_success_for_closed_payment",
                    extra={"payment_id": event.payment_id, "status": tx.status},
                )
                return tx
            if event.amount != tx.amount:
                logger.error(
                    "reconcile_amount_mismatch",
                    extra={"payment_id": event.payment_id, "amount": event.amount},
                )
                raise PaymentAmountMismatchError(event.payment_id, tx.amount, event.amount)
            return self.credit_balance(
                tx.user_id,
                tx.amount,
                external_ref=event.payment_id,
                idempotency_key=event.payment_id,
                description=tx.description,
            )

        if event.is_canceled:
            if tx.status != TransactionStatus.PENDING:
                return tx
            new_status = (
                TransactionStatus.CANCELED
                if event.cancellation_reason in NOT_PAID_REASONS or not event.cancellation_reason
                else TransactionStatus.FAILED
            )
            with self._unit_of_work():
                self.db.execute(
                    update(Transaction)
                    .where(Transaction.id == tx.id, Transaction.status == TransactionStatus.PENDING)
                    .values(status=new_status, reconciled_at=datetime.now(timezone.utc))
                    .execution_options(synchronize_session=False)
                )
            self.db.refresh(tx)
            logger.info(
                "payment_closed_without_credit",
                extra={
                    "payment_id": event.payment_id,
                    "status": tx.status,
                    "error": event.cancellation_reason,
                },
            )
            return tx

        logger.info(
            "reconcile_status_ignored",
            extra={"payment_id": event.payment_id, "status": event.status},
        )
        return tx

    def expire_pending(self, created_before: datetime) -> int:
        """Mark pending top-ups created before the cutoff as canceled. Returns the row count."""
        with self._unit_of_work():
            result = self.db.execute(
                update(Transaction)
                .where(
                    Transaction.kind == TransactionKind.TOP_UP,
                    Transaction.status == TransactionStatus.PENDING,
                    Transaction.created_at < created_before,
                )
                .values(status=TransactionStatus.CANCELED, reconciled_at=datetime.now(timezone.utc))
                .execution_options(synchronize_session=False)
            )
        if result.rowcount:
            ledger_operations_total.labels(operation="expire").inc(result.rowcount)
        return result.rowcount

    # ------------------------------------------------------------------
    # Invariant audit
    # ------------------------------------------------------------------

    def audit_balance(self, user_id: str) -> BalanceAudit:
        balance = self.get_balance(user_id)
        ledger_sum = (
            self.db.query(func.coalesce(func.sum(Transaction.amount), 0))
            .filter(
                Transaction.user_id == user_id,
                Transaction.status == TransactionStatus.SUCCEEDED,
            )
            .scalar()
        )
        return BalanceAudit(user_id=user_id, balance=balance, ledger_sum=int(ledger_sum))

    def find_drift(self) -> list[BalanceAudit]:
        """All users whose cached balance differs from their ledger."""
        sums = (
            self.db.query(
                Transaction.user_id.label("user_id"),
                func.sum(Transaction.amount).label("total"),
            )
            .filter(Transaction.status == TransactionStatus.SUCCEEDED)
            .group_by(Transaction.user_id)
            .subquery()
        )
        rows = (
            self.db.query(User.id, User.balance, func.coalesce(sums.c.total, 0))
            .outerjoin(sums, sums.c.user_id == User.id)
            .all()
        )
        return [
            BalanceAudit(user_id=uid, balance=balance, ledger_sum=int(total))
            for uid, balance, total in rows
            if balance != int(total)
        ]

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _lock_user(self, user_id: str) -> User:
        user = (
            self.db.query(User)
            .filter(User.id == user_id)
            .with_for_update()
            .populate_existing()
            .one_or_none()
        )
        if user is None:
            raise UnknownUserError(user_id)
        return user

    def _apply_delta(self, user_id: str, delta: int) -> None:
        self.db.execute(
            update(User)
            .where(User.id == user_id)
            .values(balance=User.balance + delta)
            .execution_options(synchronize_session=False)
        )
