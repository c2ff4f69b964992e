"""
Celery tasks: payment reconciliation.

reconcile_payment: enqueued by the webhook; re-reads the payment from YooKassa and applies it.
poll_pending_payments / expire_stale_payments / audit_balances: beat schedule (app.core.celery_app).
"""
import logging

from app.core.celery_app import celery_app
from app.core.config import settings
from app.core.exceptions import GatewayError, UnknownPaymentError
from app.db.session import SessionLocal
from app.services.ledger.service import LedgerService
from app.services.payments.service import PaymentService
from app.utils.metrics import ledger_drift_users

logger = logging.getLogger(__name__)


@celery_app.task(
    bind=True,
    name="app.workers.tasks.payments.reconcile_payment",
    max_retries=settings.webhook_reconcile_max_retries,
    default_retry_delay=settings.webhook_reconcile_retry_delay,
    time_limit=60,
    soft_time_limit=55,
)
def reconcile_payment(self, payment_id: str, event: str | None = None) -> dict:
    """
    Webhook delivery is at-least-once: repeats are no-ops in the ledger.
    Unknown payment (webhook overtook the pending row) or gateway unavailable -> bounded retries.
    """
    db = SessionLocal()
    service = PaymentService(db)
    try:
        try:
            tx = service.refresh_and_reconcile(payment_id, source="webhook")
        except UnknownPaymentError:
            if self.request.retries >= self.max_retries:
                logger.error(
                    "reconcile_payment_dropped",
                    extra={"payment_id": payment_id, "event": event, "attempt": self.request.retries},
                )
                return {"ok": False, "error": "unknown_payment"}
            raise self.retry()
        except GatewayError:
            if self.request.retries >= self.max_retries:
                logger.error("reconcile_payment_gateway_unavailable", extra={"payment_id": payment_id})
                return {"ok": False, "error": "gateway_unavailable"}
            raise self.retry()
        if tx is None:
            return {"ok": False, "payment_id": payment_id, "error": "dropped"}
        return {"ok": True, "payment_id": payment_id, "status": tx.status}
    finally:
        service.gateway.close()
        db.close()


@celery_app.task(
    name="app.workers.tasks.payments.poll_pending_payments",
    time_limit=300,
    soft_time_limit=280,
)
def poll_pending_payments() -> dict:
    """Covers lost webhooks: asks the gateway about pending top-ups."""
    db = SessionLocal()
    try:
        service = PaymentService(db)
        try:
            counts = service.poll_pending()
        finally:
            service.gateway.close()
        return {"ok": True, **counts}
    finally:
        db.close()


@celery_app.task(
    name="app.workers.tasks.payments.expire_stale_payments",
    time_limit=300,
    soft_time_limit=280,
)
def expire_stale_payments() -> dict:
    """One last poll, then pending top-ups older than the TTL become canceled."""
    db = SessionLocal()
    try:
        service = PaymentService(db)
        try:
            expired = service.expire_stale()
        finally:
            service.gateway.close()
        return {"ok": True, "expired": expired}
    finally:
        db.close()


@celery_app.task(
    name="app.workers.tasks.payments.audit_balances",
    time_limit=120,
    soft_time_limit=110,
)
def audit_balances() -> dict:
    """balance == sum(succeeded transactions) for every user; drift is logged, never auto-fixed."""
    db = SessionLocal()
    try:
        drift = LedgerService(db).find_drift()
        ledger_drift_users.set(len(drift))
        for audit in drift:
            logger.error(
                "ledger_drift_detected",
                extra={"user_id": audit.user_id, "balance": audit.balance, "amount": audit.ledger_sum},
            )
        return {"ok": True, "drift": len(drift)}
    finally:
        db.close()
