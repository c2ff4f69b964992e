"""
PaymentService: пополнение баланса через YooKassa.

Ответственности:
- Создание платежа и запись pending-транзакции до редиректа на оплату
- Обработка событий шлюза (webhook / опрос) через LedgerService.reconcile_payment
- Периодический опрос зависших pending-платежей и их истечение по TTL

The gateway is always asked for the authoritative status before crediting;
webhook bodies only identify which payment to look at.
"""
import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.exceptions import (
    GatewayError,
    ReconciliationError,
    UnknownPaymentError,
    UnknownUserError,
)
from app.models.transaction import Transaction, TransactionStatus
from app.models.user import User
from app.schemas.payments import PaymentEvent
from app.services.ledger.service import LedgerService
from app.services.payments.yookassa import YooKassaClient
from app.utils.currency import format_rub
from app.utils.metrics import payment_events_total

logger = logging.getLogger(__name__)


class PaymentService:
    def __init__(
        self,
        db: Session,
        gateway: YooKassaClient | None = None,
        ledger: LedgerService | None = None,
    ):
        self.db = db
        self.gateway = gateway or YooKassaClient()
        self.ledger = ledger or LedgerService(db)

    # ------------------------------------------------------------------
    # Top-up
    # ------------------------------------------------------------------

    def request_top_up(self, user: User, amount: int, return_url: str | None = None) -> tuple[Transaction, str]:
        """
        Создать платёж на amount копеек и записать pending-транзакцию.
        Returns: (pending transaction, confirmation_url)
        Raises GatewayError when the gateway refuses or is unreachable; nothing is recorded then.
        """
        intent = self.gateway.create_payment_intent(
            amount,
            description=f"Пополнение баланса на {format_rub(amount)}",
            return_url=return_url,
            metadata={"user_id": user.id, "telegram_id": user.telegram_id},
        )
        if not intent.success or not intent.payment_id:
            payment_events_total.labels(source="create", outcome="gateway_error").inc()
            raise GatewayError(intent.error or "payment was not created", {"user_id": user.id})

        tx = self.ledger.record_pending_top_up(
            user.id,
            amount,
            external_ref=intent.payment_id,
            description=f"Пополнение {format_rub(amount)}",
        )
        payment_events_total.labels(source="create", outcome="pending").inc()
        logger.info(
            "top_up_requested",
            extra={
                "user_id": user.id,
                "payment_id": intent.payment_id,
                "amount": amount,
                "status": intent.status,
            },
        )
        return tx, intent.confirmation_url or ""

    # ------------------------------------------------------------------
    # Gateway events
    # ------------------------------------------------------------------

    def refresh_and_reconcile(self, payment_id: str, source: str = "webhook") -> Transaction | None:
        """
        Ask the gateway for the payment's current status and apply it to the ledger.
        Returns None when the event was dropped (logged).
        Raises GatewayError when the status could not be fetched (retry later),
        UnknownPaymentError when no local transaction references the payment.
        """
        status = self.gateway.get_payment_status(payment_id)
        if not status.success:
            payment_events_total.labels(source=source, outcome="status_unavailable").inc()
            logger.warning(
                "payment_status_unavailable",
                extra={"payment_id": payment_id, "error": status.error, "event": source},
            )
            raise GatewayError(status.error or "payment status unavailable", {"payment_id": payment_id})
        event = PaymentEvent.from_status(payment_id, status)
        return self.handle_event(event, source=source, raise_unknown=True)

    def handle_event(
        self,
        event: PaymentEvent,
        source: str = "webhook",
        raise_unknown: bool = False,
    ) -> Transaction | None:
        """
        Apply a normalized gateway event. Reconciliation errors are logged and dropped,
        except UnknownPaymentError with raise_unknown=True (caller retries).
        """
        try:
            tx = self.ledger.reconcile_payment(event)
        except ReconciliationError as e:
            if raise_unknown and isinstance(e, UnknownPaymentError):
                raise
            payment_events_total.labels(source=source, outcome="dropped").inc()
            logger.error(
                "payment_event_dropped",
                extra={"payment_id": event.payment_id, "event": event.event, "error": str(e)},
            )
            return None
        except UnknownUserError as e:
            payment_events_total.labels(source=source, outcome="dropped").inc()
            logger.error(
                "payment_event_dropped",
                extra={"payment_id": event.payment_id, "event": event.event, "error": str(e)},
            )
            return None

        payment_events_total.labels(source=source, outcome=tx.status).inc()
        return tx

    # ------------------------------------------------------------------
    # Periodic reconciliation
    # ------------------------------------------------------------------

    def poll_pending(self, limit: int = 100) -> dict[str, int]:
        """
        Опросить шлюз по pending-платежам старше payment_poll_min_age_minutes
        (и моложе TTL). Covers lost or never-delivered webhooks.
        """
        now = datetime.now(timezone.utc)
        pending = self.ledger.list_pending_top_ups(
            created_before=now - timedelta(minutes=settings.payment_poll_min_age_minutes),
            created_after=now - timedelta(hours=settings.payment_pending_ttl_hours),
            limit=limit,
        )
        counts = self._refresh_many(pending)
        logger.info("payment_poll_done", extra={"counts": counts})
        return counts

    def expire_stale(self, limit: int = 100) -> int:
        """
        Pending-платежи старше TTL: последний опрос шлюза, затем canceled (без начисления).
        """
        cutoff = datetime.now(timezone.utc) - timedelta(hours=settings.payment_pending_ttl_hours)
        self._refresh_many(self.ledger.list_pending_top_ups(created_before=cutoff, limit=limit))
        expired = self.ledger.expire_pending(cutoff)
        if expired:
            payment_events_total.labels(source="expire", outcome=TransactionStatus.CANCELED).inc(expired)
            logger.info("pending_payments_expired", extra={"counts": {"expired": expired}})
        return expired

    def _refresh_many(self, pending: list[Transaction]) -> dict[str, int]:
        counts = {"checked": 0, "settled": 0, "still_pending": 0, "unavailable": 0, "dropped": 0}
        for tx in pending:
            counts["checked"] += 1
            try:
                result = self.refresh_and_reconcile(tx.external_ref, source="poll")
            except GatewayError:
                counts["unavailable"] += 1
                continue
            except ReconciliationError as e:
                counts["dropped"] += 1
                logger.error("payment_poll_failed", extra={"payment_id": tx.external_ref, "error": str(e)})
                continue
            if result is None:
                counts["dropped"] += 1
            elif result.status == TransactionStatus.PENDING:
                counts["still_pending"] += 1
            else:
                counts["settled"] += 1
        return counts
