"""
YooKassa webhook. Always answers 200 quickly; the actual work happens in the
reconcile_payment task, which re-reads the payment from the gateway.
"""
import logging

from fastapi import APIRouter, HTTPException, Request
from fastapi.concurrency import run_in_threadpool

from app.api.client_ip import get_client_ip, is_allowed_webhook_source
from app.core.config import settings
from app.services.payments.yookassa import parse_webhook
from app.utils.metrics import payment_events_total
from app.workers.tasks.payments import reconcile_payment

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["payments"])


@router.post("/yookassa/webhook")
async def yookassa_webhook(request: Request) -> dict:
    client_ip = get_client_ip(request)
    if settings.yookassa_verify_webhook_ip and not is_allowed_webhook_source(client_ip):
        logger.warning("webhook_source_rejected", extra={"error": client_ip})
        raise HTTPException(status_code=403, detail="Forbidden")

    try:
        body = await request.json()
    except ValueError:
        body = None

    event = parse_webhook(body)
    if event is None or not event.event.startswith("payment."):
        payment_events_total.labels(source="webhook", outcome="ignored").inc()
        logger.warning("webhook_ignored", extra={"event": (body or {}).get("event") if isinstance(body, dict) else None})
        return {"status": "ignored"}

    # delay() is a blocking broker round-trip
    await run_in_threadpool(reconcile_payment.delay, event.payment_id, event.event)
    payment_events_total.labels(source="webhook", outcome="accepted").inc()
    logger.info(
        "webhook_accepted",
        extra={"payment_id": event.payment_id, "event": event.event, "status": event.status},
    )
    return {"status": "accepted"}
