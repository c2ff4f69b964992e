import logging

import pybreaker
import redis
from fastapi import APIRouter, Depends, Response
from sqlalchemy import text
from sqlalchemy.orm import Session

from app.core.config import settings
from app.db.session import get_db
from app.services.circuit_breaker import get_circuit_breaker

logger = logging.getLogger(__name__)

router = APIRouter()

BREAKERS = ("yookassa", "image_provider")


@router.get("/health")
def health() -> dict:
    """Liveness probe - always returns 200 if app is running."""
    return {"status": "ok", "service": "credit-ledger"}


@router.get("/ready")
def readiness(response: Response, db: Session = Depends(get_db)) -> dict:
    """
    Readiness probe: 503 if PostgreSQL or Redis is unreachable.
    An open gateway breaker does not make the API unready (webhooks still queue), it is only reported.
    """
    try:
        db.execute(text("SELECT 1"))
        redis.Redis.from_url(settings.redis_url, decode_responses=True).ping()
    except Exception as e:
        logger.warning("readiness_failed", extra={"error": str(e)})
        response.status_code = 503
        return {"status": "not_ready", "error": str(e)}

    breakers = {}
    for name in BREAKERS:
        state = get_circuit_breaker(name).current_state
        breakers[name] = state
        if state == pybreaker.STATE_OPEN:
            logger.warning("readiness_breaker_open", extra={"breaker_name": name})
    return {"status": "ready", "breakers": breakers}
