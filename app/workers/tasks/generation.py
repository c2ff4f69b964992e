"""
Celery task: run a paid generation (already debited) and settle it.
Enqueued by POST /wallet/{telegram_id}/generations.
"""
import logging

from app.core.celery_app import celery_app
from app.core.exceptions import UnknownGenerationError
from app.db.session import SessionLocal
from app.models.generation import GenerationStatus
from app.services.generations.service import GenerationService

logger = logging.getLogger(__name__)


@celery_app.task(
    name="app.workers.tasks.generation.run_generation",
    time_limit=300,
    soft_time_limit=280,
)
def run_generation(generation_id: str, input_image_path: str | None = None) -> dict:
    db = SessionLocal()
    try:
        try:
            generation = GenerationService(db).run(generation_id, input_image_path=input_image_path)
        except UnknownGenerationError:
            logger.error("run_generation_not_found", extra={"generation_id": generation_id})
            return {"ok": False, "error": "generation_not_found"}
        return {
            "ok": generation.status == GenerationStatus.COMPLETED,
            "generation_id": generation.id,
            "status": generation.status,
            "refunded": generation.refund_transaction_id is not None,
        }
    finally:
        db.close()
