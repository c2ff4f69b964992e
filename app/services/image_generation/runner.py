"""
generate-with-retry for the image provider: bounded retry budget, jitter,
failure classification, one structured log line per attempt.
"""
import logging
import random
import time
from typing import Any

from app.services.image_generation.base import (
    ImageGenerationError,
    ImageGenerationProvider,
    ImageGenerationRequest,
    ImageGenerationResponse,
)
from app.services.image_generation.failure_types import classify_failure

logger = logging.getLogger(__name__)


def generate_with_retry(
    provider: ImageGenerationProvider,
    request: ImageGenerationRequest,
    settings: Any,
) -> ImageGenerationResponse:
    """
    Generate image, retrying only failures classified as transient.
    Raises the last ImageGenerationError when the budget is exhausted.
    """
    max_attempts = max(1, getattr(settings, "image_generation_retry_max_attempts", 2))
    backoff_seconds = getattr(settings, "image_generation_retry_backoff_seconds", 2.0)
    respect_retry_after = getattr(settings, "image_generation_retry_respect_retry_after", True)

    attempt = 0
    while True:
        attempt += 1
        try:
            result = provider.generate(request)
        except ImageGenerationError as e:
            detail = e.detail
            http_status = detail.get("http_status")
            failure_type, retry_allowed = classify_failure(http_status, detail)
            detail["failure_type"] = failure_type.value
            logger.info(
                "image_generation_result",
                extra={
                    "attempt": attempt,
                    "status_code": http_status,
                    "status": failure_type.value,
                    "error": str(e),
                },
            )
            if not retry_allowed or attempt >= max_attempts:
                raise

            delay = backoff_seconds
            if http_status == 429 and respect_retry_after and detail.get("retry_after"):
                try:
                    delay = float(detail["retry_after"])
                except (TypeError, ValueError):
                    pass
            delay += random.uniform(0, 1)
            logger.info(
                "image_generation_retry_scheduled",
                extra={"attempt": attempt, "status": failure_type.value},
            )
            time.sleep(delay)
            continue

        if attempt > 1:
            logger.info("image_generation_result", extra={"attempt": attempt, "status": "success_after_retry"})
        return result
