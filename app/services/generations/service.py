"""
GenerationService: выполнение оплаченной генерации.

The debit already happened (LedgerService.debit_for_generation); this runs the provider
and settles the generation: completed, or failed with a compensating refund.
"""
import logging
import time

import pybreaker
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.exceptions import ProviderError, UnknownGenerationError
from app.models.generation import FailureSource, Generation, GenerationStatus
from app.services.circuit_breaker import get_circuit_breaker
from app.services.generations.prompt import build_prompt
from app.services.image_generation import (
    ImageGenerationError,
    ImageGenerationProvider,
    ImageGenerationRequest,
    ImageGenerationResponse,
    ImageProviderFactory,
    generate_with_retry,
)
from app.services.ledger.service import LedgerService
from app.storage.base import LocalStorage, Storage
from app.utils.metrics import generation_duration_seconds

logger = logging.getLogger(__name__)


class GenerationService:
    def __init__(
        self,
        db: Session,
        provider: ImageGenerationProvider | None = None,
        storage: Storage | None = None,
        breaker: pybreaker.CircuitBreaker | None = None,
        ledger: LedgerService | None = None,
    ):
        self.db = db
        self.ledger = ledger or LedgerService(db)
        self.provider = provider or ImageProviderFactory.create_from_settings(settings)
        self.storage = storage or LocalStorage()
        self.breaker = breaker or get_circuit_breaker("image_provider")

    def run(self, generation_id: str, input_image_path: str | None = None) -> Generation:
        generation = self.db.query(Generation).filter(Generation.id == generation_id).one_or_none()
        if generation is None:
            raise UnknownGenerationError(generation_id)
        if generation.status != GenerationStatus.REQUESTED:
            return generation

        request = ImageGenerationRequest(
            prompt=build_prompt(generation.config),
            model=settings.openai_image_model,
            size=settings.image_size,
            input_image_path=input_image_path,
        )

        start = time.monotonic()
        try:
            response = self._call_provider(request)
        except ProviderError as e:
            logger.warning(
                "generation_provider_failed",
                extra={"generation_id": generation_id, "user_id": generation.user_id, "error": str(e)},
            )
            return self.ledger.complete_generation(
                generation_id, success=False, failure_source=FailureSource.PROVIDER, error=str(e)
            )
        finally:
            generation_duration_seconds.observe(time.monotonic() - start)

        try:
            result_url = self.storage.save_generation_image(generation_id, response.image_content)
        except Exception as e:
            logger.exception("generation_postprocess_failed", extra={"generation_id": generation_id})
            return self.ledger.complete_generation(
                generation_id,
                success=False,
                failure_source=FailureSource.POSTPROCESS,
                error=f"{type(e).__name__}: {e}",
            )

        return self.ledger.complete_generation(generation_id, success=True, result_url=result_url)

    def _call_provider(self, request: ImageGenerationRequest) -> ImageGenerationResponse:
        try:
            return self.breaker.call(generate_with_retry, self.provider, request, settings)
        except pybreaker.CircuitBreakerError as e:
            raise ProviderError("image provider unavailable (circuit open)") from e
        except ImageGenerationError as e:
            raise ProviderError(str(e), e.detail) from e
