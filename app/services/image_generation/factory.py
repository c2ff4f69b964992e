"""
Provider construction from application settings.
"""
import logging

from app.services.image_generation.base import ImageGenerationProvider
from app.services.image_generation.providers.openai import OpenAIProvider

logger = logging.getLogger(__name__)


class ImageProviderFactory:
    PROVIDERS = {
        "openai": OpenAIProvider,
    }

    @classmethod
    def create(cls, provider_name: str, config: dict) -> ImageGenerationProvider:
        provider_class = cls.PROVIDERS.get(provider_name.lower())
        if not provider_class:
            available = ", ".join(cls.PROVIDERS.keys())
            raise ValueError(f"Unknown provider: {provider_name}. Available providers: {available}")

        provider = provider_class(config)
        if not provider.is_available():
            logger.warning("image_provider_not_configured", extra={"status": provider_name})
        return provider

    @classmethod
    def create_from_settings(cls, settings) -> ImageGenerationProvider:
        return cls.create(
            "openai",
            {
                "api_key": settings.openai_api_key,
                "timeout": settings.openai_request_timeout,
                "model": settings.openai_image_model,
                "size": settings.image_size,
            },
        )
