"""
Base classes and types for image generation providers.
The provider is an opaque paid call: one request in, image bytes or ImageGenerationError out.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any


@dataclass
class ImageGenerationRequest:
    """Request for image generation."""
    prompt: str
    model: str | None = None
    size: str | None = None
    input_image_path: str | None = None
    extra_params: dict[str, Any] | None = None


@dataclass
class ImageGenerationResponse:
    """Response from image generation."""
    image_content: bytes
    model: str
    provider: str
    image_url: str | None = None


class ImageGenerationError(Exception):
    """Raised when generation fails; detail holds http_status / retry_after / code for the runner."""
    def __init__(self, message: str, detail: dict[str, Any] | None = None):
        super().__init__(message)
        self.detail = detail or {}


class ImageGenerationProvider(ABC):
    """Base class for image generation providers."""

    name = "base"

    def __init__(self, config: dict) -> None:
        self.config = config

    @abstractmethod
    def is_available(self) -> bool:
        """Check if provider is configured and available."""
        pass

    def supports_image_editing(self) -> bool:
        """Override if provider supports image editing (input image + prompt)."""
        return False

    @abstractmethod
    def generate(self, request: ImageGenerationRequest) -> ImageGenerationResponse:
        """Generate image from request. Raises ImageGenerationError on failure."""
        pass
