"""
OpenAI gpt-image-1 provider: text-to-image, or edit when an input photo is given.
"""
import base64

import openai
from openai import OpenAI

from app.services.image_generation.base import (
    ImageGenerationError,
    ImageGenerationProvider,
    ImageGenerationRequest,
    ImageGenerationResponse,
)


class OpenAIProvider(ImageGenerationProvider):
    name = "openai"

    def __init__(self, config: dict):
        super().__init__(config)
        self.api_key = config.get("api_key")
        self.timeout = config.get("timeout", 120.0)
        self.model = config.get("model") or "gpt-image-1"
        self.size = config.get("size") or "1024x1024"
        self.client = OpenAI(api_key=self.api_key, timeout=self.timeout, max_retries=0) if self.api_key else None

    def is_available(self) -> bool:
        return bool(self.api_key and self.client)

    def supports_image_editing(self) -> bool:
        return True

    def generate(self, request: ImageGenerationRequest) -> ImageGenerationResponse:
        if not self.is_available():
            raise ImageGenerationError("OpenAI provider not configured", {"code": "not_configured", "http_status": 401})

        model = request.model or self.model
        size = request.size or self.size
        try:
            if request.input_image_path:
                with open(request.input_image_path, "rb") as image_file:
                    response = self.client.images.edit(
                        model=model,
                        image=image_file,
                        prompt=request.prompt,
                        size=size,
                    )
            else:
                response = self.client.images.generate(
                    model=model,
                    prompt=request.prompt,
                    size=size,
                    n=1,
                )
        except openai.APIStatusError as e:
            detail = {"http_status": e.status_code, "code": getattr(e, "code", None)}
            retry_after = e.response.headers.get("retry-after") if e.response is not None else None
            if retry_after:
                detail["retry_after"] = retry_after
            raise ImageGenerationError(str(e), detail) from e
        except (openai.APITimeoutError, openai.APIConnectionError) as e:
            raise ImageGenerationError(f"{type(e).__name__}: {e}") from e

        data = response.data[0] if response.data else None
        if data is None or not data.b64_json:
            raise ImageGenerationError("No image in response", {"empty_response": True})

        return ImageGenerationResponse(
            image_content=base64.b64decode(data.b64_json),
            model=model,
            provider=self.name,
        )
