"""
Failure classification, retry runner and the ceiling prompt.
"""
from unittest.mock import MagicMock, patch

import pytest

from app.services.generations.prompt import build_prompt
from app.services.image_generation import ImageGenerationError, generate_with_retry
from app.services.image_generation.failure_types import FailureType, classify_failure


class _Settings:
    image_generation_retry_max_attempts = 3
    image_generation_retry_backoff_seconds = 0.0
    image_generation_retry_respect_retry_after = True


class TestClassifyFailure:
    @pytest.mark.parametrize(
        "status, detail, expected",
        [
            (429, {}, (FailureType.TRANSPORT_TRANSIENT, True)),
            (503, {}, (FailureType.TRANSPORT_TRANSIENT, True)),
            (400, {}, (FailureType.CLIENT_NON_RETRIABLE, False)),
            (400, {"code": "moderation_blocked"}, (FailureType.CONTENT_BLOCKED, False)),
            (None, {"empty_response": True}, (FailureType.EMPTY_RESPONSE, False)),
            (None, {}, (FailureType.TRANSPORT_TRANSIENT, True)),
        ],
    )
    def test_classification(self, status, detail, expected):
        assert classify_failure(status, detail) == expected


class TestGenerateWithRetry:
    @patch("app.services.image_generation.runner.time.sleep")
    def test_respects_retry_after(self, mock_sleep):
        provider = MagicMock()
        provider.generate.side_effect = [
            ImageGenerationError("rate limited", {"http_status": 429, "retry_after": "7"}),
            "ok",
        ]

        assert generate_with_retry(provider, MagicMock(), _Settings()) == "ok"
        delay = mock_sleep.call_args.args[0]
        assert 7 <= delay <= 8

    @patch("app.services.image_generation.runner.time.sleep")
    def test_gives_up_after_budget(self, mock_sleep):
        provider = MagicMock()
        provider.generate.side_effect = ImageGenerationError("down", {"http_status": 502})

        with pytest.raises(ImageGenerationError) as exc_info:
            generate_with_retry(provider, MagicMock(), _Settings())

        assert provider.generate.call_count == 3
        assert exc_info.value.detail["failure_type"] == "transport_transient"

    @patch("app.services.image_generation.runner.time.sleep")
    def test_blocked_content_is_not_retried(self, mock_sleep):
        provider = MagicMock()
        provider.generate.side_effect = ImageGenerationError(
            "blocked", {"http_status": 400, "code": "moderation_blocked"}
        )

        with pytest.raises(ImageGenerationError):
            generate_with_retry(provider, MagicMock(), _Settings())

        assert provider.generate.call_count == 1
        mock_sleep.assert_not_called()


class TestBuildPrompt:
    def test_defaults(self):
        prompt = build_prompt(None)
        assert "Solid white color" in prompt
        assert "matte" in prompt
        assert "Add these lighting elements" not in prompt

    def test_lighting_elements(self):
        prompt = build_prompt({
            "color": "black",
            "texture": "glossy",
            "profiles": {"left": "shadow", "right": "floating"},
            "spots": {"enabled": True, "count": 8},
            "chandelier": {"enabled": True, "style": "crystal"},
            "cornice": {"enabled": True},
        })

        assert "Solid black color" in prompt
        assert "shadow gap (1cm) where ceiling meets the left wall" in prompt
        assert "floating effect" in prompt
        assert "Add 8 small round LED spotlights" in prompt
        assert "2x4 grid" in prompt
        assert "crystal chandelier" in prompt
        assert "curtain rod" in prompt


class TestOpenAIProvider:
    def _provider(self):
        from app.services.image_generation.providers.openai import OpenAIProvider

        provider = OpenAIProvider({"api_key": "sk-test", "model": "gpt-image-1", "size": "1024x1024"})
        provider.client = MagicMock()
        return provider

    def test_decodes_b64_image(self):
        import base64

        from app.services.image_generation import ImageGenerationRequest

        provider = self._provider()
        provider.client.images.generate.return_value = MagicMock(
            data=[MagicMock(b64_json=base64.b64encode(b"img").decode())]
        )

        response = provider.generate(ImageGenerationRequest(prompt="ceiling"))

        assert response.image_content == b"img"
        assert response.provider == "openai"
        provider.client.images.generate.assert_called_once_with(
            model="gpt-image-1", prompt="ceiling", size="1024x1024", n=1
        )

    def test_rate_limit_carries_retry_after(self):
        import httpx
        import openai

        from app.services.image_generation import ImageGenerationRequest

        provider = self._provider()
        http_response = httpx.Response(
            429,
            headers={"retry-after": "3"},
            request=httpx.Request("POST", "https://api.openai.com/v1/images/generations"),
        )
        provider.client.images.generate.side_effect = openai.RateLimitError(
            "rate limited", response=http_response, body=None
        )

        with pytest.raises(ImageGenerationError) as exc_info:
            provider.generate(ImageGenerationRequest(prompt="ceiling"))

        assert exc_info.value.detail["http_status"] == 429
        assert exc_info.value.detail["retry_after"] == "3"

    def test_empty_response(self):
        from app.services.image_generation import ImageGenerationRequest

        provider = self._provider()
        provider.client.images.generate.return_value = MagicMock(data=[])

        with pytest.raises(ImageGenerationError) as exc_info:
            provider.generate(ImageGenerationRequest(prompt="ceiling"))

        assert exc_info.value.detail == {"empty_response": True}

    def test_unconfigured_provider(self):
        from app.services.image_generation import ImageGenerationRequest, ImageProviderFactory

        provider = ImageProviderFactory.create("openai", {"api_key": ""})

        assert provider.is_available() is False
        with pytest.raises(ImageGenerationError):
            provider.generate(ImageGenerationRequest(prompt="ceiling"))

    def test_unknown_provider_name(self):
        from app.services.image_generation import ImageProviderFactory

        with pytest.raises(ValueError):
            ImageProviderFactory.create("midjourney", {})
