"""
YooKassa client (sync httpx): create payment, poll status, parse webhook.

Retries transport errors, 429, 5xx and 202 ("still processing") with exponential
backoff and jitter; every attempt goes through the "yookassa" circuit breaker.
Payment creation sends one Idempotence-Key per logical call, reused by its retries,
so a retried POST never creates a second payment on the gateway side.
"""
import logging
import random
import secrets
import time
from typing import Any

import httpx
import pybreaker

from app.core.config import settings
from app.core.exceptions import GatewayError
from app.schemas.payments import PaymentEvent, PaymentIntent, PaymentStatus
from app.services.circuit_breaker import get_circuit_breaker
from app.utils.currency import minor_to_value, rub_to_minor
from app.utils.metrics import gateway_request_duration_seconds, gateway_requests_total

logger = logging.getLogger(__name__)

DESCRIPTION_MAX_LEN = 128  # YooKassa limit
METADATA_MAX_KEYS = 16


class _TransientResponse(Exception):
    """Gateway answered, but the request should be retried (429 / 5xx / 202)."""

    def __init__(self, response: httpx.Response):
        super().__init__(f"HTTP {response.status_code}")
        self.response = response


class YooKassaClient:
    """
    Sync YooKassa client for API handlers and Celery workers.
    Uses httpx sync client - no event loop issues.
    """

    def __init__(
        self,
        shop_id: str | None = None,
        secret_key: str | None = None,
        *,
        api_url: str | None = None,
        timeout: float | None = None,
        max_attempts: int | None = None,
        backoff_seconds: float | None = None,
        transport: httpx.BaseTransport | None = None,
        breaker: pybreaker.CircuitBreaker | None = None,
    ) -> None:
        self.shop_id = shop_id or settings.yookassa_shop_id
        self.secret_key = secret_key or settings.yookassa_secret_key
        self.api_url = (api_url or settings.yookassa_api_url).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.yookassa_timeout
        self.max_attempts = max(1, max_attempts or settings.yookassa_retry_max_attempts)
        self.backoff_seconds = (
            backoff_seconds if backoff_seconds is not None else settings.yookassa_retry_backoff_seconds
        )
        self.breaker = breaker or get_circuit_breaker("yookassa")
        self._transport = transport
        self._client: httpx.Client | None = None

    @property
    def client(self) -> httpx.Client:
        """Lazy initialization of httpx client."""
        if self._client is None:
            self._client = httpx.Client(
                base_url=self.api_url,
                auth=(self.shop_id, self.secret_key),
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None

    @staticmethod
    def new_idempotence_key() -> str:
        """<ms timestamp>-<random suffix>, unique per logical create call."""
        return f"{int(time.time() * 1000)}-{secrets.token_hex(6)}"

    # ------------------------------------------------------------------
    # API
    # ------------------------------------------------------------------

    def create_payment_intent(
        self,
        amount: int,
        description: str,
        return_url: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> PaymentIntent:
        """
        Создать платёж (amount в копейках).
        Returns PaymentIntent(success=False, error=...) on gateway failure; nothing is persisted here.
        """
        body = {
            "amount": {"value": minor_to_value(amount), "currency": settings.currency},
            "confirmation": {
                "type": "redirect",
                "return_url": return_url or settings.yookassa_return_url,
            },
            "capture": True,
            "description": description[:DESCRIPTION_MAX_LEN],
            "metadata": _clean_metadata(metadata),
        }
        key = self.new_idempotence_key()
        try:
            data = self._request(
                "create_payment", "POST", "/payments", json=body, headers={"Idempotence-Key": key}
            )
        except GatewayError as e:
            logger.error("yookassa_create_payment_failed", extra={"error": str(e), "amount": amount})
            return PaymentIntent(success=False, error=str(e))

        confirmation = data.get("confirmation") or {}
        logger.info(
            "yookassa_payment_created",
            extra={"payment_id": data.get("id"), "status": data.get("status"), "amount": amount},
        )
        return PaymentIntent(
            success=True,
            payment_id=data.get("id"),
            confirmation_url=confirmation.get("confirmation_url"),
            status=data.get("status"),
        )

    def get_payment_status(self, payment_id: str) -> PaymentStatus:
        """Poll the gateway's own record of the payment."""
        try:
            data = self._request("get_payment", "GET", f"/payments/{payment_id}")
        except GatewayError as e:
            logger.warning("yookassa_status_failed", extra={"payment_id": payment_id, "error": str(e)})
            return PaymentStatus(success=False, error=str(e))

        try:
            amount = _parse_amount(data.get("amount"))
        except ValueError as e:
            return PaymentStatus(success=False, error=str(e))
        return PaymentStatus(
            success=True,
            status=data.get("status"),
            paid=bool(data.get("paid")),
            amount=amount,
            payment_method=(data.get("payment_method") or {}).get("type"),
            metadata=data.get("metadata") or {},
            cancellation_reason=(data.get("cancellation_details") or {}).get("reason"),
        )

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _request(self, operation: str, method: str, path: str, **kwargs: Any) -> dict:
        last_error: str = ""
        for attempt in range(1, self.max_attempts + 1):
            start = time.monotonic()
            try:
                response = self.breaker.call(self._send, method, path, **kwargs)
            except pybreaker.CircuitBreakerError as e:
                self._record(operation, "circuit_open", start)
                raise GatewayError("payment gateway unavailable (circuit open)") from e
            except _TransientResponse as e:
                self._record(operation, str(e.response.status_code), start)
                last_error = _error_description(e.response)
            except httpx.TransportError as e:
                self._record(operation, "transport_error", start)
                last_error = f"{type(e).__name__}: {e}"
            else:
                self._record(operation, str(response.status_code), start)
                if response.is_success:
                    return response.json()
                raise GatewayError(
                    _error_description(response),
                    {"status_code": response.status_code},
                )

            if attempt < self.max_attempts:
                delay = self.backoff_seconds * (2 ** (attempt - 1)) + random.uniform(0, 0.5)
                logger.info(
                    "yookassa_retry_scheduled",
                    extra={"attempt": attempt, "error": last_error, "method": operation},
                )
                time.sleep(delay)

        raise GatewayError(last_error or "payment gateway request failed")

    def _send(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        response = self.client.request(method, path, **kwargs)
        if response.status_code in (202, 429) or response.status_code >= 500:
            raise _TransientResponse(response)
        return response

    def _record(self, operation: str, status: str, start: float) -> None:
        gateway_requests_total.labels(method=operation, status=status).inc()
        gateway_request_duration_seconds.labels(method=operation).observe(time.monotonic() - start)


def parse_webhook(body: Any) -> PaymentEvent | None:
    """
    Normalize a YooKassa notification. Returns None (reject, do not process) when malformed.
    Metadata only identifies the payment; amount/status are confirmed from the gateway before crediting.
    """
    if not isinstance(body, dict):
        return None
    event = body.get("event")
    obj = body.get("object")
    if not event or not isinstance(obj, dict):
        return None
    payment_id = obj.get("id")
    if not payment_id:
        return None
    try:
        amount = _parse_amount(obj.get("amount"))
    except ValueError:
        return None
    metadata = obj.get("metadata")
    return PaymentEvent(
        event=str(event),
        payment_id=str(payment_id),
        status=str(obj.get("status") or ""),
        paid=bool(obj.get("paid")),
        amount=amount,
        metadata=metadata if isinstance(metadata, dict) else {},
        cancellation_reason=(obj.get("cancellation_details") or {}).get("reason"),
    )


def _parse_amount(amount: Any) -> int:
    """{"value": "750.00", "currency": "RUB"} -> 75000. Missing amount -> 0."""
    if not amount:
        return 0
    if not isinstance(amount, dict):
        raise ValueError(f"invalid amount: {amount!r}")
    currency = amount.get("currency")
    if currency and currency != settings.currency:
        raise ValueError(f"unsupported currency: {currency}")
    return rub_to_minor(amount.get("value", 0))


def _clean_metadata(metadata: dict[str, Any] | None) -> dict[str, str]:
    """YooKassa accepts up to 16 string values."""
    if not metadata:
        return {}
    items = list(metadata.items())[:METADATA_MAX_KEYS]
    return {str(k): str(v) for k, v in items if v is not None}


def _error_description(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return f"HTTP {response.status_code}"
    if isinstance(data, dict) and data.get("description"):
        return str(data["description"])
    return f"HTTP {response.status_code}"
