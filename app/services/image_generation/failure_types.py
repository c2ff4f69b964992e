"""
Failure normalization for the image provider.
Classifies API and transport failures for the retry policy and logs.
"""
from enum import Enum
from typing import Any


class FailureType(str, Enum):
    TRANSPORT_TRANSIENT = "transport_transient"  # 429, 5xx, timeout, connection
    CONTENT_BLOCKED = "content_blocked"  # moderation / safety system rejected the prompt or image
    CLIENT_NON_RETRIABLE = "client_non_retriable"  # 4xx except 429
    EMPTY_RESPONSE = "empty_response"  # 200 without an image


# OpenAI error codes that mean the request itself was refused
BLOCKED_CODES = frozenset({
    "moderation_blocked",
    "content_policy_violation",
})


def classify_failure(
    http_status: int | None,
    detail: dict[str, Any],
) -> tuple[FailureType, bool]:
    """Returns (failure_type, retry_allowed)."""
    code = (detail.get("code") or "").strip().lower()
    if code in BLOCKED_CODES:
        return (FailureType.CONTENT_BLOCKED, False)

    if http_status is not None:
        if http_status == 429 or 500 <= http_status < 600:
            return (FailureType.TRANSPORT_TRANSIENT, True)
        if 400 <= http_status < 500:
            return (FailureType.CLIENT_NON_RETRIABLE, False)

    if detail.get("empty_response"):
        return (FailureType.EMPTY_RESPONSE, False)

    # No status (network error, timeout): transient
    return (FailureType.TRANSPORT_TRANSIENT, True)
