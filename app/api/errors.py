"""
Domain errors -> HTTP responses.
"""
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from app.core.exceptions import (
    AccessDeniedError,
    AlreadyReviewedError,
    DuplicateRequestError,
    GatewayError,
    InsufficientBalanceError,
    InvalidTopUpAmountError,
    LedgerError,
    PermissionDeniedError,
    UnknownAccessRequestError,
    UnknownGenerationError,
    UnknownPaymentError,
    UnknownUserError,
)

logger = logging.getLogger(__name__)

STATUS_BY_ERROR: list[tuple[type[LedgerError], int]] = [
    (UnknownUserError, 404),
    (UnknownPaymentError, 404),
    (UnknownGenerationError, 404),
    (UnknownAccessRequestError, 404),
    (InsufficientBalanceError, 402),
    (AccessDeniedError, 403),
    (PermissionDeniedError, 403),
    (AlreadyReviewedError, 409),
    (InvalidTopUpAmountError, 422),
    (DuplicateRequestError, 429),
    (GatewayError, 502),
]


def status_for(exc: LedgerError) -> int:
    for error_type, status_code in STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status_code
    return 400


async def ledger_error_handler(request: Request, exc: LedgerError) -> JSONResponse:
    status_code = status_for(exc)
    logger.info(
        "request_rejected",
        extra={
            "path": request.url.path,
            "method": request.method,
            "status_code": status_code,
            "error": type(exc).__name__,
        },
    )
    return JSONResponse(
        status_code=status_code,
        content={"detail": str(exc), "error": type(exc).__name__, **_jsonable(exc.detail)},
    )


def _jsonable(detail: dict) -> dict:
    return {k: v for k, v in detail.items() if isinstance(v, (str, int, float, bool, list, type(None)))}


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(LedgerError, ledger_error_handler)
