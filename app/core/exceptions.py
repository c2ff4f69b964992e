"""
Domain errors for the ledger, payments, access requests and legacy import.
Callers map them to user-facing messages / HTTP statuses.
"""
from typing import Any


class LedgerError(Exception):
    """Base class for all domain errors."""

    def __init__(self, message: str, detail: dict[str, Any] | None = None):
        super().__init__(message)
        self.detail = detail or {}


class UnknownUserError(LedgerError):
    def __init__(self, user_id: str):
        super().__init__(f"User not found: {user_id}", {"user_id": user_id})
        self.user_id = user_id


class UnknownGenerationError(LedgerError):
    def __init__(self, generation_id: str):
        super().__init__(f"Generation not found: {generation_id}", {"generation_id": generation_id})


class InsufficientBalanceError(LedgerError):
    def __init__(self, user_id: str, balance: int, required: int):
        super().__init__(
            f"Insufficient balance: {balance} < {required}",
            {"user_id": user_id, "balance": balance, "required": required},
        )
        self.balance = balance
        self.required = required


class DuplicateEventError(LedgerError):
    """Event already applied. Resolved as a no-op inside the ledger, never surfaced."""


class ReconciliationError(LedgerError):
    """Gateway event could not be matched to local state. Logged and dropped."""


class UnknownPaymentError(ReconciliationError):
    def __init__(self, payment_id: str):
        super().__init__(f"No transaction for payment {payment_id}", {"payment_id": payment_id})
        self.payment_id = payment_id


class PaymentAmountMismatchError(ReconciliationError):
    def __init__(self, payment_id: str, expected: int, actual: int):
        super().__init__(
            f"Payment {payment_id} amount {actual} != expected {expected}",
            {"payment_id": payment_id, "expected": expected, "actual": actual},
        )


class UnknownAccessRequestError(LedgerError):
    def __init__(self, request_id: str):
        super().__init__(f"Access request not found: {request_id}", {"request_id": request_id})


class AlreadyReviewedError(LedgerError):
    def __init__(self, request_id: str, status: str):
        super().__init__(
            f"Access request {request_id} already {status}",
            {"request_id": request_id, "status": status},
        )
        self.status = status


class PermissionDeniedError(LedgerError):
    """Actor is not allowed to perform an admin-only operation."""


class AccessDeniedError(LedgerError):
    """User has no access to the paid service (not approved or blocked)."""


class InvalidTopUpAmountError(LedgerError):
    def __init__(self, amount: int, allowed: list[int]):
        super().__init__(
            f"Top-up amount {amount} is not one of {allowed}",
            {"amount": amount, "allowed": allowed},
        )


class DuplicateRequestError(LedgerError):
    """The same action was requested again within the guard window."""


class ProviderError(LedgerError):
    """Image generation provider failed (after retries)."""


class GatewayError(LedgerError):
    """Payment gateway failed: network, 4xx or 5xx, after retries."""


class ImportConsistencyError(LedgerError):
    """Legacy snapshot is inconsistent. Fatal for the import run."""
