"""
Normalized payment gateway DTOs: PaymentEvent (input of reconciliation),
PaymentIntent (create result), PaymentStatus (poll result).
"""
from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class PaymentEvent(BaseModel):
    """One gateway observation of a payment, from a webhook or a poll."""

    event: str = Field(..., description="payment.succeeded, payment.canceled, ... or poll")
    payment_id: str
    status: str
    paid: bool = False
    amount: int = Field(..., description="Minor units")
    metadata: dict[str, Any] = Field(default_factory=dict)
    cancellation_reason: str | None = None

    model_config = {"frozen": True}

    @property
    def is_succeeded(self) -> bool:
        return self.status == "succeeded" and self.paid

    @property
    def is_canceled(self) -> bool:
        return self.status == "canceled"

    @classmethod
    def from_status(cls, payment_id: str, status: PaymentStatus) -> PaymentEvent:
        """Build an event from a poll result (status re-derived from the gateway's own record)."""
        return cls(
            event="poll",
            payment_id=payment_id,
            status=status.status or "",
            paid=status.paid,
            amount=status.amount,
            metadata=status.metadata,
            cancellation_reason=status.cancellation_reason,
        )


class PaymentIntent(BaseModel):
    """Result of create_payment_intent; success=False carries the gateway error."""

    success: bool
    payment_id: str | None = None
    confirmation_url: str | None = None
    status: str | None = None
    error: str | None = None

    model_config = {"frozen": True}


class PaymentStatus(BaseModel):
    success: bool
    status: str | None = None
    paid: bool = False
    amount: int = 0
    payment_method: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    cancellation_reason: str | None = None
    error: str | None = None

    model_config = {"frozen": True}
