from datetime import datetime

from pydantic import BaseModel, Field


class TopUpOptionOut(BaseModel):
    amount: int = Field(..., description="Rubles")
    amount_minor: int
    label: str


class BalanceOut(BaseModel):
    telegram_id: str
    balance: int = Field(..., description="Minor units")
    balance_display: str


class TransactionOut(BaseModel):
    id: str
    kind: str
    amount: int
    status: str
    external_ref: str | None = None
    description: str | None = None
    created_at: datetime
    reconciled_at: datetime | None = None

    model_config = {"from_attributes": True}


class TopUpIn(BaseModel):
    amount: int = Field(..., description="Rubles, one of the configured denominations")
    return_url: str | None = None


class TopUpOut(BaseModel):
    confirmation_url: str


class GenerationIn(BaseModel):
    idempotency_key: str | None = Field(default=None, max_length=128)
    config: dict | None = None
    input_image_path: str | None = None


class GenerationOut(BaseModel):
    id: str
    status: str
    cost: int
    transaction_id: str
    refund_transaction_id: str | None = None
    requested_at: datetime
    completed_at: datetime | None = None

    model_config = {"from_attributes": True}


class RegisterIn(BaseModel):
    telegram_id: str
    name: str | None = None
    username: str | None = None


class UserOut(BaseModel):
    id: str
    telegram_id: str
    name: str | None = None
    username: str | None = None
    balance: int
    role: str
    has_access: bool
    is_blocked: bool

    model_config = {"from_attributes": True}


class AccessRequestIn(BaseModel):
    capability: str = "access"
    company_id: str | None = None
    comment: str | None = Field(default=None, max_length=1000)


class AccessRequestStatusOut(BaseModel):
    id: str
    capability: str
    status: str

    model_config = {"from_attributes": True}
