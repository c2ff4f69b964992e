"""
Admin API schemas.
"""
from datetime import datetime

from pydantic import BaseModel, Field


class AccessRequestOut(BaseModel):
    id: str
    user_id: str
    capability: str
    company_id: str | None = None
    status: str
    reviewed_by_id: str | None = None
    comment: str | None = None
    created_at: datetime
    reviewed_at: datetime | None = None

    model_config = {"from_attributes": True}


class ReviewIn(BaseModel):
    reviewer_telegram_id: str
    comment: str | None = None


class ManualCreditIn(BaseModel):
    amount: int = Field(..., gt=0, description="Minor units")
    reference: str = Field(..., min_length=1, max_length=128, description="Idempotency reference")
    reviewer_telegram_id: str
    description: str | None = None


class UserBalanceOut(BaseModel):
    id: str
    telegram_id: str
    name: str | None = None
    company_id: str | None = None
    balance: int

    model_config = {"from_attributes": True}


class DriftOut(BaseModel):
    user_id: str
    balance: int
    ledger_sum: int


class StatsOut(BaseModel):
    users: int
    blocked: int
    companies: int
    total_balance: int
    generations: int
    access_requests: int
    today_generations: int
    today_top_ups: int


class BlockIn(BaseModel):
    blocked: bool = True
    reviewer_telegram_id: str


class UserOut(BaseModel):
    id: str
    telegram_id: str
    name: str | None = None
    company_id: str | None = None
    is_blocked: bool
    has_access: bool

    model_config = {"from_attributes": True}


class CompanyIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    reviewer_telegram_id: str


class CompanyOut(BaseModel):
    id: str
    name: str
    is_active: bool
    created_at: datetime

    model_config = {"from_attributes": True}


class AssignCompanyIn(BaseModel):
    company_id: str | None = None
    reviewer_telegram_id: str


class AuditLogOut(BaseModel):
    id: str
    actor_type: str
    actor_id: str | None = None
    action: str
    payload: dict
    created_at: datetime

    model_config = {"from_attributes": True}
