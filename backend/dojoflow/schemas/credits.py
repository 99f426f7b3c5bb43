import uuid
from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

CreditTransactionType = Literal["deduction", "purchase", "allocation", "refund", "bonus"]
CreditTaskType = Literal[
    "kai_chat",
    "ai_sms",
    "ai_email",
    "ai_phone_call",
    "automation",
    "data_analysis",
    "other",
]
CreditSource = Literal["subscription", "top_up", "refund", "bonus"]
WarningLevel = Literal["none", "warning", "critical", "blocking"]
OperationType = Literal[
    "kai_chat", "sms", "email", "phone_call", "voice_synthesis", "image_generation"
]
# Router task names accepted alongside ledger task types
DeductTaskType = Literal[
    "kai_chat",
    "ai_sms",
    "ai_email",
    "ai_phone_call",
    "automation",
    "data_analysis",
    "other",
    "sms",
    "email",
    "phone_call",
    "voice_synthesis",
    "image_generation",
    "data_extraction",
]


class CamelModel(BaseModel):
    """Wire models use camelCase keys; Python code uses snake_case."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Balance
# ---------------------------------------------------------------------------


class CreditThresholds(BaseModel):
    WARNING: int
    CRITICAL: int
    BLOCKING: int


class CreditCosts(BaseModel):
    KAI_CHAT: int
    SMS: int
    EMAIL: int
    CALL_PER_MINUTE: int


class CreditBalanceResponse(CamelModel):
    credits_remaining: int
    credits_used: int
    plan_allowance: int
    renewal_date: datetime | None
    warning_level: WarningLevel
    thresholds: CreditThresholds


class BalanceCheckResponse(CamelModel):
    sufficient: bool
    current_balance: int
    required_credits: int
    remaining_after: int
    message: str | None = None
    operation_type: OperationType | None = None


# ---------------------------------------------------------------------------
# Deduction
# ---------------------------------------------------------------------------


class DeductRequest(CamelModel):
    amount: int = Field(..., ge=0)
    task_type: DeductTaskType
    description: str = Field(..., max_length=500)
    metadata: dict[str, Any] | None = None


class DeductResponse(CamelModel):
    success: bool
    new_balance: int
    transaction_id: uuid.UUID | None
    amount_deducted: int


# ---------------------------------------------------------------------------
# Costs
# ---------------------------------------------------------------------------


class CreditCostsResponse(BaseModel):
    costs: CreditCosts
    thresholds: CreditThresholds


class TaskCostResponse(CamelModel):
    task_type: CreditTaskType
    description: str


# ---------------------------------------------------------------------------
# Transaction history and audit
# ---------------------------------------------------------------------------


class CreditTransactionResponse(CamelModel):
    model_config = ConfigDict(
        from_attributes=True, alias_generator=to_camel, populate_by_name=True
    )

    id: uuid.UUID
    organization_id: uuid.UUID
    type: CreditTransactionType
    amount: int
    task_type: CreditTaskType | None
    description: str | None
    metadata: dict[str, Any] | None = Field(None, validation_alias="metadata_json")
    balance_after: int
    created_at: datetime


class CreditHistoryResponse(CamelModel):
    items: list[CreditTransactionResponse]
    total: int
    page: int
    page_size: int


class LedgerAuditResponse(CamelModel):
    model_config = ConfigDict(
        from_attributes=True, alias_generator=to_camel, populate_by_name=True
    )

    organization_id: uuid.UUID
    transaction_count: int
    opening_balance: int
    replayed_balance: int
    stored_balance: int | None
    consistent: bool
    first_break_transaction_id: uuid.UUID | None


# ---------------------------------------------------------------------------
# Top-ups
# ---------------------------------------------------------------------------


class TopUpCreateRequest(CamelModel):
    credits: int = Field(..., gt=0)
    amount_paid_cents: int = Field(0, ge=0)
    currency: str = Field("usd", min_length=3, max_length=3)
    payment_reference: str | None = Field(None, max_length=255)


class TopUpResponse(CamelModel):
    model_config = ConfigDict(
        from_attributes=True, alias_generator=to_camel, populate_by_name=True
    )

    id: uuid.UUID
    organization_id: uuid.UUID
    credits: int
    amount_paid_cents: int
    currency: str
    status: Literal["pending", "completed"]
    payment_reference: str | None
    completed_at: datetime | None
    created_at: datetime


# ---------------------------------------------------------------------------
# Admin
# ---------------------------------------------------------------------------


class InitializeBalanceRequest(CamelModel):
    initial_credits: int | None = Field(None, ge=0)


class GrantCreditsRequest(CamelModel):
    amount: int = Field(..., ge=0)
    source: CreditSource
    description: str = Field(..., min_length=1, max_length=500)
    metadata: dict[str, Any] | None = None


class GrantCreditsResponse(CamelModel):
    success: bool
    new_balance: int
    transaction_id: uuid.UUID | None


class ResetPeriodRequest(CamelModel):
    new_allowance: int = Field(..., ge=0)


class AdminCreditBalanceResponse(CamelModel):
    model_config = ConfigDict(
        from_attributes=True, alias_generator=to_camel, populate_by_name=True
    )

    organization_id: uuid.UUID
    balance: int
    period_allowance: int
    period_used: int
    total_purchased: int
    total_used: int
    last_reset_at: datetime | None
    next_reset_at: datetime | None
