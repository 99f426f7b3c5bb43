"""Credit API — balance, sufficiency checks, deduction, costs, history, and top-ups.

Tenant procedures act on the caller's organization. The ledger reports
failures as results; ``deduct`` turns a failed result into an HTTP error.
"""

import logging
import uuid
from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from dojoflow.core.auth import get_admin_user, get_current_organization_id, get_current_user
from dojoflow.core.config import settings
from dojoflow.core.database import get_db
from dojoflow.models.credit_balance import CreditBalance
from dojoflow.models.credit_transaction import CREDIT_TASK_TYPES
from dojoflow.models.organization import Organization
from dojoflow.models.user import User
from dojoflow.schemas.credits import (
    AdminCreditBalanceResponse,
    BalanceCheckResponse,
    CreditBalanceResponse,
    CreditCostsResponse,
    CreditHistoryResponse,
    CreditTaskType,
    CreditTransactionResponse,
    CreditTransactionType,
    DeductRequest,
    DeductResponse,
    GrantCreditsRequest,
    GrantCreditsResponse,
    InitializeBalanceRequest,
    LedgerAuditResponse,
    OperationType,
    ResetPeriodRequest,
    TaskCostResponse,
    TopUpCreateRequest,
    TopUpResponse,
)
from dojoflow.services.credit_costs import (
    CREDIT_COSTS,
    CREDIT_THRESHOLDS,
    get_credit_cost_description,
)
from dojoflow.services.credits import (
    CreditBalanceExistsError,
    CreditBalanceNotFoundError,
    CreditLedgerError,
    TopUpNotFoundError,
    add_credits,
    audit_transaction_log,
    check_sufficient_balance,
    complete_credit_top_up,
    create_credit_top_up,
    deduct_credits,
    get_credit_balance,
    get_credit_transactions,
    get_warning_level,
    initialize_credit_balance,
    reset_period_credits,
)

logger = logging.getLogger(__name__)

router = APIRouter()
admin_router = APIRouter()

# Router task names that differ from ledger task types
TASK_TYPE_ALIASES: dict[str, str] = {
    "sms": "ai_sms",
    "email": "ai_email",
    "phone_call": "ai_phone_call",
    "voice_synthesis": "other",
    "image_generation": "other",
    "data_extraction": "data_analysis",
}

LEDGER_ERROR_STATUS: dict[str, int] = {
    "insufficient_credits": 402,
    "balance_not_found": 404,
    "update_failed": 409,
    "database_unavailable": 503,
}


def normalize_task_type(task_type: str) -> str:
    return TASK_TYPE_ALIASES.get(task_type, task_type)


# ---------------------------------------------------------------------------
# Balance
# ---------------------------------------------------------------------------


@router.get("/balance", response_model=CreditBalanceResponse)
def get_balance(
    organization_id: uuid.UUID = Depends(get_current_organization_id),
    db: Session = Depends(get_db),
):
    """Current credit balance for the caller's organization, with its warning tier."""
    balance = get_credit_balance(db, organization_id)
    return CreditBalanceResponse(
        credits_remaining=balance.credits_remaining,
        credits_used=balance.credits_used,
        plan_allowance=balance.plan_allowance,
        renewal_date=balance.renewal_date,
        warning_level=get_warning_level(balance.credits_remaining),
        thresholds=CREDIT_THRESHOLDS,
    )


@router.get("/check", response_model=BalanceCheckResponse)
def check_balance(
    required_credits: int = Query(..., ge=0, alias="requiredCredits"),
    operation_type: OperationType | None = Query(None, alias="operationType"),
    organization_id: uuid.UUID = Depends(get_current_organization_id),
    db: Session = Depends(get_db),
):
    """Check whether the organization can afford an operation."""
    result = check_sufficient_balance(db, organization_id, required_credits)
    return BalanceCheckResponse(
        sufficient=result.sufficient,
        current_balance=result.current_balance,
        required_credits=required_credits,
        remaining_after=result.current_balance - required_credits,
        message=result.message,
        operation_type=operation_type,
    )


# ---------------------------------------------------------------------------
# Deduction
# ---------------------------------------------------------------------------


@router.post("/deduct", response_model=DeductResponse)
def deduct(
    payload: DeductRequest,
    current_user: User = Depends(get_current_user),
    organization_id: uuid.UUID = Depends(get_current_organization_id),
    db: Session = Depends(get_db),
):
    """Deduct credits for an AI operation. Raises an HTTP error when the debit fails."""
    result = deduct_credits(
        db,
        organization_id=organization_id,
        amount=payload.amount,
        task_type=normalize_task_type(payload.task_type),
        description=payload.description,
        metadata=payload.metadata,
        user_id=current_user.id,
    )

    if not result.success:
        status_code = LEDGER_ERROR_STATUS.get(result.error_code, 500)
        logger.warning(
            "Credit deduction rejected for org %s: %s (%s)",
            organization_id,
            result.error,
            result.error_code,
        )
        raise HTTPException(
            status_code=status_code,
            detail=result.error or "Failed to deduct credits",
        )

    return DeductResponse(
        success=True,
        new_balance=result.new_balance,
        transaction_id=result.transaction_id,
        amount_deducted=payload.amount,
    )


# ---------------------------------------------------------------------------
# Costs
# ---------------------------------------------------------------------------


@router.get("/costs", response_model=CreditCostsResponse)
def get_costs(current_user: User = Depends(get_current_user)):
    """Static credit cost table and balance thresholds."""
    return CreditCostsResponse(costs=CREDIT_COSTS, thresholds=CREDIT_THRESHOLDS)


@router.get("/task-costs", response_model=list[TaskCostResponse])
def get_task_costs(current_user: User = Depends(get_current_user)):
    """Human-readable cost of every AI task type."""
    return [
        TaskCostResponse(task_type=task_type, description=get_credit_cost_description(task_type))
        for task_type in CREDIT_TASK_TYPES
    ]


# ---------------------------------------------------------------------------
# History and audit
# ---------------------------------------------------------------------------


@router.get("/transactions", response_model=CreditHistoryResponse)
def list_transactions(
    start_date: datetime | None = Query(None, alias="startDate"),
    end_date: datetime | None = Query(None, alias="endDate"),
    task_type: CreditTaskType | None = Query(None, alias="taskType"),
    type: CreditTransactionType | None = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100, alias="pageSize"),
    organization_id: uuid.UUID = Depends(get_current_organization_id),
    db: Session = Depends(get_db),
):
    """Credit transaction history for the caller's organization, newest first."""
    transactions, total = get_credit_transactions(
        db,
        organization_id,
        start_date=start_date,
        end_date=end_date,
        task_type=task_type,
        type=type,
        page=page,
        page_size=page_size,
    )
    return CreditHistoryResponse(
        items=[CreditTransactionResponse.model_validate(t) for t in transactions],
        total=total,
        page=page,
        page_size=page_size,
    )


@router.get("/audit", response_model=LedgerAuditResponse)
def audit_ledger(
    organization_id: uuid.UUID = Depends(get_current_organization_id),
    db: Session = Depends(get_db),
):
    """Replay the organization's credit log against its stored balance."""
    return LedgerAuditResponse.model_validate(audit_transaction_log(db, organization_id))


# ---------------------------------------------------------------------------
# Top-ups
# ---------------------------------------------------------------------------


@router.post("/top-ups", response_model=TopUpResponse, status_code=201)
def create_top_up(
    payload: TopUpCreateRequest,
    current_user: User = Depends(get_current_user),
    organization_id: uuid.UUID = Depends(get_current_organization_id),
    db: Session = Depends(get_db),
):
    """Record a pending credit pack purchase for the caller's organization."""
    top_up = create_credit_top_up(
        db,
        organization_id=organization_id,
        credits=payload.credits,
        amount_paid_cents=payload.amount_paid_cents,
        currency=payload.currency.lower(),
        purchased_by=current_user.id,
        payment_reference=payload.payment_reference,
    )
    return TopUpResponse.model_validate(top_up)


# ---------------------------------------------------------------------------
# Admin
# ---------------------------------------------------------------------------


def _get_organization_or_404(db: Session, org_id: uuid.UUID) -> Organization:
    organization = db.get(Organization, org_id)
    if organization is None:
        raise HTTPException(status_code=404, detail="Organization not found")
    return organization


@admin_router.post(
    "/{org_id}/initialize",
    response_model=AdminCreditBalanceResponse,
    status_code=201,
)
def initialize_balance(
    org_id: uuid.UUID,
    payload: InitializeBalanceRequest,
    admin: User = Depends(get_admin_user),
    db: Session = Depends(get_db),
):
    """Provision the credit balance of an organization."""
    _get_organization_or_404(db, org_id)
    initial_credits = (
        payload.initial_credits
        if payload.initial_credits is not None
        else settings.DEFAULT_PERIOD_CREDITS
    )
    try:
        credit = initialize_credit_balance(db, org_id, initial_credits)
    except CreditBalanceExistsError:
        raise HTTPException(status_code=409, detail="Credit balance already exists")
    return AdminCreditBalanceResponse.model_validate(credit)


@admin_router.get("/{org_id}", response_model=AdminCreditBalanceResponse)
def get_organization_balance(
    org_id: uuid.UUID,
    admin: User = Depends(get_admin_user),
    db: Session = Depends(get_db),
):
    """Full balance row of an organization, including lifetime counters."""
    credit = db.query(CreditBalance).filter(CreditBalance.organization_id == org_id).first()
    if credit is None:
        raise HTTPException(status_code=404, detail="Credit balance not found")
    return AdminCreditBalanceResponse.model_validate(credit)


@admin_router.post("/{org_id}/grant", response_model=GrantCreditsResponse)
def grant_credits(
    org_id: uuid.UUID,
    payload: GrantCreditsRequest,
    admin: User = Depends(get_admin_user),
    db: Session = Depends(get_db),
):
    """Add subscription, top-up, refund, or bonus credits to an organization."""
    result = add_credits(
        db,
        organization_id=org_id,
        amount=payload.amount,
        source=payload.source,
        description=payload.description,
        metadata=payload.metadata,
        user_id=admin.id,
    )
    if not result.success:
        status_code = LEDGER_ERROR_STATUS.get(result.error_code, 500)
        raise HTTPException(status_code=status_code, detail=result.error)
    return GrantCreditsResponse(
        success=True,
        new_balance=result.new_balance,
        transaction_id=result.transaction_id,
    )


@admin_router.post("/{org_id}/reset", response_model=CreditTransactionResponse)
def reset_period(
    org_id: uuid.UUID,
    payload: ResetPeriodRequest,
    admin: User = Depends(get_admin_user),
    db: Session = Depends(get_db),
):
    """Start a new billing period with a fresh allowance."""
    try:
        transaction = reset_period_credits(db, org_id, payload.new_allowance)
    except CreditBalanceNotFoundError:
        raise HTTPException(status_code=404, detail="Credit balance not found")
    return CreditTransactionResponse.model_validate(transaction)


@admin_router.post("/top-ups/{top_up_id}/complete", response_model=TopUpResponse)
def complete_top_up(
    top_up_id: uuid.UUID,
    admin: User = Depends(get_admin_user),
    db: Session = Depends(get_db),
):
    """Confirm payment for a top-up and credit its pack."""
    try:
        top_up = complete_credit_top_up(db, top_up_id)
    except TopUpNotFoundError:
        raise HTTPException(status_code=404, detail="Top-up not found")
    except CreditLedgerError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    return TopUpResponse.model_validate(top_up)
