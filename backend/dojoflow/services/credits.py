"""Credit ledger — balance checks, debits, credits, history, and top-ups.

Every AI-powered operation (Kai chat, SMS, email, calls) is paid for out of
the organization's prepaid credit balance. The balance row is the live
counter; ``credit_transactions`` is an append-only audit log whose
``balance_after`` snapshots chain together in creation order.

The four ledger operations keep the calling convention of the credit router:

- ``check_sufficient_balance`` / ``deduct_credits`` / ``add_credits`` never
  raise for absence or infrastructure failure, they return a result with
  ``sufficient=False`` / ``success=False`` and a message.
- ``get_credit_balance`` signals absence with an all-zero summary.

Balance mutations are a single conditional UPDATE plus the log insert,
committed together, so concurrent debits cannot overdraw a balance or leave
the log out of step with the counters.
"""

import calendar
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Literal

from sqlalchemy import func, select, update
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from dojoflow.models.credit_balance import CreditBalance
from dojoflow.models.credit_top_up import CreditTopUp
from dojoflow.models.credit_transaction import CreditTransaction
from dojoflow.services.credit_costs import CREDIT_THRESHOLDS
from dojoflow.services.notifications import notify_credit_balance_low

logger = logging.getLogger(__name__)

TaskType = Literal[
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
LedgerErrorCode = Literal[
    "insufficient_credits",
    "balance_not_found",
    "update_failed",
    "database_unavailable",
    "unexpected",
]

SOURCE_TO_TRANSACTION_TYPE: dict[str, str] = {
    "subscription": "allocation",
    "top_up": "purchase",
    "refund": "refund",
    "bonus": "bonus",
}

DATABASE_UNAVAILABLE = "Database not available"
NO_BALANCE_SUPPORT_MESSAGE = "No credit balance found. Please contact support."


class CreditLedgerError(Exception):
    """Base exception for credit operations that raise instead of returning a result."""


class CreditBalanceNotFoundError(CreditLedgerError):
    """Raised when no credit balance exists for an org."""


class CreditBalanceExistsError(CreditLedgerError):
    """Raised when provisioning an org that already has a credit balance."""


class TopUpNotFoundError(CreditLedgerError):
    """Raised when a credit top-up does not exist."""


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class BalanceCheck:
    """Outcome of a sufficiency check."""

    sufficient: bool
    current_balance: int
    message: str | None = None


@dataclass(frozen=True)
class LedgerResult:
    """Outcome of a debit or credit."""

    success: bool
    new_balance: int
    transaction_id: uuid.UUID | None = None
    error: str | None = None
    error_code: LedgerErrorCode | None = None

    @classmethod
    def failure(
        cls, new_balance: int, error: str, error_code: LedgerErrorCode
    ) -> "LedgerResult":
        return cls(success=False, new_balance=new_balance, error=error, error_code=error_code)


@dataclass(frozen=True)
class CreditBalanceSummary:
    credits_remaining: int
    credits_used: int
    plan_allowance: int
    renewal_date: datetime | None

    @classmethod
    def empty(cls) -> "CreditBalanceSummary":
        return cls(credits_remaining=0, credits_used=0, plan_allowance=0, renewal_date=None)


@dataclass(frozen=True)
class LedgerAudit:
    """Read-only replay of an org's transaction log against its balance."""

    organization_id: uuid.UUID
    transaction_count: int
    opening_balance: int
    replayed_balance: int
    stored_balance: int | None
    consistent: bool
    first_break_transaction_id: uuid.UUID | None = None


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _add_one_month(moment: datetime) -> datetime:
    """Same day next month, clamped to the month's last day."""
    year = moment.year + moment.month // 12
    month = moment.month % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def _as_naive_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment
    return moment.astimezone(timezone.utc).replace(tzinfo=None)


def _get_balance_row(db: Session, organization_id: uuid.UUID) -> CreditBalance | None:
    return db.execute(
        select(CreditBalance).where(CreditBalance.organization_id == organization_id)
    ).scalar_one_or_none()


def _read_balance(db: Session, organization_id: uuid.UUID) -> int:
    """Read the live counter straight from the database, bypassing the identity map."""
    return db.execute(
        select(CreditBalance.balance).where(CreditBalance.organization_id == organization_id)
    ).scalar_one()


def _next_log_timestamp(db: Session, organization_id: uuid.UUID) -> datetime:
    """Timestamp for a new log entry, strictly after the org's latest entry.

    Called after the balance row is updated, so writers for one org are
    serialized and the log order matches the order of balance mutations.
    """
    now = _utcnow()
    latest = db.execute(
        select(func.max(CreditTransaction.created_at)).where(
            CreditTransaction.organization_id == organization_id
        )
    ).scalar_one()
    if latest is not None and now <= latest:
        return latest + timedelta(microseconds=1)
    return now


def _encode_metadata(metadata: dict[str, Any] | None) -> dict[str, Any] | None:
    return dict(metadata) if metadata else None


def get_warning_level(credits_remaining: int) -> WarningLevel:
    """Warning tier for a balance, using the credit thresholds."""
    if credits_remaining <= CREDIT_THRESHOLDS["BLOCKING"]:
        return "blocking"
    if credits_remaining < CREDIT_THRESHOLDS["CRITICAL"]:
        return "critical"
    if credits_remaining < CREDIT_THRESHOLDS["WARNING"]:
        return "warning"
    return "none"


# ---------------------------------------------------------------------------
# Balance queries
# ---------------------------------------------------------------------------


def _check_balance(
    db: Session, organization_id: uuid.UUID, required_credits: int
) -> tuple[BalanceCheck, LedgerErrorCode | None]:
    try:
        credit = _get_balance_row(db, organization_id)
    except OperationalError:
        db.rollback()
        logger.exception("Credit balance lookup failed for org %s", organization_id)
        return BalanceCheck(False, 0, DATABASE_UNAVAILABLE), "database_unavailable"

    if credit is None:
        return BalanceCheck(False, 0, NO_BALANCE_SUPPORT_MESSAGE), "balance_not_found"

    current_balance = credit.balance

    if current_balance < required_credits:
        message = (
            f"Insufficient credits. Required: {required_credits}, "
            f"Available: {current_balance}. Please top up your credits."
        )
        return BalanceCheck(False, current_balance, message), "insufficient_credits"

    remaining = current_balance - required_credits
    if remaining < CREDIT_THRESHOLDS["WARNING"]:
        message = (
            f"Warning: Low credit balance. {remaining} credits remaining after this operation."
        )
        return BalanceCheck(True, current_balance, message), None

    return BalanceCheck(True, current_balance), None


def check_sufficient_balance(
    db: Session, organization_id: uuid.UUID, required_credits: int
) -> BalanceCheck:
    """Check whether an org can afford an operation. Read-only.

    Returns ``sufficient=False`` (never raises) when the org has no balance,
    the database is unavailable, or the balance is below ``required_credits``.
    A sufficient balance that would fall under the warning threshold carries
    a warning message.
    """
    if required_credits < 0:
        raise ValueError("required_credits must be >= 0")
    check, _ = _check_balance(db, organization_id, required_credits)
    return check


def get_credit_balance(db: Session, organization_id: uuid.UUID) -> CreditBalanceSummary:
    """Project an org's balance row. Absence yields the zero summary, never an error."""
    try:
        credit = _get_balance_row(db, organization_id)
    except OperationalError:
        db.rollback()
        logger.exception("Credit balance lookup failed for org %s", organization_id)
        return CreditBalanceSummary.empty()

    if credit is None:
        return CreditBalanceSummary.empty()

    return CreditBalanceSummary(
        credits_remaining=credit.balance,
        credits_used=credit.period_used,
        plan_allowance=credit.period_allowance,
        renewal_date=credit.next_reset_at,
    )


# ---------------------------------------------------------------------------
# Credit mutations
# ---------------------------------------------------------------------------


def deduct_credits(
    db: Session,
    *,
    organization_id: uuid.UUID,
    amount: int,
    task_type: TaskType,
    description: str,
    metadata: dict[str, Any] | None = None,
    user_id: uuid.UUID | None = None,
) -> LedgerResult:
    """Debit ``amount`` credits for an AI task and log a ``deduction`` entry.

    Failures come back as ``success=False`` with the unchanged balance;
    nothing is written unless the whole debit succeeds.
    """
    if amount < 0:
        raise ValueError("amount must be >= 0")

    try:
        check, reason = _check_balance(db, organization_id, amount)
        if not check.sufficient:
            return LedgerResult.failure(check.current_balance, check.message, reason)

        credit = _get_balance_row(db, organization_id)
        if credit is None:
            return LedgerResult.failure(0, "Credit balance not found", "balance_not_found")
        current_balance = credit.balance

        result = db.execute(
            update(CreditBalance)
            .where(
                CreditBalance.organization_id == organization_id,
                CreditBalance.balance >= amount,
            )
            .values(
                balance=CreditBalance.balance - amount,
                period_used=CreditBalance.period_used + amount,
                total_used=CreditBalance.total_used + amount,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            db.rollback()
            return LedgerResult.failure(
                current_balance, "Failed to update credit balance", "update_failed"
            )

        new_balance = _read_balance(db, organization_id)
        transaction = CreditTransaction(
            organization_id=organization_id,
            type="deduction",
            amount=-amount,
            task_type=task_type,
            description=description,
            metadata_json=_encode_metadata(metadata),
            balance_after=new_balance,
            created_at=_next_log_timestamp(db, organization_id),
            user_id=user_id,
        )
        db.add(transaction)

        if new_balance < credit.low_credit_threshold and not credit.low_credit_alert_sent:
            db.execute(
                update(CreditBalance)
                .where(CreditBalance.organization_id == organization_id)
                .values(low_credit_alert_sent=True)
                .execution_options(synchronize_session=False)
            )
            notify_credit_balance_low(db, organization_id, new_balance)

        db.flush()
        transaction_id = transaction.id
        db.commit()
    except OperationalError:
        db.rollback()
        logger.exception("Database error deducting credits for org %s", organization_id)
        return LedgerResult.failure(0, DATABASE_UNAVAILABLE, "database_unavailable")
    except Exception as exc:
        db.rollback()
        logger.exception("Error deducting credits for org %s", organization_id)
        return LedgerResult.failure(0, str(exc) or "Unknown error occurred", "unexpected")

    logger.info(
        "Deducted %d credits from org %s for %s (new balance: %d)",
        amount,
        organization_id,
        task_type,
        new_balance,
    )
    return LedgerResult(success=True, new_balance=new_balance, transaction_id=transaction_id)


def _apply_credit(
    db: Session,
    *,
    organization_id: uuid.UUID,
    amount: int,
    source: CreditSource,
    description: str,
    metadata: dict[str, Any] | None,
    user_id: uuid.UUID | None,
) -> LedgerResult:
    """Credit the balance and stage the log entry. The caller commits or rolls back."""
    if amount < 0:
        raise ValueError("amount must be >= 0")
    credit = _get_balance_row(db, organization_id)
    if credit is None:
        return LedgerResult.failure(0, "No credit balance found", "balance_not_found")
    current_balance = credit.balance

    values: dict[str, Any] = {"balance": CreditBalance.balance + amount}
    # Only top-ups count as purchased; subscription, refund and bonus grants do not
    if source == "top_up":
        values["total_purchased"] = CreditBalance.total_purchased + amount

    result = db.execute(
        update(CreditBalance)
        .where(CreditBalance.organization_id == organization_id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        return LedgerResult.failure(
            current_balance, "Failed to update credit balance", "update_failed"
        )

    new_balance = _read_balance(db, organization_id)
    transaction = CreditTransaction(
        organization_id=organization_id,
        type=SOURCE_TO_TRANSACTION_TYPE[source],
        amount=amount,
        task_type=None,
        description=description,
        metadata_json=_encode_metadata(metadata),
        balance_after=new_balance,
        created_at=_next_log_timestamp(db, organization_id),
        user_id=user_id,
    )
    db.add(transaction)

    if credit.low_credit_alert_sent and new_balance >= credit.low_credit_threshold:
        db.execute(
            update(CreditBalance)
            .where(CreditBalance.organization_id == organization_id)
            .values(low_credit_alert_sent=False)
            .execution_options(synchronize_session=False)
        )

    db.flush()
    return LedgerResult(success=True, new_balance=new_balance, transaction_id=transaction.id)


def add_credits(
    db: Session,
    *,
    organization_id: uuid.UUID,
    amount: int,
    source: CreditSource,
    description: str,
    metadata: dict[str, Any] | None = None,
    user_id: uuid.UUID | None = None,
) -> LedgerResult:
    """Add credits (subscription allocation, top-up, refund, or bonus).

    Unlike provisioning, this never creates a missing balance row.
    """
    if amount < 0:
        raise ValueError("amount must be >= 0")
    if source not in SOURCE_TO_TRANSACTION_TYPE:
        raise ValueError(f"Unknown credit source: {source}")

    try:
        result = _apply_credit(
            db,
            organization_id=organization_id,
            amount=amount,
            source=source,
            description=description,
            metadata=metadata,
            user_id=user_id,
        )
        if not result.success:
            db.rollback()
            return result
        db.commit()
    except OperationalError:
        db.rollback()
        logger.exception("Database error adding credits for org %s", organization_id)
        return LedgerResult.failure(0, DATABASE_UNAVAILABLE, "database_unavailable")
    except Exception as exc:
        db.rollback()
        logger.exception("Error adding credits for org %s", organization_id)
        return LedgerResult.failure(0, str(exc) or "Unknown error occurred", "unexpected")

    logger.info(
        "Added %d credits to org %s via %s (new balance: %d)",
        amount,
        organization_id,
        source,
        result.new_balance,
    )
    return result


# ---------------------------------------------------------------------------
# Provisioning and period renewal
# ---------------------------------------------------------------------------


def initialize_credit_balance(
    db: Session, organization_id: uuid.UUID, initial_credits: int
) -> CreditBalance:
    """Create the balance row for a newly provisioned org.

    The opening allowance is logged as an ``allocation`` so the log replays
    from zero.
    """
    if initial_credits < 0:
        raise ValueError("initial_credits must be >= 0")
    if _get_balance_row(db, organization_id) is not None:
        raise CreditBalanceExistsError(f"Credit balance already exists for org {organization_id}")

    now = _utcnow()
    credit = CreditBalance(
        organization_id=organization_id,
        balance=initial_credits,
        period_allowance=initial_credits,
        period_used=0,
        total_purchased=0,
        total_used=0,
        last_reset_at=now,
        next_reset_at=_add_one_month(now),
        low_credit_threshold=CREDIT_THRESHOLDS["WARNING"],
        low_credit_alert_sent=False,
    )
    db.add(credit)
    db.flush()

    if initial_credits > 0:
        db.add(
            CreditTransaction(
                organization_id=organization_id,
                type="allocation",
                amount=initial_credits,
                description=f"Initial credit allocation: {initial_credits} credits",
                balance_after=initial_credits,
            )
        )
    db.commit()
    db.refresh(credit)

    logger.info("Initialized credit balance for org %s with %d credits", organization_id, initial_credits)
    return credit


def reset_period_credits(
    db: Session, organization_id: uuid.UUID, new_allowance: int
) -> CreditTransaction:
    """Renew the billing period: grant ``new_allowance`` and zero ``period_used``.

    Unused credits carry over. Raises CreditBalanceNotFoundError when the org
    has no balance.
    """
    if new_allowance < 0:
        raise ValueError("new_allowance must be >= 0")

    now = _utcnow()
    result = db.execute(
        update(CreditBalance)
        .where(CreditBalance.organization_id == organization_id)
        .values(
            balance=CreditBalance.balance + new_allowance,
            period_allowance=new_allowance,
            period_used=0,
            last_reset_at=now,
            next_reset_at=_add_one_month(now),
            low_credit_alert_sent=False,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        db.rollback()
        raise CreditBalanceNotFoundError(f"No credit balance for org {organization_id}")

    new_balance = _read_balance(db, organization_id)
    transaction = CreditTransaction(
        organization_id=organization_id,
        type="allocation",
        amount=new_allowance,
        description=f"Monthly credit allocation: {new_allowance} credits",
        metadata_json={"period": now.isoformat()},
        balance_after=new_balance,
        created_at=_next_log_timestamp(db, organization_id),
    )
    db.add(transaction)
    db.commit()
    db.refresh(transaction)

    logger.info(
        "Reset credit period for org %s (allowance=%d, new balance=%d)",
        organization_id,
        new_allowance,
        new_balance,
    )
    return transaction


# ---------------------------------------------------------------------------
# Transaction history and audit
# ---------------------------------------------------------------------------


def get_credit_transactions(
    db: Session,
    organization_id: uuid.UUID,
    *,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    task_type: str | None = None,
    type: str | None = None,
    page: int = 1,
    page_size: int = 20,
) -> tuple[list[CreditTransaction], int]:
    """Return paginated transaction history for an org, newest first.

    All supplied filters apply together.
    """
    conditions = [CreditTransaction.organization_id == organization_id]
    if start_date is not None:
        conditions.append(CreditTransaction.created_at >= _as_naive_utc(start_date))
    if end_date is not None:
        conditions.append(CreditTransaction.created_at <= _as_naive_utc(end_date))
    if task_type is not None:
        conditions.append(CreditTransaction.task_type == task_type)
    if type is not None:
        conditions.append(CreditTransaction.type == type)

    total = db.execute(
        select(func.count()).select_from(CreditTransaction).where(*conditions)
    ).scalar_one()
    offset = (page - 1) * page_size
    transactions = (
        db.execute(
            select(CreditTransaction)
            .where(*conditions)
            .order_by(CreditTransaction.created_at.desc())
            .offset(offset)
            .limit(page_size)
        )
        .scalars()
        .all()
    )
    return list(transactions), total


def audit_transaction_log(db: Session, organization_id: uuid.UUID) -> LedgerAudit:
    """Replay an org's log in creation order and compare it with the balance.

    Each entry's ``balance_after`` must equal the previous snapshot plus its
    own ``amount``; the last snapshot must equal the stored balance. The
    report is informational only; nothing is repaired.
    """
    transactions = (
        db.execute(
            select(CreditTransaction)
            .where(CreditTransaction.organization_id == organization_id)
            .order_by(CreditTransaction.created_at.asc())
        )
        .scalars()
        .all()
    )
    credit = _get_balance_row(db, organization_id)
    stored_balance = credit.balance if credit is not None else None

    if not transactions:
        return LedgerAudit(
            organization_id=organization_id,
            transaction_count=0,
            opening_balance=0,
            replayed_balance=0,
            stored_balance=stored_balance,
            consistent=stored_balance in (None, 0),
        )

    opening_balance = transactions[0].balance_after - transactions[0].amount
    running = opening_balance
    first_break: uuid.UUID | None = None
    for transaction in transactions:
        running += transaction.amount
        if first_break is None and transaction.balance_after != running:
            first_break = transaction.id
            running = transaction.balance_after

    consistent = first_break is None and running == stored_balance
    if not consistent:
        logger.warning(
            "Credit log for org %s does not replay cleanly (replayed=%d, stored=%s, break=%s)",
            organization_id,
            running,
            stored_balance,
            first_break,
        )

    return LedgerAudit(
        organization_id=organization_id,
        transaction_count=len(transactions),
        opening_balance=opening_balance,
        replayed_balance=running,
        stored_balance=stored_balance,
        consistent=consistent,
        first_break_transaction_id=first_break,
    )


# ---------------------------------------------------------------------------
# Top-ups
# ---------------------------------------------------------------------------


def create_credit_top_up(
    db: Session,
    *,
    organization_id: uuid.UUID,
    credits: int,
    amount_paid_cents: int = 0,
    currency: str = "usd",
    purchased_by: uuid.UUID | None = None,
    payment_reference: str | None = None,
) -> CreditTopUp:
    """Record a pending credit pack purchase."""
    if credits <= 0:
        raise ValueError("credits must be > 0")
    top_up = CreditTopUp(
        organization_id=organization_id,
        credits=credits,
        amount_paid_cents=amount_paid_cents,
        currency=currency,
        status="pending",
        purchased_by=purchased_by,
        payment_reference=payment_reference,
    )
    db.add(top_up)
    db.commit()
    db.refresh(top_up)

    logger.info("Created credit top-up %s for org %s (%d credits)", top_up.id, organization_id, credits)
    return top_up


def complete_credit_top_up(db: Session, top_up_id: uuid.UUID) -> CreditTopUp:
    """Mark a top-up completed and credit its pack to the balance.

    Idempotent: an already-completed top-up is returned unchanged. The
    status flip and the balance credit commit together.
    """
    top_up = db.get(CreditTopUp, top_up_id)
    if top_up is None:
        raise TopUpNotFoundError(f"Top-up {top_up_id} not found")
    if top_up.status == "completed":
        return top_up
    if top_up.credits <= 0:
        raise CreditLedgerError(f"Top-up {top_up_id} has no credits to apply")

    claimed = db.execute(
        update(CreditTopUp)
        .where(CreditTopUp.id == top_up_id, CreditTopUp.status == "pending")
        .values(status="completed", completed_at=_utcnow())
        .execution_options(synchronize_session=False)
    )
    if claimed.rowcount == 0:
        # Completed concurrently
        db.rollback()
        db.refresh(top_up)
        return top_up

    result = _apply_credit(
        db,
        organization_id=top_up.organization_id,
        amount=top_up.credits,
        source="top_up",
        description=f"Credit top-up: {top_up.credits} credits purchased",
        metadata={"top_up_id": str(top_up.id), "amount_paid_cents": top_up.amount_paid_cents},
        user_id=top_up.purchased_by,
    )
    if not result.success:
        db.rollback()
        raise CreditLedgerError(result.error)

    db.commit()
    db.refresh(top_up)

    logger.info(
        "Completed credit top-up %s for org %s (new balance: %d)",
        top_up.id,
        top_up.organization_id,
        result.new_balance,
    )
    return top_up
