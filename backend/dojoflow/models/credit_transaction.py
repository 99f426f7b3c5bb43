import uuid
from datetime import datetime, timezone

from sqlalchemy import DateTime, Enum, ForeignKey, Index, Integer, String
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from dojoflow.core.database import Base

CREDIT_TRANSACTION_TYPES = ("deduction", "purchase", "allocation", "refund", "bonus")

CREDIT_TASK_TYPES = (
    "kai_chat",
    "ai_sms",
    "ai_email",
    "ai_phone_call",
    "automation",
    "data_analysis",
    "other",
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class CreditTransaction(Base):
    """Append-only credit ledger entry. Rows are never updated or deleted."""

    __tablename__ = "credit_transactions"
    __table_args__ = (
        Index("ix_credit_transactions_organization_id", "organization_id"),
        Index("ix_credit_transactions_type", "type"),
        Index("ix_credit_transactions_task_type", "task_type"),
        Index("ix_credit_transactions_created_at", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    organization_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("credit_balances.organization_id"), nullable=False
    )
    type: Mapped[str] = mapped_column(
        Enum(*CREDIT_TRANSACTION_TYPES, name="credit_transaction_type"),
        nullable=False,
    )
    # Negative for deductions, positive for additions
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    task_type: Mapped[str | None] = mapped_column(
        Enum(*CREDIT_TASK_TYPES, name="credit_task_type")
    )
    description: Mapped[str | None] = mapped_column(String(500))
    metadata_json: Mapped[dict | None] = mapped_column("metadata", JSONB)
    balance_after: Mapped[int] = mapped_column(Integer, nullable=False)
    user_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id")
    )
    # Client-side timestamp keeps sub-second ordering for log replay
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=_utcnow
    )

    def __repr__(self) -> str:
        return f"<CreditTransaction {self.type} {self.amount}>"
