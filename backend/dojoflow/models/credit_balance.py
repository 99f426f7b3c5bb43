import uuid
from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, func
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from dojoflow.core.database import Base


class CreditBalance(Base):
    """Organization AI-credit balance — one row per org.

    ``balance`` is the live counter; it is never derived from the
    transaction log.
    """

    __tablename__ = "credit_balances"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    organization_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("organizations.id"), nullable=False, unique=True
    )
    balance: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    period_allowance: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    period_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_purchased: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_reset_at: Mapped[datetime | None] = mapped_column(DateTime)
    next_reset_at: Mapped[datetime | None] = mapped_column(DateTime)
    low_credit_threshold: Mapped[int] = mapped_column(
        Integer, nullable=False, default=50, server_default="50"
    )
    low_credit_alert_sent: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default="false"
    )
    created_at: Mapped[datetime] = mapped_column(server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        server_default=func.now(), onupdate=func.now()
    )

    organization: Mapped["Organization"] = relationship(back_populates="credit_balance")

    def __repr__(self) -> str:
        return f"<CreditBalance org={self.organization_id} balance={self.balance}>"
