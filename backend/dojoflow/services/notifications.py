"""Notification service — queries, mark-read, and low-credit alerts."""

import logging
import uuid

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from dojoflow.models.notification import Notification
from dojoflow.models.user import User

logger = logging.getLogger(__name__)


class NotificationError(Exception):
    """Base exception for notification operations."""


class NotificationNotFound(NotificationError):
    """Raised when a notification is not found."""


def get_notification(
    db: Session, notification_id: uuid.UUID, user_id: uuid.UUID
) -> Notification:
    """Fetch a single notification belonging to a user.

    Raises NotificationNotFound if not found or not owned by user.
    """
    notification = db.execute(
        select(Notification).where(
            Notification.id == notification_id,
            Notification.user_id == user_id,
        )
    ).scalar_one_or_none()
    if notification is None:
        raise NotificationNotFound(
            f"Notification {notification_id} not found for user {user_id}"
        )
    return notification


def list_notifications(
    db: Session,
    user_id: uuid.UUID,
    *,
    is_read: bool | None = None,
    page: int = 1,
    page_size: int = 20,
) -> tuple[list[Notification], int]:
    """List notifications for a user with optional read-status filter.

    Returns (notifications, total_count).
    """
    base = select(Notification).where(Notification.user_id == user_id)
    count_base = (
        select(func.count())
        .select_from(Notification)
        .where(Notification.user_id == user_id)
    )

    if is_read is not None:
        base = base.where(Notification.is_read == is_read)
        count_base = count_base.where(Notification.is_read == is_read)

    total = db.execute(count_base).scalar_one()
    offset = (page - 1) * page_size
    notifications = (
        db.execute(
            base.order_by(Notification.created_at.desc())
            .offset(offset)
            .limit(page_size)
        )
        .scalars()
        .all()
    )
    return notifications, total


def mark_as_read(
    db: Session, notification_id: uuid.UUID, user_id: uuid.UUID
) -> Notification:
    """Mark a single notification as read.

    Raises NotificationNotFound if not found.
    """
    notification = get_notification(db, notification_id, user_id)
    notification.is_read = True
    db.commit()
    db.refresh(notification)
    return notification


def notify_credit_balance_low(
    db: Session, organization_id: uuid.UUID, balance: int
) -> list[Notification]:
    """Queue a low-balance warning for every active user of an organization.

    Notifications are added to the session without committing so they land
    in the same transaction as the ledger write that triggered them.
    """
    users = (
        db.execute(
            select(User).where(
                User.organization_id == organization_id,
                User.is_active.is_(True),
            )
        )
        .scalars()
        .all()
    )
    notifications = [
        Notification(
            user_id=user.id,
            title="Low Credit Balance",
            message=(
                f"Your AI credit balance is low ({balance} credits remaining). "
                "Please top up to keep Kai running."
            ),
            type="warning",
        )
        for user in users
    ]
    db.add_all(notifications)
    logger.info(
        "Queued low-credit notifications for org %s (balance=%d, users=%d)",
        organization_id,
        balance,
        len(notifications),
    )
    return notifications
