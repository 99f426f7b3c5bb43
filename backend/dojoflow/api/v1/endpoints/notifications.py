"""Notification endpoints — list and mark-read for the current user."""

import uuid

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from dojoflow.core.auth import get_current_user
from dojoflow.core.database import get_db
from dojoflow.models.user import User
from dojoflow.schemas.notifications import NotificationListResponse, NotificationResponse
from dojoflow.services.notifications import (
    NotificationNotFound,
    list_notifications,
    mark_as_read,
)

router = APIRouter()


@router.get("/", response_model=NotificationListResponse)
def list_notifications_endpoint(
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    is_read: bool | None = Query(None),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """List notifications for the current user, with optional read-status filter."""
    notifications, total = list_notifications(
        db,
        current_user.id,
        is_read=is_read,
        page=page,
        page_size=page_size,
    )
    return NotificationListResponse(
        items=notifications,
        total=total,
        page=page,
        page_size=page_size,
    )


@router.patch("/{notification_id}/read", response_model=NotificationResponse)
def mark_notification_read(
    notification_id: uuid.UUID,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Mark a single notification as read."""
    try:
        notification = mark_as_read(db, notification_id, current_user.id)
    except NotificationNotFound:
        raise HTTPException(status_code=404, detail="Notification not found")
    return notification
