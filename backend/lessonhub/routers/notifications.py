"""Notification endpoints."""
from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..auth import get_current_user
from ..database import get_db
from ..models import Notification, User
from ..schemas import MarkAllReadResult, NotificationOut
from ..use_cases.notifications import mark_all_read, mark_notification_read, visible_notifications_query

router = APIRouter(prefix="/notifications", tags=["notifications"])


@router.get("", response_model=list[NotificationOut])
def list_notifications(
    unread_only: bool = False,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    query = visible_notifications_query(db, current_user)
    if unread_only:
        query = query.filter(Notification.is_read.is_(False))
    return query.offset(offset).limit(limit).all()


@router.post("/read-all", response_model=MarkAllReadResult)
def read_all(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    return MarkAllReadResult(updated=mark_all_read(db, current_user=current_user))


@router.post("/{notification_id}/read", response_model=NotificationOut)
def read_one(
    notification_id: UUID,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    return mark_notification_read(db, notification_id=notification_id, current_user=current_user)
