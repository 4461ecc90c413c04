"""Lesson progress endpoints."""
from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..auth import PermissionChecker, get_current_user
from ..database import get_db
from ..models import User
from ..schemas import BatchLessonUpdateRequest, BatchUpdateResult
from ..use_cases.lesson_tracking import batch_update_lessons

router = APIRouter(prefix="/lessons", tags=["lessons"])


@router.post(
    "/batch-update",
    response_model=BatchUpdateResult,
    dependencies=[Depends(PermissionChecker("canEditLessons"))],
)
def batch_update(
    data: BatchLessonUpdateRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Record lesson dates/comments/availability; per-item errors are reported, not raised."""
    return batch_update_lessons(db, updates=data.updates, current_user=current_user)
