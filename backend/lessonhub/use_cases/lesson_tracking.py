"""Bulk lesson progress edits, one guarded unit of work per contract."""
from __future__ import annotations

import logging
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..domain_errors import DomainError
from ..models import Lesson, User
from ..schemas import BatchUpdateResult, LessonUpdateItem
from ..security import require_contract_access
from ..services.entity_lock import with_entity_lock
from ..services.unit_ledger import record_lesson_outcome
from .contract_lifecycle import _get_contract_or_404, apply_completion

logger = logging.getLogger(__name__)


def _apply_contract_batch(
    db: Session,
    *,
    contract_id: UUID,
    items: list[LessonUpdateItem],
    current_user: User,
) -> tuple[bool, list[UUID]]:
    """Apply one contract's items under its lock.

    Returns whether completion fired and the ids of lessons that no longer
    exist (removed by a plan change since the batch was grouped).
    """
    contract = _get_contract_or_404(db=db, contract_id=contract_id)
    require_contract_access(contract, current_user, operation="batch_update_lessons")

    lesson_ids = [item.lesson_id for item in items]
    lessons = {
        lesson.id: lesson
        for lesson in db.query(Lesson).filter(
            Lesson.id.in_(lesson_ids),
            Lesson.contract_id == contract_id,
        ).all()
    }
    missing: list[UUID] = []
    for item in items:
        lesson = lessons.get(item.lesson_id)
        if lesson is None:
            missing.append(item.lesson_id)
            continue
        record_lesson_outcome(
            lesson,
            lesson_date=item.lesson_date,
            comment=item.comment,
            is_available=item.is_available,
        )

    _, fired = apply_completion(db, contract, current_user, source="lessons")
    return fired, missing


def batch_update_lessons(
    db: Session,
    *,
    updates: list[LessonUpdateItem],
    current_user: User,
) -> BatchUpdateResult:
    """Apply lesson edits grouped by contract.

    Contracts are processed one after another; a failing contract (busy,
    not permitted, invalid) is reported per item and the others proceed.
    """
    errors: list[str] = []
    success_count = 0
    completed_contract_ids: list[UUID] = []

    owners = {
        row[0]: row[1]
        for row in db.query(Lesson.id, Lesson.contract_id).filter(
            Lesson.id.in_([item.lesson_id for item in updates])
        ).all()
    }

    grouped: dict[UUID, list[LessonUpdateItem]] = {}
    for item in updates:
        owner_id = owners.get(item.lesson_id)
        if owner_id is None:
            errors.append(f"Lesson {item.lesson_id}: not found")
            continue
        if item.contract_id is not None and item.contract_id != owner_id:
            errors.append(f"Lesson {item.lesson_id}: does not belong to contract {item.contract_id}")
            continue
        grouped.setdefault(owner_id, []).append(item)

    for contract_id, items in grouped.items():
        try:
            fired, missing = with_entity_lock(
                db,
                entity_type="contract",
                entity_id=contract_id,
                operation="batch_update_lessons",
                actor_id=current_user.id,
                fn=lambda contract_id=contract_id, items=items: _apply_contract_batch(
                    db,
                    contract_id=contract_id,
                    items=items,
                    current_user=current_user,
                ),
            )
        except DomainError as exc:
            errors.extend(f"Lesson {item.lesson_id}: {exc.message}" for item in items)
            continue
        except SQLAlchemyError as exc:
            logger.exception("lessons.batch_update failed for contract %s", contract_id)
            errors.extend(f"Lesson {item.lesson_id}: database error ({type(exc).__name__})" for item in items)
            continue

        errors.extend(f"Lesson {lesson_id}: not found" for lesson_id in missing)
        success_count += len(items) - len(missing)
        if fired:
            completed_contract_ids.append(contract_id)

    logger.info(
        "lessons.batch_update user=%s contracts=%d ok=%d errors=%d completed=%d",
        current_user.id,
        len(grouped),
        success_count,
        len(errors),
        len(completed_contract_ids),
    )
    return BatchUpdateResult(
        success=not errors,
        success_count=success_count,
        error_count=len(errors),
        errors=errors,
        completed_contract_ids=completed_contract_ids,
    )
