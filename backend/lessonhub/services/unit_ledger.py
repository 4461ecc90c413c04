"""Lesson ledger: per-contract lesson rows and their aggregate progress."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Iterable, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from ..config import settings
from ..models import Contract, ContractVariant, Lesson


@dataclass(frozen=True)
class LessonAggregate:
    completed_available: int = 0
    total_available: int = 0
    total_lessons: int = 0
    excluded: int = 0

    @property
    def summary(self) -> str:
        return f"{self.completed_available}/{self.total_available}"


@dataclass(frozen=True)
class RegenerationReport:
    total_lessons: int
    created: int = 0
    removed: int = 0
    removed_completed: int = 0


def aggregate_lessons(lessons: Iterable[Lesson]) -> LessonAggregate:
    """Pure aggregate over a contract's lessons."""
    completed_available = 0
    total_available = 0
    excluded = 0
    total = 0
    for lesson in lessons:
        total += 1
        if lesson.is_available:
            total_available += 1
            if lesson.date is not None:
                completed_available += 1
        else:
            excluded += 1
    return LessonAggregate(
        completed_available=completed_available,
        total_available=total_available,
        total_lessons=total,
        excluded=excluded,
    )


def attendance_dates(lessons: Iterable[Lesson]) -> list[str]:
    """ISO dates of completed available lessons, ordered by lesson number."""
    completed = [
        lesson
        for lesson in lessons
        if lesson.is_available and lesson.date is not None
    ]
    completed.sort(key=lambda lesson: lesson.lesson_number)
    return [lesson.date.isoformat() for lesson in completed]


def load_lessons(db: Session, contract_id: UUID) -> list[Lesson]:
    return (
        db.query(Lesson)
        .filter(Lesson.contract_id == contract_id)
        .order_by(Lesson.lesson_number)
        .all()
    )


def load_aggregate(db: Session, contract_id: UUID) -> LessonAggregate:
    return aggregate_lessons(load_lessons(db, contract_id))


def record_lesson_outcome(
    lesson: Lesson,
    *,
    lesson_date: Optional[date],
    comment: Optional[str],
    is_available: bool,
) -> Lesson:
    """Apply one progress edit to a lesson.

    Contract fields are never touched here; the caller recomputes the
    contract summary once per unit of work.
    """
    lesson.date = lesson_date
    lesson.comment = comment.strip() if comment and comment.strip() else None
    lesson.is_available = bool(is_available)
    return lesson


def plan_total_lessons(variant: Optional[ContractVariant], contract_type: Optional[str]) -> int:
    """Number of lessons a contract of this variant should carry."""
    if variant is not None and variant.total_lessons:
        return int(variant.total_lessons)
    kind = contract_type or (variant.contract_type if variant is not None else None)
    if kind == "half_year":
        return settings.DEFAULT_HALF_YEAR_LESSONS
    return settings.DEFAULT_TEN_CLASS_CARD_LESSONS


def regenerate_lessons(db: Session, *, contract: Contract, total_lessons: int) -> RegenerationReport:
    """Bring lesson numbers to exactly 1..total_lessons.

    Surviving numbers keep their date/comment/availability; numbers beyond
    the new total are deleted; missing numbers are created as available.
    """
    if total_lessons <= 0:
        raise ValueError("total_lessons must be positive")

    existing = load_lessons(db, contract.id)
    by_number = {lesson.lesson_number: lesson for lesson in existing}

    removed = 0
    removed_completed = 0
    for lesson in existing:
        if lesson.lesson_number > total_lessons:
            if lesson.date is not None and lesson.is_available:
                removed_completed += 1
            db.delete(lesson)
            removed += 1

    created = 0
    for number in range(1, total_lessons + 1):
        if number in by_number:
            continue
        db.add(Lesson(contract_id=contract.id, lesson_number=number, is_available=True))
        created += 1

    db.flush()
    return RegenerationReport(
        total_lessons=total_lessons,
        created=created,
        removed=removed,
        removed_completed=removed_completed,
    )
