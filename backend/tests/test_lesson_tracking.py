from __future__ import annotations

from datetime import date
from uuid import uuid4

from lessonhub.models import Lesson, OperationLog
from lessonhub.schemas import LessonUpdateItem
from lessonhub.services.entity_lock import get_lock_backend, stable_lock_key
from lessonhub.services.unit_ledger import load_lessons
from lessonhub.use_cases import lesson_tracking
from lessonhub.use_cases.lesson_tracking import batch_update_lessons


def test_batch_updates_lessons_and_refreshes_summary(db, make_contract, teacher) -> None:
    contract = make_contract(total_lessons=4)
    lessons = load_lessons(db, contract.id)

    result = batch_update_lessons(
        db,
        updates=[
            LessonUpdateItem(lesson_id=lessons[0].id, lesson_date=date(2026, 2, 2), comment="Tonleitern"),
            LessonUpdateItem(lesson_id=lessons[1].id, is_available=False),
        ],
        current_user=teacher,
    )

    assert result.success is True
    assert result.success_count == 2
    assert result.error_count == 0
    db.refresh(contract)
    assert contract.attendance_count == "1/3"
    assert contract.attendance_dates == ["2026-02-02"]
    refreshed = db.get(Lesson, lessons[0].id)
    assert refreshed.comment == "Tonleitern"


def test_payload_aliases_are_accepted() -> None:
    lesson_id = uuid4()
    item = LessonUpdateItem.model_validate({"id": str(lesson_id), "date": "2026-03-01", "comment": ""})
    assert item.lesson_id == lesson_id
    assert item.lesson_date == date(2026, 3, 1)
    assert item.is_available is True


def test_unknown_lesson_and_wrong_contract_are_per_item_errors(db, make_contract, teacher) -> None:
    contract = make_contract(total_lessons=3)
    lessons = load_lessons(db, contract.id)
    missing = uuid4()

    result = batch_update_lessons(
        db,
        updates=[
            LessonUpdateItem(lesson_id=missing, lesson_date=date(2026, 2, 2)),
            LessonUpdateItem(lesson_id=lessons[0].id, contract_id=uuid4(), lesson_date=date(2026, 2, 2)),
            LessonUpdateItem(lesson_id=lessons[1].id, lesson_date=date(2026, 2, 9)),
        ],
        current_user=teacher,
    )

    assert result.success is False
    assert result.success_count == 1
    assert result.error_count == 2
    assert result.errors[0] == f"Lesson {missing}: not found"
    assert "does not belong to contract" in result.errors[1]
    assert db.get(Lesson, lessons[0].id).date is None
    assert db.get(Lesson, lessons[1].id).date == date(2026, 2, 9)


def test_foreign_contract_fails_while_own_contract_proceeds(db, make_contract, teacher, other_teacher) -> None:
    own = make_contract(total_lessons=2, teacher_user=other_teacher)
    foreign = make_contract(total_lessons=2, teacher_user=teacher)
    own_lesson = load_lessons(db, own.id)[0]
    foreign_lesson = load_lessons(db, foreign.id)[0]

    result = batch_update_lessons(
        db,
        updates=[
            LessonUpdateItem(lesson_id=foreign_lesson.id, lesson_date=date(2026, 2, 2)),
            LessonUpdateItem(lesson_id=own_lesson.id, lesson_date=date(2026, 2, 2)),
        ],
        current_user=other_teacher,
    )

    assert result.success_count == 1
    assert result.error_count == 1
    assert result.errors[0].startswith(f"Lesson {foreign_lesson.id}:")
    assert db.get(Lesson, foreign_lesson.id).date is None
    assert db.get(Lesson, own_lesson.id).date == date(2026, 2, 2)


def test_busy_contract_is_reported_and_left_untouched(db, make_contract, teacher) -> None:
    contract = make_contract(total_lessons=2)
    lesson = load_lessons(db, contract.id)[0]
    backend = get_lock_backend(db)
    key = stable_lock_key(contract.id)
    assert backend.try_acquire(db, key) is True

    try:
        result = batch_update_lessons(
            db,
            updates=[LessonUpdateItem(lesson_id=lesson.id, lesson_date=date(2026, 2, 2))],
            current_user=teacher,
        )
    finally:
        backend.release(db, key)

    assert result.success is False
    assert "being modified by another operation" in result.errors[0]
    assert db.get(Lesson, lesson.id).date is None
    started = db.query(OperationLog).filter(
        OperationLog.entity_id == contract.id,
        OperationLog.operation == "batch_update_lessons",
    ).count()
    assert started == 0


def test_lesson_removed_after_grouping_does_not_abort_batch(db, make_contract, teacher, monkeypatch) -> None:
    shrinking = make_contract(total_lessons=10)
    other = make_contract(total_lessons=2)
    shrinking_id = shrinking.id
    removed_id = load_lessons(db, shrinking_id)[9].id
    kept_id = load_lessons(db, other.id)[0].id
    real_lock = lesson_tracking.with_entity_lock

    # A plan downgrade commits between grouping and acquiring the lock.
    def _lock_after_downgrade(session, **kwargs):
        if kwargs["entity_id"] == shrinking_id:
            session.query(Lesson).filter(Lesson.id == removed_id).delete(synchronize_session="fetch")
            session.commit()
        return real_lock(session, **kwargs)

    monkeypatch.setattr(lesson_tracking, "with_entity_lock", _lock_after_downgrade)

    result = batch_update_lessons(
        db,
        updates=[
            LessonUpdateItem(lesson_id=removed_id, lesson_date=date(2026, 2, 2)),
            LessonUpdateItem(lesson_id=kept_id, lesson_date=date(2026, 2, 9)),
        ],
        current_user=teacher,
    )

    assert result.success is False
    assert result.error_count == 1
    assert result.success_count == 1
    assert result.errors == [f"Lesson {removed_id}: not found"]
    assert db.get(Lesson, kept_id).date == date(2026, 2, 9)
