from __future__ import annotations

from datetime import date, timedelta
from uuid import uuid4

import pytest

from lessonhub.domain_errors import NotEligible, TerminalStateViolation, ValidationFailure, WrongState
from lessonhub.models import Contract, Notification, OperationLog, Student
from lessonhub.schemas import ContractSaveRequest, LessonUpdateItem
from lessonhub.services.unit_ledger import load_lessons
from lessonhub.use_cases import notifications
from lessonhub.use_cases.contract_lifecycle import (
    get_contract_progress,
    reconcile_active_contracts,
    save_contract,
)
from lessonhub.use_cases.lesson_tracking import batch_update_lessons


def _fulfilled(db, contract_id):
    return db.query(Notification).filter(
        Notification.entity_id == contract_id,
        Notification.type == "contract_fulfilled",
    ).all()


def _update_request(contract: Contract, **overrides) -> ContractSaveRequest:
    data = {
        "student_id": contract.student_id,
        "contract_variant_id": contract.contract_variant_id,
        "teacher_id": contract.teacher_id,
    }
    data.update(overrides)
    return ContractSaveRequest(**data)


def _complete_with_exclusions(db, contract, user, *, completed: int, excluded: int):
    lessons = load_lessons(db, contract.id)
    start = date(2026, 1, 5)
    updates = [
        LessonUpdateItem(lesson_id=lesson.id, lesson_date=start + timedelta(weeks=i))
        for i, lesson in enumerate(lessons[:completed])
    ]
    updates += [
        LessonUpdateItem(lesson_id=lesson.id, is_available=False)
        for lesson in lessons[completed:completed + excluded]
    ]
    return batch_update_lessons(db, updates=updates, current_user=user)


def test_new_contract_starts_active_with_generated_lessons(db, make_contract) -> None:
    contract = make_contract(total_lessons=10)

    assert contract.status == "active"
    assert contract.attendance_count == "0/10"
    assert contract.attendance_dates == []
    assert len(load_lessons(db, contract.id)) == 10


def test_seven_completed_three_excluded_fires_completion_once(db, make_contract, teacher, admin) -> None:
    contract = make_contract(total_lessons=10)

    result = _complete_with_exclusions(db, contract, teacher, completed=7, excluded=3)

    assert result.success is True
    assert result.success_count == 10
    assert result.completed_contract_ids == [contract.id]
    db.refresh(contract)
    assert contract.status == "completed"
    assert contract.attendance_count == "7/7"
    assert len(contract.attendance_dates) == 7
    recipients = {n.recipient_id for n in _fulfilled(db, contract.id)}
    assert recipients == {teacher.id, admin.id}

    # A later edit on the completed contract must not notify again.
    first = load_lessons(db, contract.id)[0]
    again = batch_update_lessons(
        db,
        updates=[LessonUpdateItem(lesson_id=first.id, lesson_date=first.date, comment="Nachtrag")],
        current_user=teacher,
    )
    assert again.completed_contract_ids == []
    assert len(_fulfilled(db, contract.id)) == 2


def test_all_lessons_excluded_does_not_complete(db, make_contract, teacher) -> None:
    contract = make_contract(total_lessons=4)

    _complete_with_exclusions(db, contract, teacher, completed=0, excluded=4)

    db.refresh(contract)
    assert contract.status == "active"
    assert contract.attendance_count == "0/0"
    assert _fulfilled(db, contract.id) == []


def test_manual_completion_by_admin_notifies(db, make_contract, admin) -> None:
    contract = make_contract(total_lessons=10)

    result = save_contract(
        db,
        data=_update_request(contract, status="completed"),
        is_update=True,
        contract_id=contract.id,
        current_user=admin,
    )

    assert result.status == "completed"
    payloads = [n.meta_data for n in _fulfilled(db, contract.id)]
    assert payloads and all(p["source"] == "manual" for p in payloads)


def test_completed_contract_cannot_be_reactivated(db, make_contract, admin) -> None:
    contract = make_contract(total_lessons=10)
    save_contract(
        db,
        data=_update_request(contract, status="completed"),
        is_update=True,
        contract_id=contract.id,
        current_user=admin,
    )

    with pytest.raises(TerminalStateViolation) as exc_info:
        save_contract(
            db,
            data=_update_request(contract, status="active"),
            is_update=True,
            contract_id=contract.id,
            current_user=admin,
        )

    assert exc_info.value.details == {"contract_id": str(contract.id), "from": "completed", "to": "active"}
    db.refresh(contract)
    assert contract.status == "completed"
    failed = db.query(OperationLog).filter(
        OperationLog.entity_id == contract.id,
        OperationLog.operation == "save_contract",
        OperationLog.outcome == "failed",
    ).all()
    assert len(failed) == 1
    assert failed[0].details == {"code": "TERMINAL_STATE_VIOLATION"}


def test_cancelled_contract_is_terminal(db, make_contract, admin) -> None:
    contract = make_contract(total_lessons=10)
    result = save_contract(
        db,
        data=_update_request(contract, status="cancelled"),
        is_update=True,
        contract_id=contract.id,
        current_user=admin,
    )
    assert result.status == "cancelled"

    with pytest.raises(TerminalStateViolation):
        save_contract(
            db,
            data=_update_request(contract, status="completed"),
            is_update=True,
            contract_id=contract.id,
            current_user=admin,
        )


def test_teacher_cannot_cancel_contract(db, make_contract, teacher) -> None:
    contract = make_contract(total_lessons=10)

    with pytest.raises(NotEligible):
        save_contract(
            db,
            data=_update_request(contract, status="cancelled"),
            is_update=True,
            contract_id=contract.id,
            current_user=teacher,
        )

    db.refresh(contract)
    assert contract.status == "active"


def test_teacher_cannot_save_foreign_contract(db, make_contract, other_teacher) -> None:
    contract = make_contract(total_lessons=10)

    with pytest.raises(NotEligible):
        save_contract(
            db,
            data=_update_request(contract, teacher_id=other_teacher.id),
            is_update=True,
            contract_id=contract.id,
            current_user=other_teacher,
        )


def test_notification_failure_does_not_roll_back_completion(db, make_contract, teacher, monkeypatch) -> None:
    contract = make_contract(total_lessons=2)

    def _boom(*_args, **_kwargs):
        raise RuntimeError("mail relay down")

    monkeypatch.setattr(notifications, "dispatch", _boom)
    _complete_with_exclusions(db, contract, teacher, completed=2, excluded=0)

    db.refresh(contract)
    assert contract.status == "completed"
    assert _fulfilled(db, contract.id) == []
    failures = db.query(OperationLog).filter(
        OperationLog.entity_id == contract.id,
        OperationLog.operation == "notify_contract_fulfilled",
    ).all()
    assert [row.outcome for row in failures] == ["failed"]
    assert "mail relay down" in failures[0].error_message


def test_plan_downgrade_removes_extra_lessons_and_warns(db, make_contract, make_variant, admin, teacher) -> None:
    contract = make_contract(total_lessons=10)
    lessons = load_lessons(db, contract.id)
    batch_update_lessons(
        db,
        updates=[
            LessonUpdateItem(lesson_id=lessons[0].id, lesson_date=date(2026, 1, 5)),
            LessonUpdateItem(lesson_id=lessons[8].id, lesson_date=date(2026, 3, 2)),
            LessonUpdateItem(lesson_id=lessons[9].id, lesson_date=date(2026, 3, 9)),
        ],
        current_user=teacher,
    )
    smaller = make_variant(8)

    result = save_contract(
        db,
        data=_update_request(contract, contract_variant_id=smaller.id),
        is_update=True,
        contract_id=contract.id,
        current_user=admin,
    )

    assert result.warnings == ["2 completed lesson(s) were removed by the plan change"]
    assert result.attendance_count == "1/8"
    remaining = load_lessons(db, contract.id)
    assert [lesson.lesson_number for lesson in remaining] == list(range(1, 9))
    assert remaining[0].date == date(2026, 1, 5)


def test_stale_version_is_rejected(db, make_contract, admin) -> None:
    contract = make_contract(total_lessons=10)
    current = contract.version

    with pytest.raises(WrongState):
        save_contract(
            db,
            data=_update_request(contract, expected_version=current + 5, payment_type="monthly"),
            is_update=True,
            contract_id=contract.id,
            current_user=admin,
        )

    result = save_contract(
        db,
        data=_update_request(contract, expected_version=current, payment_type="monthly"),
        is_update=True,
        contract_id=contract.id,
        current_user=admin,
    )
    assert result.version > current
    db.refresh(contract)
    assert contract.payment_type == "monthly"


def test_unknown_variant_is_rejected_before_lock(db, make_contract, admin) -> None:
    contract = make_contract(total_lessons=10)

    with pytest.raises(ValidationFailure):
        save_contract(
            db,
            data=_update_request(contract, contract_variant_id=uuid4()),
            is_update=True,
            contract_id=contract.id,
            current_user=admin,
        )

    logged = db.query(OperationLog).filter(
        OperationLog.entity_id == contract.id,
        OperationLog.operation == "save_contract",
    ).count()
    assert logged == 0


def test_progress_reports_detector_numbers(db, make_contract, teacher) -> None:
    contract = make_contract(total_lessons=4)
    _complete_with_exclusions(db, contract, teacher, completed=1, excluded=1)

    progress = get_contract_progress(db, contract_id=contract.id, current_user=teacher)

    assert progress.attendance_count == "1/3"
    assert progress.completed_available == 1
    assert progress.excluded == 1
    assert progress.is_complete is False


def test_reconcile_completes_contracts_edited_outside_the_api(db, make_contract, teacher) -> None:
    contract = make_contract(total_lessons=2)
    for lesson in load_lessons(db, contract.id):
        lesson.date = date(2026, 6, 1)
    db.commit()

    stats = reconcile_active_contracts(db)

    assert stats["completed"] == 1
    db.refresh(contract)
    assert contract.status == "completed"
    assert contract.attendance_count == "2/2"
    payloads = [n.meta_data for n in _fulfilled(db, contract.id)]
    assert payloads and all(p["source"] == "reconcile" for p in payloads)


def test_type_change_on_legacy_variant_resizes_lessons(db, make_contract, make_variant, admin) -> None:
    legacy = make_variant(None, contract_type="ten_class_card")
    contract = make_contract(variant=legacy)
    assert len(load_lessons(db, contract.id)) == 10

    result = save_contract(
        db,
        data=_update_request(contract, type="half_year"),
        is_update=True,
        contract_id=contract.id,
        current_user=admin,
    )

    assert len(load_lessons(db, contract.id)) == 18
    assert result.attendance_count == "0/18"

    save_contract(
        db,
        data=_update_request(contract, type="ten_class_card"),
        is_update=True,
        contract_id=contract.id,
        current_user=admin,
    )
    assert [lesson.lesson_number for lesson in load_lessons(db, contract.id)] == list(range(1, 11))


def test_status_change_requires_permission(db, make_contract, teacher) -> None:
    contract = make_contract(total_lessons=10)

    with pytest.raises(NotEligible) as exc_info:
        save_contract(
            db,
            data=_update_request(contract, status="completed"),
            is_update=True,
            contract_id=contract.id,
            current_user=teacher,
        )

    assert "canChangeContractStatus" in exc_info.value.message
    assert exc_info.value.details == {"contract_id": str(contract.id), "from": "active", "to": "completed"}


@pytest.mark.parametrize("status", ["completed", "cancelled"])
def test_create_rejects_non_active_status(db, make_variant, admin, teacher, status) -> None:
    student = Student(name="Paul Wagner", instrument="Gitarre")
    db.add(student)
    db.commit()
    variant = make_variant(10)

    with pytest.raises(ValidationFailure) as exc_info:
        save_contract(
            db,
            data=ContractSaveRequest(
                student_id=student.id,
                contract_variant_id=variant.id,
                teacher_id=teacher.id,
                status=status,
            ),
            is_update=False,
            current_user=admin,
        )

    assert exc_info.value.details == {"status": status}
    assert db.query(Contract).filter(Contract.student_id == student.id).count() == 0
