from __future__ import annotations

from uuid import uuid4

import pytest

from lessonhub import auth
from lessonhub.domain_errors import NotFound
from lessonhub.models import Appointment, Notification
from lessonhub.use_cases import notifications
from lessonhub.use_cases.notifications import (
    _insert_once,
    cleanup_superseded_notifications,
    dispatch,
    idempotency_key,
    mark_all_read,
    mark_notification_read,
    retract,
    visible_notifications_query,
)


def _appointment(db, **overrides) -> Appointment:
    values = {"student_name": "Mia Vogel", "instrument": "Geige", "status": "open"}
    values.update(overrides)
    appointment = Appointment(**values)
    db.add(appointment)
    db.commit()
    return appointment


def _notification(key: str, entity_id, recipient_id=None) -> Notification:
    return Notification(
        type="appointment_opened",
        entity_type="appointment",
        entity_id=entity_id,
        recipient_id=recipient_id,
        message="Neue Probestunde",
        meta_data={},
        idempotency_key=key,
    )


def test_idempotency_key_format() -> None:
    entity_id = uuid4()
    recipient_id = uuid4()
    assert idempotency_key("appointment_opened", entity_id, recipient_id) == (
        f"appointment_opened:appointment:{entity_id}:{recipient_id}"
    )
    assert idempotency_key("contract_fulfilled", entity_id, None) == f"contract_fulfilled:contract:{entity_id}:admins"


def test_dispatch_twice_writes_one_row_per_recipient(db, admin, teacher, other_teacher) -> None:
    appointment = _appointment(db)

    first = dispatch(db, event=notifications.APPOINTMENT_OPENED, entity=appointment, actor=admin)
    db.commit()
    second = dispatch(db, event=notifications.APPOINTMENT_OPENED, entity=appointment, actor=admin)
    db.commit()

    assert first == 2
    assert second == 0
    assert db.query(Notification).count() == 2


def test_inactive_teachers_are_not_notified(db, admin, teacher, make_user) -> None:
    make_user(role="teacher", is_active=False)
    appointment = _appointment(db)

    dispatch(db, event=notifications.APPOINTMENT_OPENED, entity=appointment, actor=admin)
    db.commit()

    assert {row.recipient_id for row in db.query(Notification).all()} == {teacher.id}


def test_unique_key_collision_is_a_no_op(db, teacher) -> None:
    appointment = _appointment(db)
    key = idempotency_key("appointment_opened", appointment.id, teacher.id)
    # Pending row from a concurrent writer; invisible to the existence check.
    db.add(_notification(key, appointment.id, teacher.id))

    inserted = _insert_once(db, _notification(key, appointment.id, teacher.id))
    db.commit()

    assert inserted is False
    assert db.query(Notification).filter(Notification.idempotency_key == key).count() == 1


def test_retract_honours_recipient_filters(db, teacher, other_teacher) -> None:
    appointment = _appointment(db)
    for recipient in (teacher.id, other_teacher.id, None):
        db.add(_notification(idempotency_key("appointment_opened", appointment.id, recipient), appointment.id, recipient))
    db.commit()

    removed = retract(
        db,
        entity_type="appointment",
        entity_id=appointment.id,
        types=["appointment_opened"],
        exclude_recipient_id=teacher.id,
    )
    db.commit()

    assert removed == 2
    assert [row.recipient_id for row in db.query(Notification).all()] == [teacher.id]


def test_visibility_for_admin_and_teacher(db, admin, teacher, other_teacher) -> None:
    appointment = _appointment(db)
    for recipient in (admin.id, teacher.id, other_teacher.id, None):
        db.add(_notification(idempotency_key("appointment_opened", appointment.id, recipient), appointment.id, recipient))
    db.commit()

    admin_rows = {row.recipient_id for row in visible_notifications_query(db, admin).all()}
    teacher_rows = {row.recipient_id for row in visible_notifications_query(db, teacher).all()}

    assert admin_rows == {admin.id, None}
    assert teacher_rows == {teacher.id}


def test_admin_wide_rows_follow_permission_table(db, teacher, monkeypatch) -> None:
    appointment = _appointment(db)
    for recipient in (teacher.id, None):
        db.add(_notification(idempotency_key("appointment_opened", appointment.id, recipient), appointment.id, recipient))
    db.commit()

    monkeypatch.setitem(
        auth.ROLE_PERMISSIONS,
        "teacher",
        {**auth.ROLE_PERMISSIONS["teacher"], "canViewAdminNotifications": True},
    )

    rows = {row.recipient_id for row in visible_notifications_query(db, teacher).all()}
    assert rows == {teacher.id, None}


def test_mark_read_is_scoped_to_visible_rows(db, teacher, other_teacher) -> None:
    appointment = _appointment(db)
    own = _notification(idempotency_key("appointment_opened", appointment.id, teacher.id), appointment.id, teacher.id)
    foreign = _notification(
        idempotency_key("appointment_opened", appointment.id, other_teacher.id), appointment.id, other_teacher.id
    )
    db.add_all([own, foreign])
    db.commit()

    with pytest.raises(NotFound):
        mark_notification_read(db, notification_id=foreign.id, current_user=teacher)

    assert mark_notification_read(db, notification_id=own.id, current_user=teacher).is_read is True
    assert mark_all_read(db, current_user=other_teacher) == 1
    assert mark_all_read(db, current_user=other_teacher) == 0


def test_cleanup_removes_records_of_accepted_appointments(db, admin, teacher, other_teacher) -> None:
    appointment = _appointment(db)
    dispatch(db, event=notifications.APPOINTMENT_OPENED, entity=appointment, actor=admin)
    db.commit()

    appointment.status = "accepted"
    appointment.teacher_id = teacher.id
    db.commit()

    assert cleanup_superseded_notifications(db) == 2
    assert db.query(Notification).count() == 0


def test_fulfilled_message_mentions_excluded_lessons() -> None:
    message = notifications.build_message(
        notifications.CONTRACT_FULFILLED,
        entity=None,
        payload={
            "student_name": "Lena Schmidt",
            "variant_name": "10er Karte",
            "teacher_name": "Anna Berger",
            "completed_available": 7,
            "total_lessons": 10,
            "excluded": 3,
        },
    )
    assert "7 von 10 Stunden abgeschlossen, 3 ausgeschlossen" in message
    assert "Lena Schmidt" in message
