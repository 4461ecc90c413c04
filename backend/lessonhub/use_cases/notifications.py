"""Notification fan-out, retraction and the recipient read surface.

Routing is fixed per event; one row is written per recipient and the
unique ``idempotency_key`` (type:entity_type:entity_id:recipient) is the
deduplication backstop when two writers race past the existence check.
"""
from __future__ import annotations

import logging
from typing import Any, Callable, Iterable
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..auth import check_permission
from ..domain_errors import NotFound, NotificationDispatchFailure
from ..models import Appointment, Contract, Notification, User
from ..services.entity_lock import append_operation_log

logger = logging.getLogger(__name__)

CONTRACT_FULFILLED = "contract_fulfilled"
APPOINTMENT_OPENED = "appointment_opened"
APPOINTMENT_ASSIGNED = "appointment_assigned"
APPOINTMENT_DECLINED = "appointment_declined"
APPOINTMENT_ACCEPTED = "appointment_accepted"

EVENT_ENTITY_TYPES: dict[str, str] = {
    CONTRACT_FULFILLED: "contract",
    APPOINTMENT_OPENED: "appointment",
    APPOINTMENT_ASSIGNED: "appointment",
    APPOINTMENT_DECLINED: "appointment",
    APPOINTMENT_ACCEPTED: "appointment",
}

# Records made obsolete once an appointment has been accepted.
SUPERSEDED_BY_ACCEPT: tuple[str, ...] = (APPOINTMENT_OPENED, APPOINTMENT_ASSIGNED, APPOINTMENT_DECLINED)


def idempotency_key(event: str, entity_id: UUID, recipient_id: UUID | None) -> str:
    recipient = str(recipient_id) if recipient_id is not None else "admins"
    return f"{event}:{EVENT_ENTITY_TYPES[event]}:{entity_id}:{recipient}"


def active_user_ids(db: Session, *, role: str) -> list[UUID]:
    rows = (
        db.query(User.id)
        .filter(User.role == role, User.is_active.is_(True))
        .order_by(User.created_at, User.id)
        .all()
    )
    return [row[0] for row in rows]


def _unique(ids: Iterable[UUID | None]) -> list[UUID]:
    seen: set[UUID] = set()
    result: list[UUID] = []
    for value in ids:
        if value is None or value in seen:
            continue
        seen.add(value)
        result.append(value)
    return result


def resolve_recipients(
    db: Session,
    *,
    event: str,
    entity: Contract | Appointment,
    payload: dict[str, Any],
    actor: User | None,
) -> list[UUID]:
    """Apply the routing table for ``event``."""
    actor_id = actor.id if actor is not None else None
    actor_is_admin = actor is not None and actor.role == "admin"

    if event == CONTRACT_FULFILLED:
        return _unique([entity.teacher_id, *active_user_ids(db, role="admin")])

    if event == APPOINTMENT_OPENED:
        return _unique(t for t in active_user_ids(db, role="teacher") if t != actor_id)

    if event == APPOINTMENT_ASSIGNED:
        return _unique([entity.teacher_id])

    if event == APPOINTMENT_DECLINED:
        declined_by = payload.get("declined_teacher_id")
        teachers = [t for t in active_user_ids(db, role="teacher") if str(t) != declined_by]
        admins = [] if actor_is_admin else active_user_ids(db, role="admin")
        return _unique([*teachers, *admins])

    if event == APPOINTMENT_ACCEPTED:
        return _unique(a for a in active_user_ids(db, role="admin") if a != actor_id)

    raise ValueError(f"Unknown notification event: {event}")


def build_message(event: str, entity: Contract | Appointment, payload: dict[str, Any]) -> str:
    if event == CONTRACT_FULFILLED:
        student = payload.get("student_name") or "Unbekannter Schüler"
        variant = payload.get("variant_name") or "Vertrag"
        teacher = payload.get("teacher_name") or "Unbekannter Lehrer"
        completed = payload.get("completed_available", 0)
        total = payload.get("total_lessons", 0)
        excluded = payload.get("excluded", 0)
        if excluded:
            progress = f"{completed} von {total} Stunden abgeschlossen, {excluded} ausgeschlossen"
        else:
            progress = f"{completed} von {total} Stunden"
        return (
            f"Vertrag abgeschlossen: {student} hat den {variant} erfolgreich abgeschlossen "
            f"({progress}). Lehrer: {teacher}."
        )

    if event == APPOINTMENT_OPENED:
        return (
            f"Eine neue offene Probestunde mit {entity.student_name} ({entity.instrument}) ist verfügbar. "
            "Sie können diese in Ihrer Probestundenübersicht annehmen."
        )

    if event == APPOINTMENT_ASSIGNED:
        return (
            f"Sie wurden einer neuen Probestunde mit {entity.student_name} ({entity.instrument}) zugewiesen. "
            "Bitte prüfen Sie Ihre Probestundenübersicht, um diese anzunehmen oder abzulehnen."
        )

    if event == APPOINTMENT_DECLINED:
        teacher = payload.get("declined_teacher_name") or "Ein Lehrer"
        return (
            f"{teacher} hat eine Probestunde mit {entity.student_name} ({entity.instrument}) abgelehnt. "
            "Die Probestunde ist jetzt für andere Lehrer verfügbar."
        )

    if event == APPOINTMENT_ACCEPTED:
        teacher = payload.get("teacher_name") or "Ein Lehrer"
        return f"{teacher} hat eine Probestunde mit {entity.student_name} ({entity.instrument}) angenommen."

    raise ValueError(f"Unknown notification event: {event}")


def notification_exists(db: Session, *, event: str, entity_id: UUID) -> bool:
    return (
        db.query(Notification.id)
        .filter(
            Notification.entity_type == EVENT_ENTITY_TYPES[event],
            Notification.entity_id == entity_id,
            Notification.type == event,
        )
        .first()
        is not None
    )


def _insert_once(db: Session, notification: Notification) -> bool:
    existing = db.query(Notification.id).filter(
        Notification.idempotency_key == notification.idempotency_key
    ).first()
    if existing:
        return False
    try:
        with db.begin_nested():
            db.add(notification)
    except IntegrityError:
        # Concurrent writer inserted the same key first.
        logger.info("Skipping duplicate notification: %s", notification.idempotency_key)
        return False
    return True


def dispatch(
    db: Session,
    *,
    event: str,
    entity: Contract | Appointment,
    payload: dict[str, Any] | None = None,
    actor: User | None = None,
) -> int:
    """Fan out ``event`` to its recipients. Returns the number of new rows."""
    payload = payload or {}
    recipients = resolve_recipients(db, event=event, entity=entity, payload=payload, actor=actor)
    message = build_message(event, entity, payload)

    emitted = 0
    for recipient_id in recipients:
        notification = Notification(
            type=event,
            entity_type=EVENT_ENTITY_TYPES[event],
            entity_id=entity.id,
            recipient_id=recipient_id,
            message=message,
            meta_data=dict(payload, actor_id=str(actor.id) if actor is not None else None),
            is_read=False,
            idempotency_key=idempotency_key(event, entity.id, recipient_id),
        )
        if _insert_once(db, notification):
            emitted += 1

    logger.info(
        "notifications.dispatch event=%s entity=%s recipients=%d emitted=%d",
        event,
        entity.id,
        len(recipients),
        emitted,
    )
    return emitted


def retract(
    db: Session,
    *,
    entity_type: str,
    entity_id: UUID,
    types: Iterable[str],
    recipient_id: UUID | None = None,
    exclude_recipient_id: UUID | None = None,
) -> int:
    """Delete notifications for an entity by exact type match."""
    query = db.query(Notification).filter(
        Notification.entity_type == entity_type,
        Notification.entity_id == entity_id,
        Notification.type.in_(list(types)),
    )
    if recipient_id is not None:
        query = query.filter(Notification.recipient_id == recipient_id)
    if exclude_recipient_id is not None:
        query = query.filter(
            (Notification.recipient_id != exclude_recipient_id) | Notification.recipient_id.is_(None)
        )
    return query.delete(synchronize_session="fetch")


def visible_notifications_query(db: Session, current_user: User):
    """Recipient matches the user, or the row is admin-wide and the user is an admin."""
    query = db.query(Notification)
    if check_permission(current_user, "canViewAdminNotifications"):
        query = query.filter(
            (Notification.recipient_id == current_user.id) | Notification.recipient_id.is_(None)
        )
    else:
        query = query.filter(Notification.recipient_id == current_user.id)
    return query.order_by(Notification.created_at.desc(), Notification.id)


def mark_notification_read(db: Session, *, notification_id: UUID, current_user: User) -> Notification:
    notification = visible_notifications_query(db, current_user).filter(
        Notification.id == notification_id
    ).first()
    if not notification:
        raise NotFound("Notification not found", details={"notification_id": str(notification_id)})
    if not notification.is_read:
        notification.is_read = True
        db.commit()
    return notification


def mark_all_read(db: Session, *, current_user: User) -> int:
    unread = visible_notifications_query(db, current_user).filter(Notification.is_read.is_(False)).all()
    for notification in unread:
        notification.is_read = True
    db.commit()
    return len(unread)


def cleanup_superseded_notifications(db: Session) -> int:
    """Retract open/assigned/declined records left behind on accepted appointments."""
    accepted_ids = [row[0] for row in db.query(Appointment.id).filter(Appointment.status == "accepted").all()]
    if not accepted_ids:
        return 0
    removed = (
        db.query(Notification)
        .filter(
            Notification.entity_type == "appointment",
            Notification.entity_id.in_(accepted_ids),
            Notification.type.in_(list(SUPERSEDED_BY_ACCEPT)),
        )
        .delete(synchronize_session="fetch")
    )
    db.commit()
    return removed


def run_best_effort(
    db: Session,
    *,
    entity_type: str,
    entity_id: UUID,
    operation: str,
    actor_id: UUID | None,
    fn: Callable[[], Any],
) -> bool:
    """Run notification side effects in a savepoint; failures never undo business state.

    On failure the savepoint is rolled back, the error is logged and a
    ``failed`` row is appended to the operation log of the enclosing unit
    of work. Returns True when the side effects were applied.
    """
    try:
        with db.begin_nested():
            fn()
    except Exception as exc:
        failure = NotificationDispatchFailure(
            f"Notification step '{operation}' failed for {entity_type} {entity_id}",
            details={"entity_type": entity_type, "entity_id": str(entity_id), "operation": operation},
        )
        logger.exception("%s: %s", failure.message, exc)
        append_operation_log(
            db,
            entity_type=entity_type,
            entity_id=entity_id,
            operation=operation,
            outcome="failed",
            actor_id=actor_id,
            error_message=f"{failure.message}: {exc}"[:2000],
            details={"code": failure.code},
        )
        return False
    return True
