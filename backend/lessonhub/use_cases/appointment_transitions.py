"""Trial appointment lifecycle: open -> assigned -> accepted, decline back to open."""
from __future__ import annotations

import logging
import uuid
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from ..domain_errors import AlreadyClaimed, NotEligible, NotFound, ValidationFailure, WrongState
from ..models import Appointment, User
from ..schemas import AppointmentCreate
from ..security import require_permission
from ..services.entity_lock import with_entity_lock
from . import notifications

logger = logging.getLogger(__name__)


def _get_appointment_or_404(*, db: Session, appointment_id: UUID) -> Appointment:
    appointment = db.query(Appointment).filter(Appointment.id == appointment_id).first()
    if not appointment:
        raise NotFound("Appointment not found", details={"appointment_id": str(appointment_id)})
    return appointment


def _active_teacher(db: Session, teacher_id: UUID) -> User:
    teacher = db.get(User, teacher_id)
    if teacher is None or teacher.role != "teacher" or not teacher.is_active:
        raise ValidationFailure("Teacher does not exist or is inactive", details={"teacher_id": str(teacher_id)})
    return teacher


def _conditional_update(
    db: Session,
    appointment_id: UUID,
    *,
    expected_status: str,
    expected_teacher_id: UUID | None,
    values: dict[str, Any],
) -> bool:
    """UPDATE guarded on the state read earlier. False when another writer moved first."""
    query = db.query(Appointment).filter(
        Appointment.id == appointment_id,
        Appointment.status == expected_status,
    )
    if expected_teacher_id is None:
        query = query.filter(Appointment.teacher_id.is_(None))
    else:
        query = query.filter(Appointment.teacher_id == expected_teacher_id)
    return query.update(values, synchronize_session="fetch") == 1


def _notify(db: Session, appointment_id: UUID, operation: str, current_user: User, fn) -> bool:
    return notifications.run_best_effort(
        db,
        entity_type="appointment",
        entity_id=appointment_id,
        operation=operation,
        actor_id=current_user.id,
        fn=fn,
    )


def create_appointment(db: Session, *, data: AppointmentCreate, current_user: User) -> Appointment:
    """Create an open slot, or an assigned one when an admin nominates a teacher."""
    require_permission(current_user, "canCreateAppointments")
    nominee: User | None = None
    if data.teacher_id is not None:
        require_permission(current_user, "canAssignAppointments", details={"teacher_id": str(data.teacher_id)})
        nominee = _active_teacher(db, data.teacher_id)

    appointment_id = uuid.uuid4()

    def _create() -> Appointment:
        appointment = Appointment(
            id=appointment_id,
            student_name=data.student_name.strip(),
            instrument=data.instrument.strip(),
            phone=data.phone,
            email=data.email,
            status="assigned" if nominee is not None else "open",
            teacher_id=nominee.id if nominee is not None else None,
            created_by=current_user.id,
        )
        db.add(appointment)
        db.flush()

        if nominee is not None:
            event, operation = notifications.APPOINTMENT_ASSIGNED, "notify_appointment_assigned"
        else:
            event, operation = notifications.APPOINTMENT_OPENED, "notify_appointment_opened"
        _notify(
            db,
            appointment.id,
            operation,
            current_user,
            lambda: notifications.dispatch(db, event=event, entity=appointment, actor=current_user),
        )
        logger.info("appointment.created id=%s status=%s by=%s", appointment.id, appointment.status, current_user.id)
        return appointment

    return with_entity_lock(
        db,
        entity_type="appointment",
        entity_id=appointment_id,
        operation="create_appointment",
        actor_id=current_user.id,
        fn=_create,
    )


def assign_appointment(db: Session, *, appointment_id: UUID, teacher_id: UUID, current_user: User) -> Appointment:
    """Admin nominates a teacher for an open slot."""
    require_permission(current_user, "canAssignAppointments", details={"appointment_id": str(appointment_id)})
    nominee = _active_teacher(db, teacher_id)

    def _assign() -> Appointment:
        appointment = _get_appointment_or_404(db=db, appointment_id=appointment_id)
        details = {"appointment_id": str(appointment_id), "from": appointment.status, "to": "assigned"}
        if appointment.status != "open":
            raise WrongState(f"Appointment is {appointment.status}, expected open", details=details)
        if not _conditional_update(
            db,
            appointment_id,
            expected_status="open",
            expected_teacher_id=None,
            values={"status": "assigned", "teacher_id": nominee.id},
        ):
            raise WrongState("Appointment changed while being assigned", details=details)
        appointment = db.get(Appointment, appointment_id)

        def _side_effects() -> None:
            notifications.retract(
                db,
                entity_type="appointment",
                entity_id=appointment_id,
                types=[notifications.APPOINTMENT_OPENED, notifications.APPOINTMENT_DECLINED],
            )
            notifications.dispatch(
                db,
                event=notifications.APPOINTMENT_ASSIGNED,
                entity=appointment,
                actor=current_user,
            )

        _notify(db, appointment_id, "notify_appointment_assigned", current_user, _side_effects)
        logger.info("appointment.assigned id=%s teacher=%s", appointment_id, nominee.id)
        return appointment

    return with_entity_lock(
        db,
        entity_type="appointment",
        entity_id=appointment_id,
        operation="assign_appointment",
        actor_id=current_user.id,
        fn=_assign,
    )


def claim_appointment(db: Session, *, appointment_id: UUID, current_user: User) -> Appointment:
    """First teacher to claim wins; losers get ``AlreadyClaimed``."""
    require_permission(current_user, "canClaimAppointments", details={"appointment_id": str(appointment_id)})

    def _claim() -> Appointment:
        appointment = _get_appointment_or_404(db=db, appointment_id=appointment_id)
        details = {"appointment_id": str(appointment_id), "from": appointment.status, "to": "accepted"}

        if appointment.status == "accepted":
            # Idempotent for the teacher who already holds it.
            if appointment.teacher_id == current_user.id:
                return appointment
            raise AlreadyClaimed("Appointment was already accepted by another teacher", details=details)
        if appointment.status == "assigned" and appointment.teacher_id != current_user.id:
            raise NotEligible("Appointment is assigned to another teacher", details=details)

        expected_teacher_id = appointment.teacher_id if appointment.status == "assigned" else None
        if not _conditional_update(
            db,
            appointment_id,
            expected_status=appointment.status,
            expected_teacher_id=expected_teacher_id,
            values={"status": "accepted", "teacher_id": current_user.id},
        ):
            raise AlreadyClaimed("Appointment was already accepted by another teacher", details=details)
        claimed = db.get(Appointment, appointment_id)

        def _side_effects() -> None:
            notifications.retract(
                db,
                entity_type="appointment",
                entity_id=appointment_id,
                types=notifications.SUPERSEDED_BY_ACCEPT,
            )
            notifications.dispatch(
                db,
                event=notifications.APPOINTMENT_ACCEPTED,
                entity=claimed,
                payload={"teacher_name": current_user.name},
                actor=current_user,
            )

        _notify(db, appointment_id, "notify_appointment_accepted", current_user, _side_effects)
        logger.info("appointment.accepted id=%s teacher=%s", appointment_id, current_user.id)
        return claimed

    return with_entity_lock(
        db,
        entity_type="appointment",
        entity_id=appointment_id,
        operation="claim_appointment",
        actor_id=current_user.id,
        fn=_claim,
    )


def decline_appointment(db: Session, *, appointment_id: UUID, current_user: User) -> Appointment:
    """Nominee (or an admin on their behalf) hands an assigned slot back to the pool."""

    def _decline() -> Appointment:
        appointment = _get_appointment_or_404(db=db, appointment_id=appointment_id)
        details = {"appointment_id": str(appointment_id), "from": appointment.status, "to": "open"}
        if appointment.status != "assigned":
            raise WrongState(f"Appointment is {appointment.status}, expected assigned", details=details)
        if current_user.role != "admin" and appointment.teacher_id != current_user.id:
            raise NotEligible("Only the assigned teacher may decline this appointment", details=details)

        nominee_id = appointment.teacher_id
        nominee = db.get(User, nominee_id)
        if not _conditional_update(
            db,
            appointment_id,
            expected_status="assigned",
            expected_teacher_id=nominee_id,
            values={"status": "open", "teacher_id": None},
        ):
            raise WrongState("Appointment changed while being declined", details=details)
        reopened = db.get(Appointment, appointment_id)
        payload = {
            "declined_teacher_id": str(nominee_id),
            "declined_teacher_name": nominee.name if nominee is not None else None,
        }

        def _side_effects() -> None:
            notifications.retract(
                db,
                entity_type="appointment",
                entity_id=appointment_id,
                types=[notifications.APPOINTMENT_ASSIGNED],
                recipient_id=nominee_id,
            )
            notifications.dispatch(
                db,
                event=notifications.APPOINTMENT_DECLINED,
                entity=reopened,
                payload=payload,
                actor=current_user,
            )

        _notify(db, appointment_id, "notify_appointment_declined", current_user, _side_effects)
        logger.info("appointment.declined id=%s teacher=%s by=%s", appointment_id, nominee_id, current_user.id)
        return reopened

    return with_entity_lock(
        db,
        entity_type="appointment",
        entity_id=appointment_id,
        operation="decline_appointment",
        actor_id=current_user.id,
        fn=_decline,
    )
