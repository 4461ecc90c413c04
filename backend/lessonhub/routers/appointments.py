"""Trial appointment endpoints."""
from __future__ import annotations

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy import or_
from sqlalchemy.orm import Session

from ..auth import get_current_user
from ..database import get_db
from ..models import Appointment, User
from ..schemas import AppointmentAssignRequest, AppointmentCreate, AppointmentOut
from ..use_cases.appointment_transitions import (
    assign_appointment,
    claim_appointment,
    create_appointment,
    decline_appointment,
)

router = APIRouter(prefix="/appointments", tags=["appointments"])


@router.get("", response_model=list[AppointmentOut])
def list_appointments(
    status_filter: Optional[str] = Query(None, alias="status"),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Admins see every slot; teachers see open slots and their own."""
    query = db.query(Appointment)
    if current_user.role != "admin":
        query = query.filter(or_(Appointment.status == "open", Appointment.teacher_id == current_user.id))
    if status_filter:
        query = query.filter(Appointment.status == status_filter)
    return query.order_by(Appointment.created_at.desc(), Appointment.id).all()


@router.post("", response_model=AppointmentOut, status_code=status.HTTP_201_CREATED)
def create(
    data: AppointmentCreate,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    return create_appointment(db, data=data, current_user=current_user)


@router.post("/{appointment_id}/assign", response_model=AppointmentOut)
def assign(
    appointment_id: UUID,
    data: AppointmentAssignRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Nominate a teacher for an open slot (admin)."""
    return assign_appointment(db, appointment_id=appointment_id, teacher_id=data.teacher_id, current_user=current_user)


@router.post("/{appointment_id}/claim", response_model=AppointmentOut)
def claim(
    appointment_id: UUID,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Accept a slot. Exactly one concurrent claimer wins."""
    return claim_appointment(db, appointment_id=appointment_id, current_user=current_user)


@router.post("/{appointment_id}/decline", response_model=AppointmentOut)
def decline(
    appointment_id: UUID,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    return decline_appointment(db, appointment_id=appointment_id, current_user=current_user)
