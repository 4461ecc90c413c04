"""Pydantic schemas for API."""
from pydantic import BaseModel, Field, ConfigDict
from typing import Literal, Optional
from datetime import date, datetime
from uuid import UUID


# Contract schemas
class ContractSaveRequest(BaseModel):
    student_id: UUID
    contract_variant_id: UUID
    teacher_id: Optional[UUID] = None
    # Legacy contract type; defaults to the variant's type.
    type: Optional[Literal["ten_class_card", "half_year", "monthly", "workshop"]] = None
    status: Optional[Literal["active", "completed", "cancelled"]] = None
    payment_type: Optional[Literal["monthly", "one_time"]] = None
    billing_cycle: Optional[Literal["monthly", "upfront"]] = None
    term_start: Optional[date] = None
    term_end: Optional[date] = None
    # Optimistic concurrency: reject the save if the contract moved on.
    expected_version: Optional[int] = Field(default=None, ge=1)


class ContractSaveResult(BaseModel):
    success: bool
    contract_id: UUID
    status: str
    attendance_count: str
    version: int
    warnings: list[str] = Field(default_factory=list)


class ContractProgressOut(BaseModel):
    contract_id: UUID
    status: str
    attendance_count: str
    attendance_dates: list[str]
    version: int
    completed_available: int
    total_available: int
    excluded: int
    total_lessons: int
    is_complete: bool


# Lesson schemas
class LessonUpdateItem(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    lesson_id: UUID = Field(alias="id")
    contract_id: Optional[UUID] = None
    lesson_date: Optional[date] = Field(default=None, alias="date")
    comment: Optional[str] = Field(default=None, max_length=2000)
    is_available: bool = True


class BatchLessonUpdateRequest(BaseModel):
    updates: list[LessonUpdateItem] = Field(min_length=1, max_length=500)


class BatchUpdateResult(BaseModel):
    success: bool
    success_count: int
    error_count: int
    errors: list[str] = Field(default_factory=list)
    completed_contract_ids: list[UUID] = Field(default_factory=list)


# Appointment schemas
class AppointmentCreate(BaseModel):
    student_name: str = Field(min_length=1, max_length=255)
    instrument: str = Field(min_length=1, max_length=100)
    phone: Optional[str] = Field(default=None, max_length=50)
    email: Optional[str] = Field(default=None, max_length=255)
    # Admins may nominate a teacher right away.
    teacher_id: Optional[UUID] = None


class AppointmentAssignRequest(BaseModel):
    teacher_id: UUID


class AppointmentOut(BaseModel):
    id: UUID
    student_name: str
    instrument: str
    phone: Optional[str] = None
    email: Optional[str] = None
    status: str
    teacher_id: Optional[UUID] = None
    created_by: Optional[UUID] = None
    created_at: Optional[datetime] = None
    model_config = ConfigDict(from_attributes=True)


# Notification schemas
class NotificationOut(BaseModel):
    id: UUID
    type: str
    entity_type: str
    entity_id: UUID
    recipient_id: Optional[UUID] = None
    message: str
    is_read: bool
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    model_config = ConfigDict(from_attributes=True)


class MarkAllReadResult(BaseModel):
    updated: int
