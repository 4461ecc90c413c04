"""SQLAlchemy models for contracts, lessons, trial appointments and notifications."""
from sqlalchemy import (
    Boolean, Column, String, Integer, Date, DateTime, Text, JSON, Uuid,
    ForeignKey, CheckConstraint, Index, UniqueConstraint
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid
from .database import Base


JSONDocument = JSON().with_variant(JSONB(), "postgresql")

USER_ROLES = ("admin", "teacher")
CONTRACT_STATUSES = ("active", "completed", "cancelled")
TERMINAL_CONTRACT_STATUSES = ("completed", "cancelled")
APPOINTMENT_STATUSES = ("open", "assigned", "accepted")
NOTIFICATION_TYPES = (
    "contract_fulfilled",
    "appointment_opened",
    "appointment_assigned",
    "appointment_declined",
    "appointment_accepted",
)
OPERATION_OUTCOMES = ("started", "success", "failed")


class User(Base):
    """Admin or teacher account. Identity itself is issued by the auth provider."""
    __tablename__ = "users"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String(255), nullable=False)
    email = Column(String(255), nullable=True, unique=True)
    role = Column(String(20), nullable=False, index=True)
    instrument = Column(String(100), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        CheckConstraint(role.in_(USER_ROLES), name="chk_user_role"),
    )

    contracts = relationship("Contract", back_populates="teacher", foreign_keys="Contract.teacher_id")


class Student(Base):
    """Customer who purchases lesson contracts."""
    __tablename__ = "students"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String(255), nullable=False)
    instrument = Column(String(100), nullable=True)
    email = Column(String(255), nullable=True)
    phone = Column(String(50), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    contracts = relationship("Contract", back_populates="student")


class ContractVariant(Base):
    """Plan catalog entry: defines how many lessons a contract includes."""
    __tablename__ = "contract_variants"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String(255), nullable=False)
    contract_type = Column(String(30), nullable=False, default="ten_class_card")
    total_lessons = Column(Integer, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        CheckConstraint(
            contract_type.in_(["ten_class_card", "half_year", "monthly", "workshop"]),
            name="chk_variant_contract_type",
        ),
        CheckConstraint("total_lessons IS NULL OR total_lessons > 0", name="chk_variant_total_lessons_positive"),
    )


class Contract(Base):
    """Purchased bundle of lessons with a lifecycle status."""
    __tablename__ = "contracts"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    student_id = Column(Uuid(as_uuid=True), ForeignKey("students.id"), nullable=False, index=True)
    teacher_id = Column(Uuid(as_uuid=True), ForeignKey("users.id"), nullable=True, index=True)
    contract_variant_id = Column(Uuid(as_uuid=True), ForeignKey("contract_variants.id"), nullable=False)
    type = Column(String(30), nullable=False, default="ten_class_card")
    status = Column(String(20), nullable=False, default="active", index=True)
    # Derived from lessons; written only by the lifecycle summary recompute.
    attendance_count = Column(String(20), nullable=False, default="0/0")
    attendance_dates = Column(JSONDocument, nullable=False, default=list)
    version = Column(Integer, nullable=False, default=1)
    payment_type = Column(String(20), nullable=True)
    billing_cycle = Column(String(20), nullable=True)
    term_start = Column(Date, nullable=True)
    term_end = Column(Date, nullable=True)
    created_by = Column(Uuid(as_uuid=True), ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        CheckConstraint(status.in_(CONTRACT_STATUSES), name="chk_contract_status"),
        CheckConstraint(
            "payment_type IS NULL OR payment_type IN ('monthly', 'one_time')",
            name="chk_contract_payment_type",
        ),
        CheckConstraint(
            "billing_cycle IS NULL OR billing_cycle IN ('monthly', 'upfront')",
            name="chk_contract_billing_cycle",
        ),
        CheckConstraint(version > 0, name="chk_contract_version_positive"),
    )

    student = relationship("Student", back_populates="contracts")
    teacher = relationship("User", back_populates="contracts", foreign_keys=[teacher_id])
    contract_variant = relationship("ContractVariant")
    lessons = relationship(
        "Lesson",
        back_populates="contract",
        cascade="all, delete-orphan",
        order_by="Lesson.lesson_number",
    )


class Lesson(Base):
    """Single trackable lesson of a contract."""
    __tablename__ = "lessons"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    contract_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("contracts.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    lesson_number = Column(Integer, nullable=False)
    date = Column(Date, nullable=True)
    comment = Column(Text, nullable=True)
    # Excluded lessons can never be completed.
    is_available = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        CheckConstraint(lesson_number > 0, name="chk_lesson_number_positive"),
        UniqueConstraint("contract_id", "lesson_number", name="uq_contract_lesson_number"),
    )

    contract = relationship("Contract", back_populates="lessons")


class Appointment(Base):
    """Trial lesson slot offered to all teachers, claimed first-come-first-served."""
    __tablename__ = "appointments"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    student_name = Column(String(255), nullable=False)
    instrument = Column(String(100), nullable=False)
    phone = Column(String(50), nullable=True)
    email = Column(String(255), nullable=True)
    status = Column(String(20), nullable=False, default="open", index=True)
    teacher_id = Column(Uuid(as_uuid=True), ForeignKey("users.id"), nullable=True, index=True)
    created_by = Column(Uuid(as_uuid=True), ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        CheckConstraint(status.in_(APPOINTMENT_STATUSES), name="chk_appointment_status"),
        CheckConstraint(
            "(status = 'open' AND teacher_id IS NULL) OR (status != 'open' AND teacher_id IS NOT NULL)",
            name="chk_appointment_claimed_by",
        ),
    )

    teacher = relationship("User", foreign_keys=[teacher_id])


class Notification(Base):
    """
    Recipient-scoped notification record - ONE ROW PER RECIPIENT.
    At most one row per (entity, recipient, type), enforced by the unique idempotency key.
    """
    __tablename__ = "notifications"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    type = Column(String(50), nullable=False)
    entity_type = Column(String(20), nullable=False)
    entity_id = Column(Uuid(as_uuid=True), nullable=False)
    # NULL means "visible to every admin"; fan-out normally writes one row per admin.
    recipient_id = Column(Uuid(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=True, index=True)
    message = Column(Text, nullable=False)
    meta_data = Column(JSONDocument, nullable=False, default=dict)
    is_read = Column(Boolean, nullable=False, default=False)
    # Format: type:entity_type:entity_id:recipient_id (or "admins")
    idempotency_key = Column(String(255), unique=True, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        CheckConstraint(type.in_(NOTIFICATION_TYPES), name="chk_notification_type"),
        CheckConstraint(entity_type.in_(["contract", "appointment"]), name="chk_notification_entity_type"),
        Index("idx_notifications_entity_type", "entity_type", "entity_id", "type"),
    )


class OperationLog(Base):
    """Append-only audit trail of guarded operations. Rows are never updated."""
    __tablename__ = "operation_log"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    entity_type = Column(String(20), nullable=False)
    entity_id = Column(Uuid(as_uuid=True), nullable=False)
    operation = Column(String(50), nullable=False, index=True)
    outcome = Column(String(20), nullable=False)
    error_message = Column(Text, nullable=True)
    details = Column(JSONDocument, nullable=True)
    actor_id = Column(Uuid(as_uuid=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)

    __table_args__ = (
        CheckConstraint(outcome.in_(OPERATION_OUTCOMES), name="chk_operation_log_outcome"),
        Index("idx_operation_log_entity", "entity_type", "entity_id"),
    )
