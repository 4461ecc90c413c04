"""Contract lifecycle use-cases: save, status transitions and completion."""
from __future__ import annotations

import logging
import uuid
from typing import Any
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..domain_errors import (
    DomainError,
    NotEligible,
    NotFound,
    TerminalStateViolation,
    ValidationFailure,
    WrongState,
)
from ..models import (
    CONTRACT_STATUSES,
    TERMINAL_CONTRACT_STATUSES,
    Contract,
    ContractVariant,
    Lesson,
    Student,
    User,
)
from ..schemas import ContractProgressOut, ContractSaveRequest, ContractSaveResult
from ..security import require_contract_access, require_permission
from ..services.completion import CompletionResult, completion_from_aggregate, summary_string
from ..services.entity_lock import with_entity_lock
from ..services.unit_ledger import (
    LessonAggregate,
    aggregate_lessons,
    attendance_dates,
    load_lessons,
    plan_total_lessons,
    regenerate_lessons,
)
from . import notifications

logger = logging.getLogger(__name__)


def _get_contract_or_404(*, db: Session, contract_id: UUID) -> Contract:
    contract = db.query(Contract).filter(Contract.id == contract_id).first()
    if not contract:
        raise NotFound("Contract not found", details={"contract_id": str(contract_id)})
    return contract


def _bump_version(contract: Contract) -> None:
    contract.version = (contract.version or 0) + 1


def refresh_contract_summary(db: Session, contract: Contract) -> LessonAggregate:
    """Recompute ``attendance_count``/``attendance_dates`` from the lessons.

    This is the only place the cached summary is written.
    """
    db.flush()
    lessons = load_lessons(db, contract.id)
    aggregate = aggregate_lessons(lessons)
    summary = summary_string(aggregate)
    dates = attendance_dates(lessons)
    if contract.attendance_count != summary or list(contract.attendance_dates or []) != dates:
        contract.attendance_count = summary
        contract.attendance_dates = dates
        _bump_version(contract)
    return aggregate


def _fulfilled_payload(db: Session, contract: Contract, aggregate: LessonAggregate, source: str) -> dict[str, Any]:
    student = db.get(Student, contract.student_id) if contract.student_id else None
    variant = db.get(ContractVariant, contract.contract_variant_id) if contract.contract_variant_id else None
    teacher = db.get(User, contract.teacher_id) if contract.teacher_id else None
    payload: dict[str, Any] = {
        "student_name": student.name if student else None,
        "variant_name": variant.name if variant else None,
        "teacher_name": teacher.name if teacher else None,
        "source": source,
    }
    payload.update(completion_from_aggregate(aggregate).as_payload())
    return payload


def _fire_completed(db: Session, contract: Contract, current_user: User | None, *, source: str) -> None:
    """Active -> Completed, then a best-effort ``contract_fulfilled`` fan-out."""
    contract.status = "completed"
    _bump_version(contract)
    aggregate = refresh_contract_summary(db, contract)
    payload = _fulfilled_payload(db, contract, aggregate, source)

    logger.info(
        "contract.completed id=%s summary=%s excluded=%d source=%s",
        contract.id,
        contract.attendance_count,
        aggregate.excluded,
        source,
    )
    notifications.run_best_effort(
        db,
        entity_type="contract",
        entity_id=contract.id,
        operation="notify_contract_fulfilled",
        actor_id=current_user.id if current_user is not None else None,
        fn=lambda: notifications.dispatch(
            db,
            event=notifications.CONTRACT_FULFILLED,
            entity=contract,
            payload=payload,
            actor=current_user,
        ),
    )


def transition_contract_status(
    db: Session,
    contract: Contract,
    new_status: str | None,
    current_user: User,
) -> bool:
    """Apply an explicit status edit. Returns True when the status changed."""
    if new_status is None or new_status == contract.status:
        return False

    details = {"contract_id": str(contract.id), "from": contract.status, "to": new_status}
    if contract.status in TERMINAL_CONTRACT_STATUSES:
        raise TerminalStateViolation(
            f"Contract is {contract.status} and cannot change to {new_status}",
            details=details,
        )
    if new_status not in CONTRACT_STATUSES:
        raise ValidationFailure(f"Unknown contract status: {new_status}", details=details)
    require_permission(current_user, "canChangeContractStatus", details=details)

    if new_status == "completed":
        _fire_completed(db, contract, current_user, source="manual")
        return True

    contract.status = new_status
    _bump_version(contract)
    logger.info("contract.%s id=%s by=%s", new_status, contract.id, current_user.id)
    return True


def apply_completion(
    db: Session,
    contract: Contract,
    current_user: User | None,
    *,
    source: str = "lessons",
) -> tuple[CompletionResult, bool]:
    """Refresh the summary and fire completion when the lessons call for it.

    Returns the detector result and whether this call fired the transition.
    """
    aggregate = refresh_contract_summary(db, contract)
    result = completion_from_aggregate(aggregate)
    if not result.is_complete or contract.status != "active":
        return result, False
    if notifications.notification_exists(db, event=notifications.CONTRACT_FULFILLED, entity_id=contract.id):
        return result, False
    _fire_completed(db, contract, current_user, source=source)
    return result, True


def _validate_references(db: Session, data: ContractSaveRequest, current_user: User) -> tuple[ContractVariant, UUID | None]:
    if db.get(Student, data.student_id) is None:
        raise ValidationFailure("Student does not exist", details={"student_id": str(data.student_id)})

    variant = db.get(ContractVariant, data.contract_variant_id)
    if variant is None:
        raise ValidationFailure(
            "Contract variant does not exist",
            details={"contract_variant_id": str(data.contract_variant_id)},
        )

    teacher_id = data.teacher_id
    if current_user.role == "teacher":
        teacher_id = teacher_id or current_user.id
        if teacher_id != current_user.id:
            raise NotEligible(
                "Teachers may only save their own contracts",
                details={"teacher_id": str(teacher_id)},
            )
    if teacher_id is not None:
        teacher = db.get(User, teacher_id)
        if teacher is None or teacher.role != "teacher" or not teacher.is_active:
            raise ValidationFailure("Teacher does not exist or is inactive", details={"teacher_id": str(teacher_id)})
    return variant, teacher_id


def save_contract(
    db: Session,
    *,
    data: ContractSaveRequest,
    is_update: bool,
    contract_id: UUID | None = None,
    current_user: User,
) -> ContractSaveResult:
    """Create or update a contract, regenerating lessons when the plan size changes."""
    variant, teacher_id = _validate_references(db, data, current_user)
    if is_update and contract_id is None:
        raise ValidationFailure("contract_id is required for an update")
    if not is_update and data.status not in (None, "active"):
        raise ValidationFailure(
            "New contracts always start active",
            details={"status": data.status},
        )

    target_id = contract_id if is_update else uuid.uuid4()
    warnings: list[str] = []

    def _save() -> Contract:
        if is_update:
            contract = _get_contract_or_404(db=db, contract_id=target_id)
            require_contract_access(contract, current_user, operation="save_contract")
            if data.expected_version is not None and contract.version != data.expected_version:
                raise WrongState(
                    "Contract was modified by someone else; reload and try again",
                    details={
                        "contract_id": str(contract.id),
                        "expected_version": data.expected_version,
                        "actual_version": contract.version,
                    },
                )
            variant_changed = contract.contract_variant_id != variant.id
            _bump_version(contract)
        else:
            contract = Contract(
                id=target_id,
                status="active",
                attendance_count="0/0",
                attendance_dates=[],
                version=1,
                created_by=current_user.id,
            )
            db.add(contract)
            variant_changed = True

        contract.student_id = data.student_id
        contract.teacher_id = teacher_id
        contract.payment_type = data.payment_type
        contract.billing_cycle = data.billing_cycle
        contract.term_start = data.term_start
        contract.term_end = data.term_end
        if data.type is not None:
            contract.type = data.type
        elif variant_changed:
            contract.type = variant.contract_type

        if variant_changed:
            contract.contract_variant_id = variant.id
            # Stale summary must never survive a plan change.
            contract.attendance_count = "0/0"
            contract.attendance_dates = []

        total_lessons = plan_total_lessons(variant, contract.type)
        db.flush()
        lesson_count = db.query(Lesson).filter(Lesson.contract_id == contract.id).count()
        if variant_changed or lesson_count != total_lessons:
            report = regenerate_lessons(db, contract=contract, total_lessons=total_lessons)
            if report.removed_completed:
                warnings.append(
                    f"{report.removed_completed} completed lesson(s) were removed by the plan change"
                )
            logger.info(
                "contract.lessons_regenerated id=%s total=%d created=%d removed=%d",
                contract.id,
                report.total_lessons,
                report.created,
                report.removed,
            )

        if is_update:
            transition_contract_status(db, contract, data.status, current_user)
        apply_completion(db, contract, current_user, source="save")
        return contract

    contract = with_entity_lock(
        db,
        entity_type="contract",
        entity_id=target_id,
        operation="save_contract" if is_update else "create_contract",
        actor_id=current_user.id,
        fn=_save,
    )
    return ContractSaveResult(
        success=True,
        contract_id=contract.id,
        status=contract.status,
        attendance_count=contract.attendance_count,
        version=contract.version,
        warnings=warnings,
    )


def get_contract_progress(db: Session, *, contract_id: UUID, current_user: User) -> ContractProgressOut:
    contract = _get_contract_or_404(db=db, contract_id=contract_id)
    require_contract_access(contract, current_user, operation="view_progress")
    result = completion_from_aggregate(aggregate_lessons(load_lessons(db, contract.id)))
    return ContractProgressOut(
        contract_id=contract.id,
        status=contract.status,
        attendance_count=contract.attendance_count,
        attendance_dates=list(contract.attendance_dates or []),
        version=contract.version,
        completed_available=result.completed_available,
        total_available=result.total_available,
        excluded=result.excluded,
        total_lessons=result.total_lessons,
        is_complete=result.is_complete,
    )


def reconcile_active_contracts(db: Session) -> dict[str, int]:
    """Re-run summary recompute and completion for every active contract.

    Each contract gets its own guarded unit of work; busy contracts are
    skipped and picked up on the next run.
    """
    contract_ids = [row[0] for row in db.query(Contract.id).filter(Contract.status == "active").all()]
    db.rollback()

    stats = {"checked": 0, "completed": 0, "busy": 0, "failed": 0}
    for contract_id in contract_ids:
        def _reconcile(contract_id: UUID = contract_id) -> bool:
            contract = _get_contract_or_404(db=db, contract_id=contract_id)
            _, fired = apply_completion(db, contract, None, source="reconcile")
            return fired

        try:
            fired = with_entity_lock(
                db,
                entity_type="contract",
                entity_id=contract_id,
                operation="reconcile_contract",
                actor_id=None,
                fn=_reconcile,
            )
        except DomainError as exc:
            if exc.code == "ENTITY_BUSY":
                stats["busy"] += 1
            else:
                stats["failed"] += 1
            continue
        except SQLAlchemyError:
            logger.exception("contracts.reconcile failed for %s", contract_id)
            stats["failed"] += 1
            continue
        stats["checked"] += 1
        if fired:
            stats["completed"] += 1

    logger.info("contracts.reconcile %s", stats)
    return stats
