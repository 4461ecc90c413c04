"""Contract endpoints."""
from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from ..auth import PermissionChecker, get_current_user
from ..database import get_db
from ..models import User
from ..schemas import ContractProgressOut, ContractSaveRequest, ContractSaveResult
from ..use_cases.contract_lifecycle import get_contract_progress, save_contract

router = APIRouter(prefix="/contracts", tags=["contracts"])


@router.post(
    "",
    response_model=ContractSaveResult,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(PermissionChecker("canManageContracts"))],
)
def create_contract(
    data: ContractSaveRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Create contract and generate its lessons."""
    return save_contract(db, data=data, is_update=False, current_user=current_user)


@router.put(
    "/{contract_id}",
    response_model=ContractSaveResult,
    dependencies=[Depends(PermissionChecker("canManageContracts"))],
)
def update_contract(
    contract_id: UUID,
    data: ContractSaveRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Update contract; a variant change regenerates lessons."""
    return save_contract(db, data=data, is_update=True, contract_id=contract_id, current_user=current_user)


@router.get("/{contract_id}/progress", response_model=ContractProgressOut)
def contract_progress(
    contract_id: UUID,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    return get_contract_progress(db, contract_id=contract_id, current_user=current_user)
