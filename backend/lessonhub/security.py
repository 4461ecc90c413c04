"""Security helpers (role checks and contract ownership)."""

from __future__ import annotations

from typing import Any

from .auth import check_permission
from .domain_errors import NotEligible
from .models import Contract, User


def require_permission(user: User, permission: str, *, details: dict[str, Any] | None = None) -> None:
    """Enforce a role permission server-side."""
    if not check_permission(user, permission):
        raise NotEligible(f"Permission denied: {permission} required", details=details)


def can_edit_contract(contract: Contract, user: User) -> bool:
    """Admins edit any contract; teachers only the contracts they teach."""
    if user.role == "admin":
        return True
    return user.role == "teacher" and contract.teacher_id == user.id


def require_contract_access(contract: Contract, user: User, *, operation: str) -> None:
    if not can_edit_contract(contract, user):
        raise NotEligible(
            "Only an administrator or the contract's teacher may change this contract",
            details={"contract_id": str(contract.id), "operation": operation},
        )
