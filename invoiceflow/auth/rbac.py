"""
Role-Based Access Control (RBAC)

Role hierarchy (highest → lowest privilege):
    admin > member > viewer

    viewer  read batches, documents, invoices, analyses; live updates
    member  upload and cancel batches
    admin   everything

Usage:
    @router.post("/batches/{batch_id}/cancel")
    async def cancel(batch_id: str, user: User = Depends(require_role("member"))): ...
"""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends, HTTPException, status

from invoiceflow.auth.token import get_current_user
from invoiceflow.auth.users import User

_ROLE_ORDER: dict[str, int] = {
    "viewer": 0,
    "member": 1,
    "admin":  2,
}


def has_role(user_role: str, required_role: str) -> bool:
    """True if user_role meets or exceeds required_role."""
    return _ROLE_ORDER.get(user_role, -1) >= _ROLE_ORDER.get(required_role, 999)


def require_role(minimum_role: str):
    """Dependency factory: authenticate, then insist on `minimum_role` or above."""
    if minimum_role not in _ROLE_ORDER:
        raise ValueError(f"Unknown role: {minimum_role!r}")

    async def _dependency(user: Annotated[User, Depends(get_current_user)]) -> User:
        if not has_role(user.role, minimum_role):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=(
                    f"Insufficient permissions. "
                    f"Required: '{minimum_role}', your role: '{user.role}'."
                ),
            )
        return user

    return _dependency

