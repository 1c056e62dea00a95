"""
Shared dependencies. Re-exports get_current_user from FastAPI-Users and
resolves the caller's organization.
"""

from fastapi import Depends, HTTPException

from .api.v1.users_fastapi import current_active_user as get_current_user
from .models.user import User


def get_current_org_user(current_user: User = Depends(get_current_user)) -> User:
    """Caller must belong to an organization."""
    if not current_user.organization_id:
        raise HTTPException(
            status_code=403,
            detail="You must be a member of an organization to perform this action",
        )
    return current_user


def get_credit_admin(current_user: User = Depends(get_current_org_user)) -> User:
    """Caller may add credits to their organization."""
    if not current_user.can_manage_credits:
        raise HTTPException(status_code=403, detail="Only organization owners or admins can add credits")
    return current_user


__all__ = ["get_current_user", "get_current_org_user", "get_credit_admin"]
