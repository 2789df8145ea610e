"""Caller identity as forwarded by the authenticating gateway."""
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Header, HTTPException

from .models import ADMIN_ROLES

ROLES = ("user",) + ADMIN_ROLES


@dataclass(frozen=True)
class Principal:
    id: int
    role: str = "user"

    @property
    def is_admin(self) -> bool:
        return self.role in ADMIN_ROLES


def get_current_principal(
    x_user_id: Optional[str] = Header(default=None),
    x_user_role: Optional[str] = Header(default="user"),
) -> Principal:
    """FastAPI dependency: the authenticated caller, or 401."""
    if not x_user_id or not x_user_id.isdigit():
        raise HTTPException(status_code=401, detail="Access token required")
    role = (x_user_role or "user").lower()
    if role not in ROLES:
        raise HTTPException(status_code=401, detail="Unknown role")
    return Principal(id=int(x_user_id), role=role)


def require_admin(principal: Principal = Depends(get_current_principal)) -> Principal:
    if not principal.is_admin:
        raise HTTPException(status_code=403, detail="Admin access required")
    return principal
