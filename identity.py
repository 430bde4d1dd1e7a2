"""
Caller identity as forwarded by the session gateway.

The gateway authenticates the user and passes `X-User-Id` and
`X-User-Role` on every request; this service trusts them as given.
"""

from typing import Literal, Optional

from fastapi import Depends, Header
from pydantic import BaseModel

from errors import AccessDeniedError, AuthenticationError


class Identity(BaseModel):
    user_id: str
    role: Literal["student", "admin"] = "student"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    def ensure_self_or_admin(self, student_id: str) -> None:
        if not self.is_admin and self.user_id != student_id:
            raise AccessDeniedError("Access denied")


def get_identity(
    x_user_id: Optional[str] = Header(None),
    x_user_role: str = Header("student"),
) -> Identity:
    if not x_user_id:
        raise AuthenticationError("Access denied. No identity provided.")
    role = x_user_role.strip().lower()
    if role not in ("student", "admin"):
        raise AccessDeniedError("Unknown role")
    return Identity(user_id=x_user_id, role=role)


def require_admin(identity: Identity = Depends(get_identity)) -> Identity:
    if not identity.is_admin:
        raise AccessDeniedError("Admin privileges required")
    return identity
