"""
auth/guard.py -- Role-based authorization: (role, operation) -> allow / deny.

The permission table is static data. Role is an enum, not a class hierarchy,
so permitted() is a dictionary lookup and authorize() a pure function of the
claims minted by auth/tokens.py. No store access, no side effects.

admin's set is built as regular's set plus the administrative operations, so
"admin can do everything regular can" holds by construction.
"""

from __future__ import annotations

from enum import Enum

from auth.errors import Forbidden
from auth.models import Claims, Role


class Operation(str, Enum):
    profile_read = "profile:read"
    profile_update = "profile:update"
    password_change = "password:change"
    session_logout = "session:logout"
    verification_resend = "verification:resend"
    users_list = "users:list"
    users_read = "users:read"
    users_update_role = "users:update-role"
    users_delete = "users:delete"
    sessions_revoke = "sessions:revoke"


_REGULAR_OPERATIONS: frozenset[Operation] = frozenset(
    {
        Operation.profile_read,
        Operation.profile_update,
        Operation.password_change,
        Operation.session_logout,
        Operation.verification_resend,
    }
)

_ADMIN_OPERATIONS: frozenset[Operation] = frozenset(
    {
        Operation.users_list,
        Operation.users_read,
        Operation.users_update_role,
        Operation.users_delete,
        Operation.sessions_revoke,
    }
)

PERMISSIONS: dict[Role, frozenset[Operation]] = {
    Role.regular: _REGULAR_OPERATIONS,
    Role.admin: _REGULAR_OPERATIONS | _ADMIN_OPERATIONS,
}


def permitted(role: Role, operation: Operation) -> bool:
    return Operation(operation) in PERMISSIONS.get(Role(role), frozenset())


def authorize(claims: Claims, operation: Operation) -> None:
    """Raise Forbidden unless the token's role may perform `operation`."""
    if not permitted(claims.role, operation):
        raise Forbidden()
