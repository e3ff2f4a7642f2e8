from __future__ import annotations

import uuid
from dataclasses import dataclass

from fastapi import Request

from fleetops.errors import NotAuthorizedError, UnauthenticatedError
from fleetops.models import UserRole as Role

PRIVILEGED_ROLES = frozenset({Role.ADMIN, Role.ACCOUNTANT})


@dataclass
class Principal:
    id: uuid.UUID
    full_name: str
    role: Role
    active: bool = True


def get_current_principal(request: Request) -> Principal:
    principal = getattr(request.state, 'principal', None)
    if not principal:
        raise UnauthenticatedError('Missing or unknown actor')
    if not principal.active:
        raise NotAuthorizedError('Actor is inactive')
    return principal


def is_privileged(principal: Principal) -> bool:
    return principal.role in PRIVILEGED_ROLES


def require_role(principal: Principal | None, *allowed: Role, action: str = 'perform this action') -> Principal:
    if principal is None:
        raise UnauthenticatedError('Missing or unknown actor')
    if principal.role not in allowed:
        raise NotAuthorizedError(
            f'Role {principal.role.value} may not {action}',
            role=principal.role.value,
            allowed=sorted(role.value for role in allowed),
        )
    return principal
