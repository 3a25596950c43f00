"""Role catalogue and the precedence table used for tenant scoping."""

from __future__ import annotations

from enum import Enum
from typing import Iterable, Optional, Union


class Role(str, Enum):
    SYSTEM_ADMIN = "system_admin"
    OFFICE_ADMIN = "office_admin"
    COLLABORATOR = "collaborator"
    CLIENT = "client"


class AccessScope(str, Enum):
    """How a role's reachable companies are resolved."""

    ALL = "all"  # every company, no lookup
    OFFICE = "office"  # companies owned by the principal's one office
    COMPANY_LINKS = "company_links"  # active client-side company memberships


# Evaluated top to bottom; the first role that matches decides the scope.
ROLE_PRECEDENCE: tuple[tuple[Role, AccessScope], ...] = (
    (Role.SYSTEM_ADMIN, AccessScope.ALL),
    (Role.OFFICE_ADMIN, AccessScope.OFFICE),
    (Role.COLLABORATOR, AccessScope.OFFICE),
    (Role.CLIENT, AccessScope.COMPANY_LINKS),
)


def parse_role(value: Union[str, Role, None]) -> Optional[Role]:
    """Return the Role for ``value`` or None when it is not a known role."""
    if isinstance(value, Role):
        return value
    if not value:
        return None
    try:
        return Role(str(value).strip().lower())
    except ValueError:
        return None


def scope_for(role: Union[str, Role, None]) -> Optional[AccessScope]:
    parsed = parse_role(role)
    if parsed is None:
        return None
    for candidate, scope in ROLE_PRECEDENCE:
        if candidate is parsed:
            return scope
    return None


def authorize(role: Union[str, Role, None], required_roles: Iterable[Union[str, Role]]) -> bool:
    """Check a role against an endpoint's allowed roles.

    An empty requirement admits any authenticated role, and the system-wide
    role is admitted everywhere. Otherwise the role must be listed.
    """
    required = {parse_role(r) for r in required_roles}
    if not required:
        return True
    parsed = parse_role(role)
    if parsed is None:
        return False
    if scope_for(parsed) is AccessScope.ALL:
        return True
    return parsed in required


__all__ = [
    "Role",
    "AccessScope",
    "ROLE_PRECEDENCE",
    "parse_role",
    "scope_for",
    "authorize",
]
