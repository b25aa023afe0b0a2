"""Role-to-capability mapping checked at every authorization boundary.

``Role`` is a closed set. :func:`capabilities_for` matches each role
explicitly and ends with :func:`typing.assert_never`, so adding a role makes
type checkers flag that function until the new role's capabilities are
decided.
"""

from __future__ import annotations

from typing import FrozenSet, Optional, assert_never

from . import log
from .constants import Capability, Role
from .data_manager import User
from .errors import InvalidState, PermissionDenied


_TENANT_STAFF: FrozenSet[Capability] = frozenset({Capability.SELL})
_TENANT_MANAGERS: FrozenSet[Capability] = frozenset(
    {
        Capability.SELL,
        Capability.MANAGE_INVENTORY,
        Capability.MANAGE_STAFF,
        Capability.VIEW_AUDIT_TRAIL,
        Capability.VIEW_REPORTS,
    }
)
_PLATFORM: FrozenSet[Capability] = frozenset(
    {
        Capability.MANAGE_PLATFORM,
        Capability.VIEW_ALL_TENANTS,
        Capability.VIEW_AUDIT_TRAIL,
    }
)


def capabilities_for(role: Role) -> FrozenSet[Capability]:
    """Return every capability granted to ``role``."""

    if role is Role.SUPER_ADMIN:
        return _PLATFORM
    elif role is Role.OWNER:
        return _TENANT_MANAGERS
    elif role is Role.ADMIN:
        return _TENANT_MANAGERS
    elif role is Role.BARTENDER:
        return _TENANT_STAFF
    else:
        assert_never(role)


def role_allows(role: Role, capability: Capability) -> bool:
    return capability in capabilities_for(role)


def require_actor(actor: Optional[User]) -> User:
    """Return ``actor`` or raise when nobody is logged in."""

    if actor is None:
        log.warning("Rejected action without an authenticated user")
        raise InvalidState("An authenticated user is required")
    return actor


def require_capability(actor: Optional[User], capability: Capability) -> User:
    """Ensure ``actor`` exists and holds ``capability``.

    Raises:
        InvalidState: If there is no acting user.
        PermissionDenied: If the actor's role lacks ``capability``.
    """

    user = require_actor(actor)
    if not role_allows(user.role, capability):
        log.warning("User '%s' (%s) denied %s", user.id, user.role.value, capability.value)
        raise PermissionDenied(f"{user.role.value} may not perform {capability.value}")
    return user
