"""Role checks for the billing endpoints.

Branch roles form a ladder, each rung inheriting what the rung below may
do::

    staff       read the branch subscription
    admin       + upload payment receipts
    technician  + see every branch
    owner       + review payments, cancel/provision, run billing jobs

``service`` sits outside the ladder and is used by the scheduler caller.
Job titles used inside a branch (``cajero``, ``operador``, ``delivery``)
are all staff.

Routers depend on :func:`require_permission`::

    _role: Role = Depends(require_permission(Permission.REVIEW_PAYMENTS))
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from enum import Enum, IntEnum

from fastapi import Depends, HTTPException, Request

logger = logging.getLogger(__name__)


class Role(IntEnum):
    STAFF = 0
    ADMIN = 1
    TECHNICIAN = 2
    OWNER = 3
    SERVICE = 10


class Permission(str, Enum):
    READ_SUBSCRIPTION = "read:subscription"
    SUBMIT_PAYMENTS = "submit:payments"
    VIEW_ALL_SUBSCRIPTIONS = "view:all_subscriptions"
    MANAGE_SUBSCRIPTIONS = "manage:subscriptions"
    REVIEW_PAYMENTS = "review:payments"
    RUN_BILLING_JOBS = "run:billing_jobs"


_VALID_NAMES = sorted(role.name.lower() for role in Role)
_NAME_TO_ROLE = {role.name.lower(): role for role in Role} | {
    "cajero": Role.STAFF,
    "operador": Role.STAFF,
    "delivery": Role.STAFF,
}

# What each rung adds on top of the rung below it.
_LADDER: tuple[tuple[Role, frozenset[Permission]], ...] = (
    (Role.STAFF, frozenset({Permission.READ_SUBSCRIPTION})),
    (Role.ADMIN, frozenset({Permission.SUBMIT_PAYMENTS})),
    (Role.TECHNICIAN, frozenset({Permission.VIEW_ALL_SUBSCRIPTIONS})),
    (
        Role.OWNER,
        frozenset({Permission.MANAGE_SUBSCRIPTIONS, Permission.REVIEW_PAYMENTS, Permission.RUN_BILLING_JOBS}),
    ),
)


def _build_role_permissions() -> dict[Role, frozenset[Permission]]:
    table: dict[Role, frozenset[Permission]] = {}
    granted: frozenset[Permission] = frozenset()
    for role, added in _LADDER:
        granted = granted | added
        table[role] = granted
    table[Role.SERVICE] = frozenset({Permission.READ_SUBSCRIPTION, Permission.RUN_BILLING_JOBS})
    return table


ROLE_PERMISSIONS: dict[Role, frozenset[Permission]] = _build_role_permissions()


def parse_role(raw: str) -> Role:
    """Map a ``role`` claim (case-insensitive, job titles allowed) to a :class:`Role`."""
    try:
        return _NAME_TO_ROLE[raw.strip().lower()]
    except KeyError:
        raise ValueError(f"Unknown role '{raw}'. Valid roles: {_VALID_NAMES}") from None


def role_has_permission(role: Role, permission: Permission) -> bool:
    return permission in ROLE_PERMISSIONS.get(role, frozenset())


def get_user_role(request: Request) -> Role:
    """Resolve the caller's role from ``request.state``.

    Anonymous requests (public paths) resolve to ``STAFF``.  An
    authenticated request without a role is a 401; an unknown role is a
    403.
    """
    raw_role: str | None = getattr(request.state, "role", None)
    if raw_role is None:
        subject = getattr(request.state, "sub", None)
        if subject is None:
            return Role.STAFF
        logger.warning("Token for %s carries no role claim", subject)
        raise HTTPException(status_code=401, detail="Missing role claim in authenticated token")

    try:
        return parse_role(raw_role)
    except ValueError:
        logger.warning("Rejecting unknown role claim %r", raw_role)
        raise HTTPException(
            status_code=403,
            detail=f"Unrecognised role '{raw_role}'. Valid roles: {_VALID_NAMES}",
        ) from None


def require_permission(permission: Permission) -> Callable[..., Role]:
    """Dependency factory: 403 unless the caller's role grants *permission*."""

    def _guard(role: Role = Depends(get_user_role)) -> Role:
        if role_has_permission(role, permission):
            return role
        logger.info("Denied %s to role %s", permission.value, role.name.lower())
        raise HTTPException(
            status_code=403,
            detail=f"Permission denied: role '{role.name.lower()}' does not have '{permission.value}' permission",
        )

    return _guard
