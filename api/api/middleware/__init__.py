"""Middleware components for the billing API."""

from __future__ import annotations

from api.middleware.auth import AuthenticationMiddleware
from api.middleware.logging import RequestLoggingMiddleware
from api.middleware.rbac import (
    ROLE_PERMISSIONS,
    Permission,
    Role,
    get_user_role,
    require_permission,
)

__all__ = [
    "AuthenticationMiddleware",
    "Permission",
    "ROLE_PERMISSIONS",
    "RequestLoggingMiddleware",
    "Role",
    "get_user_role",
    "require_permission",
]
