"""API router modules for the billing service."""

from __future__ import annotations

from api.routers import health, jobs, payments, subscriptions

__all__ = [
    "health",
    "jobs",
    "payments",
    "subscriptions",
]
