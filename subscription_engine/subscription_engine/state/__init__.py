"""State persistence layer using PostgreSQL (or SQLite for local runs)."""

from subscription_engine.state.database import get_engine, get_session, get_session_factory, set_tenant_context
from subscription_engine.state.repository import (
    NotificationRepository,
    PaymentRepository,
    PlanRepository,
    RecipientRepository,
    ScheduledJobRepository,
    SubscriptionRepository,
)

__all__ = [
    "NotificationRepository",
    "PaymentRepository",
    "PlanRepository",
    "RecipientRepository",
    "ScheduledJobRepository",
    "SubscriptionRepository",
    "get_engine",
    "get_session",
    "get_session_factory",
    "set_tenant_context",
]
