"""Deliver billing notices with per-subscription deduplication.

For every (subscription, notification type) pair the dispatcher:

1. Skips the notice if one of the same type was recorded in the last
   ``notification_dedup_hours`` (24 by default).
2. Resolves recipients; with none, logs a warning and stops.
3. Writes one ``pending`` audit record for the dispatch, sends a single
   email addressed to every recipient and marks the record ``sent`` on
   success.  A failed send leaves the record ``pending``; there is no
   retry beyond the next scheduled run after the dedup window.

All writes go through the caller's session and are committed with the
caller's transaction.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from enum import Enum

from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession
from subscription_engine.config import DEFAULT_POLICY, LifecyclePolicy
from subscription_engine.state.repository import NotificationRepository

from api.services.email_client import EmailClient
from api.services.notification_templates import NotificationTemplates
from api.services.recipient_resolver import NotificationContext, dedupe_emails

logger = logging.getLogger(__name__)


class DispatchStatus(str, Enum):
    SENT = "sent"
    FAILED = "failed"
    DUPLICATE = "duplicate"
    NO_RECIPIENT = "no_recipient"


class DispatchOutcome(BaseModel):
    """Result of dispatching one notice for one subscription."""

    subscription_id: str
    notification_type: str
    status: DispatchStatus
    sent: int = 0
    failed: int = 0
    recipients: list[str] = Field(default_factory=list)


class NotificationDispatcher:
    """Send deduplicated billing notices and keep their audit trail.

    Parameters
    ----------
    session:
        Session whose transaction the audit records join.
    email_client:
        Transport for the emails.
    templates:
        Subject/body renderer.
    policy:
        Supplies the dedup window.
    """

    def __init__(
        self,
        session: AsyncSession,
        email_client: EmailClient,
        templates: NotificationTemplates,
        policy: LifecyclePolicy = DEFAULT_POLICY,
    ) -> None:
        self._notifications = NotificationRepository(session)
        self._email = email_client
        self._templates = templates
        self._policy = policy

    async def dispatch(
        self,
        context: NotificationContext,
        notification_type: str,
        now: datetime,
        *,
        recipient_override: str | None = None,
    ) -> DispatchOutcome:
        """Send *notification_type* for the subscription in *context*.

        *recipient_override* replaces the resolved recipients (manual test
        runs).
        """
        since = now - timedelta(hours=self._policy.notification_dedup_hours)
        if await self._notifications.exists_since(context.subscription_id, notification_type, since):
            logger.debug(
                "Skipping %s for subscription %s: already recorded since %s",
                notification_type,
                context.subscription_id,
                since.isoformat(),
            )
            return DispatchOutcome(
                subscription_id=context.subscription_id,
                notification_type=notification_type,
                status=DispatchStatus.DUPLICATE,
            )

        recipients = dedupe_emails([recipient_override]) if recipient_override else list(context.recipients)
        if not recipients:
            logger.warning(
                "No recipient for %s on subscription %s (branch %s)",
                notification_type,
                context.subscription_id,
                context.branch_id,
            )
            return DispatchOutcome(
                subscription_id=context.subscription_id,
                notification_type=notification_type,
                status=DispatchStatus.NO_RECIPIENT,
            )

        rendered = self._templates.render(
            notification_type,
            branch_name=context.branch_name,
            laundry_name=context.laundry_name,
        )

        record = await self._notifications.create_pending(
            subscription_id=context.subscription_id,
            branch_id=context.branch_id,
            notification_type=notification_type,
            recipient_email=", ".join(recipients),
            subject=rendered.subject,
            body=rendered.html,
            now=now,
        )
        result = await self._email.send(recipients, rendered.subject, rendered.html)
        if result.delivered:
            await self._notifications.mark_sent(record.id, sent_at=now)
            status = DispatchStatus.SENT
        else:
            logger.warning(
                "Notification %s for subscription %s not delivered to %s: %s",
                notification_type,
                context.subscription_id,
                result.recipient,
                result.error,
            )
            status = DispatchStatus.FAILED

        return DispatchOutcome(
            subscription_id=context.subscription_id,
            notification_type=notification_type,
            status=status,
            sent=int(status == DispatchStatus.SENT),
            failed=int(status == DispatchStatus.FAILED),
            recipients=recipients,
        )
