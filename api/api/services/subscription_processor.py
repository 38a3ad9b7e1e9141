"""Periodic batch job that advances subscription lifecycles.

One run:

1. Pages through ``trial``, ``past_due`` and ``active`` subscriptions by id.
2. Evaluates each against the pure lifecycle rules.
3. Applies the resulting transition with a status-guarded update, so a row
   that changed since it was read is skipped rather than overwritten.
4. Dispatches the reminder or suspension notice the evaluation selected.
   The suspension notice is only sent when this run performed the
   suspension write.
5. Records ``last_run_at`` / ``next_run_at`` for the ``process_subscriptions``
   scheduled job.

Each subscription is handled in its own transaction.  A failure is added to
``errors`` and the run moves on to the next subscription.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from subscription_engine.config import DEFAULT_POLICY, LifecyclePolicy
from subscription_engine.errors import BillingError
from subscription_engine.lifecycle import ensure_utc, evaluate_subscription
from subscription_engine.models import PlanTerms, SubscriptionState, SubscriptionStatus
from subscription_engine.state.repository import (
    PlanRepository,
    ScheduledJobRepository,
    SubscriptionRepository,
)

from api.services.email_client import EmailClient
from api.services.notification_dispatcher import NotificationDispatcher
from api.services.notification_templates import NotificationTemplates
from api.services.recipient_resolver import RecipientResolver
from api.services.subscription_scheduler import compute_next_run

logger = logging.getLogger(__name__)

JOB_NAME = "process_subscriptions"
DEFAULT_CRON = "0 6 * * *"


class ProcessingResult(BaseModel):
    """Counters and errors of one processing run.

    Serialised with camelCase keys (``trialsExpired`` ...).
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    trials_expired: int = 0
    subscriptions_suspended: int = 0
    periods_expired: int = 0
    notifications_sent: int = 0
    notifications_failed: int = 0
    errors: list[str] = Field(default_factory=list)


class SubscriptionProcessor:
    """Run the subscription lifecycle job.

    Parameters
    ----------
    session_factory:
        Creates one session per page read and per subscription.
    email_client:
        Transport for notices.
    templates:
        Notice renderer.
    policy:
        Lifecycle policy (reminder offsets, grace defaults, dedup window).
    page_size:
        Subscriptions read per page.
    cron_expression:
        Schedule used when the job row does not exist yet.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        email_client: EmailClient,
        templates: NotificationTemplates,
        policy: LifecyclePolicy = DEFAULT_POLICY,
        *,
        page_size: int = 200,
        cron_expression: str = DEFAULT_CRON,
    ) -> None:
        self._session_factory = session_factory
        self._email_client = email_client
        self._templates = templates
        self._policy = policy
        self._page_size = max(1, page_size)
        self._cron_expression = cron_expression

    async def run(
        self,
        now: datetime | None = None,
        *,
        manual: bool = False,
        recipient_override: str | None = None,
    ) -> ProcessingResult:
        """Process every evaluable subscription once.

        Parameters
        ----------
        now:
            Evaluation time; defaults to the current UTC time.
        manual:
            Whether the run was triggered by hand rather than the scheduler.
        recipient_override:
            Send every notice of this run to this address instead.
        """
        now = ensure_utc(now) if now is not None else datetime.now(UTC)
        result = ProcessingResult()
        plan_cache: dict[str, PlanTerms | None] = {}

        logger.info(
            "Subscription processing started (manual=%s, override=%s, now=%s)",
            manual,
            bool(recipient_override),
            now.isoformat(),
        )

        after_id: str | None = None
        while True:
            async with self._session_factory() as session:
                rows = await SubscriptionRepository(session).evaluable_page(after_id=after_id, limit=self._page_size)
                page = [SubscriptionState.model_validate(row) for row in rows]

            for subscription in page:
                await self._process_one(subscription, now, result, plan_cache, recipient_override)

            if len(page) < self._page_size:
                break
            after_id = page[-1].id

        await self._record_run(now, result)

        logger.info(
            "Subscription processing complete",
            extra={"job": {"name": JOB_NAME, "manual": manual, **result.model_dump(by_alias=True)}},
        )
        return result

    async def _plan(
        self,
        session: AsyncSession,
        plan_id: str | None,
        cache: dict[str, PlanTerms | None],
    ) -> PlanTerms | None:
        if plan_id is None:
            return None
        if plan_id not in cache:
            row = await PlanRepository(session).get(plan_id)
            cache[plan_id] = PlanTerms.model_validate(row) if row is not None else None
        return cache[plan_id]

    async def _process_one(
        self,
        subscription: SubscriptionState,
        now: datetime,
        result: ProcessingResult,
        plan_cache: dict[str, PlanTerms | None],
        recipient_override: str | None,
    ) -> None:
        # Counters are merged only after the transaction commits.
        delta = ProcessingResult()
        try:
            async with self._session_factory() as session, session.begin():
                plan = await self._plan(session, subscription.plan_id, plan_cache)
                evaluation = evaluate_subscription(subscription, plan, now, self._policy)

                transition = evaluation.transition
                if transition is not None:
                    applied = await SubscriptionRepository(session).transition(
                        subscription.id,
                        expected_status=transition.from_status,
                        new_status=transition.to_status,
                        updates=dict(transition.updates),
                        now=now,
                    )
                    if not applied:
                        logger.info(
                            "Subscription %s is no longer '%s'; skipping",
                            subscription.id,
                            transition.from_status.value,
                        )
                        return

                    if transition.to_status == SubscriptionStatus.SUSPENDED:
                        delta.subscriptions_suspended += 1
                    elif transition.from_status == SubscriptionStatus.TRIAL:
                        delta.trials_expired += 1
                    else:
                        delta.periods_expired += 1
                    logger.info(
                        "Subscription %s: %s -> %s (%s)",
                        subscription.id,
                        transition.from_status.value,
                        transition.to_status.value,
                        transition.reason,
                    )

                if evaluation.reminder is not None:
                    context = await RecipientResolver(session).build_context(subscription.id, subscription.branch_id)
                    dispatcher = NotificationDispatcher(session, self._email_client, self._templates, self._policy)
                    outcome = await dispatcher.dispatch(
                        context,
                        evaluation.reminder.notification_type,
                        now,
                        recipient_override=recipient_override,
                    )
                    delta.notifications_sent += outcome.sent
                    delta.notifications_failed += outcome.failed
        except (BillingError, SQLAlchemyError, ValueError) as exc:
            message = f"Error processing subscription {subscription.id}: {exc}"
            logger.error(message, exc_info=not isinstance(exc, BillingError))
            result.errors.append(message)
            return

        result.trials_expired += delta.trials_expired
        result.subscriptions_suspended += delta.subscriptions_suspended
        result.periods_expired += delta.periods_expired
        result.notifications_sent += delta.notifications_sent
        result.notifications_failed += delta.notifications_failed

    async def _record_run(self, now: datetime, result: ProcessingResult) -> None:
        """Advance the ``process_subscriptions`` job bookkeeping."""
        try:
            async with self._session_factory() as session, session.begin():
                repo = ScheduledJobRepository(session)
                job = await repo.ensure(JOB_NAME, cron_expression=self._cron_expression)
                try:
                    next_run = compute_next_run(job.cron_expression, now)
                except ValueError:
                    logger.warning("Invalid cron '%s' for %s; next run in 24h", job.cron_expression, JOB_NAME)
                    next_run = now + timedelta(hours=24)
                await repo.update_last_run(JOB_NAME, last_run_at=now, next_run_at=next_run)
        except SQLAlchemyError as exc:
            logger.error("Failed to record %s run: %s", JOB_NAME, exc, exc_info=True)
            result.errors.append(f"Error updating job bookkeeping: {exc}")
