"""Tests for the subscription processing job.

Runs the processor end to end against a seeded SQLite database with a mock
email client.

Covers:
- Trial expiration and past-due escalation with the suspension notice
- Idempotent re-runs (no second transition, no second email)
- Reminder milestones and their 24h dedup
- Recipient fallback and the manual recipient override
- Per-subscription error isolation and paging
- Scheduled job bookkeeping
- ProcessingResult camelCase serialisation
"""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import select
from subscription_engine.config import DEFAULT_POLICY
from subscription_engine.models import SubscriptionStatus
from subscription_engine.state.repository import ScheduledJobRepository, SubscriptionRepository
from subscription_engine.state.tables import BranchSubscriptionTable, ProfileTable, SubscriptionNotificationTable

from api.middleware.json_formatter import JSONFormatter
from api.services.email_client import DeliveryResult, DeliveryStatus
from api.services.notification_templates import NotificationTemplates
from api.services.subscription_processor import JOB_NAME, ProcessingResult, SubscriptionProcessor

_TRIAL_END = datetime(2024, 1, 10, 0, 0, tzinfo=UTC)


def _processor(session_factory, email_client, **kwargs) -> SubscriptionProcessor:
    templates = NotificationTemplates(brand_name="LaundryFlow Pro", app_url="https://app.test")
    return SubscriptionProcessor(session_factory, email_client, templates, DEFAULT_POLICY, **kwargs)


async def _subscription(session_factory, sub_id: str) -> BranchSubscriptionTable:
    async with session_factory() as session:
        row = await SubscriptionRepository(session).get(sub_id)
        assert row is not None
        return row


async def _notifications(session_factory, sub_id: str) -> list[SubscriptionNotificationTable]:
    async with session_factory() as session:
        result = await session.execute(
            select(SubscriptionNotificationTable)
            .where(SubscriptionNotificationTable.subscription_id == sub_id)
            .order_by(SubscriptionNotificationTable.created_at)
        )
        return list(result.scalars().all())


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------


class TestTransitions:
    """Status changes applied by a run."""

    @pytest.mark.asyncio
    async def test_expired_trial_becomes_past_due(self, session_factory, add_subscription, mock_email_client):
        await add_subscription("sub-1", "branch-1", SubscriptionStatus.TRIAL, trial_ends_at=_TRIAL_END)
        now = datetime(2024, 1, 10, 0, 1, tzinfo=UTC)

        result = await _processor(session_factory, mock_email_client).run(now)

        assert result.trials_expired == 1
        assert result.errors == []
        row = await _subscription(session_factory, "sub-1")
        assert row.status == "past_due"
        assert row.past_due_since == now
        mock_email_client.send.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_past_due_beyond_grace_is_suspended_and_notified(
        self, session_factory, add_subscription, mock_email_client
    ):
        past_due_since = datetime(2024, 1, 10, 0, 1, tzinfo=UTC)
        await add_subscription("sub-1", "branch-1", SubscriptionStatus.PAST_DUE, past_due_since=past_due_since)
        now = datetime(2024, 1, 15, 0, 2, tzinfo=UTC)

        result = await _processor(session_factory, mock_email_client).run(now)

        assert result.subscriptions_suspended == 1
        assert result.notifications_sent == 1
        row = await _subscription(session_factory, "sub-1")
        assert row.status == "suspended"
        assert row.suspended_at == now

        mock_email_client.send.assert_awaited_once()
        to, subject, _html = mock_email_client.send.await_args.args
        assert to == ["dueno@sol.do"]
        assert subject == "🚫 Suscripción suspendida - Centro"

        records = await _notifications(session_factory, "sub-1")
        assert [(r.notification_type, r.status) for r in records] == [("suspended", "sent")]
        assert records[0].sent_at == now

    @pytest.mark.asyncio
    async def test_past_due_within_grace_gets_reminder_not_suspension(
        self, session_factory, add_subscription, mock_email_client
    ):
        await add_subscription(
            "sub-1",
            "branch-1",
            SubscriptionStatus.PAST_DUE,
            past_due_since=datetime(2024, 1, 10, 0, 1, tzinfo=UTC),
        )
        now = datetime(2024, 1, 14, 23, 59, tzinfo=UTC)

        result = await _processor(session_factory, mock_email_client).run(now)

        assert result.subscriptions_suspended == 0
        row = await _subscription(session_factory, "sub-1")
        assert row.status == "past_due"
        records = await _notifications(session_factory, "sub-1")
        assert [r.notification_type for r in records] == ["past_due_1d"]

    @pytest.mark.asyncio
    async def test_expired_paid_period_becomes_past_due(self, session_factory, add_subscription, mock_email_client):
        await add_subscription(
            "sub-1",
            "branch-1",
            SubscriptionStatus.ACTIVE,
            current_period_start=datetime(2023, 12, 1, tzinfo=UTC),
            current_period_end=datetime(2023, 12, 31, tzinfo=UTC),
        )
        now = datetime(2024, 1, 2, tzinfo=UTC)

        result = await _processor(session_factory, mock_email_client).run(now)

        assert result.periods_expired == 1
        row = await _subscription(session_factory, "sub-1")
        assert row.status == "past_due"
        assert row.past_due_since == now

    @pytest.mark.asyncio
    async def test_rerun_is_idempotent(self, session_factory, add_subscription, mock_email_client):
        await add_subscription(
            "sub-1",
            "branch-1",
            SubscriptionStatus.PAST_DUE,
            past_due_since=datetime(2024, 1, 1, tzinfo=UTC),
        )
        processor = _processor(session_factory, mock_email_client)
        now = datetime(2024, 1, 15, tzinfo=UTC)

        first = await processor.run(now)
        second = await processor.run(now + timedelta(hours=1))

        assert first.subscriptions_suspended == 1
        assert second.subscriptions_suspended == 0
        assert second.notifications_sent == 0
        assert mock_email_client.send.await_count == 1

    @pytest.mark.asyncio
    async def test_lost_race_skips_notice(self, session_factory, add_subscription, mock_email_client):
        """When another writer changed the row first, nothing is counted or sent."""
        await add_subscription(
            "sub-1",
            "branch-1",
            SubscriptionStatus.PAST_DUE,
            past_due_since=datetime(2024, 1, 1, tzinfo=UTC),
        )

        with patch.object(SubscriptionRepository, "transition", AsyncMock(return_value=False)):
            result = await _processor(session_factory, mock_email_client).run(datetime(2024, 1, 15, tzinfo=UTC))

        assert result.subscriptions_suspended == 0
        assert result.notifications_sent == 0
        mock_email_client.send.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_terminal_states_are_not_touched(self, session_factory, add_subscription, mock_email_client):
        await add_subscription("sub-1", "branch-1", SubscriptionStatus.SUSPENDED)
        await add_subscription("sub-2", "branch-2", SubscriptionStatus.CANCELLED)

        result = await _processor(session_factory, mock_email_client).run(datetime(2024, 6, 1, tzinfo=UTC))

        assert result == ProcessingResult()


# ---------------------------------------------------------------------------
# Reminders and recipients
# ---------------------------------------------------------------------------


class TestReminders:
    """Reminder milestones, dedup and recipient selection."""

    @pytest.mark.asyncio
    async def test_trial_reminder_sent_once_per_day(self, session_factory, add_subscription, mock_email_client):
        now = datetime(2024, 1, 7, 6, 0, tzinfo=UTC)
        await add_subscription(
            "sub-1", "branch-1", SubscriptionStatus.TRIAL, trial_ends_at=now + timedelta(days=2, hours=20)
        )
        processor = _processor(session_factory, mock_email_client)

        first = await processor.run(now)
        second = await processor.run(now + timedelta(hours=2))

        assert first.notifications_sent == 1
        assert second.notifications_sent == 0
        records = await _notifications(session_factory, "sub-1")
        assert [r.notification_type for r in records] == ["trial_ending_3d"]
        subject = mock_email_client.send.await_args.args[1]
        assert subject == "⏰ Tu período de prueba termina en 3 días - Centro"

    @pytest.mark.asyncio
    async def test_no_reminder_off_milestone(self, session_factory, add_subscription, mock_email_client):
        now = datetime(2024, 1, 1, 6, 0, tzinfo=UTC)
        await add_subscription("sub-1", "branch-1", SubscriptionStatus.TRIAL, trial_ends_at=now + timedelta(days=5))

        result = await _processor(session_factory, mock_email_client).run(now)

        assert result.notifications_sent == 0
        mock_email_client.send.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_laundry_without_contact_falls_back_to_branch_admins(
        self, session_factory, add_subscription, mock_email_client
    ):
        await add_subscription(
            "sub-3",
            "branch-3",
            SubscriptionStatus.PAST_DUE,
            past_due_since=datetime(2024, 1, 1, tzinfo=UTC),
        )

        await _processor(session_factory, mock_email_client).run(datetime(2024, 1, 10, tzinfo=UTC))

        recipients = [call.args[0] for call in mock_email_client.send.await_args_list]
        assert recipients == [["marta@luna.do"]]

    @pytest.mark.asyncio
    async def test_suspension_with_several_admins_writes_one_record(
        self, session_factory, add_subscription, mock_email_client
    ):
        async with session_factory() as session, session.begin():
            session.add(
                ProfileTable(
                    id="p-admin3b",
                    laundry_id="laundry-2",
                    branch_id="branch-3",
                    name="Ana",
                    email="ana@luna.do",
                    role="admin",
                )
            )
        await add_subscription(
            "sub-3",
            "branch-3",
            SubscriptionStatus.PAST_DUE,
            past_due_since=datetime(2024, 1, 10, 0, 1, tzinfo=UTC),
        )

        result = await _processor(session_factory, mock_email_client).run(datetime(2024, 1, 15, 0, 2, tzinfo=UTC))

        assert result.subscriptions_suspended == 1
        assert result.notifications_sent == 1
        mock_email_client.send.assert_awaited_once()
        assert sorted(mock_email_client.send.await_args.args[0]) == ["ana@luna.do", "marta@luna.do"]
        records = await _notifications(session_factory, "sub-3")
        assert [(r.notification_type, r.status) for r in records] == [("suspended", "sent")]

    @pytest.mark.asyncio
    async def test_recipient_override_redirects_all_notices(
        self, session_factory, add_subscription, mock_email_client
    ):
        await add_subscription(
            "sub-1",
            "branch-1",
            SubscriptionStatus.PAST_DUE,
            past_due_since=datetime(2024, 1, 1, tzinfo=UTC),
        )

        result = await _processor(session_factory, mock_email_client).run(
            datetime(2024, 1, 10, tzinfo=UTC),
            manual=True,
            recipient_override="qa@laundryflow.test",
        )

        assert result.notifications_sent == 1
        assert mock_email_client.send.await_args.args[0] == ["qa@laundryflow.test"]
        records = await _notifications(session_factory, "sub-1")
        assert records[0].recipient_email == "qa@laundryflow.test"

    @pytest.mark.asyncio
    async def test_failed_send_is_counted_and_left_pending(
        self, session_factory, add_subscription, mock_email_client
    ):
        mock_email_client.send = AsyncMock(
            return_value=DeliveryResult(
                recipient="dueno@sol.do", status=DeliveryStatus.FAILED, status_code=500, error="HTTP 500"
            )
        )
        await add_subscription(
            "sub-1",
            "branch-1",
            SubscriptionStatus.PAST_DUE,
            past_due_since=datetime(2024, 1, 1, tzinfo=UTC),
        )
        now = datetime(2024, 1, 10, tzinfo=UTC)

        result = await _processor(session_factory, mock_email_client).run(now)

        assert result.subscriptions_suspended == 1
        assert result.notifications_sent == 0
        assert result.notifications_failed == 1
        records = await _notifications(session_factory, "sub-1")
        assert [(r.status, r.sent_at) for r in records] == [("pending", None)]


# ---------------------------------------------------------------------------
# Batch behaviour
# ---------------------------------------------------------------------------


class TestBatch:
    """Error isolation, paging and bookkeeping."""

    @pytest.mark.asyncio
    async def test_invalid_row_is_reported_and_others_processed(
        self, session_factory, add_subscription, mock_email_client
    ):
        await add_subscription("sub-a", "branch-1", SubscriptionStatus.TRIAL, trial_ends_at=None)
        await add_subscription("sub-b", "branch-2", SubscriptionStatus.TRIAL, trial_ends_at=_TRIAL_END)

        result = await _processor(session_factory, mock_email_client).run(datetime(2024, 1, 11, tzinfo=UTC))

        assert result.trials_expired == 1
        assert len(result.errors) == 1
        assert "sub-a" in result.errors[0]
        assert (await _subscription(session_factory, "sub-a")).status == "trial"
        assert (await _subscription(session_factory, "sub-b")).status == "past_due"

    @pytest.mark.asyncio
    async def test_store_error_does_not_abort_batch(self, session_factory, add_subscription, mock_email_client):
        from sqlalchemy.exc import OperationalError

        await add_subscription("sub-a", "branch-1", SubscriptionStatus.TRIAL, trial_ends_at=_TRIAL_END)
        await add_subscription("sub-b", "branch-2", SubscriptionStatus.TRIAL, trial_ends_at=_TRIAL_END)

        original = SubscriptionRepository.transition
        calls = {"n": 0}

        async def _flaky(self, subscription_id, **kwargs):
            calls["n"] += 1
            if subscription_id == "sub-a":
                raise OperationalError("UPDATE", {}, Exception("database is locked"))
            return await original(self, subscription_id, **kwargs)

        with patch.object(SubscriptionRepository, "transition", _flaky):
            result = await _processor(session_factory, mock_email_client).run(datetime(2024, 1, 11, tzinfo=UTC))

        assert calls["n"] == 2
        assert result.trials_expired == 1
        assert len(result.errors) == 1
        assert (await _subscription(session_factory, "sub-b")).status == "past_due"

    @pytest.mark.asyncio
    async def test_pages_through_all_subscriptions(self, session_factory, add_subscription, mock_email_client):
        # One subscription per branch; five rows over three pages of two.
        from subscription_engine.state.tables import BranchTable

        async with session_factory() as session, session.begin():
            session.add_all([BranchTable(id=f"branch-x{i}", laundry_id="laundry-1", name=f"X{i}") for i in range(3)])
        branches = ["branch-1", "branch-2", "branch-x0", "branch-x1", "branch-x2"]
        for i, branch in enumerate(branches):
            await add_subscription(f"sub-{i}", branch, SubscriptionStatus.TRIAL, trial_ends_at=_TRIAL_END)

        result = await _processor(session_factory, mock_email_client, page_size=2).run(
            datetime(2024, 1, 11, tzinfo=UTC)
        )

        assert result.trials_expired == 5

    @pytest.mark.asyncio
    async def test_summary_log_line_is_camel_case(
        self, session_factory, add_subscription, mock_email_client, caplog
    ):
        await add_subscription("sub-1", "branch-1", SubscriptionStatus.TRIAL, trial_ends_at=_TRIAL_END)

        with caplog.at_level(logging.INFO, logger="api.services.subscription_processor"):
            await _processor(session_factory, mock_email_client).run(datetime(2024, 1, 10, 0, 1, tzinfo=UTC))

        (record,) = [r for r in caplog.records if r.getMessage() == "Subscription processing complete"]
        data = json.loads(JSONFormatter().format(record))
        assert data["job"] == {
            "name": JOB_NAME,
            "manual": False,
            "trialsExpired": 1,
            "subscriptionsSuspended": 0,
            "periodsExpired": 0,
            "notificationsSent": 0,
            "notificationsFailed": 0,
            "errors": [],
        }

    @pytest.mark.asyncio
    async def test_job_bookkeeping_is_updated(self, session_factory, mock_email_client):
        now = datetime(2024, 1, 10, 0, 1, tzinfo=UTC)

        await _processor(session_factory, mock_email_client).run(now)

        async with session_factory() as session:
            job = await ScheduledJobRepository(session).get(JOB_NAME)
        assert job is not None
        assert job.cron_expression == "0 6 * * *"
        assert job.last_run_at == now
        assert job.next_run_at == datetime(2024, 1, 10, 6, 0, tzinfo=UTC)

    @pytest.mark.asyncio
    async def test_invalid_cron_falls_back_to_one_day(self, session_factory, mock_email_client):
        now = datetime(2024, 1, 10, 0, 1, tzinfo=UTC)

        await _processor(session_factory, mock_email_client, cron_expression="*/5 * * * *").run(now)

        async with session_factory() as session:
            job = await ScheduledJobRepository(session).get(JOB_NAME)
        assert job.next_run_at == now + timedelta(hours=24)


class TestProcessingResult:
    """Serialisation of run counters."""

    def test_serialises_with_camel_case_keys(self) -> None:
        result = ProcessingResult(trials_expired=2, notifications_failed=1, errors=["boom"])

        assert result.model_dump(by_alias=True) == {
            "trialsExpired": 2,
            "subscriptionsSuspended": 0,
            "periodsExpired": 0,
            "notificationsSent": 0,
            "notificationsFailed": 1,
            "errors": ["boom"],
        }
