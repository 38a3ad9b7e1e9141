"""In-process scheduler for the subscription processing job.

A single ``asyncio`` task wakes up every ``poll_seconds`` and reads the
``process_subscriptions`` row of ``scheduled_jobs``.  When its
``next_run_at`` is unset or in the past, the processor runs and advances
the row.  The cron subset (hourly, daily, weekly) is enough for a once-a-day
billing job and needs no cron library.
"""

from __future__ import annotations

import asyncio
import logging
import re
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from subscription_engine.state.repository import ScheduledJobRepository

if TYPE_CHECKING:
    from api.services.subscription_processor import ProcessingResult, SubscriptionProcessor

logger = logging.getLogger(__name__)

_CRON_PATTERNS: dict[str, re.Pattern[str]] = {
    "hourly": re.compile(r"^(?P<minute>\d{1,2})\s+\*\s+\*\s+\*\s+\*$"),
    "daily": re.compile(r"^(?P<minute>\d{1,2})\s+(?P<hour>\d{1,2})\s+\*\s+\*\s+\*$"),
    "weekly": re.compile(r"^(?P<minute>\d{1,2})\s+(?P<hour>\d{1,2})\s+\*\s+\*\s+(?P<dow>[0-7])$"),
}


def _parse_cron(cron_expression: str) -> tuple[str, int, int, int]:
    expr = " ".join(cron_expression.split())
    for kind, pattern in _CRON_PATTERNS.items():
        match = pattern.match(expr)
        if match is None:
            continue
        minute = int(match.group("minute"))
        hour = int(match.groupdict().get("hour") or 0)
        dow = int(match.groupdict().get("dow") or 0) % 7
        if minute > 59 or hour > 23:
            break
        return kind, minute, hour, dow
    raise ValueError(
        f"Unsupported cron expression '{cron_expression}'; "
        "expected 'M * * * *', 'M H * * *' or 'M H * * D'"
    )


def compute_next_run(cron_expression: str, from_time: datetime) -> datetime:
    """Return the first time strictly after *from_time* matching *cron_expression*.

    Supported forms: ``M * * * *`` (hourly), ``M H * * *`` (daily) and
    ``M H * * D`` (weekly, 0 or 7 = Sunday).  Times are UTC.

    Raises
    ------
    ValueError
        For any other expression or out-of-range fields.
    """
    kind, minute, hour, dow = _parse_cron(cron_expression)

    if kind == "hourly":
        candidate = from_time.replace(minute=minute, second=0, microsecond=0)
        return candidate if candidate > from_time else candidate + timedelta(hours=1)

    candidate = from_time.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if kind == "daily":
        return candidate if candidate > from_time else candidate + timedelta(days=1)

    # datetime.weekday() counts from Monday, cron from Sunday.
    offset = (dow - 1 - candidate.weekday()) % 7
    candidate += timedelta(days=offset)
    return candidate if candidate > from_time else candidate + timedelta(days=7)


class SubscriptionScheduler:
    """Background task that triggers :class:`SubscriptionProcessor` when due.

    Parameters
    ----------
    session_factory:
        Session source for reading the job row.
    processor:
        The job to run.
    job_name:
        ``scheduled_jobs.job_name`` to watch.
    cron_expression:
        Schedule registered for the job when its row does not exist yet.
    poll_seconds:
        Delay between checks.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        processor: SubscriptionProcessor,
        *,
        job_name: str = "process_subscriptions",
        cron_expression: str = "0 6 * * *",
        poll_seconds: float = 60.0,
    ) -> None:
        self._session_factory = session_factory
        self._processor = processor
        self._job_name = job_name
        self._cron_expression = cron_expression
        self._poll_seconds = poll_seconds
        self._running = False
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            logger.warning("SubscriptionScheduler already running; ignoring start()")
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("SubscriptionScheduler started (job=%s, cron=%s)", self._job_name, self._cron_expression)

    async def stop(self) -> None:
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("SubscriptionScheduler stopped (job=%s)", self._job_name)

    async def _run_loop(self) -> None:
        while self._running:
            try:
                await self.run_if_due()
            except asyncio.CancelledError:
                raise
            except (OperationalError, InterfaceError) as exc:
                logger.error("SubscriptionScheduler database error: %s", exc, exc_info=True)
            await asyncio.sleep(self._poll_seconds)

    async def run_if_due(self, now: datetime | None = None) -> ProcessingResult | None:
        """Run the processor once if the job is due; return its result.

        Returns ``None`` when the job is disabled or not yet due.
        """
        now = now or datetime.now(UTC)
        async with self._session_factory() as session, session.begin():
            job = await ScheduledJobRepository(session).ensure(self._job_name, cron_expression=self._cron_expression)
            enabled = job.is_enabled
            next_run_at = job.next_run_at

        if not enabled:
            logger.debug("Job %s is disabled", self._job_name)
            return None
        if next_run_at is not None and next_run_at > now:
            return None

        logger.info("Job %s is due (next_run_at=%s)", self._job_name, next_run_at)
        return await self._processor.run(now)
