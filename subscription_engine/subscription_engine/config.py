"""Subscription lifecycle configuration loaded from environment variables."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import lru_cache

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class EngineSettings(BaseSettings):
    """Billing policy settings loaded from environment variables with BILLING_ prefix."""

    model_config = SettingsConfigDict(
        env_prefix="BILLING_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Reminder milestones (days before trial end).
    trial_reminder_days: list[int] = [7, 3, 1]

    # Past-due reminders fire while days-until-suspension is in (0, window].
    past_due_reminder_window_days: int = 5

    # Fallbacks when a plan row is missing or leaves the value NULL.
    default_grace_period_days: int = 5
    default_trial_days: int = 14

    # Length of the period granted by an approved payment.
    approval_period_days: int = 30

    # Window used to suppress duplicate notifications of the same type.
    notification_dedup_hours: int = 24

    # Move active subscriptions to past_due once their paid period ends.
    expire_active_periods: bool = True

    # Subscriptions fetched per page by the batch processor.
    page_size: int = 200

    @field_validator("trial_reminder_days")
    @classmethod
    def _validate_reminder_days(cls, value: list[int]) -> list[int]:
        if any(day <= 0 for day in value):
            raise ValueError("trial_reminder_days must contain positive integers only")
        return sorted(set(value), reverse=True)

    @field_validator("page_size")
    @classmethod
    def _validate_page_size(cls, value: int) -> int:
        if value < 1:
            raise ValueError("page_size must be >= 1")
        return value

    def to_policy(self) -> LifecyclePolicy:
        """Freeze these settings into a :class:`LifecyclePolicy`."""
        return LifecyclePolicy(
            trial_reminder_days=tuple(self.trial_reminder_days),
            past_due_reminder_window_days=self.past_due_reminder_window_days,
            default_grace_period_days=self.default_grace_period_days,
            default_trial_days=self.default_trial_days,
            approval_period_days=self.approval_period_days,
            notification_dedup_hours=self.notification_dedup_hours,
            expire_active_periods=self.expire_active_periods,
        )


@dataclass(frozen=True)
class LifecyclePolicy:
    """Immutable policy values consumed by the pure lifecycle functions.

    Kept separate from :class:`EngineSettings` so unit tests can build a
    policy directly without touching the environment.
    """

    trial_reminder_days: tuple[int, ...] = (7, 3, 1)
    past_due_reminder_window_days: int = 5
    default_grace_period_days: int = 5
    default_trial_days: int = 14
    approval_period_days: int = 30
    notification_dedup_hours: int = 24
    expire_active_periods: bool = True


DEFAULT_POLICY = LifecyclePolicy()


@lru_cache(maxsize=1)
def load_engine_settings() -> EngineSettings:
    """Construct settings from the environment / ``.env`` file."""
    settings = EngineSettings()
    logger.debug("Loaded engine settings: %s", settings.model_dump())
    return settings
