"""Exception hierarchy for subscription billing operations."""

from __future__ import annotations


class BillingError(Exception):
    """Base class for all billing domain errors."""


class LifecycleInvariantError(BillingError):
    """A subscription row is missing a field its status requires.

    Examples: ``trial`` without ``trial_ends_at`` or ``past_due`` without
    ``past_due_since``.  The batch processor reports these per subscription
    and leaves the row untouched.
    """

    def __init__(self, subscription_id: str, message: str) -> None:
        super().__init__(f"Subscription {subscription_id}: {message}")
        self.subscription_id = subscription_id


class PaymentValidationError(BillingError, ValueError):
    """Reviewer input was rejected before any write was issued."""


class PaymentNotFoundError(BillingError, LookupError):
    """No payment exists with the requested identifier."""


class SubscriptionNotFoundError(BillingError, LookupError):
    """No subscription exists for the requested branch or identifier."""


class PaymentStateError(BillingError):
    """The payment is no longer ``pending`` and cannot be reviewed again."""

    def __init__(self, payment_id: str, status: str) -> None:
        super().__init__(f"Payment {payment_id} is '{status}', expected 'pending'")
        self.payment_id = payment_id
        self.status = status


class BranchNotFoundError(BillingError, LookupError):
    """No branch exists with the requested identifier."""


class PlanNotFoundError(BillingError, LookupError):
    """No active subscription plan matches the request."""


class SubscriptionExistsError(BillingError):
    """The branch already has a subscription."""

    def __init__(self, branch_id: str) -> None:
        super().__init__(f"Branch {branch_id} already has a subscription")
        self.branch_id = branch_id
