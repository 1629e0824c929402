import enum
import logging
from datetime import datetime
from typing import Optional

from marketplace_billing.core.errors import InvalidStateTransition
from marketplace_billing.models.subscription import Subscription, SubscriptionStatus

logger = logging.getLogger(__name__)

# Statuses in which a cancellation may be pending
CANCELLABLE_STATUSES = (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING)
# Statuses that let an account create gated resources
ENTITLED_STATUSES = (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING)
# Statuses in which the plan may be changed
CHANGEABLE_STATUSES = (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING)


class SubscriptionEvent(str, enum.Enum):
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_FAILED_FINAL = "payment_failed_final"
    CANCEL_REQUESTED = "cancel_requested"
    REACTIVATE_REQUESTED = "reactivate_requested"


ALLOWED_SOURCES = {
    SubscriptionEvent.PAYMENT_SUCCEEDED: (
        SubscriptionStatus.TRIALING,
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.PAST_DUE,
        SubscriptionStatus.SUSPENDED,
    ),
    SubscriptionEvent.PAYMENT_FAILED: CANCELLABLE_STATUSES,
    SubscriptionEvent.PAYMENT_FAILED_FINAL: (SubscriptionStatus.PAST_DUE,),
    SubscriptionEvent.CANCEL_REQUESTED: CANCELLABLE_STATUSES,
    SubscriptionEvent.REACTIVATE_REQUESTED: CANCELLABLE_STATUSES,
}


def effective_status(
    status: SubscriptionStatus,
    cancel_at_period_end: bool,
    current_period_end: Optional[datetime],
    now: datetime,
    processor_managed: bool = True,
) -> SubscriptionStatus:
    """
    The one place that decides whether a subscription has expired.

    Stored status can lag behind the processor, so a scheduled or completed
    cancellation whose period already ended reads as expired. A trial with no
    processor subscription gets no webhook at its end, so it ends with its period.
    """
    status = SubscriptionStatus(status)
    if status == SubscriptionStatus.EXPIRED:
        return status
    ending = cancel_at_period_end or status == SubscriptionStatus.CANCELED
    if status == SubscriptionStatus.TRIALING and not processor_managed:
        ending = True
    if ending and current_period_end is not None and now > current_period_end:
        return SubscriptionStatus.EXPIRED
    return status


def effective_status_of(subscription: Subscription, now: datetime) -> SubscriptionStatus:
    return effective_status(
        subscription.status,
        subscription.cancel_at_period_end,
        subscription.current_period_end,
        now,
        processor_managed=bool(subscription.stripe_subscription_id),
    )


class SubscriptionStateMachine:
    """Legal transitions of one Subscription row. Callers commit the session."""

    def __init__(self, subscription: Subscription):
        self.subscription = subscription

    def can_apply(self, event: SubscriptionEvent, now: datetime) -> bool:
        current = effective_status_of(self.subscription, now)
        if current not in ALLOWED_SOURCES[event]:
            return False
        if event == SubscriptionEvent.REACTIVATE_REQUESTED:
            return bool(self.subscription.cancel_at_period_end)
        return True

    def _require(self, event: SubscriptionEvent, now: datetime):
        if not self.can_apply(event, now):
            status = effective_status_of(self.subscription, now)
            logger.warning(f"_require: Failure - {event.value} not allowed from {status.value}")
            raise InvalidStateTransition(event.value, status.value)

    def _set_status(self, status: SubscriptionStatus, now: datetime):
        self.subscription.status = status
        if status not in CANCELLABLE_STATUSES:
            self.subscription.cancel_at_period_end = False
        self.subscription.updated_at = now

    def payment_succeeded(
        self,
        now: datetime,
        period_start: Optional[datetime] = None,
        period_end: Optional[datetime] = None,
    ) -> bool:
        """
        Move to active and refresh the period. Returns True when a scheduled
        downgrade was applied because the new period has started.
        """
        self._require(SubscriptionEvent.PAYMENT_SUCCEEDED, now)
        sub = self.subscription
        was_reactivation = SubscriptionStatus(sub.status) == SubscriptionStatus.SUSPENDED
        previous_end = sub.current_period_end

        if period_start and period_end:
            sub.current_period_start = period_start
            sub.current_period_end = period_end
        self._set_status(SubscriptionStatus.ACTIVE, now)
        sub.payment_failed_at = None
        if was_reactivation:
            sub.cancel_at_period_end = False

        renewed = period_start is not None and previous_end is not None and period_start >= previous_end
        if renewed and sub.scheduled_plan_id:
            logger.info(
                f"payment_succeeded: applying scheduled change {sub.plan_id} -> {sub.scheduled_plan_id}"
            )
            sub.plan_id = sub.scheduled_plan_id
            if sub.scheduled_billing_cycle is not None:
                sub.billing_cycle = sub.scheduled_billing_cycle
            sub.scheduled_plan_id = None
            sub.scheduled_billing_cycle = None
            return True
        return False

    def payment_failed(self, now: datetime):
        """Enter the grace window; access is retained"""
        self._require(SubscriptionEvent.PAYMENT_FAILED, now)
        self._set_status(SubscriptionStatus.PAST_DUE, now)
        if self.subscription.payment_failed_at is None:
            self.subscription.payment_failed_at = now

    def payment_failed_final(self, now: datetime):
        self._require(SubscriptionEvent.PAYMENT_FAILED_FINAL, now)
        self._set_status(SubscriptionStatus.SUSPENDED, now)

    def cancel_requested(self, now: datetime):
        self._require(SubscriptionEvent.CANCEL_REQUESTED, now)
        self.subscription.cancel_at_period_end = True
        self.subscription.updated_at = now

    def reactivate_requested(self, now: datetime):
        self._require(SubscriptionEvent.REACTIVATE_REQUESTED, now)
        self.subscription.cancel_at_period_end = False
        self.subscription.updated_at = now

    def overwrite_from_processor(
        self,
        status: SubscriptionStatus,
        now: datetime,
        period_start: Optional[datetime] = None,
        period_end: Optional[datetime] = None,
        cancel_at_period_end: Optional[bool] = None,
    ):
        """Processor state always wins; no legality check"""
        sub = self.subscription
        if period_start and period_end:
            sub.current_period_start = period_start
            sub.current_period_end = period_end
        if cancel_at_period_end is not None:
            sub.cancel_at_period_end = cancel_at_period_end
        self._set_status(SubscriptionStatus(status), now)
        if sub.status == SubscriptionStatus.ACTIVE:
            sub.payment_failed_at = None

    def expire_if_elapsed(self, now: datetime) -> bool:
        """Persist the derived expired status. Returns True when it changed."""
        if SubscriptionStatus(self.subscription.status) == SubscriptionStatus.EXPIRED:
            return False
        if effective_status_of(self.subscription, now) != SubscriptionStatus.EXPIRED:
            return False
        self._set_status(SubscriptionStatus.EXPIRED, now)
        return True
