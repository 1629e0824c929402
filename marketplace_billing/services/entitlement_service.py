import logging
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel
from sqlalchemy import func
from sqlalchemy.orm import Session

from marketplace_billing.models.account import Account
from marketplace_billing.models.listing import Listing, SLOT_CONSUMING_STATUSES
from marketplace_billing.models.upsell import (
    ActiveUpsellGrant,
    FeaturedPropertyGrant,
    GrantStatus,
    Upsell,
    UpsellType,
)
from marketplace_billing.services.plan_catalog import UNLIMITED, feature_limit
from marketplace_billing.services.plan_change_service import get_current_subscription
from marketplace_billing.services.subscription_state import ENTITLED_STATUSES, effective_status_of

logger = logging.getLogger(__name__)

NEAR_LIMIT_PERCENT = 80

LISTING = 'listing'
FEATURED_LISTING = 'featured_listing'
RESOURCE_KINDS = (LISTING, FEATURED_LISTING)


class Reason:
    NO_SUBSCRIPTION = 'no_subscription'
    SUBSCRIPTION_INACTIVE = 'subscription_inactive'
    VERIFICATION_REQUIRED = 'verification_required'
    LIMIT_REACHED = 'limit_reached'


class EntitlementCheck(BaseModel):
    resource_kind: str
    can_create: bool
    reason: Optional[str] = None
    blocked_by: List[str] = []
    remaining: int  # UNLIMITED (-1) when the plan has no cap
    limit: int
    used: int
    usage_percent: int
    is_near_limit: bool
    is_at_limit: bool
    subscription_status: Optional[str] = None


def usage_indicators(used: int, limit: int) -> dict:
    """Derived on every read; never stored"""
    if limit == UNLIMITED:
        return {'remaining': UNLIMITED, 'usage_percent': 0, 'is_near_limit': False, 'is_at_limit': False}
    if limit <= 0:
        return {'remaining': 0, 'usage_percent': 100, 'is_near_limit': False, 'is_at_limit': True}
    percent = min(100, round(used * 100 / limit))
    return {
        'remaining': max(0, limit - used),
        'usage_percent': percent,
        'is_near_limit': NEAR_LIMIT_PERCENT <= percent < 100,
        'is_at_limit': used >= limit,
    }


class EntitlementService:
    def __init__(self):
        self.logger = logging.getLogger(__name__)

    def _extra_listing_slots(self, db: Session, account_id: str, now: datetime) -> int:
        grants = (
            db.query(ActiveUpsellGrant)
            .join(Upsell, Upsell.id == ActiveUpsellGrant.upsell_id)
            .filter(
                ActiveUpsellGrant.account_id == account_id,
                Upsell.upsell_type == UpsellType.PROPERTY_SLOT,
                ActiveUpsellGrant.status.in_((GrantStatus.ACTIVE, GrantStatus.CANCELLED)),
            )
            .all()
        )
        return sum(grant.quantity for grant in grants if grant.is_usable(now))

    def _listing_usage(self, db: Session, account_id: str) -> int:
        return db.query(func.count(Listing.id)).filter(
            Listing.account_id == account_id,
            Listing.status.in_(SLOT_CONSUMING_STATUSES),
        ).scalar() or 0

    def _featured_usage(self, db: Session, account_id: str, period_start: Optional[datetime]) -> int:
        query = db.query(func.count(FeaturedPropertyGrant.id)).filter(
            FeaturedPropertyGrant.account_id == account_id,
        )
        if period_start is not None:
            query = query.filter(FeaturedPropertyGrant.start_date >= period_start)
        return query.scalar() or 0

    def can_create(
        self,
        db: Session,
        account_id: str,
        resource_kind: str,
        email_verified: Optional[bool] = None,
        now: Optional[datetime] = None,
    ) -> EntitlementCheck:
        """
        Decide whether the account may create one more resource of this kind.

        Three gates are evaluated independently: an entitled subscription, a
        verified email and a free slot. The reason names the first failing
        gate in that order; blocked_by lists all of them.
        """
        self.logger.info(f"can_create: Entry - account: {account_id}, kind: {resource_kind}")
        if resource_kind not in RESOURCE_KINDS:
            raise ValueError(f"Unknown resource kind: {resource_kind}")
        now = now or datetime.utcnow()

        subscription = get_current_subscription(db, account_id)
        blocked_by = []
        status = None
        limit = 0
        if subscription is None:
            blocked_by.append(Reason.NO_SUBSCRIPTION)
        else:
            status = effective_status_of(subscription, now)
            if status not in ENTITLED_STATUSES:
                blocked_by.append(Reason.SUBSCRIPTION_INACTIVE)
            plan = subscription.plan
            if resource_kind == LISTING:
                limit = feature_limit(plan, 'max_properties')
            else:
                limit = feature_limit(plan, 'featured_per_month')

        if email_verified is None:
            account = db.query(Account).filter(Account.id == account_id).first()
            email_verified = bool(account and account.email_verified)
        if not email_verified:
            blocked_by.append(Reason.VERIFICATION_REQUIRED)

        if resource_kind == LISTING:
            used = self._listing_usage(db, account_id)
            if limit != UNLIMITED:
                limit += self._extra_listing_slots(db, account_id, now)
        else:
            period_start = subscription.current_period_start if subscription else None
            used = self._featured_usage(db, account_id, period_start)

        indicators = usage_indicators(used, limit)
        if limit != UNLIMITED and indicators['remaining'] <= 0:
            blocked_by.append(Reason.LIMIT_REACHED)

        check = EntitlementCheck(
            resource_kind=resource_kind,
            can_create=not blocked_by,
            reason=blocked_by[0] if blocked_by else None,
            blocked_by=blocked_by,
            limit=limit,
            used=used,
            subscription_status=status.value if status else None,
            **indicators,
        )
        self.logger.info(
            f"can_create: Success - account: {account_id}, kind: {resource_kind}, "
            f"allowed: {check.can_create}, reason: {check.reason}, used: {used}/{limit}"
        )
        return check
