import calendar
import hashlib
import logging
import uuid
from datetime import datetime, timedelta
from typing import List, Optional, Union

from sqlalchemy.orm import Session

from marketplace_billing.core.config import settings
from marketplace_billing.core.errors import ErrorCode, Failure
from marketplace_billing.models.account import Account
from marketplace_billing.models.listing import Listing
from marketplace_billing.models.subscription import SubscriptionStatus
from marketplace_billing.models.upsell import (
    ActiveUpsellGrant,
    FeaturedPropertyGrant,
    GrantStatus,
    Upsell,
)
from marketplace_billing.services.analytics_service import AnalyticsService
from marketplace_billing.services.entitlement_service import (
    FEATURED_LISTING,
    EntitlementService,
    Reason,
)
from marketplace_billing.services.payment_gateway import PaymentGateway
from marketplace_billing.services.plan_catalog import to_minor_units
from marketplace_billing.services.plan_change_service import get_current_subscription
from marketplace_billing.services.subscription_state import effective_status_of

logger = logging.getLogger(__name__)

REASON_TO_CODE = {
    Reason.NO_SUBSCRIPTION: ErrorCode.NO_SUBSCRIPTION,
    Reason.SUBSCRIPTION_INACTIVE: ErrorCode.SUBSCRIPTION_INACTIVE,
    Reason.VERIFICATION_REQUIRED: ErrorCode.FORBIDDEN,
    Reason.LIMIT_REACHED: ErrorCode.LIMIT_REACHED,
}


def serialize_grant(grant: ActiveUpsellGrant, now: datetime) -> dict:
    upsell = grant.upsell
    return {
        'id': grant.id,
        'upsell_id': grant.upsell_id,
        'name': upsell.name if upsell else None,
        'upsell_type': upsell.upsell_type if upsell else None,
        'status': grant.status,
        'auto_renew': grant.auto_renew,
        'quantity': grant.quantity,
        'start_date': grant.start_date.isoformat(),
        'end_date': grant.end_date.isoformat() if grant.end_date else None,
        'is_usable': grant.is_usable(now),
    }


def serialize_featured(grant: FeaturedPropertyGrant, now: datetime) -> dict:
    return {
        'id': grant.id,
        'listing_id': grant.listing_id,
        'status': grant.status,
        'start_date': grant.start_date.isoformat(),
        'end_date': grant.end_date.isoformat(),
        'impressions': grant.impressions,
        'clicks': grant.clicks,
        'is_active': grant.is_active_at(now),
    }


class UpsellService:
    def __init__(
        self,
        gateway: Optional[PaymentGateway] = None,
        entitlements: Optional[EntitlementService] = None,
    ):
        self.gateway = gateway or PaymentGateway()
        self.entitlements = entitlements or EntitlementService()
        self.analytics = AnalyticsService()
        self.logger = logging.getLogger(__name__)

    def list_catalog(self, db: Session) -> List[dict]:
        upsells = db.query(Upsell).filter(Upsell.is_active == True).order_by(Upsell.price).all()  # noqa: E712
        return [{
            'id': upsell.id,
            'name': upsell.name,
            'description': upsell.description,
            'upsell_type': upsell.upsell_type,
            'price': to_minor_units(upsell.price),
            'is_recurring': upsell.is_recurring,
            'duration_days': upsell.duration_days,
            'quantity': upsell.quantity,
        } for upsell in upsells]

    def list_active_upsells(self, db: Session, account_id: str, now: Optional[datetime] = None) -> dict:
        """Grants still usable right now; a stored status of active is not enough"""
        self.logger.info(f"list_active_upsells: Entry - account: {account_id}")
        now = now or datetime.utcnow()

        grants = db.query(ActiveUpsellGrant).filter(
            ActiveUpsellGrant.account_id == account_id,
            ActiveUpsellGrant.status != GrantStatus.EXPIRED,
        ).order_by(ActiveUpsellGrant.start_date.desc()).all()
        featured = db.query(FeaturedPropertyGrant).filter(
            FeaturedPropertyGrant.account_id == account_id,
            FeaturedPropertyGrant.status == GrantStatus.ACTIVE,
        ).order_by(FeaturedPropertyGrant.end_date).all()

        result = {
            'upsells': [serialize_grant(g, now) for g in grants if g.is_usable(now)],
            'featured': [serialize_featured(g, now) for g in featured if g.is_active_at(now)],
        }
        self.logger.info(
            f"list_active_upsells: Success - upsells: {len(result['upsells'])}, featured: {len(result['featured'])}"
        )
        return result

    def purchase_upsell(
        self,
        db: Session,
        account_id: str,
        upsell_id: str,
        now: Optional[datetime] = None,
    ) -> Union[dict, Failure]:
        """Charge an add-on once and grant it. Trial accounts cannot buy add-ons."""
        self.logger.info(f"purchase_upsell: Entry - account: {account_id}, upsell: {upsell_id}")
        now = now or datetime.utcnow()

        upsell = db.query(Upsell).filter(Upsell.id == upsell_id).first()
        if not upsell or not upsell.is_active:
            return Failure(code=ErrorCode.UPSELL_NOT_FOUND, message=f"Upsell {upsell_id} not found")

        subscription = get_current_subscription(db, account_id)
        if subscription is None:
            return Failure(code=ErrorCode.NO_SUBSCRIPTION, message="Account has no subscription")
        status = effective_status_of(subscription, now)
        if status == SubscriptionStatus.TRIALING:
            return Failure(code=ErrorCode.TRIAL_ACCOUNT, message="Add-ons require a paid, active subscription")
        if status == SubscriptionStatus.SUSPENDED:
            return Failure(code=ErrorCode.SUSPENDED, message="Subscription is suspended for non-payment")
        if status != SubscriptionStatus.ACTIVE:
            return Failure(code=ErrorCode.SUBSCRIPTION_INACTIVE, message=f"Subscription is {status.value}")

        customer_id = subscription.stripe_customer_id
        if not customer_id:
            account = db.query(Account).filter(Account.id == account_id).first()
            customer_id = account.stripe_customer_id if account else None
        if not customer_id:
            return Failure(code=ErrorCode.TRIAL_NO_STRIPE, message="No payment method on file")

        window = calendar.timegm(now.utctimetuple()) // settings.idempotency_window_seconds
        key = hashlib.sha256(f"upsell:{account_id}:{upsell_id}:{window}".encode()).hexdigest()
        try:
            invoice_id = self.gateway.charge_once(
                customer_id, to_minor_units(upsell.price), upsell.name, idempotency_key=key
            )
        except Exception as e:
            self.analytics.log_failure(
                action='purchase_upsell', error=str(e), account_id=account_id, parameters={'upsell_id': upsell_id}
            )
            self.logger.error(f"purchase_upsell: Failure - {e}")
            return Failure(code=ErrorCode.PAYMENT_FAILED, message=str(e) or "Payment processor error")

        grant = ActiveUpsellGrant(
            id=str(uuid.uuid4()),
            account_id=account_id,
            upsell_id=upsell.id,
            status=GrantStatus.ACTIVE,
            auto_renew=bool(upsell.is_recurring),
            quantity=upsell.quantity or 1,
            start_date=now,
            end_date=now + timedelta(days=upsell.duration_days) if upsell.duration_days else None,
        )
        try:
            db.add(grant)
            db.commit()
            db.refresh(grant)
        except Exception as e:
            db.rollback()
            self.logger.error(f"purchase_upsell: Failure - charged invoice {invoice_id} but grant not saved: {e}")
            raise

        self.analytics.log_success(
            action='purchase_upsell',
            account_id=account_id,
            parameters={'upsell_id': upsell_id, 'invoice_id': invoice_id}
        )
        self.logger.info(f"purchase_upsell: Success - grant: {grant.id}")
        return serialize_grant(grant, now)

    def cancel_upsell(
        self,
        db: Session,
        account_id: str,
        grant_id: str,
        now: Optional[datetime] = None,
    ) -> Union[dict, Failure]:
        """Stop renewal; the grant stays usable until its end_date"""
        self.logger.info(f"cancel_upsell: Entry - account: {account_id}, grant: {grant_id}")
        now = now or datetime.utcnow()

        grant = db.query(ActiveUpsellGrant).filter(
            ActiveUpsellGrant.id == grant_id,
            ActiveUpsellGrant.account_id == account_id,
        ).first()
        if not grant:
            return Failure(code=ErrorCode.UPSELL_NOT_FOUND, message=f"Upsell grant {grant_id} not found")

        if grant.status == GrantStatus.ACTIVE:
            grant.status = GrantStatus.CANCELLED
            grant.auto_renew = False
            grant.updated_at = now
            db.commit()
            self.analytics.log_success(
                action='cancel_upsell', account_id=account_id, parameters={'grant_id': grant_id}
            )

        self.logger.info(f"cancel_upsell: Success - grant: {grant_id}, status: {grant.status}")
        return {
            'cancelled': grant.status in (GrantStatus.CANCELLED, GrantStatus.EXPIRED),
            'usable_until': grant.end_date.isoformat() if grant.end_date else None,
        }

    def feature_listing(
        self,
        db: Session,
        account_id: str,
        listing_id: str,
        email_verified: Optional[bool] = None,
        now: Optional[datetime] = None,
    ) -> Union[dict, Failure]:
        """Spend one featured slot of this period on a listing for a fixed number of days"""
        self.logger.info(f"feature_listing: Entry - account: {account_id}, listing: {listing_id}")
        now = now or datetime.utcnow()

        listing = db.query(Listing).filter(
            Listing.id == listing_id,
            Listing.account_id == account_id,
        ).first()
        if not listing or listing.status != 'active':
            return Failure(code=ErrorCode.VALIDATION_ERROR, message="Only your active listings can be featured")

        current = db.query(FeaturedPropertyGrant).filter(
            FeaturedPropertyGrant.listing_id == listing_id,
            FeaturedPropertyGrant.status == GrantStatus.ACTIVE,
            FeaturedPropertyGrant.end_date > now,
        ).first()
        if current:
            return Failure(
                code=ErrorCode.VALIDATION_ERROR,
                message="Listing is already featured",
                details={'end_date': current.end_date.isoformat()},
            )

        check = self.entitlements.can_create(db, account_id, FEATURED_LISTING, email_verified=email_verified, now=now)
        if not check.can_create:
            return Failure(
                code=REASON_TO_CODE[check.reason],
                message=f"Cannot feature listing: {check.reason}",
                details={'reason': check.reason, 'remaining': check.remaining, 'limit': check.limit},
            )

        grant = FeaturedPropertyGrant(
            id=str(uuid.uuid4()),
            account_id=account_id,
            listing_id=listing_id,
            status=GrantStatus.ACTIVE,
            start_date=now,
            end_date=now + timedelta(days=settings.featured_duration_days),
        )
        db.add(grant)
        db.commit()
        db.refresh(grant)

        self.analytics.log_success(
            action='feature_listing', account_id=account_id, parameters={'listing_id': listing_id}
        )
        self.logger.info(f"feature_listing: Success - grant: {grant.id}")
        return serialize_featured(grant, now)

    def record_featured_interaction(
        self,
        db: Session,
        grant_id: str,
        kind: str,
        now: Optional[datetime] = None,
    ) -> bool:
        """Count an impression or click; ignored once the grant has ended"""
        if kind not in ('impression', 'click'):
            raise ValueError(f"Unknown interaction: {kind}")
        now = now or datetime.utcnow()

        grant = db.query(FeaturedPropertyGrant).filter(FeaturedPropertyGrant.id == grant_id).first()
        if not grant or not grant.is_active_at(now):
            return False
        if kind == 'impression':
            grant.impressions += 1
        else:
            grant.clicks += 1
        db.commit()
        return True

    def expire_upsells(self, db: Session, now: Optional[datetime] = None) -> dict:
        """Flip elapsed grants to expired"""
        self.logger.info("expire_upsells: Entry")
        now = now or datetime.utcnow()

        try:
            grants = db.query(ActiveUpsellGrant).filter(
                ActiveUpsellGrant.status.in_((GrantStatus.ACTIVE, GrantStatus.CANCELLED)),
                ActiveUpsellGrant.end_date.isnot(None),
                ActiveUpsellGrant.end_date < now,
            ).all()
            for grant in grants:
                grant.status = GrantStatus.EXPIRED
                grant.auto_renew = False
                grant.updated_at = now

            featured = db.query(FeaturedPropertyGrant).filter(
                FeaturedPropertyGrant.status == GrantStatus.ACTIVE,
                FeaturedPropertyGrant.end_date < now,
            ).all()
            for grant in featured:
                grant.status = GrantStatus.EXPIRED
            db.commit()
        except Exception as e:
            db.rollback()
            self.analytics.log_failure(action='expire_upsells', error=str(e))
            self.logger.error(f"expire_upsells: Failure - {e}")
            raise

        result = {'upsells': len(grants), 'featured': len(featured)}
        self.logger.info(f"expire_upsells: Success - {result}")
        return result
