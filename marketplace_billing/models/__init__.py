from marketplace_billing.models.account import Account
from marketplace_billing.models.plan import Plan
from marketplace_billing.models.subscription import Subscription, SubscriptionStatus, BillingCycle
from marketplace_billing.models.subscription_change import SubscriptionChangeRecord
from marketplace_billing.models.upsell import Upsell, ActiveUpsellGrant, FeaturedPropertyGrant
from marketplace_billing.models.listing import Listing
from marketplace_billing.models.processed_webhook_event import ProcessedWebhookEvent

__all__ = [
    "Account", "Plan", "Subscription", "SubscriptionStatus", "BillingCycle",
    "SubscriptionChangeRecord", "Upsell", "ActiveUpsellGrant", "FeaturedPropertyGrant",
    "Listing", "ProcessedWebhookEvent",
]
