from sqlalchemy import Column, String, DateTime, Boolean, Enum, ForeignKey
from sqlalchemy.orm import relationship
from marketplace_billing.core.database import Base
from datetime import datetime
import enum


class SubscriptionStatus(str, enum.Enum):
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    SUSPENDED = "suspended"
    CANCELED = "canceled"
    EXPIRED = "expired"


class BillingCycle(str, enum.Enum):
    MONTHLY = "monthly"
    YEARLY = "yearly"


# Statuses that still count as "the" subscription of an account
NON_TERMINAL_STATUSES = (
    SubscriptionStatus.TRIALING,
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.PAST_DUE,
    SubscriptionStatus.SUSPENDED,
    SubscriptionStatus.CANCELED,
)


class Subscription(Base):
    __tablename__ = "subscriptions"

    id = Column(String, primary_key=True, index=True)
    account_id = Column(String, ForeignKey("accounts.id"), nullable=False, index=True)
    plan_id = Column(String, ForeignKey("subscription_plans.id"), nullable=False, index=True)
    billing_cycle = Column(Enum(BillingCycle), nullable=False, default=BillingCycle.MONTHLY)
    status = Column(Enum(SubscriptionStatus), nullable=False, default=SubscriptionStatus.ACTIVE, index=True)
    current_period_start = Column(DateTime, nullable=False)
    current_period_end = Column(DateTime, nullable=False)
    cancel_at_period_end = Column(Boolean, default=False, nullable=False)
    last_plan_change_at = Column(DateTime, nullable=True)
    stripe_subscription_id = Column(String, nullable=True, unique=True, index=True)  # null for trial-only accounts
    stripe_customer_id = Column(String, nullable=True)
    payment_failed_at = Column(DateTime, nullable=True)  # start of the grace window
    scheduled_plan_id = Column(String, ForeignKey("subscription_plans.id"), nullable=True)  # pending downgrade
    scheduled_billing_cycle = Column(Enum(BillingCycle), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    account = relationship("Account", back_populates="subscriptions")
    plan = relationship("Plan", foreign_keys=[plan_id])
    scheduled_plan = relationship("Plan", foreign_keys=[scheduled_plan_id])
