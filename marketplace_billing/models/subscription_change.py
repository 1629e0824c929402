from sqlalchemy import Column, String, DateTime, ForeignKey, Integer, JSON
from sqlalchemy.orm import relationship
from marketplace_billing.core.database import Base
from datetime import datetime


class SubscriptionChangeRecord(Base):
    """Append-only audit entry, one per committed plan change"""
    __tablename__ = "subscription_changes"

    id = Column(String, primary_key=True, index=True)
    account_id = Column(String, ForeignKey("accounts.id"), nullable=False, index=True)
    subscription_id = Column(String, ForeignKey("subscriptions.id"), nullable=False, index=True)
    previous_plan_id = Column(String, nullable=True)
    previous_billing_cycle = Column(String, nullable=True)
    new_plan_id = Column(String, nullable=False)
    new_billing_cycle = Column(String, nullable=False)
    change_type = Column(String, nullable=False, index=True)  # 'upgrade', 'downgrade', 'cycle_change'
    prorated_amount = Column(Integer, nullable=False, default=0)  # minor units
    changed_by = Column(String, nullable=False)
    details = Column(JSON, nullable=False, default=dict)  # bypassed_cooldown, changed_by_admin, idempotency_key
    changed_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)

    # Relationships
    subscription = relationship("Subscription")
