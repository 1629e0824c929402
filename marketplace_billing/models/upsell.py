from sqlalchemy import Column, String, DateTime, Boolean, Integer, Numeric, ForeignKey
from sqlalchemy.orm import relationship
from marketplace_billing.core.database import Base
from datetime import datetime


class UpsellType:
    PROPERTY_SLOT = "property_slot"
    FEATURED_LISTING = "featured_listing"


class GrantStatus:
    ACTIVE = "active"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class Upsell(Base):
    __tablename__ = "upsells"

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    description = Column(String, nullable=True)
    upsell_type = Column(String, nullable=False, index=True)
    price = Column(Numeric(10, 2), nullable=False)
    is_recurring = Column(Boolean, default=False, nullable=False)
    duration_days = Column(Integer, nullable=True)  # null = no end date
    quantity = Column(Integer, default=1, nullable=False)  # extra slots granted
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)


class ActiveUpsellGrant(Base):
    __tablename__ = "active_upsell_grants"

    id = Column(String, primary_key=True, index=True)
    account_id = Column(String, ForeignKey("accounts.id"), nullable=False, index=True)
    upsell_id = Column(String, ForeignKey("upsells.id"), nullable=False)
    status = Column(String, nullable=False, default=GrantStatus.ACTIVE, index=True)
    auto_renew = Column(Boolean, default=False, nullable=False)
    quantity = Column(Integer, default=1, nullable=False)
    start_date = Column(DateTime, default=datetime.utcnow, nullable=False)
    end_date = Column(DateTime, nullable=True, index=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    upsell = relationship("Upsell")

    def is_usable(self, now: datetime) -> bool:
        """Cancelled grants stay usable until end_date; expiry is judged by date, not status"""
        if self.status == GrantStatus.EXPIRED or self.start_date > now:
            return False
        return self.end_date is None or self.end_date > now


class FeaturedPropertyGrant(Base):
    """Leased visibility boost for one listing, with a hard end date"""
    __tablename__ = "featured_property_grants"

    id = Column(String, primary_key=True, index=True)
    account_id = Column(String, ForeignKey("accounts.id"), nullable=False, index=True)
    listing_id = Column(String, ForeignKey("listings.id"), nullable=False, index=True)
    status = Column(String, nullable=False, default=GrantStatus.ACTIVE, index=True)
    start_date = Column(DateTime, default=datetime.utcnow, nullable=False)
    end_date = Column(DateTime, nullable=False, index=True)
    impressions = Column(Integer, default=0, nullable=False)
    clicks = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    def is_active_at(self, now: datetime) -> bool:
        return self.status == GrantStatus.ACTIVE and self.start_date <= now < self.end_date
