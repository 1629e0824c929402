from sqlalchemy import Column, String, DateTime, ForeignKey
from marketplace_billing.core.database import Base
from datetime import datetime

# Listing statuses that occupy a publishing slot
SLOT_CONSUMING_STATUSES = ("active", "pending_review")


class Listing(Base):
    """Read-only projection of the listings table, used for usage counts"""
    __tablename__ = "listings"

    id = Column(String, primary_key=True, index=True)
    account_id = Column(String, ForeignKey("accounts.id"), nullable=False, index=True)
    status = Column(String, nullable=False, index=True)  # 'active', 'pending_review', 'paused', 'sold'
    created_at = Column(DateTime, default=datetime.utcnow)
