from sqlalchemy import Column, String, DateTime, Boolean
from sqlalchemy.orm import relationship
from marketplace_billing.core.database import Base
from datetime import datetime


class Account(Base):
    __tablename__ = "accounts"

    id = Column(String, primary_key=True, index=True)  # Firebase UID
    email = Column(String, unique=True, index=True, nullable=False)
    email_verified = Column(Boolean, default=False, nullable=False)  # Publishing requires a verified email
    is_admin = Column(Boolean, default=False, nullable=False)
    stripe_customer_id = Column(String, nullable=True, index=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    subscriptions = relationship("Subscription", back_populates="account")
