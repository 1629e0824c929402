from sqlalchemy import Column, String, DateTime, Boolean, Integer, Numeric, JSON
from marketplace_billing.core.database import Base
from datetime import datetime


class Plan(Base):
    """A priced tier. Rows are never edited after publishing, only (de)activated."""
    __tablename__ = "subscription_plans"

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False, unique=True, index=True)  # 'agente_basico', 'agente_pro', 'inmobiliaria_elite'
    display_name = Column(String, nullable=False)
    price_monthly = Column(Numeric(10, 2), nullable=False)
    price_yearly = Column(Numeric(10, 2), nullable=True)  # null falls back to monthly x 12
    features = Column(JSON, nullable=False, default=dict)  # max_properties, featured_per_month, max_team_members, flags
    stripe_price_id_monthly = Column(String, nullable=True)
    stripe_price_id_yearly = Column(String, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    display_order = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)
