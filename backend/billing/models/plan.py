"""Plan model"""
from typing import Optional

from sqlalchemy import Column, Integer, String, Text, DateTime, Boolean, JSON
from billing.models.base import Base, generate_id, utcnow


class Plan(Base):
    """Sellable plan tier, mapped onto one Stripe product and up to two prices"""
    __tablename__ = "plans"

    id = Column(String(36), primary_key=True, default=generate_id)
    name = Column(String(100), nullable=False)
    slug = Column(String(50), unique=True, nullable=False, index=True)
    description = Column(Text, nullable=True)
    price_monthly = Column(Integer, nullable=False)  # minor currency units
    price_yearly = Column(Integer, nullable=False)
    features = Column(JSON, nullable=False, default=list)
    max_users = Column(Integer, nullable=True)  # None = unlimited
    max_team_members = Column(Integer, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    is_popular = Column(Boolean, default=False, nullable=False)
    sort_order = Column(Integer, default=0, nullable=False)
    stripe_price_id_monthly = Column(String(255), nullable=True)
    stripe_price_id_yearly = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    def price_id_for(self, billing_interval: str) -> Optional[str]:
        if billing_interval == "yearly":
            return self.stripe_price_id_yearly
        return self.stripe_price_id_monthly
