"""Subscription model"""
from sqlalchemy import Column, String, DateTime, Boolean, ForeignKey
from sqlalchemy.orm import relationship
from billing.models.base import Base, generate_id, utcnow

# Statuses that grant access; everything else is historical or pending
ACTIVE_STATUSES = ("active", "trialing", "past_due")


class Subscription(Base):
    """Stripe subscription information"""
    __tablename__ = "subscriptions"

    id = Column(String(36), primary_key=True, default=generate_id)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    stripe_subscription_id = Column(String(255), unique=True, nullable=False, index=True)
    stripe_customer_id = Column(String(255), nullable=True, index=True)
    plan = Column(String(50), nullable=False)  # legacy plan slug, kept in sync with plan_id
    plan_id = Column(String(36), ForeignKey("plans.id"), nullable=True, index=True)
    billing_interval = Column(String(20), nullable=True)  # 'monthly', 'yearly'
    status = Column(String(50), nullable=False)  # 'incomplete', 'trialing', 'active', 'past_due', 'canceled', ...
    current_period_start = Column(DateTime(timezone=True), nullable=True)
    current_period_end = Column(DateTime(timezone=True), nullable=True)
    cancel_at_period_end = Column(Boolean, default=False, nullable=False)
    state_source = Column(String(20), default="webhook", nullable=False)  # 'provisional' or 'webhook'
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    # Relationships
    user = relationship("User", back_populates="subscriptions")
    catalog_plan = relationship("Plan")

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES
