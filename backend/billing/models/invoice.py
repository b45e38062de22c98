"""Invoice model"""
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey
from sqlalchemy.orm import relationship
from billing.models.base import Base, generate_id, utcnow


class Invoice(Base):
    """Local record of a Stripe invoice"""
    __tablename__ = "invoices"

    id = Column(String(36), primary_key=True, default=generate_id)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    stripe_invoice_id = Column(String(255), unique=True, nullable=False, index=True)
    stripe_subscription_id = Column(String(255), nullable=True, index=True)
    amount_paid = Column(Integer, default=0, nullable=False)  # minor currency units
    currency = Column(String(10), default="usd", nullable=False)
    status = Column(String(20), default="draft", nullable=False)  # 'draft', 'open', 'paid', 'uncollectible', 'void'
    invoice_pdf = Column(String(1024), nullable=True)
    period_start = Column(DateTime(timezone=True), nullable=True)
    period_end = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    # Relationship
    user = relationship("User", back_populates="invoices")
