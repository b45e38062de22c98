"""StripeEvent model"""
from sqlalchemy import Column, Integer, String, Text, JSON, DateTime
from billing.models.base import Base, generate_id, utcnow

# Outcomes after which a redelivery is not dispatched again
FINAL_OUTCOMES = ("processed", "ignored")


class StripeEvent(Base):
    """Stripe webhook event ledger for idempotency and dead letters"""
    __tablename__ = "stripe_events"

    id = Column(String(36), primary_key=True, default=generate_id)
    stripe_event_id = Column(String(255), unique=True, nullable=False, index=True)
    event_type = Column(String(100), nullable=False, index=True)
    outcome = Column(String(20), default="received", nullable=False, index=True)  # 'received', 'processed', 'ignored', 'dropped', 'failed'
    drop_reason = Column(String(100), nullable=True)
    payload = Column(JSON, nullable=False)
    error_message = Column(Text, nullable=True)
    attempts = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    processed_at = Column(DateTime(timezone=True), nullable=True)

    @property
    def is_final(self) -> bool:
        return self.outcome in FINAL_OUTCOMES
