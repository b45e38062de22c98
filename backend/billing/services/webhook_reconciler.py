"""Webhook reconciler: the authoritative writer of subscription and invoice state

Flow for every delivery:

1. verify the signature over the raw body (rejections never reach the ledger)
2. record it in the ``stripe_events`` ledger; events already ``processed`` or
   ``ignored`` are acknowledged without being dispatched again
3. parse the event into a typed variant
4. dispatch to the handler registered for the variant

Handler outcomes are ``processed``, ``ignored`` (nothing to do), ``dropped``
(acknowledged but not applied, e.g. checkout metadata missing) and ``failed``
(parsing or the handler raised). Every outcome is acknowledged with HTTP 200
so Stripe does not redeliver forever; dropped and failed events stay in the
ledger as dead letters and can be replayed.
"""
import json
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from billing.core.errors import (
    InvalidWebhookSignature, NotFoundError, ProviderNotConfiguredError, WebhookNotConfiguredError
)
from billing.core.logging import webhook_logger
from billing.core.metrics import webhook_dropped_counter, webhook_events_counter, webhook_rejected_counter
from billing.models.base import utcnow
from billing.models.invoice import Invoice
from billing.models.plan import Plan
from billing.models.stripe_event import StripeEvent
from billing.models.subscription import Subscription
from billing.models.user import User
from billing.services.plan_service import find_plan_by_price
from billing.services.stripe_gateway import StripeGateway, stripe_value, to_plain
from billing.services.stripe_service import AUTHORITATIVE, apply_plan, apply_subscription_state
from billing.services.webhook_events import (
    EVENT_VARIANTS, CheckoutCompleted, InvoiceCreated, InvoicePaymentFailed, InvoicePaymentSucceeded,
    InvoiceSnapshot, SubscriptionDeleted, SubscriptionSnapshot, SubscriptionUpdated, Unrecognized, parse_event
)

logger = webhook_logger

BILLING_INTERVALS = ("monthly", "yearly")

# Checkout metadata keys, with the camelCase spelling older sessions carry
CHECKOUT_METADATA_KEYS = {
    "user_id": "userId",
    "plan_id": "planId",
    "billing_interval": "billingInterval",
}

# Invoice statuses only move forward; paid and void are terminal
INVOICE_STATUS_RANK = {"draft": 0, "open": 1, "uncollectible": 2, "paid": 3, "void": 3}


class EventDropped(Exception):
    """Raised by a handler when an event cannot be applied but must still be acknowledged"""

    def __init__(self, reason: str, message: str):
        super().__init__(message)
        self.reason = reason


def ledger_payload(raw: Any) -> Dict[str, Any]:
    """JSON-safe plain copy of a verified event, as stored in the ledger"""
    return json.loads(json.dumps(to_plain(raw), default=str))


def advance_invoice_status(invoice: Invoice, new_status: Optional[str]) -> bool:
    """Move an invoice to ``new_status`` unless that would regress it"""
    if not new_status or new_status == invoice.status:
        return False
    current_rank = INVOICE_STATUS_RANK.get(invoice.status, 0)
    new_rank = INVOICE_STATUS_RANK.get(new_status, 0)
    if new_rank <= current_rank:
        logger.info(f"Invoice {invoice.stripe_invoice_id}: keeping status {invoice.status}, ignoring {new_status}")
        return False
    invoice.status = new_status
    return True


class WebhookReconciler:
    def __init__(self, gateway: StripeGateway, webhook_secret: str):
        self.gateway = gateway
        self.webhook_secret = webhook_secret
        self._handlers = {
            CheckoutCompleted: self._on_checkout_completed,
            SubscriptionUpdated: self._on_subscription_updated,
            SubscriptionDeleted: self._on_subscription_deleted,
            InvoiceCreated: self._on_invoice_created,
            InvoicePaymentSucceeded: self._on_invoice_payment_succeeded,
            InvoicePaymentFailed: self._on_invoice_payment_failed,
            Unrecognized: self._on_unrecognized,
        }
        missing = [variant.__name__ for variant in EVENT_VARIANTS if variant not in self._handlers]
        if missing:
            raise RuntimeError(f"No webhook handler registered for: {', '.join(missing)}")

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def handle(self, payload: bytes, sig_header: Optional[str], db: Session) -> Dict[str, Any]:
        """Verify, record and dispatch one webhook delivery.

        Raises:
            ProviderNotConfiguredError: Stripe is not configured
            InvalidWebhookSignature: missing or invalid signature, or unparsable body
            WebhookNotConfiguredError: no webhook secret configured
        """
        if not self.gateway.configured:
            webhook_rejected_counter.labels(reason="not_configured").inc()
            raise ProviderNotConfiguredError()
        if not sig_header:
            webhook_rejected_counter.labels(reason="missing_signature").inc()
            raise InvalidWebhookSignature("Missing stripe-signature header")
        if not self.webhook_secret:
            logger.error("Webhook secret not configured")
            webhook_rejected_counter.labels(reason="missing_secret").inc()
            raise WebhookNotConfiguredError()

        try:
            raw = self.gateway.construct_event(payload, sig_header, self.webhook_secret)
        except InvalidWebhookSignature:
            webhook_rejected_counter.labels(reason="invalid_signature").inc()
            raise

        event_payload = ledger_payload(raw)
        if not stripe_value(event_payload, "id"):
            webhook_rejected_counter.labels(reason="missing_event_id").inc()
            raise InvalidWebhookSignature("Invalid payload")

        logger.info(f"Received webhook event {event_payload['id']} ({stripe_value(event_payload, 'type', '')})")
        return self.process(event_payload, db)

    def process(self, payload: Dict[str, Any], db: Session) -> Dict[str, Any]:
        """Record a verified event in the ledger and dispatch it.

        Parsing happens inside the handler boundary, so a malformed event is
        recorded as failed and acknowledged like any other handler error.
        """
        event_id = payload["id"]
        event_type = stripe_value(payload, "type", "")
        record = self._record(event_id, event_type, payload, db)
        if record.is_final:
            logger.info(f"Webhook event {event_id} already processed")
            webhook_events_counter.labels(event_type=event_type, outcome="duplicate").inc()
            return {"received": True, "status": "already_processed", "event_id": event_id}

        error = None
        reason = None
        try:
            event = parse_event(payload)
            outcome = self._handlers[type(event)](event, db) or "processed"
            db.commit()
        except EventDropped as e:
            db.rollback()
            outcome, reason, error = "dropped", e.reason, str(e)
            webhook_dropped_counter.labels(event_type=event_type, reason=e.reason).inc()
            logger.error(f"Dropped webhook event {event_id} ({event_type}): {e}")
        except Exception as e:
            # Still acknowledged; the event stays in the ledger for replay
            db.rollback()
            outcome, error = "failed", str(e)
            logger.error(f"Error processing webhook {event_id} ({event_type}): {e}", exc_info=True)

        record.outcome = outcome
        record.drop_reason = reason
        record.error_message = error
        record.processed_at = utcnow()
        db.commit()
        webhook_events_counter.labels(event_type=event_type, outcome=outcome).inc()

        response = {"received": True, "status": outcome, "event_id": event_id}
        if outcome == "failed":
            response["error"] = "Handler error"
        return response

    def replay(self, stripe_event_id: str, db: Session) -> Dict[str, Any]:
        """Dispatch a stored dead-letter event again"""
        record = db.query(StripeEvent).filter(StripeEvent.stripe_event_id == stripe_event_id).first()
        if not record:
            raise NotFoundError("Webhook event not found", {"event_id": stripe_event_id})
        logger.info(f"Replaying webhook event {stripe_event_id} (previous outcome: {record.outcome})")
        return self.process(record.payload, db)

    def _record(self, event_id: str, event_type: str, payload: Dict[str, Any], db: Session) -> StripeEvent:
        record = db.query(StripeEvent).filter(StripeEvent.stripe_event_id == event_id).first()
        if not record:
            record = StripeEvent(
                stripe_event_id=event_id,
                event_type=event_type,
                payload=payload,
                attempts=0,
            )
            db.add(record)
            try:
                db.commit()
            except IntegrityError:
                # A concurrent delivery of the same event inserted it first
                db.rollback()
                record = db.query(StripeEvent).filter(StripeEvent.stripe_event_id == event_id).one()
        if not record.is_final:
            record.attempts = (record.attempts or 0) + 1
            db.commit()
        db.refresh(record)
        return record

    # ------------------------------------------------------------------
    # Subscription events
    # ------------------------------------------------------------------

    def _on_checkout_completed(self, event: CheckoutCompleted, db: Session):
        user_id, plan_id, billing_interval = (
            event.metadata.get(key) or event.metadata.get(legacy) for key, legacy in CHECKOUT_METADATA_KEYS.items()
        )
        if not (user_id and plan_id and billing_interval):
            raise EventDropped(
                "missing_metadata",
                f"Checkout session {event.session_id} is missing user_id/plan_id/billing_interval metadata"
            )
        if billing_interval not in BILLING_INTERVALS:
            raise EventDropped("invalid_interval", f"Unknown billing interval '{billing_interval}'")
        if not event.subscription_id:
            raise EventDropped("missing_subscription", f"Checkout session {event.session_id} has no subscription")

        plan = db.query(Plan).filter(Plan.id == plan_id).first()
        if not plan:
            raise EventDropped("unknown_plan", f"Plan {plan_id} from checkout session {event.session_id} not found")
        user = db.query(User).filter(User.id == user_id).first()
        if not user:
            raise EventDropped("unknown_user", f"User {user_id} from checkout session {event.session_id} not found")

        snapshot = SubscriptionSnapshot.from_stripe(self.gateway.retrieve_subscription(event.subscription_id))

        if event.customer_id and not user.stripe_customer_id:
            user.stripe_customer_id = event.customer_id

        sub = db.query(Subscription).filter(
            Subscription.stripe_subscription_id == event.subscription_id
        ).first()
        if not sub:
            sub = Subscription(user_id=user.id, stripe_subscription_id=event.subscription_id)
            db.add(sub)
            logger.info(f"Creating subscription {event.subscription_id} for user {user.id}")
        else:
            logger.info(f"Updating subscription {event.subscription_id} for user {user.id}")

        apply_plan(sub, plan)
        apply_subscription_state(
            sub, AUTHORITATIVE,
            user_id=user.id,
            stripe_customer_id=snapshot.customer_id or event.customer_id,
            billing_interval=billing_interval,
            status=snapshot.status or "incomplete",
            current_period_start=snapshot.current_period_start,
            current_period_end=snapshot.current_period_end,
            cancel_at_period_end=snapshot.cancel_at_period_end,
        )

    def _on_subscription_updated(self, event: SubscriptionUpdated, db: Session):
        snapshot = event.subscription
        sub = db.query(Subscription).filter(
            Subscription.stripe_subscription_id == snapshot.subscription_id
        ).first()
        if not sub:
            raise EventDropped(
                "unknown_subscription",
                f"Subscription {snapshot.subscription_id} not found locally"
            )

        billing_interval = snapshot.billing_interval
        plan, matched_interval = find_plan_by_price(snapshot.price_id, db)
        if plan is None:
            # Fallback: plan id written into subscription metadata on plan change
            fallback_id = snapshot.metadata.get("plan_id")
            if fallback_id:
                plan = db.query(Plan).filter(Plan.id == fallback_id).first()
            if plan is not None and not billing_interval:
                billing_interval = snapshot.metadata.get("billing_interval")
        else:
            billing_interval = matched_interval

        if plan is not None:
            apply_plan(sub, plan)
        else:
            logger.warning(f"Price {snapshot.price_id} on subscription {snapshot.subscription_id} matches no plan")

        apply_subscription_state(
            sub, AUTHORITATIVE,
            status=snapshot.status,
            billing_interval=billing_interval,
            current_period_start=snapshot.current_period_start,
            current_period_end=snapshot.current_period_end,
            cancel_at_period_end=snapshot.cancel_at_period_end,
        )
        logger.info(f"Subscription {snapshot.subscription_id} updated: status={sub.status}, plan={sub.plan}")

    def _on_subscription_deleted(self, event: SubscriptionDeleted, db: Session):
        sub = db.query(Subscription).filter(
            Subscription.stripe_subscription_id == event.subscription.subscription_id
        ).first()
        if not sub:
            logger.info(f"Deleted subscription {event.subscription.subscription_id} was never recorded locally")
            return "ignored"
        apply_subscription_state(sub, AUTHORITATIVE, status="canceled")
        logger.info(f"Subscription {sub.stripe_subscription_id} canceled")

    # ------------------------------------------------------------------
    # Invoice events
    # ------------------------------------------------------------------

    def _resolve_invoice_owner(self, invoice: InvoiceSnapshot, db: Session) -> str:
        if not invoice.customer_id:
            raise EventDropped("missing_customer", f"Invoice {invoice.invoice_id} has no customer")

        customer = self.gateway.retrieve_customer(invoice.customer_id)
        if stripe_value(customer, "deleted", False):
            raise EventDropped("deleted_customer", f"Customer {invoice.customer_id} has been deleted")

        metadata = stripe_value(customer, "metadata", {}) or {}
        user_id = stripe_value(metadata, "user_id") or stripe_value(metadata, "userId")
        if user_id and db.query(User).filter(User.id == user_id).first():
            return user_id

        user = db.query(User).filter(User.stripe_customer_id == invoice.customer_id).first()
        if user:
            return user.id
        raise EventDropped(
            "unknown_user",
            f"No user for customer {invoice.customer_id} (invoice {invoice.invoice_id})"
        )

    def _ensure_invoice(self, invoice: InvoiceSnapshot, db: Session) -> Invoice:
        row = db.query(Invoice).filter(Invoice.stripe_invoice_id == invoice.invoice_id).first()
        if row:
            return row

        row = Invoice(
            user_id=self._resolve_invoice_owner(invoice, db),
            stripe_invoice_id=invoice.invoice_id,
            stripe_subscription_id=invoice.subscription_id,
            amount_paid=invoice.amount_paid,
            currency=invoice.currency,
            status=invoice.status or "draft",
            invoice_pdf=invoice.invoice_pdf,
            period_start=invoice.period_start,
            period_end=invoice.period_end,
        )
        db.add(row)
        db.flush()
        logger.info(f"Recorded invoice {invoice.invoice_id} for user {row.user_id}")
        return row

    def _refresh_subscription(self, subscription_id: str, db: Session, status_only: bool = False):
        sub = db.query(Subscription).filter(Subscription.stripe_subscription_id == subscription_id).first()
        if not sub:
            logger.warning(f"Invoice references subscription {subscription_id} with no local row")
            return
        snapshot = SubscriptionSnapshot.from_stripe(self.gateway.retrieve_subscription(subscription_id))
        if status_only:
            apply_subscription_state(sub, AUTHORITATIVE, status=snapshot.status)
        else:
            apply_subscription_state(
                sub, AUTHORITATIVE,
                status=snapshot.status,
                current_period_start=snapshot.current_period_start,
                current_period_end=snapshot.current_period_end,
                cancel_at_period_end=snapshot.cancel_at_period_end,
            )
        logger.info(f"Refreshed subscription {subscription_id}: status={sub.status}")

    def _on_invoice_created(self, event: InvoiceCreated, db: Session):
        existing = db.query(Invoice).filter(Invoice.stripe_invoice_id == event.invoice.invoice_id).first()
        if existing:
            return "ignored"
        self._ensure_invoice(event.invoice, db)

    def _on_invoice_payment_succeeded(self, event: InvoicePaymentSucceeded, db: Session):
        invoice = event.invoice
        row = self._ensure_invoice(invoice, db)
        advance_invoice_status(row, "paid")
        row.amount_paid = invoice.amount_paid
        if invoice.invoice_pdf:
            row.invoice_pdf = invoice.invoice_pdf
        if invoice.subscription_id:
            self._refresh_subscription(invoice.subscription_id, db)

    def _on_invoice_payment_failed(self, event: InvoicePaymentFailed, db: Session):
        invoice = event.invoice
        row = self._ensure_invoice(invoice, db)
        advance_invoice_status(row, invoice.status or "open")
        if invoice.subscription_id:
            self._refresh_subscription(invoice.subscription_id, db, status_only=True)

    # ------------------------------------------------------------------

    def _on_unrecognized(self, event: Unrecognized, db: Session):
        logger.info(f"Unhandled webhook event type {event.event_type} ({event.event_id})")
        return "ignored"


def list_webhook_events(db: Session, outcome: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
    query = db.query(StripeEvent)
    if outcome:
        query = query.filter(StripeEvent.outcome == outcome)
    events = query.order_by(StripeEvent.created_at.desc()).limit(limit).all()
    return [
        {
            "event_id": e.stripe_event_id,
            "event_type": e.event_type,
            "outcome": e.outcome,
            "drop_reason": e.drop_reason,
            "error_message": e.error_message,
            "attempts": e.attempts,
            "created_at": e.created_at.isoformat() if e.created_at else None,
            "processed_at": e.processed_at.isoformat() if e.processed_at else None,
        }
        for e in events
    ]
