"""Prometheus metrics for the application"""
from prometheus_client import Counter, REGISTRY


def _counter(name, documentation, labelnames=()):
    # Re-registration after a module reload returns the existing collector
    try:
        return Counter(name, documentation, labelnames)
    except ValueError:
        return REGISTRY._names_to_collectors.get(name)


# Webhook metrics
webhook_events_counter = _counter(
    'billing_webhook_events_total',
    'Total number of verified Stripe webhook events by outcome',
    ['event_type', 'outcome']
)

webhook_dropped_counter = _counter(
    'billing_webhook_dropped_total',
    'Webhook events acknowledged without being applied (dead letters)',
    ['event_type', 'reason']
)

webhook_rejected_counter = _counter(
    'billing_webhook_rejected_total',
    'Webhook requests rejected before dispatch',
    ['reason']
)

# Provider metrics
provider_errors_counter = _counter(
    'billing_provider_errors_total',
    'Total number of failed Stripe API calls',
    ['operation']
)

# Catalog metrics
catalog_sync_counter = _counter(
    'billing_catalog_sync_total',
    'Plan synchronization attempts by result',
    ['result']
)

# Checkout metrics
checkout_sessions_counter = _counter(
    'billing_checkout_sessions_total',
    'Checkout session attempts by result',
    ['result']
)

plan_changes_counter = _counter(
    'billing_plan_changes_total',
    'Provider-side plan changes applied to existing subscriptions'
)
