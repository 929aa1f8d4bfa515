"""Prometheus metrics for the application"""
from prometheus_client import Counter, Gauge, Histogram, REGISTRY


def _counter(name, documentation, labelnames=()):
    try:
        return Counter(name, documentation, labelnames)
    except ValueError:
        # Already registered (module re-imported in tests / reload)
        return REGISTRY._names_to_collectors.get(name)


def _gauge(name, documentation, labelnames=()):
    try:
        return Gauge(name, documentation, labelnames)
    except ValueError:
        return REGISTRY._names_to_collectors.get(name)


def _histogram(name, documentation, labelnames=(), buckets=Histogram.DEFAULT_BUCKETS):
    try:
        return Histogram(name, documentation, labelnames, buckets=buckets)
    except ValueError:
        return REGISTRY._names_to_collectors.get(name)


# Usage metering
usage_events_counter = _counter(
    'billing_usage_events_total',
    'Total number of usage events recorded',
    ['category', 'result']
)

usage_cost_histogram = _histogram(
    'billing_usage_cost_dollars',
    'Cost of individual usage events in the reference currency',
    ['category'],
    buckets=(0.0001, 0.0005, 0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0)
)

# Access decisions
access_decisions_counter = _counter(
    'billing_access_decisions_total',
    'Total number of access decisions',
    ['action', 'allowed']
)

# Subscription transitions
subscription_transitions_counter = _counter(
    'billing_subscription_transitions_total',
    'Total number of subscription transitions',
    ['reason']
)

payment_events_counter = _counter(
    'billing_payment_events_total',
    'Total number of inbound payment events',
    ['event_type', 'result']
)

# Scheduler
rollover_runs_counter = _counter(
    'billing_rollover_runs_total',
    'Total number of rollover/expiry job runs',
    ['job', 'status']
)

rollover_accounts_processed_counter = _counter(
    'billing_rollover_accounts_processed_total',
    'Total number of accounts reset or downgraded by scheduled jobs',
    ['job']
)

transition_outbox_gauge = _gauge(
    'billing_transition_outbox_pending',
    'Number of subscription transitions waiting to be dispatched'
)

# API
http_request_duration_histogram = _histogram(
    'billing_http_request_duration_seconds',
    'Latency of billing API calls',
    ['method', 'route', 'status'],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5)
)
