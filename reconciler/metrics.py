# reconciler/metrics.py
from prometheus_client import Counter, Histogram, make_asgi_app

# Counters
events_total = Counter(
    "stripe_events_total",
    "Stripe events handled, by type and outcome",
    ["type", "outcome"],
)
orders_completed = Counter("orders_completed_total", "Orders settled as completed")
renewals_recorded = Counter("subscription_renewals_total", "Subscription renewals written to the ledger")

signature_failures = Counter("stripe_signature_failures_total", "Webhook signature verification failures")
unverified_bypass = Counter(
    "stripe_unverified_bypass_total",
    "Unverified payment_intent.succeeded bypass attempts",
    ["result"],
)
duplicate_events = Counter(
    "stripe_duplicate_events_total",
    "Redelivered events acknowledged without reprocessing",
    ["type"],
)
side_effect_failures = Counter(
    "side_effect_failures_total",
    "Best-effort side effects that failed",
    ["kind"],
)
fallback_rates = Counter(
    "exchange_rate_fallbacks_total",
    "Charges settled with the unknown-currency fallback rate",
    ["currency"],
)

# Latency
webhook_latency = Histogram("stripe_webhook_latency_seconds", "Webhook handling latency in seconds")

# ASGI app for /metrics
metrics_asgi_app = make_asgi_app()
