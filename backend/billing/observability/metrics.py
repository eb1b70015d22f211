"""Prometheus metrics helpers for the billing reconciliation domain."""
from __future__ import annotations

from prometheus_client import Counter, Histogram

WEBHOOK_EVENTS = Counter(
    "billing_webhook_events_total",
    "Stripe webhook deliveries by event type and outcome",
    labelnames=("event_type", "outcome"),
)

WEBHOOK_LATENCY = Histogram(
    "billing_webhook_duration_seconds",
    "Time spent dispatching a Stripe webhook event",
    labelnames=("event_type",),
    buckets=(0.05, 0.1, 0.25, 0.5, 1, 2, 5),
)

SYNC_RUNS = Counter(
    "billing_sync_runs_total",
    "Drift-correction job executions by run type and final status",
    labelnames=("run_type", "status"),
)

SYNC_RUN_FIXED = Counter(
    "billing_sync_run_fixed_total",
    "Records repaired by drift-correction jobs",
    labelnames=("run_type",),
)

CREDIT_ADJUSTMENTS = Counter(
    "billing_credit_adjustments_total",
    "Credit ledger entries written, by transaction type",
    labelnames=("type",),
)

ROLLOVER_OVERFLOW = Counter(
    "billing_rollover_overflow_credits_total",
    "Subscription credits dropped by the rollover cap",
)
