"""Prometheus metrics for the reconcile loop."""

from prometheus_client import Counter, Gauge, Histogram

reconcile_total = Counter(
    "policyguard_reconcile_total",
    "Total number of reconcile attempts",
    ["controller", "result"],
)

reconcile_duration = Histogram(
    "policyguard_reconcile_duration_seconds",
    "Time spent in a single reconcile attempt",
    ["controller"],
)

requeue_total = Counter(
    "policyguard_requeue_total",
    "Total number of requeued reconcile requests",
    ["controller", "reason"],
)

queue_depth = Gauge(
    "policyguard_workqueue_depth",
    "Number of reconcile requests waiting to be processed",
    ["controller"],
)

indexed_policies = Gauge(
    "policyguard_indexed_policies",
    "Number of policies currently held by the policy server index",
)
