"""Centralized Prometheus metrics definitions for flag synchronisation."""

from __future__ import annotations

from prometheus_client import Counter, Gauge

FLAG_FETCHES = Counter(
    "flag_sync_fetches_total",
    "Number of feature flag fetches by outcome.",
    labelnames=("outcome",),
)

FLAG_NOTIFICATIONS = Counter(
    "flag_sync_notifications_total",
    "Number of change notifications received by the flag store.",
    labelnames=("outcome",),
)

FLAG_SNAPSHOT_SIZE = Gauge(
    "flag_sync_snapshot_size",
    "Number of flags held in the most recently accepted snapshot.",
)

FLAG_ADMIN_WRITES = Counter(
    "flag_sync_admin_writes_total",
    "Number of administrative writes to the feature flag table.",
    labelnames=("operation",),
)
