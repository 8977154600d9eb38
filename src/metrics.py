#!/usr/bin/env python3
# src/metrics.py
"""Prometheus metrics for the managed cluster sync controllers."""

from prometheus_client import Counter, Gauge, Info

sync_cycles_total = Counter(
    "console_hub_sync_cycles_total",
    "Total number of sync cycles by outcome",
    ["controller", "result"],
)
managed_clusters = Gauge(
    "console_hub_sync_managed_clusters",
    "Number of eligible managed clusters seen in the last cycle",
    ["controller"],
)
remote_requests_total = Counter(
    "console_hub_sync_remote_requests_total",
    "Total number of mediating resources created on the hub",
    ["kind"],
)
deferred_clusters_total = Counter(
    "console_hub_sync_deferred_clusters_total",
    "Per-cluster steps deferred because remote data was not ready",
    ["step"],
)
teardown_deletions_total = Counter(
    "console_hub_sync_teardown_deletions_total",
    "Objects deleted while removing managed cluster resources",
    ["kind"],
)
info_metric = Info("console_hub_sync", "Information about the sync controller instance")
