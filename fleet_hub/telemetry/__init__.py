"""
fleet_hub/telemetry — Prometheus metrics for the scheduler and update runs.

Public API:
    HubMetrics    — every hub collector, bound to one CollectorRegistry
    init_metrics  — one-time creation of the process-wide instance
    get_metrics   — the process-wide instance
"""

from fleet_hub.telemetry.metrics import HubMetrics, get_metrics, init_metrics

__all__ = ["HubMetrics", "get_metrics", "init_metrics"]
