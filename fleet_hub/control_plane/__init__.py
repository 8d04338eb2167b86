"""
fleet_hub/control_plane — scheduling and staged rollout.

Public API:

    Configuration:
        HubConfig                 — resolved hub configuration

    Work queues:
        RateLimitingQueue         — dedup'd, single-flight, rate-limited key queue
        Controller                — bounded worker pool draining a queue
        Result                    — what a reconcile asks the queue to do next

    Scheduling:
        Scheduler                 — runs one placement through the framework
        BindingReconciler         — desired clusters → Binding objects
        CLEANUP_FINALIZER         — guards binding cleanup on placement delete
        default_profile()         — ClusterEligibility → ClusterAffinity → NamespaceAffinity

    Staged update runs:
        UpdateRunController       — the run/stage/task state machine
        FailurePolicy             — hook deciding what a task failure does
        AbortOnFailure, ContinueOnFailure
        ClusterUpdateExecutor     — hook that updates one cluster
        BindingRolloutExecutor    — default executor (binds to the resource snapshot)
        InvalidTransitionError    — illegal state-machine transition

    Wiring:
        HubService                — store + scheduler + update runs + resync
"""

from fleet_hub.control_plane.config import HubConfig
from fleet_hub.control_plane.workqueue import Controller, RateLimitingQueue, Result
from fleet_hub.control_plane.plugins import default_profile
from fleet_hub.control_plane.binding_reconciler import BindingReconciler
from fleet_hub.control_plane.scheduler import CLEANUP_FINALIZER, Scheduler
from fleet_hub.control_plane.updaterun import (
    AbortOnFailure,
    BindingRolloutExecutor,
    ClusterUpdateExecutor,
    ContinueOnFailure,
    FailurePolicy,
    InvalidTransitionError,
    UpdateRunController,
)
from fleet_hub.control_plane.hub_service import HubService

__all__ = [
    "HubConfig",
    "Controller",
    "RateLimitingQueue",
    "Result",
    "default_profile",
    "BindingReconciler",
    "CLEANUP_FINALIZER",
    "Scheduler",
    "AbortOnFailure",
    "BindingRolloutExecutor",
    "ClusterUpdateExecutor",
    "ContinueOnFailure",
    "FailurePolicy",
    "InvalidTransitionError",
    "UpdateRunController",
    "HubService",
]
