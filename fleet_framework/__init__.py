"""
fleet_framework — the pluggable scheduling pipeline.

Public API:
    Framework, Profile        — register plugins, run a cycle
    CycleState                — per-cycle scratch space
    Status, StatusCode        — plugin outcomes
    SchedulingCycleError      — raised when a plugin aborts the cycle

Usage:
    from fleet_framework import CycleState, Framework, Profile

    framework = Framework(Profile("default").with_plugin(plugin))
    result = framework.run_scheduling_cycle(CycleState(clusters=clusters), snapshot)
    picked = framework.select_clusters(snapshot.policy, result.scored)
"""

from fleet_framework.cycle_state import CycleCancelledError, CycleState
from fleet_framework.framework import (
    CycleResult,
    FilteredCluster,
    Framework,
    Profile,
    SchedulingCycleError,
    ScoredCluster,
)
from fleet_framework.status import Status, StatusCode, is_success

__all__ = [
    "CycleCancelledError",
    "CycleResult",
    "CycleState",
    "FilteredCluster",
    "Framework",
    "Profile",
    "SchedulingCycleError",
    "ScoredCluster",
    "Status",
    "StatusCode",
    "is_success",
]
