"""
fleet_hub/control_plane/plugins/cluster_eligibility.py
───────────────────────────────────────────────────────
ClusterEligibility: drop clusters that cannot take new placements at all.

Extension points: Filter.

A cluster is ineligible when it
  • is being removed from the fleet (deletion_timestamp set),
  • has not joined, or has left (Joined condition not True), or
  • is reported unhealthy (Healthy condition False).

A missing Healthy condition is read as healthy: the health collector is an
optional capability, and its absence is not an error.
"""

from __future__ import annotations

from typing import Optional

from fleet_framework.cycle_state import CycleState
from fleet_framework.status import Status, StatusCode
from fleet_hub.shared.conditions import find_condition
from fleet_hub.shared.models import (
    ClusterConditionType,
    ConditionStatus,
    MemberCluster,
    PolicySnapshot,
)

DEFAULT_NAME = "ClusterEligibility"

REASON_LEAVING = "cluster is leaving the fleet"
REASON_NOT_JOINED = "cluster has not joined the fleet"
REASON_UNHEALTHY = "cluster is not healthy"


class ClusterEligibilityPlugin:

    def __init__(self, name: str = DEFAULT_NAME) -> None:
        self.name = name

    def filter(
        self, state: CycleState, snapshot: PolicySnapshot, cluster: MemberCluster
    ) -> Optional[Status]:
        if cluster.is_deleting:
            return Status.non_error(StatusCode.CLUSTER_UNSCHEDULABLE, self.name, REASON_LEAVING)

        joined = find_condition(cluster.status.conditions, ClusterConditionType.JOINED.value)
        if joined is None or joined.status != ConditionStatus.TRUE:
            return Status.non_error(StatusCode.CLUSTER_UNSCHEDULABLE, self.name, REASON_NOT_JOINED)

        healthy = find_condition(cluster.status.conditions, ClusterConditionType.HEALTHY.value)
        if healthy is not None and healthy.status == ConditionStatus.FALSE:
            return Status.non_error(StatusCode.CLUSTER_UNSCHEDULABLE, self.name, REASON_UNHEALTHY)

        return None
