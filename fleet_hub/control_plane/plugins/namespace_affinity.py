"""
fleet_hub/control_plane/plugins/namespace_affinity.py
──────────────────────────────────────────────────────
NamespaceAffinity: only place namespace-scoped workloads on clusters where
the target namespace exists.

Extension points: PreFilter, Filter.

Decision table (namespace-scoped snapshots only)
─────────────────────────────────────────────────
  NamespaceCollectionSucceeded condition absent          → eligible
      (member predates namespace collection; keep scheduling to it)
  condition present (True OR False), namespaces is None   → unschedulable,
      "cluster has no namespace information available"
  condition present, namespace missing from the inventory → unschedulable,
      "target namespace does not exist on cluster"
  condition present, namespace in the inventory           → eligible
      (an empty representative work name still counts)

Cluster-scoped snapshots carry no namespace; PreFilter skips the plugin
for the whole cycle.
"""

from __future__ import annotations

from typing import Optional

from fleet_framework.cycle_state import CycleState
from fleet_framework.status import Status, StatusCode
from fleet_hub.shared.conditions import find_condition
from fleet_hub.shared.models import ClusterConditionType, MemberCluster, PolicySnapshot

DEFAULT_NAME = "NamespaceAffinity"

REASON_CLUSTER_SCOPED = "cluster-scoped placement does not require namespace affinity filtering"
REASON_NO_NAMESPACE_INFO = "cluster has no namespace information available"
REASON_NAMESPACE_MISSING = "target namespace does not exist on cluster"


class NamespaceAffinityPlugin:
    """Filters clusters on namespace availability for namespace-scoped placements."""

    def __init__(self, name: str = DEFAULT_NAME) -> None:
        self.name = name

    def pre_filter(self, state: CycleState, snapshot: PolicySnapshot) -> Optional[Status]:
        if not snapshot.namespace:
            return Status.non_error(StatusCode.SKIP, self.name, REASON_CLUSTER_SCOPED)
        return None

    def filter(
        self, state: CycleState, snapshot: PolicySnapshot, cluster: MemberCluster
    ) -> Optional[Status]:
        cond = find_condition(
            cluster.status.conditions,
            ClusterConditionType.NAMESPACE_COLLECTION_SUCCEEDED.value,
        )
        if cond is None:
            return None

        if cluster.status.namespaces is None:
            return Status.non_error(StatusCode.CLUSTER_UNSCHEDULABLE, self.name, REASON_NO_NAMESPACE_INFO)

        if snapshot.namespace not in cluster.status.namespaces:
            return Status.non_error(StatusCode.CLUSTER_UNSCHEDULABLE, self.name, REASON_NAMESPACE_MISSING)

        return None
