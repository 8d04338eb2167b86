"""
fleet_hub/control_plane/plugins/cluster_affinity.py
────────────────────────────────────────────────────
ClusterAffinity: label-based hard and soft cluster affinity.

Extension points: PreFilter, Filter, PreScore, Score.

  Filter → a cluster must carry every label in
           policy.required_cluster_labels (skipped when there are none).
  Score  → affinity_score = sum of weights of the preferred terms whose
           labels the cluster carries (skipped when there are none).
"""

from __future__ import annotations

from typing import Dict, Optional, Tuple

from fleet_framework.cycle_state import CycleState
from fleet_framework.status import Status, StatusCode
from fleet_hub.shared.models import ClusterScore, MemberCluster, PolicySnapshot

DEFAULT_NAME = "ClusterAffinity"

REASON_NO_REQUIRED_TERMS = "no required cluster affinity terms to enforce"
REASON_NO_PREFERRED_TERMS = "no preferred cluster affinity terms to score"
REASON_LABEL_MISMATCH = "cluster does not match the required cluster labels"


def labels_match(labels: Dict[str, str], selector: Dict[str, str]) -> bool:
    """True when labels carries every key/value of selector. An empty selector matches all."""
    return all(labels.get(k) == v for k, v in selector.items())


class ClusterAffinityPlugin:

    def __init__(self, name: str = DEFAULT_NAME) -> None:
        self.name = name

    def pre_filter(self, state: CycleState, snapshot: PolicySnapshot) -> Optional[Status]:
        if not snapshot.policy.required_cluster_labels:
            return Status.non_error(StatusCode.SKIP, self.name, REASON_NO_REQUIRED_TERMS)
        return None

    def filter(
        self, state: CycleState, snapshot: PolicySnapshot, cluster: MemberCluster
    ) -> Optional[Status]:
        if labels_match(cluster.labels, snapshot.policy.required_cluster_labels):
            return None
        return Status.non_error(StatusCode.CLUSTER_UNSCHEDULABLE, self.name, REASON_LABEL_MISMATCH)

    def pre_score(self, state: CycleState, snapshot: PolicySnapshot) -> Optional[Status]:
        if not snapshot.policy.preferred_cluster_terms:
            return Status.non_error(StatusCode.SKIP, self.name, REASON_NO_PREFERRED_TERMS)
        return None

    def score(
        self, state: CycleState, snapshot: PolicySnapshot, cluster: MemberCluster
    ) -> Tuple[Optional[ClusterScore], Optional[Status]]:
        total = sum(
            term.weight
            for term in snapshot.policy.preferred_cluster_terms
            if labels_match(cluster.labels, term.labels)
        )
        return ClusterScore(affinity_score=total), None
