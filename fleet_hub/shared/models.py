"""
fleet_hub/shared/models.py
───────────────────────────
The single source of truth for every object the hub reads or writes.

Design philosophy
-----------------
Every model answers one question: "What does the hub *need to know*
about this thing in order to place workloads and roll them out?"

Objects mirror API-store records: each carries a name, an optional
namespace, a generation (bumped by whoever changes the spec) and a
resource_version (bumped by the store on every write, used for
optimistic concurrency). Status sections hold Conditions, which are only
trusted when their observed_generation matches the owning object's
generation.

Reading guide
-------------
Read top-to-bottom. Each model builds on the ones above it.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    """Timezone-aware UTC now. Every timestamp in the hub goes through this."""
    return datetime.now(timezone.utc)


def object_key(name: str, namespace: str = "") -> str:
    """Queue key for an object: "namespace/name", or just "name" when cluster-scoped."""
    return f"{namespace}/{name}" if namespace else name


def split_key(key: str) -> Tuple[str, str]:
    """Inverse of object_key(). Returns (namespace, name)."""
    if "/" in key:
        namespace, name = key.split("/", 1)
        return namespace, name
    return "", key


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 1: ENUMERATIONS
# ─────────────────────────────────────────────────────────────────────────────

class ConditionStatus(str, Enum):
    TRUE = "True"
    FALSE = "False"
    UNKNOWN = "Unknown"


class ClusterConditionType(str, Enum):
    """
    Conditions reported on a MemberCluster by external collection processes.

    JOINED                          → the member agent has joined the fleet.
    HEALTHY                         → the member agent heartbeats are fresh.
    NAMESPACE_COLLECTION_SUCCEEDED  → the namespace collector is enabled on the
                                      member. Its *presence* (not its value)
                                      means status.namespaces is authoritative.
    """
    JOINED = "Joined"
    HEALTHY = "Healthy"
    NAMESPACE_COLLECTION_SUCCEEDED = "NamespaceCollectionSucceeded"


class PlacementType(str, Enum):
    """
    PICK_ALL → bind to every eligible cluster.
    PICK_N   → bind to the N best-scoring eligible clusters.
    """
    PICK_ALL = "PickAll"
    PICK_N = "PickN"


class BindingState(str, Enum):
    """
    Lifecycle of a Binding.

    SCHEDULED   → the scheduler picked the cluster; nothing rolled out yet.
    BOUND       → a rollout has committed the binding to a resource snapshot.
    UNSCHEDULED → the cluster is no longer picked; kept until cleaned up.
    """
    SCHEDULED = "Scheduled"
    BOUND = "Bound"
    UNSCHEDULED = "Unscheduled"


class PolicySnapshotConditionType(str, Enum):
    SCHEDULED = "Scheduled"


class PlacementConditionType(str, Enum):
    SCHEDULED = "Scheduled"


class UpdateRunSpecState(str, Enum):
    """
    What the operator wants the run to do.

    INITIALIZE → compute the stage plan but do not start executing.
    RUN        → execute stages.
    STOP       → dispatch nothing new; in-flight tasks still finish.
    """
    INITIALIZE = "Initialize"
    RUN = "Run"
    STOP = "Stop"


class RunState(str, Enum):
    """Top-level state of an UpdateRun. SUCCEEDED and FAILED are terminal."""
    INITIALIZED = "Initialized"
    PROGRESSING = "Progressing"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"


class StageState(str, Enum):
    PENDING = "Pending"
    PROGRESSING = "Progressing"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"


class TaskState(str, Enum):
    """
    Lifecycle of one cluster's update inside a stage.

    PENDING → (APPROVAL_REQUESTED → APPROVED →) UPDATING → SUCCEEDED | FAILED
    Any not-yet-dispatched task may also be SKIPPED.
    """
    PENDING = "Pending"
    APPROVAL_REQUESTED = "ApprovalRequested"
    APPROVED = "Approved"
    UPDATING = "Updating"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    SKIPPED = "Skipped"


TERMINAL_TASK_STATES = frozenset({TaskState.SUCCEEDED, TaskState.FAILED, TaskState.SKIPPED})
TERMINAL_RUN_STATES = frozenset({RunState.SUCCEEDED, RunState.FAILED})


class UpdateRunConditionType(str, Enum):
    INITIALIZED = "Initialized"
    PROGRESSING = "Progressing"
    SUCCEEDED = "Succeeded"


class StageConditionType(str, Enum):
    PROGRESSING = "Progressing"
    SUCCEEDED = "Succeeded"


class StageTaskConditionType(str, Enum):
    APPROVAL_REQUEST_CREATED = "ApprovalRequestCreated"
    APPROVAL_REQUEST_APPROVED = "ApprovalRequestApproved"
    STARTED = "Started"
    SUCCEEDED = "Succeeded"


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 2: COMMON BUILDING BLOCKS
# ─────────────────────────────────────────────────────────────────────────────

class Condition(BaseModel):
    """
    A typed, generation-stamped status entry.

    A reader must ignore a condition whose observed_generation differs from
    the owning object's current generation: it describes an older spec.
    """
    type: str
    status: ConditionStatus
    reason: str = ""
    message: str = ""
    observed_generation: int = 0
    last_transition_time: datetime = Field(default_factory=utcnow)


class HubObject(BaseModel):
    """
    Fields every stored object shares.

    generation       → bumped by the writer of the spec; conditions reference it.
    resource_version → bumped by the store on every write; optimistic concurrency.
    finalizers       → while non-empty, a delete only sets deletion_timestamp.
    """
    name: str
    namespace: str = ""
    generation: int = 1
    resource_version: int = 0
    labels: Dict[str, str] = Field(default_factory=dict)
    finalizers: List[str] = Field(default_factory=list)
    deletion_timestamp: Optional[datetime] = None

    @property
    def key(self) -> str:
        return object_key(self.name, self.namespace)

    @property
    def is_deleting(self) -> bool:
        return self.deletion_timestamp is not None


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 3: MEMBER CLUSTERS
# ─────────────────────────────────────────────────────────────────────────────

class MemberClusterStatus(BaseModel):
    """
    Fields:
        conditions → health and capability conditions.
        namespaces → namespace name → representative work name. None when the
                     member has not reported an inventory (which is different
                     from reporting an empty one).
    """
    conditions: List[Condition] = Field(default_factory=list)
    namespaces: Optional[Dict[str, str]] = None


class MemberCluster(HubObject):
    """A fleet member. Read-only to the scheduler."""
    status: MemberClusterStatus = Field(default_factory=MemberClusterStatus)


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 4: PLACEMENTS AND POLICY SNAPSHOTS
# ─────────────────────────────────────────────────────────────────────────────

class PreferredClusterTerm(BaseModel):
    """Soft affinity: clusters carrying all `labels` get `weight` added to their score."""
    weight: int = Field(..., ge=-100, le=100)
    labels: Dict[str, str] = Field(default_factory=dict)


class PlacementPolicy(BaseModel):
    """The part of a placement the scheduler reads."""
    placement_type: PlacementType = PlacementType.PICK_ALL
    number_of_clusters: Optional[int] = Field(
        None, ge=0,
        description="How many clusters to pick. Only read for PickN."
    )
    required_cluster_labels: Dict[str, str] = Field(
        default_factory=dict,
        description="Hard affinity: clusters must carry every label listed."
    )
    preferred_cluster_terms: List[PreferredClusterTerm] = Field(default_factory=list)


class PlacementStatus(BaseModel):
    conditions: List[Condition] = Field(default_factory=list)


class Placement(HubObject):
    """
    An intent to deploy resources onto some subset of the fleet.

    namespace == "" → cluster-scoped (fleet-wide) placement.
    namespace != "" → namespace-scoped placement bound to that namespace.
    """
    policy: PlacementPolicy = Field(default_factory=PlacementPolicy)
    status: PlacementStatus = Field(default_factory=PlacementStatus)


class ClusterScore(BaseModel):
    """Per-cluster score produced by Score plugins. Higher is better."""
    affinity_score: int = 0
    topology_spread_score: int = 0

    def add(self, other: Optional["ClusterScore"]) -> "ClusterScore":
        if other is None:
            return self
        return ClusterScore(
            affinity_score=self.affinity_score + other.affinity_score,
            topology_spread_score=self.topology_spread_score + other.topology_spread_score,
        )


class ClusterDecision(BaseModel):
    """Why a cluster was (or was not) picked in the latest cycle."""
    cluster_name: str
    selected: bool
    reason: str = ""
    score: Optional[ClusterScore] = None


class PolicySnapshotStatus(BaseModel):
    conditions: List[Condition] = Field(default_factory=list)
    cluster_decisions: List[ClusterDecision] = Field(default_factory=list)
    observed_cluster_count: int = 0


class PolicySnapshot(HubObject):
    """
    Immutable capture of a placement's policy at one policy_index.

    A policy change produces a new snapshot (policy_index + 1) and flips
    is_latest on the previous one; snapshots are never edited in place.
    Only status is written after creation.
    """
    placement_name: str
    policy_index: int = 0
    is_latest: bool = True
    policy: PlacementPolicy = Field(default_factory=PlacementPolicy)
    status: PolicySnapshotStatus = Field(default_factory=PolicySnapshotStatus)

    @property
    def is_namespace_scoped(self) -> bool:
        return bool(self.namespace)


def policy_snapshot_name(placement_name: str, policy_index: int) -> str:
    return f"{placement_name}-{policy_index}"


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 5: BINDINGS
# ─────────────────────────────────────────────────────────────────────────────

class Binding(HubObject):
    """
    The materialised decision assigning a placement to one cluster.

    policy_snapshot_name   → the snapshot that produced the decision.
    resource_snapshot_name → set when a rollout binds the cluster to a
                             specific version of the placed resources.
    """
    placement_name: str
    target_cluster: str
    policy_snapshot_name: str
    state: BindingState = BindingState.SCHEDULED
    score: Optional[ClusterScore] = None
    reason: str = ""
    resource_snapshot_name: Optional[str] = None


def binding_name(placement_name: str, cluster_name: str) -> str:
    """Deterministic: at most one binding per (placement, cluster)."""
    return f"{placement_name}-{cluster_name}"


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 6: STAGED UPDATE RUNS
# ─────────────────────────────────────────────────────────────────────────────

class StageSpec(BaseModel):
    """
    One ordered phase of a staged rollout.

    Fields:
        name              → unique within the run.
        label_selector    → clusters carrying all these labels belong to the
                            stage (first matching stage wins). Empty = all.
        requires_approval → every task waits for an approval before dispatch.
        max_concurrency   → cap on concurrently updating clusters in this
                            stage. None = the hub-wide default.
        sort_by_label     → order the stage's clusters by this label's value
                            (then by name). None = by name.
    """
    name: str
    label_selector: Dict[str, str] = Field(default_factory=dict)
    requires_approval: bool = False
    max_concurrency: Optional[int] = Field(None, ge=1)
    sort_by_label: Optional[str] = None


class StageTaskStatus(BaseModel):
    """One cluster's unit of work within a stage."""
    cluster_name: str
    state: TaskState = TaskState.PENDING
    conditions: List[Condition] = Field(default_factory=list)
    message: str = ""
    tolerated: bool = Field(
        False,
        description="A FAILED task the failure policy chose to tolerate."
    )


class StageStatus(BaseModel):
    stage_name: str
    state: StageState = StageState.PENDING
    tasks: List[StageTaskStatus] = Field(default_factory=list)
    conditions: List[Condition] = Field(default_factory=list)
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None

    def task_for(self, cluster_name: str) -> Optional[StageTaskStatus]:
        for task in self.tasks:
            if task.cluster_name == cluster_name:
                return task
        return None


class UpdateRunStatus(BaseModel):
    """
    state is None until the run is initialised for the first time.
    observed_generation is the generation the stage plan was computed for.
    """
    state: Optional[RunState] = None
    observed_generation: int = 0
    conditions: List[Condition] = Field(default_factory=list)
    stages: List[StageStatus] = Field(default_factory=list)

    def stage_for(self, stage_name: str) -> Optional[StageStatus]:
        for stage in self.stages:
            if stage.stage_name == stage_name:
                return stage
        return None


class UpdateRun(HubObject):
    """A request to roll a placement's resource snapshot out stage by stage."""
    placement_name: str
    resource_snapshot_name: str
    state: UpdateRunSpecState = UpdateRunSpecState.RUN
    stages: List[StageSpec] = Field(default_factory=list)
    status: UpdateRunStatus = Field(default_factory=UpdateRunStatus)
