"""
tests/test_scheduler.py
────────────────────────
Test suite for fleet_hub/control_plane/scheduler.py and binding_reconciler.py.

What we are testing
────────────────────
One placement key through schedule_once(), against an InMemoryStore:
  • picks become Scheduled bindings pointing at the latest snapshot,
  • a second pass with nothing changed issues no store writes,
  • clusters that stop qualifying lose their binding (Scheduled) or are
    marked Unscheduled (Bound),
  • deleting the placement removes its bindings before its finalizer,
  • a plugin failure is written to the snapshot and re-raised.

Test groups
────────────
Group 1: Happy path          — bindings, decisions, finalizer, metrics
Group 2: Idempotence         — no writes on an unchanged re-run
Group 3: Inventory changes   — unhealthy clusters, policy changes
Group 4: PickN               — ranking and unfulfilled requeue
Group 5: Failures            — plugin errors, feature flags, deletion
Group 6: BindingReconciler   — conflict retries
"""

from __future__ import annotations

from typing import Dict, Optional

import pytest
from prometheus_client import CollectorRegistry

from fleet_framework import Framework, Profile, SchedulingCycleError, Status
from fleet_hub.control_plane.binding_reconciler import BindingReconciler, DesiredBinding
from fleet_hub.control_plane.config import FeatureFlags, HubConfig
from fleet_hub.control_plane.plugins import default_profile
from fleet_hub.control_plane.plugins.namespace_affinity import REASON_NAMESPACE_MISSING
from fleet_hub.control_plane.scheduler import (
    CLEANUP_FINALIZER,
    DECISION_NOT_PICKED,
    DECISION_PICKED,
    REASON_POLICY_FULFILLED,
    REASON_POLICY_UNFULFILLED,
    REASON_SCHEDULING_FAILED,
    Scheduler,
)
from fleet_hub.shared.conditions import find_condition
from fleet_hub.shared.models import (
    Binding,
    BindingState,
    ClusterConditionType,
    ClusterScore,
    Condition,
    ConditionStatus,
    MemberCluster,
    MemberClusterStatus,
    Placement,
    PlacementPolicy,
    PlacementType,
    PolicySnapshot,
    PreferredClusterTerm,
    binding_name,
    policy_snapshot_name,
)
from fleet_hub.shared.store import ConflictError, InMemoryStore
from fleet_hub.telemetry.metrics import HubMetrics


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

def _make_cluster(
    name: str,
    labels: Optional[Dict[str, str]] = None,
    healthy: bool = True,
    namespaces: Optional[Dict[str, str]] = None,
) -> MemberCluster:
    conditions = [
        Condition(type=ClusterConditionType.JOINED.value, status=ConditionStatus.TRUE),
        Condition(
            type=ClusterConditionType.HEALTHY.value,
            status=ConditionStatus.TRUE if healthy else ConditionStatus.FALSE,
        ),
    ]
    if namespaces is not None:
        conditions.append(Condition(
            type=ClusterConditionType.NAMESPACE_COLLECTION_SUCCEEDED.value, status=ConditionStatus.TRUE,
        ))
    return MemberCluster(
        name=name,
        labels=labels or {},
        status=MemberClusterStatus(conditions=conditions, namespaces=namespaces),
    )


def _seed_placement(
    store: InMemoryStore, policy: PlacementPolicy, name: str = "web", namespace: str = "",
) -> None:
    store.create(Placement(name=name, namespace=namespace, policy=policy))
    store.create(PolicySnapshot(
        name=policy_snapshot_name(name, 0),
        namespace=namespace,
        placement_name=name,
        policy_index=0,
        policy=policy,
    ))


def _bindings(store: InMemoryStore, namespace: str = "") -> Dict[str, Binding]:
    return {b.target_cluster: b for b in store.list(Binding, namespace=namespace)}


def _set_healthy(store: InMemoryStore, name: str, healthy: bool) -> None:
    cluster = store.get(MemberCluster, name)
    cluster.status.conditions[1].status = ConditionStatus.TRUE if healthy else ConditionStatus.FALSE
    store.update(cluster)


class _Env:
    """A scheduler wired to a fresh store and a fresh metrics registry."""

    def __init__(self, config: Optional[HubConfig] = None, profile: Optional[Profile] = None) -> None:
        self.store = InMemoryStore()
        self.registry = CollectorRegistry()
        self.metrics = HubMetrics(self.registry)
        self.config = config or HubConfig()
        self.scheduler = Scheduler(
            self.store, Framework(profile or default_profile()), self.config, self.metrics,
        )

    def add_clusters(self, *clusters: MemberCluster) -> None:
        for c in clusters:
            self.store.create(c)

    def cycles(self, is_failed: str, needs_requeue: str) -> Optional[float]:
        return self.registry.get_sample_value(
            "scheduling_cycle_duration_milliseconds_count",
            {"is_failed": is_failed, "needs_requeue": needs_requeue},
        )


class _BrokenPreFilter:
    name = "Broken"

    def pre_filter(self, state, snapshot):
        return Status.from_error(RuntimeError("inventory unavailable"), self.name)


# ─────────────────────────────────────────────────────────────────────────────
# Group 1: Happy path
# ─────────────────────────────────────────────────────────────────────────────

class TestPickAll:

    def setup_method(self) -> None:
        self.env = _Env()
        self.env.add_clusters(_make_cluster("m1"), _make_cluster("m2"), _make_cluster("m3", healthy=False))
        _seed_placement(self.env.store, PlacementPolicy())

    def test_eligible_clusters_get_scheduled_bindings(self) -> None:
        self.env.scheduler.schedule_once("web")

        bindings = _bindings(self.env.store)
        assert sorted(bindings) == ["m1", "m2"]
        for cluster, b in bindings.items():
            assert b.name == binding_name("web", cluster)
            assert b.state == BindingState.SCHEDULED
            assert b.policy_snapshot_name == "web-0"
            assert b.reason == DECISION_PICKED

    def test_finalizer_added_before_bindings(self) -> None:
        self.env.scheduler.schedule_once("web")
        assert CLEANUP_FINALIZER in self.env.store.get(Placement, "web").finalizers

    def test_snapshot_status_records_every_decision(self) -> None:
        self.env.scheduler.schedule_once("web")
        snapshot = self.env.store.get(PolicySnapshot, "web-0")

        cond = find_condition(snapshot.status.conditions, "Scheduled")
        assert cond.status == ConditionStatus.TRUE
        assert cond.reason == REASON_POLICY_FULFILLED
        assert snapshot.status.observed_cluster_count == 3
        decisions = {d.cluster_name: d for d in snapshot.status.cluster_decisions}
        assert decisions["m1"].selected and decisions["m2"].selected
        assert not decisions["m3"].selected
        assert decisions["m3"].reason == "cluster is not healthy"

    def test_placement_condition_and_metrics(self) -> None:
        result = self.env.scheduler.schedule_once("web")

        assert result.requeue_after == 0
        placement = self.env.store.get(Placement, "web")
        assert find_condition(placement.status.conditions, "Scheduled").status == ConditionStatus.TRUE
        assert self.env.metrics.series("placement_status_last_timestamp") == [{
            "namespace": "", "name": "web", "generation": "1", "conditionType": "Scheduled",
            "status": "True", "reason": REASON_POLICY_FULFILLED,
        }]
        assert self.env.cycles("false", "false") == 1.0
        assert self.env.registry.get_sample_value("scheduling_active_workers") == 0.0

    def test_missing_placement_is_a_no_op(self) -> None:
        writes = self.env.store.writes
        assert self.env.scheduler.schedule_once("nope").requeue_after == 0
        assert self.env.store.writes == writes

    def test_placement_without_snapshot_is_a_no_op(self) -> None:
        self.env.store.create(Placement(name="fresh"))
        self.env.scheduler.schedule_once("fresh")
        assert self.env.store.get(Placement, "fresh").finalizers == []


# ─────────────────────────────────────────────────────────────────────────────
# Group 2: Idempotence
# ─────────────────────────────────────────────────────────────────────────────

class TestIdempotence:

    def test_second_pass_writes_nothing(self) -> None:
        env = _Env()
        env.add_clusters(_make_cluster("m1"), _make_cluster("m2"), _make_cluster("m3", healthy=False))
        _seed_placement(env.store, PlacementPolicy(
            preferred_cluster_terms=[PreferredClusterTerm(weight=5, labels={})],
        ))
        env.scheduler.schedule_once("web")
        writes = env.store.writes

        env.scheduler.schedule_once("web")
        env.scheduler.schedule_once("web")

        assert env.store.writes == writes
        assert env.cycles("false", "false") == 3.0


# ─────────────────────────────────────────────────────────────────────────────
# Group 3: Inventory changes
# ─────────────────────────────────────────────────────────────────────────────

class TestInventoryChanges:

    def setup_method(self) -> None:
        self.env = _Env()
        self.env.add_clusters(
            _make_cluster("m1", labels={"env": "prod"}),
            _make_cluster("m2", labels={"env": "prod"}),
            _make_cluster("m3", labels={"env": "dev"}),
        )
        _seed_placement(self.env.store, PlacementPolicy())
        self.env.scheduler.schedule_once("web")

    def _bind(self, cluster: str) -> None:
        b = self.env.store.get(Binding, binding_name("web", cluster))
        b.state = BindingState.BOUND
        b.resource_snapshot_name = "web-resources-0"
        self.env.store.update(b)

    def test_unhealthy_scheduled_cluster_loses_its_binding(self) -> None:
        _set_healthy(self.env.store, "m3", False)
        self.env.scheduler.schedule_once("web")
        assert sorted(_bindings(self.env.store)) == ["m1", "m2"]

    def test_unhealthy_bound_cluster_is_marked_unscheduled(self) -> None:
        self._bind("m2")
        _set_healthy(self.env.store, "m2", False)
        self.env.scheduler.schedule_once("web")

        b = _bindings(self.env.store)["m2"]
        assert b.state == BindingState.UNSCHEDULED
        assert b.resource_snapshot_name == "web-resources-0"
        assert b.reason == "cluster is no longer picked by the scheduling policy"

    def test_recovered_cluster_is_picked_again(self) -> None:
        self._bind("m2")
        _set_healthy(self.env.store, "m2", False)
        self.env.scheduler.schedule_once("web")
        _set_healthy(self.env.store, "m2", True)
        self.env.scheduler.schedule_once("web")

        assert _bindings(self.env.store)["m2"].state == BindingState.SCHEDULED

    def test_policy_change_rebases_bindings_on_new_snapshot(self) -> None:
        self._bind("m1")
        old = self.env.store.get(PolicySnapshot, "web-0")
        old.is_latest = False
        self.env.store.update(old)
        self.env.store.create(PolicySnapshot(
            name="web-1", placement_name="web", policy_index=1,
            policy=PlacementPolicy(required_cluster_labels={"env": "prod"}),
        ))

        self.env.scheduler.schedule_once("web")

        bindings = _bindings(self.env.store)
        assert sorted(bindings) == ["m1", "m2"]
        assert {b.policy_snapshot_name for b in bindings.values()} == {"web-1"}
        assert bindings["m1"].state == BindingState.BOUND


# ─────────────────────────────────────────────────────────────────────────────
# Group 4: PickN
# ─────────────────────────────────────────────────────────────────────────────

class TestPickN:

    def test_best_scores_win_then_names(self) -> None:
        env = _Env()
        env.add_clusters(
            _make_cluster("a"), _make_cluster("b"), _make_cluster("c", labels={"tier": "gold"}),
        )
        _seed_placement(env.store, PlacementPolicy(
            placement_type=PlacementType.PICK_N,
            number_of_clusters=2,
            preferred_cluster_terms=[PreferredClusterTerm(weight=10, labels={"tier": "gold"})],
        ))

        env.scheduler.schedule_once("web")

        bindings = _bindings(env.store)
        assert sorted(bindings) == ["a", "c"]
        assert bindings["c"].score == ClusterScore(affinity_score=10)
        decisions = {d.cluster_name: d for d in env.store.get(PolicySnapshot, "web-0").status.cluster_decisions}
        assert decisions["b"].reason == DECISION_NOT_PICKED

    def test_unfulfilled_pick_n_requeues_after_resync_period(self) -> None:
        env = _Env()
        env.add_clusters(_make_cluster("a"), _make_cluster("b"))
        _seed_placement(env.store, PlacementPolicy(placement_type=PlacementType.PICK_N, number_of_clusters=5))

        result = env.scheduler.schedule_once("web")

        assert result.requeue_after == env.config.placement.resync_period_s
        assert sorted(_bindings(env.store)) == ["a", "b"]
        cond = find_condition(env.store.get(PolicySnapshot, "web-0").status.conditions, "Scheduled")
        assert cond.status == ConditionStatus.FALSE
        assert cond.reason == REASON_POLICY_UNFULFILLED
        assert env.cycles("false", "true") == 1.0


# ─────────────────────────────────────────────────────────────────────────────
# Group 5: Failures, flags and deletion
# ─────────────────────────────────────────────────────────────────────────────

class TestFailuresAndLifecycle:

    def test_plugin_error_is_recorded_and_raised(self) -> None:
        env = _Env(profile=Profile("broken").with_plugin(_BrokenPreFilter()))
        env.add_clusters(_make_cluster("m1"))
        _seed_placement(env.store, PlacementPolicy())

        with pytest.raises(SchedulingCycleError):
            env.scheduler.schedule_once("web")

        cond = find_condition(env.store.get(PolicySnapshot, "web-0").status.conditions, "Scheduled")
        assert cond.status == ConditionStatus.FALSE
        assert cond.reason == REASON_SCHEDULING_FAILED
        assert "inventory unavailable" in cond.message
        placement = env.store.get(Placement, "web")
        assert find_condition(placement.status.conditions, "Scheduled").reason == REASON_SCHEDULING_FAILED
        assert _bindings(env.store) == {}
        assert env.cycles("true", "true") == 1.0
        assert env.registry.get_sample_value("scheduling_active_workers") == 0.0

    def test_namespace_scoped_placement_filters_on_namespace(self) -> None:
        env = _Env()
        env.add_clusters(
            _make_cluster("m1", namespaces={"team-a": "w"}),
            _make_cluster("m2", namespaces={"team-b": "w"}),
        )
        _seed_placement(env.store, PlacementPolicy(), namespace="team-a")

        env.scheduler.schedule_once("team-a/web")

        assert sorted(_bindings(env.store, "team-a")) == ["m1"]
        decisions = {
            d.cluster_name: d
            for d in env.store.get(PolicySnapshot, "web-0", "team-a").status.cluster_decisions
        }
        assert decisions["m2"].reason == REASON_NAMESPACE_MISSING

    def test_namespace_scoped_placement_ignored_when_flag_off(self) -> None:
        env = _Env(config=HubConfig(feature_flags=FeatureFlags(enable_resource_placement_apis=False)))
        env.add_clusters(_make_cluster("m1", namespaces={"team-a": "w"}))
        _seed_placement(env.store, PlacementPolicy(), namespace="team-a")

        env.scheduler.schedule_once("team-a/web")

        assert _bindings(env.store, "team-a") == {}
        assert env.store.get(Placement, "web", "team-a").finalizers == []

    def test_deleted_placement_cleans_up_bindings_then_finalizer(self) -> None:
        env = _Env()
        env.add_clusters(_make_cluster("m1"), _make_cluster("m2"))
        _seed_placement(env.store, PlacementPolicy())
        env.scheduler.schedule_once("web")

        env.store.delete(Placement, "web")
        assert env.store.get(Placement, "web").is_deleting

        env.scheduler.schedule_once("web")

        assert _bindings(env.store) == {}
        assert env.store.try_get(Placement, "web") is None
        assert env.metrics.series("placement_status_last_timestamp") == []


# ─────────────────────────────────────────────────────────────────────────────
# Group 6: BindingReconciler conflicts
# ─────────────────────────────────────────────────────────────────────────────

class _ConflictingStore(InMemoryStore):
    """Fails the first `conflicts` binding updates as if another writer got there first."""

    def __init__(self, conflicts: int) -> None:
        super().__init__()
        self.conflicts = conflicts

    def update(self, obj):
        if isinstance(obj, Binding) and self.conflicts > 0:
            self.conflicts -= 1
            raise ConflictError("Binding", obj.name, obj.resource_version, obj.resource_version + 1)
        return super().update(obj)


class TestBindingReconcilerConflicts:

    def _setup(self, conflicts: int) -> tuple:
        store = _ConflictingStore(conflicts)
        placement = store.create(Placement(name="web"))
        snapshot = PolicySnapshot(name="web-1", placement_name="web", policy_index=1)
        store.create(Binding(
            name="web-m1", placement_name="web", target_cluster="m1", policy_snapshot_name="web-0",
        ))
        return store, placement, snapshot

    def test_conflict_is_retried_on_the_one_binding(self) -> None:
        store, placement, snapshot = self._setup(conflicts=2)
        reconciler = BindingReconciler(store, max_conflict_retries=5)

        changes = reconciler.reconcile(placement, snapshot, [DesiredBinding("m1"), DesiredBinding("m2")])

        assert changes.updated == ["web-m1"]
        assert changes.created == ["web-m2"]
        assert store.get(Binding, "web-m1").policy_snapshot_name == "web-1"

    def test_persistent_conflict_propagates(self) -> None:
        store, placement, snapshot = self._setup(conflicts=10)
        reconciler = BindingReconciler(store, max_conflict_retries=3)

        with pytest.raises(ConflictError):
            reconciler.reconcile(placement, snapshot, [DesiredBinding("m1")])
        assert store.conflicts == 7

    def test_delete_all(self) -> None:
        store, placement, _ = self._setup(conflicts=0)
        assert BindingReconciler(store).delete_all(placement) == 1
        assert store.list(Binding) == []
