"""
fleet_hub/control_plane/scheduler.py
─────────────────────────────────────
Scheduler: runs one placement's latest policy snapshot through the
framework and materialises the result as bindings.

One call of schedule_once(key)
───────────────────────────────
  1. Load the placement. Gone → nothing to do.
  2. Deleting → delete every binding, drop the placement's metric series,
     then remove CLEANUP_FINALIZER so the store can let it go.
  3. Load the latest PolicySnapshot. None yet → nothing to do.
  4. Add CLEANUP_FINALIZER before any binding is written, so bindings can
     never outlive a placement that was deleted mid-cycle.
  5. Run the framework cycle (PreFilter → Filter → PreScore → Score).
     A SchedulingCycleError is written to the snapshot as Scheduled=False,
     reason SchedulingFailed, then re-raised for a rate-limited requeue.
  6. select_clusters() → diff against bindings (BindingReconciler).
  7. Write snapshot status (Scheduled condition, per-cluster decisions) and
     the placement's Scheduled condition, each only if it changed.

A PickN placement that finds fewer than N eligible clusters is not an
error: the condition says SchedulingPolicyUnfulfilled and the key comes back
after the resync period, with no backoff growth.

Re-running schedule_once with the same snapshot and cluster inventory
issues no store writes at all.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import List, Optional, Tuple

from fleet_framework.cycle_state import CycleState
from fleet_framework.framework import CycleResult, Framework, SchedulingCycleError, ScoredCluster
from fleet_hub.control_plane.binding_reconciler import BindingReconciler, DesiredBinding
from fleet_hub.control_plane.config import HubConfig
from fleet_hub.control_plane.workqueue import Result
from fleet_hub.shared.conditions import set_condition
from fleet_hub.shared.models import (
    ClusterDecision,
    Condition,
    ConditionStatus,
    MemberCluster,
    Placement,
    PlacementConditionType,
    PlacementType,
    PolicySnapshot,
    PolicySnapshotConditionType,
    split_key,
)
from fleet_hub.shared.store import InMemoryStore, update_with_retry
from fleet_hub.telemetry.metrics import HubMetrics

logger = logging.getLogger(__name__)

CLEANUP_FINALIZER = "kubernetes-fleet.io/scheduler-cleanup"

REASON_SCHEDULING_FAILED = "SchedulingFailed"
REASON_POLICY_FULFILLED = "SchedulingPolicyFulfilled"
REASON_POLICY_UNFULFILLED = "SchedulingPolicyUnfulfilled"

DECISION_PICKED = "picked by scheduling policy"
DECISION_NOT_PICKED = "cluster is eligible but ranked below the top picks"


class Scheduler:
    """
    Stateless between calls apart from its collaborators; any number of
    worker threads may call schedule_once() for distinct keys.
    """

    def __init__(
        self,
        store: InMemoryStore,
        framework: Framework,
        config: HubConfig,
        metrics: HubMetrics,
        binding_reconciler: Optional[BindingReconciler] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        self._store = store
        self._framework = framework
        self._config = config
        self._metrics = metrics
        self._bindings = binding_reconciler or BindingReconciler(store)
        self._cancel_event = cancel_event

    # ── Entry point ────────────────────────────────────────────────────────────

    def schedule_once(self, key: str) -> Result:
        """Reconcile one placement key. Raises on errors the queue should back off from."""
        self._metrics.scheduling_worker_started()
        started = time.perf_counter()
        failed = True
        result = Result()
        try:
            result = self._schedule(key)
            failed = False
            return result
        finally:
            self._metrics.scheduling_worker_finished()
            self._metrics.observe_scheduling_cycle(
                (time.perf_counter() - started) * 1000.0,
                is_failed=failed,
                needs_requeue=failed or result.requeue or result.requeue_after > 0,
            )

    def _schedule(self, key: str) -> Result:
        namespace, name = split_key(key)
        placement = self._store.try_get(Placement, name, namespace)
        if placement is None:
            logger.debug("placement %s not found; skipping", key)
            return Result()

        if placement.is_deleting:
            self._clean_up(placement)
            return Result()

        if placement.namespace and not self._config.feature_flags.enable_resource_placement_apis:
            logger.debug("namespace-scoped placement %s ignored: resource placement APIs disabled", key)
            return Result()

        snapshot = self._latest_snapshot(placement)
        if snapshot is None:
            logger.debug("placement %s has no policy snapshot yet", key)
            return Result()

        placement = self._ensure_finalizer(placement)

        state = CycleState(clusters=self._store.list(MemberCluster), cancel_event=self._cancel_event)

        try:
            cycle = self._framework.run_scheduling_cycle(state, snapshot)
        except SchedulingCycleError as err:
            logger.warning("scheduling cycle for %s failed: %s", key, err)
            self._record_failure(placement, snapshot, str(err))
            raise

        picked = self._framework.select_clusters(snapshot.policy, cycle.scored)
        self._bindings.reconcile(
            placement,
            snapshot,
            [DesiredBinding(s.cluster.name, s.score, DECISION_PICKED) for s in picked],
        )

        fulfilled, message = _fulfilment(snapshot, picked)
        self._record_success(placement, snapshot, cycle, picked, fulfilled, message)
        if not fulfilled:
            return Result(requeue_after=self._config.placement.resync_period_s)
        return Result()

    # ── Steps ──────────────────────────────────────────────────────────────────

    def _latest_snapshot(self, placement: Placement) -> Optional[PolicySnapshot]:
        latest = self._store.list(
            PolicySnapshot,
            namespace=placement.namespace,
            predicate=lambda s: s.placement_name == placement.name and s.is_latest,
        )
        if not latest:
            return None
        if len(latest) > 1:
            logger.warning(
                "placement %s has %d snapshots marked latest; using the highest index",
                placement.key, len(latest),
            )
        return max(latest, key=lambda s: s.policy_index)

    def _ensure_finalizer(self, placement: Placement) -> Placement:
        def add(p: Placement) -> bool:
            if CLEANUP_FINALIZER in p.finalizers:
                return False
            p.finalizers.append(CLEANUP_FINALIZER)
            return True

        stored = update_with_retry(self._store, placement, add)
        if stored is not None:
            logger.info("added scheduler cleanup finalizer to placement %s", placement.key)
            return stored
        return placement

    def _clean_up(self, placement: Placement) -> None:
        self._bindings.delete_all(placement)
        self._metrics.delete_placement_metrics(placement.namespace, placement.name)

        def drop(p: Placement) -> bool:
            if CLEANUP_FINALIZER not in p.finalizers:
                return False
            p.finalizers.remove(CLEANUP_FINALIZER)
            return True

        if update_with_retry(self._store, placement, drop) is not None:
            logger.info("placement %s bindings cleaned up; finalizer removed", placement.key)

    def _record_failure(self, placement: Placement, snapshot: PolicySnapshot, message: str) -> None:
        def mark(s: PolicySnapshot) -> bool:
            return set_condition(s.status.conditions, Condition(
                type=PolicySnapshotConditionType.SCHEDULED.value,
                status=ConditionStatus.FALSE,
                reason=REASON_SCHEDULING_FAILED,
                message=message,
                observed_generation=s.generation,
            ))

        update_with_retry(self._store, snapshot, mark)
        self._set_placement_condition(placement, ConditionStatus.FALSE, REASON_SCHEDULING_FAILED, message)

    def _record_success(
        self,
        placement: Placement,
        snapshot: PolicySnapshot,
        cycle: CycleResult,
        picked: List[ScoredCluster],
        fulfilled: bool,
        message: str,
    ) -> None:
        status = ConditionStatus.TRUE if fulfilled else ConditionStatus.FALSE
        reason = REASON_POLICY_FULFILLED if fulfilled else REASON_POLICY_UNFULFILLED
        decisions = _decisions(cycle, picked)
        observed = len(cycle.scored) + len(cycle.filtered)

        def write(s: PolicySnapshot) -> bool:
            changed = set_condition(s.status.conditions, Condition(
                type=PolicySnapshotConditionType.SCHEDULED.value,
                status=status,
                reason=reason,
                message=message,
                observed_generation=s.generation,
            ))
            if s.status.cluster_decisions != decisions:
                s.status.cluster_decisions = decisions
                changed = True
            if s.status.observed_cluster_count != observed:
                s.status.observed_cluster_count = observed
                changed = True
            return changed

        if update_with_retry(self._store, snapshot, write) is not None:
            logger.info(
                "snapshot %s scheduled: %d picked, %d eligible, %d filtered (%s)",
                snapshot.key, len(picked), len(cycle.scored), len(cycle.filtered), reason,
            )
        self._set_placement_condition(placement, status, reason, message)

    def _set_placement_condition(
        self, placement: Placement, status: ConditionStatus, reason: str, message: str,
    ) -> None:
        def write(p: Placement) -> bool:
            return set_condition(p.status.conditions, Condition(
                type=PlacementConditionType.SCHEDULED.value,
                status=status,
                reason=reason,
                message=message,
                observed_generation=p.generation,
            ))

        stored = update_with_retry(self._store, placement, write)
        if stored is not None:
            self._metrics.emit_placement_status(
                stored.namespace, stored.name, stored.generation,
                PlacementConditionType.SCHEDULED.value, status.value, reason,
            )


def _fulfilment(snapshot: PolicySnapshot, picked: List[ScoredCluster]) -> Tuple[bool, str]:
    policy = snapshot.policy
    if policy.placement_type == PlacementType.PICK_ALL:
        return True, f"picked all {len(picked)} eligible clusters"
    want = policy.number_of_clusters or 0
    if len(picked) >= want:
        return True, f"picked {len(picked)} of {want} requested clusters"
    return False, f"could only find {len(picked)} of {want} requested clusters"


def _decisions(cycle: CycleResult, picked: List[ScoredCluster]) -> List[ClusterDecision]:
    picked_names = {s.cluster.name for s in picked}
    decisions = [
        ClusterDecision(
            cluster_name=s.cluster.name,
            selected=s.cluster.name in picked_names,
            reason=DECISION_PICKED if s.cluster.name in picked_names else DECISION_NOT_PICKED,
            score=s.score,
        )
        for s in cycle.scored
    ]
    decisions.extend(
        ClusterDecision(cluster_name=f.cluster.name, selected=False, reason=f.status.reason)
        for f in cycle.filtered
    )
    decisions.sort(key=lambda d: d.cluster_name)
    return decisions
