"""
fleet_hub/control_plane/hub_service.py
───────────────────────────────────────
HubService: the hub control plane wired together.

What it owns
─────────────
  store            → InMemoryStore (stand-in for the backing API store)
  scheduler        → Scheduler, driven by a Controller with
                     max_concurrent_cluster_placement workers
  update runs      → UpdateRunController, driven by a Controller with
                     concurrent_resource_change_syncs workers
  resync loop      → re-enqueues every placement each resync_period_s

Watch plumbing is out of scope, so the write methods below double as the
event source: each one writes the object and enqueues whatever needs
reconciling because of it.

    service = HubService(HubConfig(), metrics=HubMetrics(CollectorRegistry()))
    service.start()
    service.upsert_cluster(MemberCluster(name="member-1", ...))
    service.apply_placement(Placement(name="web", policy=...))
    ...
    service.stop()

Thread safety
──────────────
Every public method may be called from any thread. Objects are only shared
through the store, which hands out copies.
"""

from __future__ import annotations

import logging
import threading
from typing import List, Optional

from fleet_framework.framework import Framework, Profile
from fleet_hub.control_plane.config import HubConfig
from fleet_hub.control_plane.plugins import default_profile
from fleet_hub.control_plane.scheduler import Scheduler
from fleet_hub.control_plane.updaterun import (
    ClusterUpdateExecutor,
    FailurePolicy,
    UpdateRunController,
)
from fleet_hub.control_plane.workqueue import (
    Controller,
    RateLimitingQueue,
    default_controller_rate_limiter,
)
from fleet_hub.shared.models import (
    MemberCluster,
    Placement,
    PolicySnapshot,
    UpdateRun,
    UpdateRunSpecState,
    object_key,
    policy_snapshot_name,
)
from fleet_hub.shared.store import InMemoryStore, update_with_retry
from fleet_hub.telemetry.metrics import HubMetrics, init_metrics

logger = logging.getLogger(__name__)


class HubService:
    """
    Public API:
        start() / stop()
        upsert_cluster(cluster)                       → MemberCluster
        delete_cluster(name)
        apply_placement(placement)                    → Placement
        delete_placement(name, namespace)
        create_update_run(run)                        → UpdateRun
        set_update_run_state(name, namespace, state)  → UpdateRun
        approve(namespace, name, stage, cluster)      → UpdateRun
        delete_update_run(name, namespace)
        resync()

    Attributes:
        store, scheduler, update_runs, placement_controller, update_run_controller
    """

    def __init__(
        self,
        config: Optional[HubConfig] = None,
        store: Optional[InMemoryStore] = None,
        metrics: Optional[HubMetrics] = None,
        profile: Optional[Profile] = None,
        executor: Optional[ClusterUpdateExecutor] = None,
        failure_policy: Optional[FailurePolicy] = None,
    ) -> None:
        self.config = config or HubConfig()
        self.store = store or InMemoryStore()
        self.metrics = metrics if metrics is not None else init_metrics()
        self._stopping = threading.Event()

        # ── Scheduler ─────────────────────────────────────────────────────────
        self.framework = Framework(profile or default_profile())
        self.scheduler = Scheduler(
            self.store, self.framework, self.config, self.metrics, cancel_event=self._stopping,
        )
        rate_limit = self.config.placement.rate_limit
        self.placement_controller = Controller(
            "placement-scheduler",
            self.scheduler.schedule_once,
            RateLimitingQueue(default_controller_rate_limiter(rate_limit), name="placement"),
            workers=self.config.placement.max_concurrent_cluster_placement,
        )

        # ── Update runs ───────────────────────────────────────────────────────
        self.update_runs = UpdateRunController(
            self.store, self.config, self.metrics, executor=executor, failure_policy=failure_policy,
        )
        self.update_run_controller = Controller(
            "update-run",
            self.update_runs.reconcile,
            RateLimitingQueue(default_controller_rate_limiter(rate_limit), name="updaterun"),
            workers=self.config.placement.concurrent_resource_change_syncs,
        )
        self.update_runs.set_enqueue(self.update_run_controller.enqueue)

        self._resync_thread: Optional[threading.Thread] = None
        logger.info(
            "HubService initialised: %d scheduler workers, %d update-run workers",
            self.config.placement.max_concurrent_cluster_placement,
            self.config.placement.concurrent_resource_change_syncs,
        )

    # ── Lifecycle ──────────────────────────────────────────────────────────────

    def start(self) -> None:
        self.placement_controller.start()
        self.update_run_controller.start()
        self._resync_thread = threading.Thread(target=self._resync_loop, name="placement-resync", daemon=True)
        self._resync_thread.start()
        self.resync()

    def stop(self, timeout: Optional[float] = 10.0) -> None:
        self._stopping.set()
        self.placement_controller.stop(timeout)
        self.update_run_controller.stop(timeout)
        self.update_runs.shutdown(wait=True)
        if self._resync_thread is not None:
            self._resync_thread.join(timeout)
            self._resync_thread = None

    def _resync_loop(self) -> None:
        while not self._stopping.wait(self.config.placement.resync_period_s):
            self.resync()

    def resync(self) -> None:
        """Enqueue every placement and update run."""
        for placement in self.store.list(Placement):
            self.placement_controller.enqueue(placement.key)
        for run in self.store.list(UpdateRun):
            self.update_run_controller.enqueue(run.key)

    # ── Member clusters ────────────────────────────────────────────────────────

    def upsert_cluster(self, cluster: MemberCluster) -> MemberCluster:
        """Create or replace a member cluster, then reschedule every placement."""
        current = self.store.try_get(MemberCluster, cluster.name)
        if current is None:
            stored = self.store.create(cluster)
        else:
            update = cluster.model_copy(deep=True)
            update.resource_version = current.resource_version
            update.finalizers = current.finalizers
            stored = self.store.update(update)
        self._enqueue_all_placements()
        return stored

    def delete_cluster(self, name: str) -> None:
        self.store.delete(MemberCluster, name)
        self._enqueue_all_placements()

    def _enqueue_all_placements(self) -> None:
        for placement in self.store.list(Placement):
            self.placement_controller.enqueue(placement.key)

    # ── Placements ─────────────────────────────────────────────────────────────

    def apply_placement(self, placement: Placement) -> Placement:
        """
        Create or update a placement. A changed policy bumps the placement's
        generation and supersedes its latest snapshot with a new one.
        """
        current = self.store.try_get(Placement, placement.name, placement.namespace)
        if current is None:
            stored = self.store.create(placement)
        else:
            def apply(p: Placement) -> bool:
                if p.policy == placement.policy and p.labels == placement.labels:
                    return False
                if p.policy != placement.policy:
                    p.generation += 1
                p.policy = placement.policy.model_copy(deep=True)
                p.labels = dict(placement.labels)
                return True

            stored = update_with_retry(self.store, current, apply) or current

        self._ensure_latest_snapshot(stored)
        self.placement_controller.enqueue(stored.key)
        return stored

    def _ensure_latest_snapshot(self, placement: Placement) -> None:
        snapshots: List[PolicySnapshot] = self.store.list(
            PolicySnapshot,
            namespace=placement.namespace,
            predicate=lambda s: s.placement_name == placement.name,
        )
        latest = max((s for s in snapshots if s.is_latest), key=lambda s: s.policy_index, default=None)
        if latest is not None and latest.policy == placement.policy:
            return

        index = max((s.policy_index for s in snapshots), default=-1) + 1
        self.store.create(PolicySnapshot(
            name=policy_snapshot_name(placement.name, index),
            namespace=placement.namespace,
            placement_name=placement.name,
            policy_index=index,
            is_latest=True,
            policy=placement.policy.model_copy(deep=True),
        ))
        for old in snapshots:
            if old.is_latest:
                def retire(s: PolicySnapshot) -> bool:
                    if not s.is_latest:
                        return False
                    s.is_latest = False
                    return True

                update_with_retry(self.store, old, retire)
        logger.info("placement %s: policy snapshot %d created", placement.key, index)

    def delete_placement(self, name: str, namespace: str = "") -> None:
        """Mark the placement deleted; the scheduler removes its bindings and then its finalizer."""
        self.store.delete(Placement, name, namespace)
        for snapshot in self.store.list(
            PolicySnapshot, namespace=namespace, predicate=lambda s: s.placement_name == name,
        ):
            self.store.delete(PolicySnapshot, snapshot.name, snapshot.namespace)
        self.placement_controller.enqueue(object_key(name, namespace))

    # ── Update runs ────────────────────────────────────────────────────────────

    def create_update_run(self, run: UpdateRun) -> UpdateRun:
        stored = self.store.create(run)
        self.update_run_controller.enqueue(stored.key)
        return stored

    def set_update_run_state(self, name: str, namespace: str, state: UpdateRunSpecState) -> UpdateRun:
        """Change the run's spec state (Initialize / Run / Stop). Bumps its generation."""
        current = self.store.get(UpdateRun, name, namespace)

        def apply(r: UpdateRun) -> bool:
            if r.state == state:
                return False
            r.state = state
            r.generation += 1
            return True

        stored = update_with_retry(self.store, current, apply) or current
        self.update_run_controller.enqueue(stored.key)
        return stored

    def approve(self, namespace: str, name: str, stage_name: str, cluster_name: str) -> UpdateRun:
        return self.update_runs.approve(namespace, name, stage_name, cluster_name)

    def delete_update_run(self, name: str, namespace: str = "") -> None:
        self.store.delete(UpdateRun, name, namespace)
        self.update_run_controller.enqueue(object_key(name, namespace))
