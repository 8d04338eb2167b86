"""
fleet_hub/telemetry/metrics.py
───────────────────────────────
Prometheus collectors for the hub and the emitters that feed them.

Registry ownership
───────────────────
Collectors live on a HubMetrics instance bound to one CollectorRegistry.
The process-wide instance is created once, explicitly, with init_metrics()
and fetched with get_metrics(). Components take a HubMetrics argument, so
tests hand each component a HubMetrics built on a fresh registry and never
touch the process-wide one.

Series
───────
  fleet_workload_placement_status_last_timestamp_seconds       gauge
      namespace, name, generation, conditionType, status, reason
  fleet_workload_eviction_complete                             gauge
      name, isCompleted, isValid
  fleet_workload_update_run_status_last_timestamp_seconds      gauge
      namespace, name, state, condition, status, reason
  fleet_workload_update_run_approval_request_latency_seconds   histogram
      namespace, name, taskType
  fleet_workload_update_run_stage_cluster_updating_duration_seconds  histogram
      namespace, name
  scheduling_cycle_duration_milliseconds                       histogram
      is_failed, needs_requeue
  scheduling_active_workers                                    gauge

Cardinality
────────────
Every per-object series carries the object's name (and namespace). When the
object is deleted its series are removed by partial label match, so a
deleted run or placement leaves nothing behind in the exposition.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Dict, List, Optional, Set, Tuple

from prometheus_client import REGISTRY, CollectorRegistry, Gauge, Histogram
from prometheus_client.metrics import MetricWrapperBase

from fleet_hub.shared.conditions import find_condition, is_condition_status_true
from fleet_hub.shared.models import (
    StageStatus,
    StageTaskConditionType,
    StageTaskStatus,
    UpdateRun,
    UpdateRunConditionType,
    utcnow,
)

logger = logging.getLogger(__name__)

# ── Buckets ───────────────────────────────────────────────────────────────────

APPROVAL_LATENCY_BUCKETS: Tuple[float, ...] = (60, 300, 900, 1800, 3600, 7200, 21600, 43200, 86400)
"""1min, 5min, 15min, 30min, 1hr, 2hr, 6hr, 12hr, 24hr."""

STAGE_DURATION_BUCKETS: Tuple[float, ...] = (15, 30, 60, 120, 300, 600, 1800, 3600)
"""15s, 30s, 1min, 2min, 5min, 10min, 30min, 1hr."""

SCHEDULING_CYCLE_BUCKETS_MS: Tuple[float, ...] = (10, 50, 100, 500, 1000, 5000, 10000, 50000)

TASK_TYPE_CLUSTER_APPROVAL = "clusterApproval"

# Priority order for the run status series: most specific first.
_RUN_STATUS_CONDITION_ORDER = (
    UpdateRunConditionType.SUCCEEDED,
    UpdateRunConditionType.PROGRESSING,
    UpdateRunConditionType.INITIALIZED,
)


class HubMetrics:
    """All hub collectors, registered on one registry."""

    def __init__(self, registry: CollectorRegistry) -> None:
        self.registry = registry

        self.placement_status_last_timestamp = Gauge(
            "fleet_workload_placement_status_last_timestamp_seconds",
            "Last update timestamp of placement status in seconds",
            ["namespace", "name", "generation", "conditionType", "status", "reason"],
            registry=registry,
        )
        self.eviction_complete = Gauge(
            "fleet_workload_eviction_complete",
            "Last update timestamp of eviction complete status in seconds",
            ["name", "isCompleted", "isValid"],
            registry=registry,
        )
        self.update_run_status_last_timestamp = Gauge(
            "fleet_workload_update_run_status_last_timestamp_seconds",
            "Last update timestamp of update run status in seconds",
            ["namespace", "name", "state", "condition", "status", "reason"],
            registry=registry,
        )
        self.update_run_approval_request_latency = Histogram(
            "fleet_workload_update_run_approval_request_latency_seconds",
            "The latency from approval request creation to user approval in seconds",
            ["namespace", "name", "taskType"],
            buckets=APPROVAL_LATENCY_BUCKETS,
            registry=registry,
        )
        self.update_run_stage_cluster_updating_duration = Histogram(
            "fleet_workload_update_run_stage_cluster_updating_duration_seconds",
            "The duration the stage of an update run in seconds without stage tasks execution time",
            ["namespace", "name"],
            buckets=STAGE_DURATION_BUCKETS,
            registry=registry,
        )
        self.scheduling_cycle_duration = Histogram(
            "scheduling_cycle_duration_milliseconds",
            "The duration of a scheduling cycle run in milliseconds",
            ["is_failed", "needs_requeue"],
            buckets=SCHEDULING_CYCLE_BUCKETS_MS,
            registry=registry,
        )
        self.scheduling_active_workers = Gauge(
            "scheduling_active_workers",
            "Number of currently running scheduling loop",
            registry=registry,
        )

        self._labelnames: Dict[str, Tuple[str, ...]] = {
            "placement_status_last_timestamp": ("namespace", "name", "generation", "conditionType", "status", "reason"),
            "eviction_complete": ("name", "isCompleted", "isValid"),
            "update_run_status_last_timestamp": ("namespace", "name", "state", "condition", "status", "reason"),
            "update_run_approval_request_latency": ("namespace", "name", "taskType"),
            "update_run_stage_cluster_updating_duration": ("namespace", "name"),
        }

    # ── Update runs ────────────────────────────────────────────────────────────

    def emit_update_run_status(self, run: UpdateRun) -> bool:
        """
        Stamp the run status series with the most specific condition among
        Succeeded, Progressing, Initialized that carries the run's current
        generation. Returns False (and emits nothing) when none does.
        """
        for cond_type in _RUN_STATUS_CONDITION_ORDER:
            cond = find_condition(run.status.conditions, cond_type.value)
            if cond is None or cond.observed_generation != run.generation:
                continue
            self.update_run_status_last_timestamp.labels(
                run.namespace, run.name, run.state.value,
                cond_type.value, cond.status.value, cond.reason,
            ).set_to_current_time()
            return True

        logger.debug("update run %s has no condition at generation %d", run.key, run.generation)
        return False

    def record_approval_request_latency(
        self, task: StageTaskStatus, run: UpdateRun, task_type: str = TASK_TYPE_CLUSTER_APPROVAL,
    ) -> Optional[float]:
        """
        Observe ApprovalRequestApproved − ApprovalRequestCreated for one task.

        Only recorded when both conditions are True and both carry the run's
        current generation. Returns the observed latency, or None.
        """
        created = find_condition(task.conditions, StageTaskConditionType.APPROVAL_REQUEST_CREATED.value)
        approved = find_condition(task.conditions, StageTaskConditionType.APPROVAL_REQUEST_APPROVED.value)
        if not is_condition_status_true(created, run.generation) or not is_condition_status_true(approved, run.generation):
            return None

        latency = (approved.last_transition_time - created.last_transition_time).total_seconds()
        self.update_run_approval_request_latency.labels(run.namespace, run.name, task_type).observe(latency)
        return latency

    def record_stage_cluster_updating_duration(
        self, stage: StageStatus, run: UpdateRun, now: Optional[datetime] = None,
    ) -> Optional[float]:
        """Observe now − stage.start_time. Nothing is recorded for a stage that never started."""
        if stage.start_time is None:
            return None
        duration = ((now or utcnow()) - stage.start_time).total_seconds()
        self.update_run_stage_cluster_updating_duration.labels(run.namespace, run.name).observe(duration)
        return duration

    def delete_update_run_metrics(self, namespace: str, name: str) -> int:
        """Remove every series of a run. Returns the number of series removed."""
        match = {"namespace": namespace, "name": name}
        return (
            self._delete_partial_match("update_run_status_last_timestamp", match)
            + self._delete_partial_match("update_run_stage_cluster_updating_duration", match)
            + self._delete_partial_match("update_run_approval_request_latency", match)
        )

    # ── Placements ─────────────────────────────────────────────────────────────

    def emit_placement_status(
        self, namespace: str, name: str, generation: int,
        condition_type: str, status: str, reason: str,
    ) -> None:
        """
        Stamp the placement status series. Older series of the same placement
        are dropped first so only the latest status stays exported.
        """
        self._delete_partial_match("placement_status_last_timestamp", {"namespace": namespace, "name": name})
        self.placement_status_last_timestamp.labels(
            namespace, name, str(generation), condition_type, status, reason,
        ).set_to_current_time()

    def delete_placement_metrics(self, namespace: str, name: str) -> int:
        return self._delete_partial_match(
            "placement_status_last_timestamp", {"namespace": namespace, "name": name},
        )

    # ── Evictions ──────────────────────────────────────────────────────────────

    def record_eviction_status(self, name: str, is_completed: bool, is_valid: bool) -> None:
        self._delete_partial_match("eviction_complete", {"name": name})
        self.eviction_complete.labels(
            name, str(is_completed).lower(), str(is_valid).lower(),
        ).set_to_current_time()

    def delete_eviction_metrics(self, name: str) -> int:
        return self._delete_partial_match("eviction_complete", {"name": name})

    # ── Scheduler ──────────────────────────────────────────────────────────────

    def observe_scheduling_cycle(self, duration_ms: float, is_failed: bool, needs_requeue: bool) -> None:
        self.scheduling_cycle_duration.labels(
            str(is_failed).lower(), str(needs_requeue).lower(),
        ).observe(duration_ms)

    def scheduling_worker_started(self) -> None:
        self.scheduling_active_workers.inc()

    def scheduling_worker_finished(self) -> None:
        self.scheduling_active_workers.dec()

    # ── Partial-match deletion ─────────────────────────────────────────────────

    def _delete_partial_match(self, attr: str, match: Dict[str, str]) -> int:
        """
        Remove every child series of collector `attr` whose labels include
        all of `match`. prometheus_client only removes by full label tuple,
        so the tuples are recovered from the collector's own samples.
        """
        collector: MetricWrapperBase = getattr(self, attr)
        labelnames = self._labelnames[attr]
        doomed: Set[Tuple[str, ...]] = set()
        for family in collector.collect():
            for sample in family.samples:
                if all(sample.labels.get(k) == v for k, v in match.items()):
                    doomed.add(tuple(sample.labels[n] for n in labelnames))
        for values in doomed:
            collector.remove(*values)
        return len(doomed)

    def series(self, attr: str) -> List[Dict[str, str]]:
        """Label sets of every child series currently held by collector `attr`."""
        collector: MetricWrapperBase = getattr(self, attr)
        labelnames = self._labelnames[attr]
        seen: Set[Tuple[str, ...]] = set()
        for family in collector.collect():
            for sample in family.samples:
                seen.add(tuple(sample.labels[n] for n in labelnames))
        return [dict(zip(labelnames, values)) for values in sorted(seen)]


# ── Process-wide instance ─────────────────────────────────────────────────────

_hub_metrics: Optional[HubMetrics] = None
_init_lock = threading.Lock()


def init_metrics(registry: Optional[CollectorRegistry] = None) -> HubMetrics:
    """
    Create the process-wide HubMetrics, on `registry` or the default one.

    Calling it again returns the existing instance. Asking for a different
    registry after initialisation is a programming error.
    """
    global _hub_metrics
    with _init_lock:
        if _hub_metrics is not None:
            if registry is not None and registry is not _hub_metrics.registry:
                raise RuntimeError("hub metrics are already initialised on another registry")
            return _hub_metrics
        _hub_metrics = HubMetrics(registry if registry is not None else REGISTRY)
        logger.info("hub metrics initialised")
        return _hub_metrics


def get_metrics() -> HubMetrics:
    if _hub_metrics is None:
        raise RuntimeError("hub metrics are not initialised; call init_metrics() first")
    return _hub_metrics

