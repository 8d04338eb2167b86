"""
tests/test_metrics.py
──────────────────────
Test suite for fleet_hub/telemetry/metrics.py

Every test builds HubMetrics on its own CollectorRegistry, so series never
leak between tests and the process-wide default registry is never touched.

Test groups
────────────
Group 1: Run status series      — condition priority, stale generations
Group 2: Approval latency       — both conditions, current generation only
Group 3: Stage duration         — start_time to now
Group 4: Series cleanup         — partial-match deletion per object
Group 5: Placement / eviction   — one live series per object
Group 6: Process-wide instance  — init_metrics() / get_metrics()
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import List, Optional

import pytest
from prometheus_client import CollectorRegistry

from fleet_hub.shared.models import (
    Condition,
    ConditionStatus,
    StageStatus,
    StageTaskStatus,
    UpdateRun,
    UpdateRunSpecState,
)
from fleet_hub.telemetry import metrics as metrics_module
from fleet_hub.telemetry.metrics import TASK_TYPE_CLUSTER_APPROVAL, HubMetrics, get_metrics, init_metrics

T0 = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)

LATENCY = "fleet_workload_update_run_approval_request_latency_seconds"
DURATION = "fleet_workload_update_run_stage_cluster_updating_duration_seconds"


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

def _cond(
    cond_type: str, status: ConditionStatus = ConditionStatus.TRUE, generation: int = 1,
    reason: str = "", at: datetime = T0,
) -> Condition:
    return Condition(
        type=cond_type, status=status, reason=reason,
        observed_generation=generation, last_transition_time=at,
    )


def _make_run(conditions: Optional[List[Condition]] = None, generation: int = 1, name: str = "run-1") -> UpdateRun:
    run = UpdateRun(
        name=name, namespace="team-a", generation=generation,
        placement_name="web", resource_snapshot_name="web-r0",
    )
    run.status.conditions = conditions or []
    return run


def _approval_task(created_at: datetime, approved_at: datetime, created_gen: int = 1, approved_gen: int = 1) -> StageTaskStatus:
    return StageTaskStatus(cluster_name="m1", conditions=[
        _cond("ApprovalRequestCreated", generation=created_gen, at=created_at),
        _cond("ApprovalRequestApproved", generation=approved_gen, at=approved_at),
    ])


@pytest.fixture
def registry() -> CollectorRegistry:
    return CollectorRegistry()


@pytest.fixture
def hub_metrics(registry: CollectorRegistry) -> HubMetrics:
    return HubMetrics(registry)


# ─────────────────────────────────────────────────────────────────────────────
# Group 1: Run status series
# ─────────────────────────────────────────────────────────────────────────────

class TestRunStatus:

    def test_succeeded_outranks_progressing_and_initialized(self, hub_metrics: HubMetrics) -> None:
        run = _make_run([
            _cond("Initialized", reason="UpdateRunInitializedSuccessfully"),
            _cond("Progressing", ConditionStatus.FALSE, reason="UpdateRunSucceeded"),
            _cond("Succeeded", reason="UpdateRunSucceeded"),
        ])
        assert hub_metrics.emit_update_run_status(run)
        assert hub_metrics.series("update_run_status_last_timestamp") == [{
            "namespace": "team-a", "name": "run-1", "state": "Run",
            "condition": "Succeeded", "status": "True", "reason": "UpdateRunSucceeded",
        }]

    def test_stale_condition_is_passed_over(self, hub_metrics: HubMetrics) -> None:
        run = _make_run([
            _cond("Initialized", generation=2),
            _cond("Progressing", generation=2, reason="UpdateRunProgressing"),
            _cond("Succeeded", generation=1),
        ], generation=2)
        hub_metrics.emit_update_run_status(run)
        [series] = hub_metrics.series("update_run_status_last_timestamp")
        assert series["condition"] == "Progressing"

    def test_nothing_emitted_without_a_current_condition(self, hub_metrics: HubMetrics) -> None:
        run = _make_run([_cond("Initialized", generation=1)], generation=3)
        assert not hub_metrics.emit_update_run_status(run)
        assert hub_metrics.series("update_run_status_last_timestamp") == []

    def test_state_label_follows_the_spec_state(self, hub_metrics: HubMetrics) -> None:
        run = _make_run([_cond("Initialized")])
        run.state = UpdateRunSpecState.STOP
        hub_metrics.emit_update_run_status(run)
        assert hub_metrics.series("update_run_status_last_timestamp")[0]["state"] == "Stop"


# ─────────────────────────────────────────────────────────────────────────────
# Group 2: Approval latency
# ─────────────────────────────────────────────────────────────────────────────

class TestApprovalLatency:

    def test_latency_is_approved_minus_created(self, hub_metrics: HubMetrics, registry: CollectorRegistry) -> None:
        task = _approval_task(T0, T0 + timedelta(minutes=2))
        assert hub_metrics.record_approval_request_latency(task, _make_run()) == 120.0

        labels = {"namespace": "team-a", "name": "run-1", "taskType": TASK_TYPE_CLUSTER_APPROVAL}
        assert registry.get_sample_value(f"{LATENCY}_sum", labels) == 120.0
        assert registry.get_sample_value(f"{LATENCY}_count", labels) == 1.0
        assert registry.get_sample_value(f"{LATENCY}_bucket", {**labels, "le": "300.0"}) == 1.0
        assert registry.get_sample_value(f"{LATENCY}_bucket", {**labels, "le": "60.0"}) == 0.0

    def test_stale_created_condition_is_not_recorded(self, hub_metrics: HubMetrics, registry: CollectorRegistry) -> None:
        task = _approval_task(T0, T0 + timedelta(minutes=2), created_gen=1, approved_gen=2)
        assert hub_metrics.record_approval_request_latency(task, _make_run(generation=2)) is None
        assert hub_metrics.series("update_run_approval_request_latency") == []

    def test_missing_approval_is_not_recorded(self, hub_metrics: HubMetrics) -> None:
        task = StageTaskStatus(cluster_name="m1", conditions=[_cond("ApprovalRequestCreated")])
        assert hub_metrics.record_approval_request_latency(task, _make_run()) is None

    def test_approval_false_is_not_recorded(self, hub_metrics: HubMetrics) -> None:
        task = _approval_task(T0, T0 + timedelta(seconds=5))
        task.conditions[1].status = ConditionStatus.FALSE
        assert hub_metrics.record_approval_request_latency(task, _make_run()) is None


# ─────────────────────────────────────────────────────────────────────────────
# Group 3: Stage duration
# ─────────────────────────────────────────────────────────────────────────────

class TestStageDuration:

    def test_duration_from_start_time(self, hub_metrics: HubMetrics, registry: CollectorRegistry) -> None:
        stage = StageStatus(stage_name="canary", start_time=T0)
        assert hub_metrics.record_stage_cluster_updating_duration(stage, _make_run(), now=T0 + timedelta(seconds=45)) == 45.0
        assert registry.get_sample_value(f"{DURATION}_sum", {"namespace": "team-a", "name": "run-1"}) == 45.0

    def test_unstarted_stage_is_not_recorded(self, hub_metrics: HubMetrics) -> None:
        stage = StageStatus(stage_name="canary")
        assert hub_metrics.record_stage_cluster_updating_duration(stage, _make_run()) is None
        assert hub_metrics.series("update_run_stage_cluster_updating_duration") == []


# ─────────────────────────────────────────────────────────────────────────────
# Group 4: Series cleanup
# ─────────────────────────────────────────────────────────────────────────────

class TestUpdateRunCleanup:

    def test_delete_removes_only_the_runs_series(self, hub_metrics: HubMetrics) -> None:
        doomed = _make_run([_cond("Initialized")], name="doomed")
        kept = _make_run([_cond("Initialized")], name="kept")
        for run in (doomed, kept):
            hub_metrics.emit_update_run_status(run)
            hub_metrics.record_approval_request_latency(_approval_task(T0, T0 + timedelta(seconds=10)), run)
            hub_metrics.record_stage_cluster_updating_duration(
                StageStatus(stage_name="s", start_time=T0), run, now=T0 + timedelta(seconds=1),
            )

        assert hub_metrics.delete_update_run_metrics("team-a", "doomed") == 3

        for attr in (
            "update_run_status_last_timestamp",
            "update_run_approval_request_latency",
            "update_run_stage_cluster_updating_duration",
        ):
            assert [s["name"] for s in hub_metrics.series(attr)] == ["kept"]

    def test_delete_of_unknown_run_is_harmless(self, hub_metrics: HubMetrics) -> None:
        assert hub_metrics.delete_update_run_metrics("team-a", "never-existed") == 0


# ─────────────────────────────────────────────────────────────────────────────
# Group 5: Placement / eviction
# ─────────────────────────────────────────────────────────────────────────────

class TestPlacementAndEviction:

    def test_placement_keeps_only_latest_status(self, hub_metrics: HubMetrics) -> None:
        hub_metrics.emit_placement_status("", "web", 1, "Scheduled", "False", "SchedulingFailed")
        hub_metrics.emit_placement_status("", "web", 2, "Scheduled", "True", "SchedulingPolicyFulfilled")
        hub_metrics.emit_placement_status("", "api", 1, "Scheduled", "True", "SchedulingPolicyFulfilled")

        series = {s["name"]: s for s in hub_metrics.series("placement_status_last_timestamp")}
        assert set(series) == {"api", "web"}
        assert series["web"]["generation"] == "2"
        assert series["web"]["reason"] == "SchedulingPolicyFulfilled"

        assert hub_metrics.delete_placement_metrics("", "web") == 1
        assert [s["name"] for s in hub_metrics.series("placement_status_last_timestamp")] == ["api"]

    def test_eviction_labels_are_lowercase_booleans(self, hub_metrics: HubMetrics) -> None:
        hub_metrics.record_eviction_status("evict-1", is_completed=False, is_valid=True)
        hub_metrics.record_eviction_status("evict-1", is_completed=True, is_valid=True)
        assert hub_metrics.series("eviction_complete") == [
            {"name": "evict-1", "isCompleted": "true", "isValid": "true"},
        ]
        assert hub_metrics.delete_eviction_metrics("evict-1") == 1
        assert hub_metrics.series("eviction_complete") == []

    def test_scheduling_cycle_labels(self, hub_metrics: HubMetrics, registry: CollectorRegistry) -> None:
        hub_metrics.observe_scheduling_cycle(12.5, is_failed=False, needs_requeue=True)
        value = registry.get_sample_value(
            "scheduling_cycle_duration_milliseconds_sum", {"is_failed": "false", "needs_requeue": "true"},
        )
        assert value == 12.5

    def test_active_workers_gauge(self, hub_metrics: HubMetrics, registry: CollectorRegistry) -> None:
        hub_metrics.scheduling_worker_started()
        hub_metrics.scheduling_worker_started()
        hub_metrics.scheduling_worker_finished()
        assert registry.get_sample_value("scheduling_active_workers") == 1.0


# ─────────────────────────────────────────────────────────────────────────────
# Group 6: Process-wide instance
# ─────────────────────────────────────────────────────────────────────────────

class TestProcessWideMetrics:

    @pytest.fixture(autouse=True)
    def _reset(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(metrics_module, "_hub_metrics", None)

    def test_get_before_init_raises(self) -> None:
        with pytest.raises(RuntimeError):
            get_metrics()

    def test_init_is_idempotent(self, registry: CollectorRegistry) -> None:
        first = init_metrics(registry)
        assert init_metrics() is first
        assert init_metrics(registry) is first
        assert get_metrics() is first

    def test_init_on_a_second_registry_raises(self, registry: CollectorRegistry) -> None:
        init_metrics(registry)
        with pytest.raises(RuntimeError):
            init_metrics(CollectorRegistry())
