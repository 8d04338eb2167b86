"""
tests/test_hub_service.py
──────────────────────────
Test suite for fleet_hub/control_plane/hub_service.py

Test groups
────────────
Group 1: Write API without workers  — snapshot versioning, spec state changes
Group 2: End to end with workers    — schedule, roll out, tear down
"""

from __future__ import annotations

import time
from typing import Callable, Dict, Optional

import pytest
from prometheus_client import CollectorRegistry

from fleet_hub.control_plane import HubConfig, HubService
from fleet_hub.control_plane.config import PlacementManagementOptions
from fleet_hub.shared.models import (
    Binding,
    BindingState,
    ClusterConditionType,
    Condition,
    ConditionStatus,
    MemberCluster,
    MemberClusterStatus,
    Placement,
    PlacementPolicy,
    PolicySnapshot,
    RunState,
    StageSpec,
    UpdateRun,
    UpdateRunSpecState,
)
from fleet_hub.telemetry.metrics import HubMetrics


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

def _eventually(predicate: Callable[[], bool], timeout: float = 10.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()


def _make_cluster(name: str, labels: Optional[Dict[str, str]] = None, healthy: bool = True) -> MemberCluster:
    return MemberCluster(
        name=name,
        labels=labels or {},
        status=MemberClusterStatus(conditions=[
            Condition(type=ClusterConditionType.JOINED.value, status=ConditionStatus.TRUE),
            Condition(
                type=ClusterConditionType.HEALTHY.value,
                status=ConditionStatus.TRUE if healthy else ConditionStatus.FALSE,
            ),
        ]),
    )


def _make_service() -> HubService:
    config = HubConfig(placement=PlacementManagementOptions(
        max_concurrent_cluster_placement=4, concurrent_resource_change_syncs=2,
    ))
    return HubService(config, metrics=HubMetrics(CollectorRegistry()))


def _bindings(service: HubService) -> Dict[str, Binding]:
    return {b.target_cluster: b for b in service.store.list(Binding)}


# ─────────────────────────────────────────────────────────────────────────────
# Group 1: Write API without workers
# ─────────────────────────────────────────────────────────────────────────────

class TestWriteApi:

    def setup_method(self) -> None:
        self.service = _make_service()

    def teardown_method(self) -> None:
        self.service.stop(timeout=5)

    def test_first_apply_creates_snapshot_zero(self) -> None:
        self.service.apply_placement(Placement(name="web"))
        [snapshot] = self.service.store.list(PolicySnapshot)
        assert (snapshot.name, snapshot.policy_index, snapshot.is_latest) == ("web-0", 0, True)

    def test_unchanged_policy_keeps_the_snapshot(self) -> None:
        self.service.apply_placement(Placement(name="web"))
        self.service.apply_placement(Placement(name="web"))
        assert [s.name for s in self.service.store.list(PolicySnapshot)] == ["web-0"]
        assert self.service.store.get(Placement, "web").generation == 1

    def test_policy_change_supersedes_the_latest_snapshot(self) -> None:
        self.service.apply_placement(Placement(name="web"))
        self.service.apply_placement(Placement(
            name="web", policy=PlacementPolicy(required_cluster_labels={"env": "prod"}),
        ))

        snapshots = {s.name: s for s in self.service.store.list(PolicySnapshot)}
        assert not snapshots["web-0"].is_latest
        assert snapshots["web-1"].is_latest
        assert snapshots["web-1"].policy.required_cluster_labels == {"env": "prod"}
        assert self.service.store.get(Placement, "web").generation == 2

    def test_spec_state_change_bumps_generation_once(self) -> None:
        self.service.create_update_run(UpdateRun(
            name="r", placement_name="web", resource_snapshot_name="web-r0",
            state=UpdateRunSpecState.INITIALIZE, stages=[StageSpec(name="all")],
        ))
        self.service.set_update_run_state("r", "", UpdateRunSpecState.RUN)
        self.service.set_update_run_state("r", "", UpdateRunSpecState.RUN)
        run = self.service.store.get(UpdateRun, "r")
        assert (run.state, run.generation) == (UpdateRunSpecState.RUN, 2)


# ─────────────────────────────────────────────────────────────────────────────
# Group 2: End to end with workers
# ─────────────────────────────────────────────────────────────────────────────

class TestEndToEnd:

    @pytest.fixture
    def service(self):
        service = _make_service()
        service.start()
        yield service
        service.stop(timeout=5)

    def test_schedule_roll_out_and_tear_down(self, service: HubService) -> None:
        service.upsert_cluster(_make_cluster("m1", {"env": "canary"}))
        service.upsert_cluster(_make_cluster("m2", {"env": "prod"}))
        service.upsert_cluster(_make_cluster("m3", {"env": "prod"}, healthy=False))
        service.apply_placement(Placement(name="web"))

        assert _eventually(lambda: sorted(_bindings(service)) == ["m1", "m2"])

        service.create_update_run(UpdateRun(
            name="rollout", placement_name="web", resource_snapshot_name="web-r1",
            stages=[
                StageSpec(name="canary", label_selector={"env": "canary"}),
                StageSpec(name="prod", label_selector={"env": "prod"}),
            ],
        ))
        assert _eventually(
            lambda: service.store.get(UpdateRun, "rollout").status.state == RunState.SUCCEEDED
        )
        assert all(b.state == BindingState.BOUND for b in _bindings(service).values())

        service.delete_update_run("rollout")
        assert _eventually(lambda: service.store.try_get(UpdateRun, "rollout") is None)

        service.delete_placement("web")
        assert _eventually(lambda: service.store.try_get(Placement, "web") is None)
        assert _bindings(service) == {}
        assert service.store.list(PolicySnapshot) == []

    def test_cluster_events_reschedule(self, service: HubService) -> None:
        service.upsert_cluster(_make_cluster("m1"))
        service.apply_placement(Placement(name="web"))
        assert _eventually(lambda: sorted(_bindings(service)) == ["m1"])

        service.upsert_cluster(_make_cluster("m2"))
        assert _eventually(lambda: sorted(_bindings(service)) == ["m1", "m2"])

        service.upsert_cluster(_make_cluster("m1", healthy=False))
        assert _eventually(lambda: sorted(_bindings(service)) == ["m2"])
