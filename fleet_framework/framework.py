"""
fleet_framework/framework.py
─────────────────────────────
The Framework: runs one policy snapshot through the plugin pipeline.

How a cycle flows
──────────────────
  1. PreFilter — every PreFilterPlugin once, in registration order.
       SKIP      → plugin is recorded in state.skipped_filter_plugins and
                   its Filter is never called this cycle.
       other non-success → the cycle aborts (SchedulingCycleError).

  2. Filter — for each candidate cluster (sorted by name), every non-skipped
     FilterPlugin in registration order. The first CLUSTER_UNSCHEDULABLE
     stops evaluation for that cluster and its reason is the one reported.
     An INTERNAL_ERROR (or a SKIP, which Filter may not return) aborts.

  3. PreScore / Score — same skip rules, over the clusters that passed.
     Scores are collected into a (clusters × plugins × 2) integer matrix and
     summed across plugins, the same way the score heuristic used to be
     assembled once and shared instead of recomputed per consumer.

  4. select_clusters() — PickAll keeps every passing cluster; PickN keeps
     the N best by (topology spread score, affinity score), ties broken by
     cluster name so the result is deterministic.

Error handling contract
────────────────────────
  SchedulingCycleError: raised when a plugin's status aborts the cycle.
                        Carries the offending Status. The scheduler surfaces
                        it on the snapshot and requeues with backoff.
  CycleCancelledError:  propagates from state.check_cancelled().
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

import numpy as np

from fleet_framework.cycle_state import CycleState
from fleet_framework.plugin import (
    FilterPlugin,
    FrameworkAware,
    Plugin,
    PreFilterPlugin,
    PreScorePlugin,
    ScorePlugin,
)
from fleet_framework.status import Status, StatusCode, is_success
from fleet_hub.shared.models import (
    ClusterScore,
    MemberCluster,
    PlacementPolicy,
    PlacementType,
    PolicySnapshot,
)

logger = logging.getLogger(__name__)


class SchedulingCycleError(Exception):
    """
    Raised when a plugin outcome aborts the whole scheduling cycle.

    Attributes:
        status: The Status that caused the abort.
        stage:  Which stage was running ("PreFilter", "Filter", ...).
    """

    def __init__(self, status: Status, stage: str) -> None:
        self.status = status
        self.stage = stage
        super().__init__(f"{stage} aborted the scheduling cycle: {status}")


@dataclass
class ScoredCluster:
    cluster: MemberCluster
    score: ClusterScore = field(default_factory=ClusterScore)


@dataclass
class FilteredCluster:
    cluster: MemberCluster
    status: Status


@dataclass
class CycleResult:
    """Everything a cycle learned: passing clusters with scores, and rejections with reasons."""
    scored: List[ScoredCluster]
    filtered: List[FilteredCluster]


class Profile:
    """
    An ordered set of plugins. Registration order is evaluation order.

    Usage:
        profile = Profile("default").with_plugin(a).with_plugin(b)
    """

    def __init__(self, name: str = "default") -> None:
        self.name = name
        self._plugins: List[Plugin] = []

    def with_plugin(self, plugin: Plugin) -> "Profile":
        if not isinstance(plugin, Plugin):
            raise TypeError(f"{plugin!r} does not expose a plugin name")
        if any(p.name == plugin.name for p in self._plugins):
            raise ValueError(f"plugin {plugin.name!r} is already registered in profile {self.name!r}")
        self._plugins.append(plugin)
        return self

    @property
    def plugins(self) -> List[Plugin]:
        return list(self._plugins)


class Framework:
    """
    Probes each plugin of a Profile for the extension points it implements
    and runs them. Stateless between cycles: one instance serves every
    worker thread, each with its own CycleState.
    """

    def __init__(self, profile: Profile) -> None:
        self.profile_name = profile.name
        plugins = profile.plugins
        self._pre_filter_plugins: List[PreFilterPlugin] = [p for p in plugins if isinstance(p, PreFilterPlugin)]
        self._filter_plugins: List[FilterPlugin] = [p for p in plugins if isinstance(p, FilterPlugin)]
        self._pre_score_plugins: List[PreScorePlugin] = [p for p in plugins if isinstance(p, PreScorePlugin)]
        self._score_plugins: List[ScorePlugin] = [p for p in plugins if isinstance(p, ScorePlugin)]
        for plugin in plugins:
            if isinstance(plugin, FrameworkAware):
                plugin.set_up_with_framework(self)
        logger.info(
            "framework %r: %d pre-filter, %d filter, %d pre-score, %d score plugins",
            self.profile_name,
            len(self._pre_filter_plugins), len(self._filter_plugins),
            len(self._pre_score_plugins), len(self._score_plugins),
        )

    # ── PreFilter / Filter ─────────────────────────────────────────────────────

    def run_pre_filter_plugins(self, state: CycleState, snapshot: PolicySnapshot) -> Optional[Status]:
        """
        Run every PreFilter plugin once. Returns None when the cycle may go
        on, or the first status that must abort it.
        """
        for plugin in self._pre_filter_plugins:
            state.check_cancelled()
            status = plugin.pre_filter(state, snapshot)
            if is_success(status):
                continue
            if status.is_skip:
                state.skipped_filter_plugins.add(plugin.name)
                continue
            return status
        return None

    def run_filter_plugins(
        self, state: CycleState, snapshot: PolicySnapshot, cluster: MemberCluster
    ) -> Optional[Status]:
        """
        Run the non-skipped Filter plugins against one cluster.

        Returns None if the cluster passes, the first rejection otherwise.
        An INTERNAL_ERROR status is returned as-is; callers abort on it.
        """
        for plugin in self._filter_plugins:
            if plugin.name in state.skipped_filter_plugins:
                continue
            state.check_cancelled()
            status = plugin.filter(state, snapshot, cluster)
            if is_success(status):
                continue
            if status.is_skip:
                return Status.from_error(
                    ValueError("filter plugins must not return Skip"), plugin.name,
                )
            return status
        return None

    def run_all_filter_plugins(
        self, state: CycleState, snapshot: PolicySnapshot, clusters: List[MemberCluster]
    ) -> Tuple[List[MemberCluster], List[FilteredCluster]]:
        passed: List[MemberCluster] = []
        filtered: List[FilteredCluster] = []
        for cluster in clusters:
            status = self.run_filter_plugins(state, snapshot, cluster)
            if status is None:
                passed.append(cluster)
            elif status.is_cluster_unschedulable:
                filtered.append(FilteredCluster(cluster=cluster, status=status))
            else:
                raise SchedulingCycleError(status, "Filter")
        return passed, filtered

    # ── PreScore / Score ───────────────────────────────────────────────────────

    def run_pre_score_plugins(self, state: CycleState, snapshot: PolicySnapshot) -> Optional[Status]:
        for plugin in self._pre_score_plugins:
            state.check_cancelled()
            status = plugin.pre_score(state, snapshot)
            if is_success(status):
                continue
            if status.is_skip:
                state.skipped_score_plugins.add(plugin.name)
                continue
            return status
        return None

    def run_score_plugins(
        self, state: CycleState, snapshot: PolicySnapshot, clusters: List[MemberCluster]
    ) -> List[ScoredCluster]:
        active = [p for p in self._score_plugins if p.name not in state.skipped_score_plugins]
        matrix = np.zeros((len(clusters), len(active), 2), dtype=np.int64)
        for i, cluster in enumerate(clusters):
            for j, plugin in enumerate(active):
                state.check_cancelled()
                score, status = plugin.score(state, snapshot, cluster)
                if not is_success(status):
                    if status.code != StatusCode.INTERNAL_ERROR:
                        status = Status.from_error(
                            ValueError(f"score plugins must not return {status.code.value}"),
                            plugin.name,
                        )
                    raise SchedulingCycleError(status, "Score")
                if score is not None:
                    matrix[i, j, 0] = score.affinity_score
                    matrix[i, j, 1] = score.topology_spread_score

        totals = matrix.sum(axis=1)
        return [
            ScoredCluster(
                cluster=cluster,
                score=ClusterScore(
                    affinity_score=int(totals[i, 0]),
                    topology_spread_score=int(totals[i, 1]),
                ),
            )
            for i, cluster in enumerate(clusters)
        ]

    # ── Whole cycle ────────────────────────────────────────────────────────────

    def run_scheduling_cycle(self, state: CycleState, snapshot: PolicySnapshot) -> CycleResult:
        """
        Run PreFilter → Filter → PreScore → Score over state.list_clusters().

        Raises:
            SchedulingCycleError: a plugin aborted the cycle.
        """
        status = self.run_pre_filter_plugins(state, snapshot)
        if status is not None:
            raise SchedulingCycleError(status, "PreFilter")

        clusters = sorted(state.list_clusters(), key=lambda c: c.name)
        passed, filtered = self.run_all_filter_plugins(state, snapshot, clusters)

        status = self.run_pre_score_plugins(state, snapshot)
        if status is not None:
            raise SchedulingCycleError(status, "PreScore")
        scored = self.run_score_plugins(state, snapshot, passed)

        logger.debug(
            "cycle for snapshot %s: %d passed, %d filtered",
            snapshot.key, len(scored), len(filtered),
        )
        return CycleResult(scored=scored, filtered=filtered)

    @staticmethod
    def select_clusters(policy: PlacementPolicy, scored: List[ScoredCluster]) -> List[ScoredCluster]:
        """Apply the placement type to the passing clusters."""
        if policy.placement_type == PlacementType.PICK_ALL:
            return sorted(scored, key=lambda s: s.cluster.name)

        n = policy.number_of_clusters or 0
        if n <= 0 or not scored:
            return []

        names = np.array([s.cluster.name for s in scored])
        name_rank = np.argsort(np.argsort(names, kind="stable"), kind="stable")
        affinity = np.array([s.score.affinity_score for s in scored], dtype=np.int64)
        topology = np.array([s.score.topology_spread_score for s in scored], dtype=np.int64)
        # np.lexsort sorts by the last key first.
        order = np.lexsort((name_rank, -affinity, -topology))
        return [scored[int(i)] for i in order[:n]]
