"""
fleet_framework/plugin.py
──────────────────────────
Extension-point contracts.

A plugin is any object with a `name`. It declares what it can do simply by
implementing the methods of one or more of the protocols below; the
framework probes each registered plugin with isinstance() and wires it into
every stage it supports. There is no base class to inherit from.

  PreFilterPlugin  pre_filter(state, snapshot)            → Status | None
  FilterPlugin     filter(state, snapshot, cluster)       → Status | None
  PreScorePlugin   pre_score(state, snapshot)             → Status | None
  ScorePlugin      score(state, snapshot, cluster)        → (ClusterScore | None, Status | None)

Rules plugins must follow:
  • Filter and Score are read-only with respect to clusters and snapshots.
  • Calls are synchronous and must not block indefinitely on external I/O;
    long-running plugins should call state.check_cancelled().
  • Anything carried from PreFilter to Filter goes through the CycleState,
    never through plugin attributes (one plugin instance serves every
    concurrent cycle).
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional, Protocol, Tuple, runtime_checkable

from fleet_framework.status import Status
from fleet_hub.shared.models import ClusterScore, MemberCluster, PolicySnapshot

if TYPE_CHECKING:
    from fleet_framework.cycle_state import CycleState
    from fleet_framework.framework import Framework


@runtime_checkable
class Plugin(Protocol):
    name: str


@runtime_checkable
class PreFilterPlugin(Protocol):
    name: str

    def pre_filter(self, state: "CycleState", snapshot: PolicySnapshot) -> Optional[Status]:
        ...


@runtime_checkable
class FilterPlugin(Protocol):
    name: str

    def filter(
        self, state: "CycleState", snapshot: PolicySnapshot, cluster: MemberCluster
    ) -> Optional[Status]:
        ...


@runtime_checkable
class PreScorePlugin(Protocol):
    name: str

    def pre_score(self, state: "CycleState", snapshot: PolicySnapshot) -> Optional[Status]:
        ...


@runtime_checkable
class ScorePlugin(Protocol):
    name: str

    def score(
        self, state: "CycleState", snapshot: PolicySnapshot, cluster: MemberCluster
    ) -> Tuple[Optional[ClusterScore], Optional[Status]]:
        ...


@runtime_checkable
class FrameworkAware(Protocol):
    """Optional hook: called once when the plugin is registered."""

    def set_up_with_framework(self, framework: "Framework") -> None:
        ...
