"""
fleet_hub/control_plane/binding_reconciler.py
──────────────────────────────────────────────
BindingReconciler: turn the scheduler's picks into Binding objects.

Diff rules (per cluster, existing binding vs. desired set)
───────────────────────────────────────────────────────────
  desired, no binding            → create, state Scheduled
  desired, binding exists        → point it at the latest snapshot and refresh
                                   score/reason; an Unscheduled binding is
                                   re-picked (back to Scheduled). Bound stays
                                   Bound. Written only if something differs.
  not desired, Scheduled         → delete (nothing was rolled out yet)
  not desired, Bound             → mark Unscheduled; a rollout owns cleanup
  not desired, Unscheduled       → leave alone

Bindings from an older snapshot ("obsolete") go through the same rules, so a
policy change rebases every still-desired binding onto the new snapshot.

Conflicts
──────────
Each binding is written with optimistic concurrency. A ConflictError
re-reads and retries that one binding (update_with_retry); the rest of the
diff is not redone. Only when a binding keeps losing the race does the
conflict propagate and fail the cycle.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from fleet_hub.shared.models import (
    Binding,
    BindingState,
    ClusterScore,
    Placement,
    PolicySnapshot,
    binding_name,
)
from fleet_hub.shared.store import AlreadyExistsError, InMemoryStore, update_with_retry

logger = logging.getLogger(__name__)


@dataclass
class DesiredBinding:
    cluster_name: str
    score: Optional[ClusterScore] = None
    reason: str = ""


@dataclass
class BindingChanges:
    """Names of the bindings touched by one reconcile, by kind of change."""
    created: List[str] = field(default_factory=list)
    updated: List[str] = field(default_factory=list)
    deleted: List[str] = field(default_factory=list)
    unscheduled: List[str] = field(default_factory=list)

    @property
    def empty(self) -> bool:
        return not (self.created or self.updated or self.deleted or self.unscheduled)

    def __str__(self) -> str:
        return (
            f"created={len(self.created)} updated={len(self.updated)} "
            f"deleted={len(self.deleted)} unscheduled={len(self.unscheduled)}"
        )


class BindingReconciler:

    def __init__(self, store: InMemoryStore, max_conflict_retries: int = 5) -> None:
        self._store = store
        self._max_attempts = max_conflict_retries

    def list_bindings(self, placement: Placement) -> List[Binding]:
        return self._store.list(
            Binding,
            namespace=placement.namespace,
            predicate=lambda b: b.placement_name == placement.name,
        )

    def reconcile(
        self,
        placement: Placement,
        snapshot: PolicySnapshot,
        desired: List[DesiredBinding],
    ) -> BindingChanges:
        """Bring the placement's bindings in line with `desired`. See the module docstring."""
        changes = BindingChanges()
        by_cluster: Dict[str, Binding] = {b.target_cluster: b for b in self.list_bindings(placement)}

        for want in sorted(desired, key=lambda d: d.cluster_name):
            current = by_cluster.pop(want.cluster_name, None)
            if current is None:
                self._create(placement, snapshot, want, changes)
                continue

            def refresh(b: Binding, want: DesiredBinding = want) -> bool:
                return _apply_desired(b, snapshot.name, want)

            if update_with_retry(self._store, current, refresh, self._max_attempts) is not None:
                changes.updated.append(current.name)

        for stale in sorted(by_cluster.values(), key=lambda b: b.target_cluster):
            self._retire(stale, changes)

        if not changes.empty:
            logger.info("placement %s bindings reconciled: %s", placement.key, changes)
        return changes

    def delete_all(self, placement: Placement) -> int:
        """Delete every binding of the placement. Returns how many were deleted."""
        bindings = self.list_bindings(placement)
        for b in bindings:
            self._store.delete(Binding, b.name, b.namespace)
        if bindings:
            logger.info("placement %s: deleted %d bindings", placement.key, len(bindings))
        return len(bindings)

    # ── Internals ──────────────────────────────────────────────────────────────

    def _create(
        self, placement: Placement, snapshot: PolicySnapshot, want: DesiredBinding, changes: BindingChanges,
    ) -> None:
        binding = Binding(
            name=binding_name(placement.name, want.cluster_name),
            namespace=placement.namespace,
            placement_name=placement.name,
            target_cluster=want.cluster_name,
            policy_snapshot_name=snapshot.name,
            state=BindingState.SCHEDULED,
            score=want.score,
            reason=want.reason,
        )
        try:
            self._store.create(binding)
        except AlreadyExistsError:
            # Created by a concurrent writer since we listed; fold into an update.
            current = self._store.try_get(Binding, binding.name, binding.namespace)
            if current is not None and update_with_retry(
                self._store, current, lambda b: _apply_desired(b, snapshot.name, want), self._max_attempts,
            ) is not None:
                changes.updated.append(binding.name)
            return
        changes.created.append(binding.name)

    def _retire(self, binding: Binding, changes: BindingChanges) -> None:
        if binding.state == BindingState.UNSCHEDULED:
            return
        if binding.state == BindingState.SCHEDULED:
            fresh = self._store.try_get(Binding, binding.name, binding.namespace)
            if fresh is None:
                return
            if fresh.state == BindingState.SCHEDULED:
                self._store.delete(Binding, binding.name, binding.namespace)
                changes.deleted.append(binding.name)
                return
            binding = fresh

        if update_with_retry(self._store, binding, _mark_unscheduled, self._max_attempts) is not None:
            changes.unscheduled.append(binding.name)


def _apply_desired(b: Binding, snapshot_name: str, want: DesiredBinding) -> bool:
    changed = False
    if b.state == BindingState.UNSCHEDULED:
        b.state = BindingState.SCHEDULED
        changed = True
    if b.policy_snapshot_name != snapshot_name:
        b.policy_snapshot_name = snapshot_name
        changed = True
    if b.score != want.score:
        b.score = want.score
        changed = True
    if b.reason != want.reason:
        b.reason = want.reason
        changed = True
    return changed


def _mark_unscheduled(b: Binding) -> bool:
    if b.state == BindingState.UNSCHEDULED:
        return False
    b.state = BindingState.UNSCHEDULED
    b.reason = "cluster is no longer picked by the scheduling policy"
    return True
