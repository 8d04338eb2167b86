"""
fleet_framework/cycle_state.py
───────────────────────────────
CycleState: per-cycle scratch space shared by the plugins of one cycle.

Lifetime
─────────
One CycleState is created at the start of a scheduling cycle and dropped at
the end. It is never shared between cycles (and so never between worker
threads), never persisted, and plugins must not keep references to it.

Besides the plugin key/value space it carries the candidate clusters the
scheduler prepares for the cycle and the framework's own bookkeeping of
which plugins opted out.
"""

from __future__ import annotations

import threading
from typing import Any, Dict, Iterable, List, Optional, Set

from fleet_hub.shared.models import MemberCluster

StateKey = str


class StateKeyNotFoundError(KeyError):
    """Raised by CycleState.read() for a key no plugin has written this cycle."""


class CycleCancelledError(Exception):
    """
    Raised by check_cancelled() once the cycle's cancel event is set. The
    framework lets it propagate; the cycle is requeued by the work queue like
    any other failure.
    """


class CycleState:
    """
    Key/value scratch space for one scheduling cycle.

    Args:
        clusters:     Candidate clusters for this cycle.
        cancel_event: Optional event; when set, the cycle stops at the next
                      plugin boundary.
    """

    def __init__(
        self,
        clusters: Optional[Iterable[MemberCluster]] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        self._store: Dict[StateKey, Any] = {}
        self._clusters: List[MemberCluster] = list(clusters or [])
        self._cancel_event = cancel_event

        # Filled in by the framework, not by plugins.
        self.skipped_filter_plugins: Set[str] = set()
        self.skipped_score_plugins: Set[str] = set()

    # ── Plugin key/value space ─────────────────────────────────────────────────

    def read(self, key: StateKey) -> Any:
        try:
            return self._store[key]
        except KeyError:
            raise StateKeyNotFoundError(f"key {key!r} is not found in cycle state") from None

    def write(self, key: StateKey, value: Any) -> None:
        self._store[key] = value

    def delete(self, key: StateKey) -> None:
        self._store.pop(key, None)

    # ── Read-only views ────────────────────────────────────────────────────────

    def list_clusters(self) -> List[MemberCluster]:
        return list(self._clusters)

    # ── Cancellation ───────────────────────────────────────────────────────────

    def check_cancelled(self) -> None:
        if self._cancel_event is not None and self._cancel_event.is_set():
            raise CycleCancelledError("scheduling cycle cancelled")
