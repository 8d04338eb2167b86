"""
fleet_hub/shared/conditions.py
───────────────────────────────
Helpers for reading and writing Condition lists.

set_condition() keeps last_transition_time stable unless the status value
actually flips, so re-applying the same condition on every reconcile is a
no-op. Readers go through is_condition_status_true(), which treats a
condition stamped with another generation as absent.
"""

from __future__ import annotations

from typing import List, Optional

from fleet_hub.shared.models import Condition, ConditionStatus


def find_condition(conditions: List[Condition], cond_type: str) -> Optional[Condition]:
    for cond in conditions:
        if cond.type == cond_type:
            return cond
    return None


def is_condition_status_true(cond: Optional[Condition], generation: int) -> bool:
    return (
        cond is not None
        and cond.status == ConditionStatus.TRUE
        and cond.observed_generation == generation
    )


def set_condition(conditions: List[Condition], new: Condition) -> bool:
    """
    Insert or update the condition of new.type in place.

    Returns True if anything changed.
    """
    existing = find_condition(conditions, new.type)
    if existing is None:
        conditions.append(new.model_copy())
        return True

    changed = False
    if existing.status != new.status:
        existing.status = new.status
        existing.last_transition_time = new.last_transition_time
        changed = True
    for attr in ("reason", "message", "observed_generation"):
        if getattr(existing, attr) != getattr(new, attr):
            setattr(existing, attr, getattr(new, attr))
            changed = True
    return changed
