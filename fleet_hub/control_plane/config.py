"""
fleet_hub/control_plane/config.py
──────────────────────────────────
HubConfig: the resolved, already-validated configuration the core consumes.

Parsing command-line flags and range-checking them happens upstream. The
models below only carry the values (with the same defaults the flags have)
so the scheduler, the work queues and the update-run controller read one
typed object instead of loose keyword arguments.

Durations are plain float seconds.
"""

from __future__ import annotations

import logging

from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

WORK_PENDING_GRACE_PERIOD_S: float = 15.0
"""Fixed value of the retired work-pending grace period."""


class RateLimitOptions(BaseModel):
    """
    Work-queue rate limiting: max(per-item exponential backoff, token bucket).

    Non-positive values fall back to the defaults when the limiter is built.
    """
    rate_limiter_base_delay_s: float = 0.005
    rate_limiter_max_delay_s: float = 60.0
    rate_limiter_qps: int = 10
    rate_limiter_bucket_size: int = 100


class PlacementManagementOptions(BaseModel):
    """
    Fields:
        work_pending_grace_period_s      → retired. Accepted for compatibility,
                                           always reads as 15s, used nowhere.
        max_concurrent_cluster_placement → scheduler worker count.
        concurrent_resource_change_syncs → update-run controller worker count.
        resync_period_s                  → how often every placement is
                                           re-enqueued regardless of events.
    """
    work_pending_grace_period_s: float = WORK_PENDING_GRACE_PERIOD_S
    max_concurrent_cluster_placement: int = 100
    concurrent_resource_change_syncs: int = 20
    resync_period_s: float = 300.0
    rate_limit: RateLimitOptions = Field(default_factory=RateLimitOptions)

    @field_validator("work_pending_grace_period_s")
    @classmethod
    def _ignore_work_pending_grace_period(cls, value: float) -> float:
        logger.warning(
            "work_pending_grace_period is no longer in use and is only kept for "
            "compatibility; it has no effect and should not be set"
        )
        return WORK_PENDING_GRACE_PERIOD_S


class UpdateRunOptions(BaseModel):
    """
    Fields:
        max_concurrency_per_stage → default cap on concurrently updating
                                    clusters in one stage (StageSpec can override).
        task_executor_threads     → size of the shared task thread pool.
        cancellation_poll_s       → requeue delay while a deleted or stopped
                                    run waits for in-flight tasks.
    """
    max_concurrency_per_stage: int = 10
    task_executor_threads: int = 32
    cancellation_poll_s: float = 1.0


class FeatureFlags(BaseModel):
    enable_staged_update_run_apis: bool = True
    enable_resource_placement_apis: bool = Field(
        True,
        description="Schedule namespace-scoped placements. Cluster-scoped ones are always handled."
    )


class HubConfig(BaseModel):
    placement: PlacementManagementOptions = Field(default_factory=PlacementManagementOptions)
    update_run: UpdateRunOptions = Field(default_factory=UpdateRunOptions)
    feature_flags: FeatureFlags = Field(default_factory=FeatureFlags)
