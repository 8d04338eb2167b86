"""
fleet_hub/control_plane/updaterun.py
─────────────────────────────────────
UpdateRunController: rolls a placement's resource snapshot out to its
clusters stage by stage.

State machines
───────────────
  run:    (none) → Initialized → Progressing → Succeeded | Failed
  stage:  Pending → Progressing → Succeeded | Failed
  task:   Pending → [ApprovalRequested → Approved →] Updating → Succeeded | Failed
          any not-yet-dispatched task → Skipped

Every state change goes through transition_run / transition_stage /
transition_task, which consult an allowed-transition table and raise
InvalidTransitionError for anything else.

One reconcile
──────────────
  1. Deleting → wait for in-flight tasks, drop the run's metric series,
     remove the finalizer.
  2. Not initialised (or the spec changed before anything started) →
     compute the stage plan from the placement's Scheduled/Bound bindings.
     A plan that cannot be built fails the run with Initialized=False.
  3. Spec state Run → walk stages in declared order. The first non-finished
     stage is the only one that moves:
       • finished task results are folded in (the failure policy decides
         whether a failure aborts the run or is tolerated),
       • approved tasks move ApprovalRequested → Approved,
       • Pending tasks either request approval or are dispatched, up to the
         stage's concurrency limit,
       • once every task is terminal the stage succeeds and the next one
         starts in the same pass.
     Spec state Stop → fold in results but dispatch nothing new.
  4. Write status if it changed. Only after the write succeeds are tasks
     dispatched and latency/duration samples recorded, so a lost write
     never double-dispatches or double-counts.
  5. Stamp the run status metric.

Tasks run on a shared ThreadPoolExecutor. A finished task stores its
outcome and re-enqueues the run; the next reconcile picks it up.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, FrozenSet, List, Optional, Protocol, Set, Tuple

from fleet_hub.control_plane.config import HubConfig
from fleet_hub.control_plane.plugins.cluster_affinity import labels_match
from fleet_hub.control_plane.workqueue import Result
from fleet_hub.shared.conditions import find_condition, is_condition_status_true, set_condition
from fleet_hub.shared.models import (
    TERMINAL_RUN_STATES,
    TERMINAL_TASK_STATES,
    Binding,
    BindingState,
    Condition,
    ConditionStatus,
    MemberCluster,
    RunState,
    StageConditionType,
    StageSpec,
    StageState,
    StageStatus,
    StageTaskConditionType,
    StageTaskStatus,
    TaskState,
    UpdateRun,
    UpdateRunConditionType,
    UpdateRunSpecState,
    UpdateRunStatus,
    binding_name,
    split_key,
    utcnow,
)
from fleet_hub.shared.store import InMemoryStore, NotFoundError, update_with_retry
from fleet_hub.telemetry.metrics import HubMetrics

logger = logging.getLogger(__name__)

UPDATE_RUN_FINALIZER = "kubernetes-fleet.io/stagedupdaterun-finalizer"

_TaskKey = Tuple[str, str]   # (stage name, cluster name)


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 1: GUARDED TRANSITIONS
# ─────────────────────────────────────────────────────────────────────────────

class InvalidTransitionError(Exception):
    """
    Raised when code asks a run, stage or task for a transition its state
    machine does not allow. Always a programming error, never retried.
    """

    def __init__(self, kind: str, current: Optional[Enum], target: Enum) -> None:
        self.kind = kind
        self.current = current
        self.target = target
        shown = current.value if current is not None else "<none>"
        super().__init__(f"{kind}: illegal transition {shown} → {target.value}")


_RUN_TRANSITIONS: Dict[Optional[RunState], FrozenSet[RunState]] = {
    None: frozenset({RunState.INITIALIZED, RunState.FAILED}),
    RunState.INITIALIZED: frozenset({RunState.PROGRESSING, RunState.FAILED}),
    RunState.PROGRESSING: frozenset({RunState.SUCCEEDED, RunState.FAILED}),
    RunState.SUCCEEDED: frozenset(),
    RunState.FAILED: frozenset(),
}

_STAGE_TRANSITIONS: Dict[StageState, FrozenSet[StageState]] = {
    StageState.PENDING: frozenset({StageState.PROGRESSING}),
    StageState.PROGRESSING: frozenset({StageState.SUCCEEDED, StageState.FAILED}),
    StageState.SUCCEEDED: frozenset(),
    StageState.FAILED: frozenset(),
}

_TASK_TRANSITIONS: Dict[TaskState, FrozenSet[TaskState]] = {
    TaskState.PENDING: frozenset({TaskState.APPROVAL_REQUESTED, TaskState.UPDATING, TaskState.SKIPPED}),
    TaskState.APPROVAL_REQUESTED: frozenset({TaskState.APPROVED, TaskState.SKIPPED}),
    TaskState.APPROVED: frozenset({TaskState.UPDATING, TaskState.SKIPPED}),
    TaskState.UPDATING: frozenset({TaskState.SUCCEEDED, TaskState.FAILED}),
    TaskState.SUCCEEDED: frozenset(),
    TaskState.FAILED: frozenset(),
    TaskState.SKIPPED: frozenset(),
}


def transition_run(status: UpdateRunStatus, target: RunState) -> None:
    if target not in _RUN_TRANSITIONS[status.state]:
        raise InvalidTransitionError("UpdateRun", status.state, target)
    status.state = target


def transition_stage(stage: StageStatus, target: StageState) -> None:
    if target not in _STAGE_TRANSITIONS[stage.state]:
        raise InvalidTransitionError(f"Stage {stage.stage_name}", stage.state, target)
    stage.state = target


def transition_task(task: StageTaskStatus, target: TaskState) -> None:
    if target not in _TASK_TRANSITIONS[task.state]:
        raise InvalidTransitionError(f"StageTask {task.cluster_name}", task.state, target)
    task.state = target


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 2: FAILURE POLICY AND TASK EXECUTION HOOKS
# ─────────────────────────────────────────────────────────────────────────────

class FailureAction(str, Enum):
    """
    ABORT_RUN → skip the stage's undispatched tasks, fail the stage and the run
                once in-flight tasks finish.
    CONTINUE  → tolerate the failure; the task counts as terminal.
    """
    ABORT_RUN = "AbortRun"
    CONTINUE = "Continue"


class FailurePolicy(Protocol):
    def on_task_failure(self, run: UpdateRun, stage: StageStatus, task: StageTaskStatus) -> FailureAction:
        ...


class AbortOnFailure:
    """Default: the first failed task aborts the run."""

    def on_task_failure(self, run: UpdateRun, stage: StageStatus, task: StageTaskStatus) -> FailureAction:
        return FailureAction.ABORT_RUN


class ContinueOnFailure:
    """Tolerate every task failure; the run only records them."""

    def on_task_failure(self, run: UpdateRun, stage: StageStatus, task: StageTaskStatus) -> FailureAction:
        return FailureAction.CONTINUE


@dataclass
class TaskOutcome:
    succeeded: bool
    message: str = ""


class ClusterUpdateExecutor(Protocol):
    """Applies the run's resource snapshot to one cluster. Called on a pool thread."""

    def update_cluster(self, run: UpdateRun, cluster_name: str) -> TaskOutcome:
        ...


class BindingRolloutExecutor:
    """
    Default executor: commits the cluster's Binding to the run's resource
    snapshot (state Bound). Delivering the resources to the cluster is the
    business of whoever watches bindings.
    """

    def __init__(self, store: InMemoryStore, max_conflict_retries: int = 5) -> None:
        self._store = store
        self._max_attempts = max_conflict_retries

    def update_cluster(self, run: UpdateRun, cluster_name: str) -> TaskOutcome:
        binding = self._store.try_get(Binding, binding_name(run.placement_name, cluster_name), run.namespace)
        if binding is None:
            return TaskOutcome(False, f"no binding for cluster {cluster_name}")
        if binding.state == BindingState.UNSCHEDULED:
            return TaskOutcome(False, f"cluster {cluster_name} is no longer scheduled for the placement")

        def bind(b: Binding) -> bool:
            if b.state == BindingState.BOUND and b.resource_snapshot_name == run.resource_snapshot_name:
                return False
            b.state = BindingState.BOUND
            b.resource_snapshot_name = run.resource_snapshot_name
            return True

        update_with_retry(self._store, binding, bind, self._max_attempts)
        return TaskOutcome(True, f"bound to resource snapshot {run.resource_snapshot_name}")


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 3: STAGE PLAN
# ─────────────────────────────────────────────────────────────────────────────

class StagePlanError(Exception):
    """The run's stages cannot be mapped onto the placement's clusters. Surfaced as Initialized=False."""


def compute_stage_plan(
    stages: List[StageSpec],
    bindings: List[Binding],
    clusters: Dict[str, MemberCluster],
) -> List[StageStatus]:
    """
    Assign every target cluster to the first stage whose label selector it
    matches, and order each stage's clusters by sort_by_label, then name.

    Raises:
        StagePlanError: no stages, duplicate stage names, no target clusters,
                        or a cluster no stage selects.
    """
    if not stages:
        raise StagePlanError("update run defines no stages")
    names = [s.name for s in stages]
    if len(set(names)) != len(names):
        raise StagePlanError(f"stage names must be unique: {', '.join(names)}")
    if not bindings:
        raise StagePlanError("placement has no scheduled or bound clusters")

    members: Dict[str, List[str]] = {s.name: [] for s in stages}
    unmatched: List[str] = []
    for cluster_name in sorted({b.target_cluster for b in bindings}):
        cluster = clusters.get(cluster_name)
        labels = cluster.labels if cluster is not None else {}
        for spec in stages:
            if labels_match(labels, spec.label_selector):
                members[spec.name].append(cluster_name)
                break
        else:
            unmatched.append(cluster_name)
    if unmatched:
        raise StagePlanError(f"clusters not selected by any stage: {', '.join(unmatched)}")

    plan: List[StageStatus] = []
    for spec in stages:
        ordered = members[spec.name]
        if spec.sort_by_label:
            label = spec.sort_by_label

            def sort_key(name: str) -> Tuple[bool, str, str]:
                labels = clusters[name].labels if name in clusters else {}
                return (label not in labels, labels.get(label, ""), name)

            ordered = sorted(ordered, key=sort_key)
        plan.append(StageStatus(
            stage_name=spec.name,
            tasks=[StageTaskStatus(cluster_name=c) for c in ordered],
        ))
    return plan


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 4: CONTROLLER
# ─────────────────────────────────────────────────────────────────────────────

@dataclass
class _PassEffects:
    """Side effects of one reconcile, applied only after the status write lands."""
    applied: List[_TaskKey] = field(default_factory=list)
    dispatch: List[_TaskKey] = field(default_factory=list)
    approved: List[StageTaskStatus] = field(default_factory=list)
    finished_stages: List[StageStatus] = field(default_factory=list)


class UpdateRunController:
    """
    Reconciles UpdateRun keys. Meant to be driven by a workqueue.Controller;
    set_enqueue() wires the callback finished tasks use to requeue their run.
    """

    def __init__(
        self,
        store: InMemoryStore,
        config: HubConfig,
        metrics: HubMetrics,
        executor: Optional[ClusterUpdateExecutor] = None,
        failure_policy: Optional[FailurePolicy] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._config = config
        self._metrics = metrics
        self._executor: ClusterUpdateExecutor = executor or BindingRolloutExecutor(store)
        self._failure_policy: FailurePolicy = failure_policy or AbortOnFailure()
        self._clock = clock
        self._enqueue: Optional[Callable[[str], None]] = None

        self._pool = ThreadPoolExecutor(
            max_workers=config.update_run.task_executor_threads,
            thread_name_prefix="updaterun-task",
        )
        self._lock = threading.Lock()
        self._idle = threading.Condition(self._lock)
        self._in_flight: Dict[str, Set[_TaskKey]] = {}
        self._results: Dict[str, Dict[_TaskKey, TaskOutcome]] = {}

    def set_enqueue(self, enqueue: Callable[[str], None]) -> None:
        self._enqueue = enqueue

    def shutdown(self, wait: bool = True) -> None:
        self._pool.shutdown(wait=wait)

    # ── Public operations ──────────────────────────────────────────────────────

    def approve(self, namespace: str, name: str, stage_name: str, cluster_name: str) -> UpdateRun:
        """
        Approve one task waiting in ApprovalRequested. Approving an already
        approved task is a no-op.

        Raises:
            NotFoundError:          no such run, stage or task.
            InvalidTransitionError: the task is not waiting for approval.
        """
        run = self._store.get(UpdateRun, name, namespace)

        def mark(r: UpdateRun) -> bool:
            stage = r.status.stage_for(stage_name)
            task = stage.task_for(cluster_name) if stage is not None else None
            if task is None:
                raise NotFoundError("StageTask", f"{r.key}/{stage_name}/{cluster_name}")
            approved = find_condition(task.conditions, StageTaskConditionType.APPROVAL_REQUEST_APPROVED.value)
            if is_condition_status_true(approved, r.generation):
                return False
            if task.state != TaskState.APPROVAL_REQUESTED:
                raise InvalidTransitionError(f"StageTask {cluster_name}", task.state, TaskState.APPROVED)
            return set_condition(task.conditions, self._condition(
                StageTaskConditionType.APPROVAL_REQUEST_APPROVED.value, ConditionStatus.TRUE,
                "ApprovalRequestApproved", "", r.generation,
            ))

        stored = update_with_retry(self._store, run, mark)
        if stored is None:
            return run
        logger.info("update run %s: task %s/%s approved", run.key, stage_name, cluster_name)
        if self._enqueue is not None:
            self._enqueue(run.key)
        return stored

    def in_flight(self, key: str) -> int:
        with self._lock:
            return len(self._in_flight.get(key, ()))

    def wait_for_tasks(self, key: str, timeout: Optional[float] = None) -> bool:
        """Block until the run has no task executing. Returns False on timeout."""
        with self._idle:
            return self._idle.wait_for(lambda: not self._in_flight.get(key), timeout)

    # ── Reconcile ──────────────────────────────────────────────────────────────

    def reconcile(self, key: str) -> Result:
        namespace, name = split_key(key)
        run = self._store.try_get(UpdateRun, name, namespace)
        if run is None:
            self._forget(key)
            self._metrics.delete_update_run_metrics(namespace, name)
            return Result()
        if run.is_deleting:
            return self._handle_deletion(run)
        if not self._config.feature_flags.enable_staged_update_run_apis:
            logger.debug("update run %s ignored: staged update run APIs disabled", key)
            return Result()

        run = self._ensure_finalizer(run)
        original = run.status.model_copy(deep=True)
        effects = _PassEffects()

        if self._needs_initialization(run):
            self._initialize(run)
        elif run.status.observed_generation != run.generation:
            self._restamp(run)

        if run.status.state not in TERMINAL_RUN_STATES and run.state != UpdateRunSpecState.INITIALIZE:
            self._progress(run, effects)

        if run.status != original:
            run = self._store.update(run)
        self._apply_effects(run, effects)
        self._metrics.emit_update_run_status(run)
        return Result()

    def _needs_initialization(self, run: UpdateRun) -> bool:
        if run.status.state is None:
            return True
        if run.status.observed_generation == run.generation:
            return False
        return not any(stage.state != StageState.PENDING for stage in run.status.stages)

    def _initialize(self, run: UpdateRun) -> None:
        run.status = UpdateRunStatus(observed_generation=run.generation)
        bindings = self._store.list(
            Binding,
            namespace=run.namespace,
            predicate=lambda b: b.placement_name == run.placement_name
            and b.state in (BindingState.SCHEDULED, BindingState.BOUND),
        )
        clusters = {c.name: c for c in self._store.list(MemberCluster)}
        try:
            run.status.stages = compute_stage_plan(run.stages, bindings, clusters)
        except StagePlanError as err:
            logger.warning("update run %s failed to initialize: %s", run.key, err)
            transition_run(run.status, RunState.FAILED)
            set_condition(run.status.conditions, self._condition(
                UpdateRunConditionType.INITIALIZED.value, ConditionStatus.FALSE,
                "UpdateRunInitializationFailed", str(err), run.generation,
            ))
            return

        transition_run(run.status, RunState.INITIALIZED)
        total = sum(len(s.tasks) for s in run.status.stages)
        set_condition(run.status.conditions, self._condition(
            UpdateRunConditionType.INITIALIZED.value, ConditionStatus.TRUE,
            "UpdateRunInitializedSuccessfully",
            f"{total} clusters in {len(run.status.stages)} stages", run.generation,
        ))
        logger.info("update run %s initialized: %d clusters, %d stages", run.key, total, len(run.status.stages))

    def _restamp(self, run: UpdateRun) -> None:
        """A started run keeps its plan across spec changes; its conditions move to the new generation."""
        logger.info(
            "update run %s: generation %d → %d after start; keeping stage plan",
            run.key, run.status.observed_generation, run.generation,
        )
        run.status.observed_generation = run.generation
        for cond in run.status.conditions:
            cond.observed_generation = run.generation
        for stage in run.status.stages:
            for cond in stage.conditions:
                cond.observed_generation = run.generation

    # ── Progress ───────────────────────────────────────────────────────────────

    def _progress(self, run: UpdateRun, effects: _PassEffects) -> None:
        status = run.status
        stopping = run.state == UpdateRunSpecState.STOP

        if status.state == RunState.INITIALIZED:
            if stopping:
                return
            transition_run(status, RunState.PROGRESSING)
            logger.info("update run %s started", run.key)

        specs = {s.name: s for s in run.stages}
        for stage in status.stages:
            if stage.state == StageState.SUCCEEDED:
                continue
            spec = specs.get(stage.stage_name) or StageSpec(name=stage.stage_name)
            if not self._progress_stage(run, spec, stage, stopping, effects):
                break
        else:
            self._finish_run(run, succeeded=True, message=f"all {len(status.stages)} stages succeeded")
            return

        if status.state != RunState.PROGRESSING:
            return
        if stopping:
            busy = self.in_flight(run.key) > 0 or len(effects.dispatch) > 0
            reason = "UpdateRunStopping" if busy else "UpdateRunStopped"
            set_condition(status.conditions, self._condition(
                UpdateRunConditionType.PROGRESSING.value, ConditionStatus.FALSE, reason,
                "update run is stopped; no new clusters are updated", run.generation,
            ))
        else:
            set_condition(status.conditions, self._condition(
                UpdateRunConditionType.PROGRESSING.value, ConditionStatus.TRUE,
                "UpdateRunProgressing", "", run.generation,
            ))

    def _progress_stage(
        self, run: UpdateRun, spec: StageSpec, stage: StageStatus, stopping: bool, effects: _PassEffects,
    ) -> bool:
        """Move one stage forward. Returns True once it has succeeded."""
        key = run.key
        gen = run.generation

        if stage.state == StageState.PENDING:
            if stopping:
                return False
            transition_stage(stage, StageState.PROGRESSING)
            stage.start_time = self._clock()
            set_condition(stage.conditions, self._condition(
                StageConditionType.PROGRESSING.value, ConditionStatus.TRUE, "StageUpdatingStarted", "", gen,
            ))
            logger.info("update run %s: stage %s started", key, stage.stage_name)

        for task in stage.tasks:
            tk = (stage.stage_name, task.cluster_name)
            if task.state == TaskState.UPDATING:
                outcome = self._peek_result(key, tk)
                if outcome is not None:
                    effects.applied.append(tk)
                    self._complete_task(run, stage, task, outcome)
                elif not stopping and not self._is_in_flight(key, tk):
                    # Status says Updating but nothing runs it: resume.
                    effects.dispatch.append(tk)
            elif task.state == TaskState.APPROVAL_REQUESTED:
                approved = find_condition(task.conditions, StageTaskConditionType.APPROVAL_REQUEST_APPROVED.value)
                if is_condition_status_true(approved, gen):
                    transition_task(task, TaskState.APPROVED)
                    effects.approved.append(task.model_copy(deep=True))

        if any(t.state == TaskState.FAILED and not t.tolerated for t in stage.tasks):
            return self._abort_stage(run, stage, effects)

        if not stopping:
            self._dispatch_ready(run, spec, stage, effects)

        if all(t.state in TERMINAL_TASK_STATES for t in stage.tasks):
            transition_stage(stage, StageState.SUCCEEDED)
            stage.end_time = self._clock()
            tolerated = sum(1 for t in stage.tasks if t.tolerated)
            set_condition(stage.conditions, self._condition(
                StageConditionType.PROGRESSING.value, ConditionStatus.FALSE, "StageUpdatingSucceeded", "", gen,
            ))
            set_condition(stage.conditions, self._condition(
                StageConditionType.SUCCEEDED.value, ConditionStatus.TRUE, "StageUpdatingSucceeded",
                f"{tolerated} tolerated task failures" if tolerated else "", gen,
            ))
            effects.finished_stages.append(stage.model_copy(deep=True))
            logger.info("update run %s: stage %s succeeded", key, stage.stage_name)
            return True
        return False

    def _complete_task(self, run: UpdateRun, stage: StageStatus, task: StageTaskStatus, outcome: TaskOutcome) -> None:
        task.message = outcome.message
        if outcome.succeeded:
            transition_task(task, TaskState.SUCCEEDED)
            set_condition(task.conditions, self._condition(
                StageTaskConditionType.SUCCEEDED.value, ConditionStatus.TRUE, "TaskSucceeded",
                outcome.message, run.generation,
            ))
            return

        transition_task(task, TaskState.FAILED)
        set_condition(task.conditions, self._condition(
            StageTaskConditionType.SUCCEEDED.value, ConditionStatus.FALSE, "TaskFailed",
            outcome.message, run.generation,
        ))
        action = self._failure_policy.on_task_failure(run, stage, task)
        if action == FailureAction.CONTINUE:
            task.tolerated = True
        logger.warning(
            "update run %s: cluster %s failed in stage %s (%s): %s",
            run.key, task.cluster_name, stage.stage_name, action.value, outcome.message,
        )

    def _dispatch_ready(self, run: UpdateRun, spec: StageSpec, stage: StageStatus, effects: _PassEffects) -> None:
        limit = spec.max_concurrency or self._config.update_run.max_concurrency_per_stage
        running = sum(1 for t in stage.tasks if t.state == TaskState.UPDATING)
        for task in stage.tasks:
            if task.state == TaskState.PENDING and spec.requires_approval:
                transition_task(task, TaskState.APPROVAL_REQUESTED)
                set_condition(task.conditions, self._condition(
                    StageTaskConditionType.APPROVAL_REQUEST_CREATED.value, ConditionStatus.TRUE,
                    "ApprovalRequestCreated", "", run.generation,
                ))
                logger.info(
                    "update run %s: approval requested for cluster %s in stage %s",
                    run.key, task.cluster_name, stage.stage_name,
                )
                continue
            if task.state in (TaskState.PENDING, TaskState.APPROVED) and running < limit:
                transition_task(task, TaskState.UPDATING)
                set_condition(task.conditions, self._condition(
                    StageTaskConditionType.STARTED.value, ConditionStatus.TRUE, "TaskStarted", "", run.generation,
                ))
                effects.dispatch.append((stage.stage_name, task.cluster_name))
                running += 1

    def _abort_stage(self, run: UpdateRun, stage: StageStatus, effects: _PassEffects) -> bool:
        for task in stage.tasks:
            if task.state in (TaskState.PENDING, TaskState.APPROVAL_REQUESTED, TaskState.APPROVED):
                transition_task(task, TaskState.SKIPPED)
                task.message = "skipped after a task failure aborted the run"
        # Resumes of orphaned Updating tasks stay queued; their results end the stage.
        updating = {t.cluster_name for t in stage.tasks if t.state == TaskState.UPDATING}
        effects.dispatch = [
            tk for tk in effects.dispatch if tk[0] != stage.stage_name or tk[1] in updating
        ]
        if updating:
            return False

        failed = [t.cluster_name for t in stage.tasks if t.state == TaskState.FAILED and not t.tolerated]
        message = f"stage {stage.stage_name} failed on clusters: {', '.join(failed)}"
        transition_stage(stage, StageState.FAILED)
        stage.end_time = self._clock()
        set_condition(stage.conditions, self._condition(
            StageConditionType.PROGRESSING.value, ConditionStatus.FALSE, "StageUpdatingFailed", message, run.generation,
        ))
        set_condition(stage.conditions, self._condition(
            StageConditionType.SUCCEEDED.value, ConditionStatus.FALSE, "StageUpdatingFailed", message, run.generation,
        ))
        effects.finished_stages.append(stage.model_copy(deep=True))
        self._finish_run(run, succeeded=False, message=message)
        return False

    def _finish_run(self, run: UpdateRun, succeeded: bool, message: str) -> None:
        target = RunState.SUCCEEDED if succeeded else RunState.FAILED
        reason = "UpdateRunSucceeded" if succeeded else "UpdateRunFailed"
        status = ConditionStatus.TRUE if succeeded else ConditionStatus.FALSE
        transition_run(run.status, target)
        set_condition(run.status.conditions, self._condition(
            UpdateRunConditionType.PROGRESSING.value, ConditionStatus.FALSE, reason, message, run.generation,
        ))
        set_condition(run.status.conditions, self._condition(
            UpdateRunConditionType.SUCCEEDED.value, status, reason, message, run.generation,
        ))
        if succeeded:
            logger.info("update run %s succeeded", run.key)
        else:
            logger.warning("update run %s failed: %s", run.key, message)

    # ── After the write ────────────────────────────────────────────────────────

    def _apply_effects(self, run: UpdateRun, effects: _PassEffects) -> None:
        with self._lock:
            results = self._results.get(run.key, {})
            for tk in effects.applied:
                results.pop(tk, None)
        for task in effects.approved:
            self._metrics.record_approval_request_latency(task, run)
        for stage in effects.finished_stages:
            self._metrics.record_stage_cluster_updating_duration(stage, run, stage.end_time)
        for tk in effects.dispatch:
            self._dispatch(run, tk)

    def _dispatch(self, run: UpdateRun, tk: _TaskKey) -> None:
        with self._lock:
            flights = self._in_flight.setdefault(run.key, set())
            if tk in flights:
                return
            flights.add(tk)
        logger.debug("update run %s: dispatching %s/%s", run.key, tk[0], tk[1])
        self._pool.submit(self._run_task, run.model_copy(deep=True), tk)

    def _run_task(self, run: UpdateRun, tk: _TaskKey) -> None:
        try:
            outcome = self._executor.update_cluster(run, tk[1])
        except Exception as err:
            logger.exception("update run %s: updating cluster %s raised", run.key, tk[1])
            outcome = TaskOutcome(False, str(err))
        with self._idle:
            self._results.setdefault(run.key, {})[tk] = outcome
            self._in_flight.get(run.key, set()).discard(tk)
            self._idle.notify_all()
        if self._enqueue is not None:
            self._enqueue(run.key)

    def _peek_result(self, key: str, tk: _TaskKey) -> Optional[TaskOutcome]:
        with self._lock:
            return self._results.get(key, {}).get(tk)

    def _is_in_flight(self, key: str, tk: _TaskKey) -> bool:
        with self._lock:
            return tk in self._in_flight.get(key, ())

    def _forget(self, key: str) -> None:
        with self._lock:
            self._results.pop(key, None)
            if not self._in_flight.get(key):
                self._in_flight.pop(key, None)

    # ── Finalizer / deletion ───────────────────────────────────────────────────

    def _ensure_finalizer(self, run: UpdateRun) -> UpdateRun:
        def add(r: UpdateRun) -> bool:
            if UPDATE_RUN_FINALIZER in r.finalizers:
                return False
            r.finalizers.append(UPDATE_RUN_FINALIZER)
            return True

        stored = update_with_retry(self._store, run, add)
        return stored if stored is not None else run

    def _handle_deletion(self, run: UpdateRun) -> Result:
        busy = self.in_flight(run.key)
        if busy:
            logger.info("update run %s is being deleted; waiting for %d in-flight tasks", run.key, busy)
            return Result(requeue_after=self._config.update_run.cancellation_poll_s)

        removed = self._metrics.delete_update_run_metrics(run.namespace, run.name)
        self._forget(run.key)

        def drop(r: UpdateRun) -> bool:
            if UPDATE_RUN_FINALIZER not in r.finalizers:
                return False
            r.finalizers.remove(UPDATE_RUN_FINALIZER)
            return True

        update_with_retry(self._store, run, drop)
        logger.info("update run %s deleted; removed %d metric series", run.key, removed)
        return Result()

    def _condition(self, cond_type: str, status: ConditionStatus, reason: str, message: str, generation: int) -> Condition:
        return Condition(
            type=cond_type,
            status=status,
            reason=reason,
            message=message,
            observed_generation=generation,
            last_transition_time=self._clock(),
        )
