"""
Scheduler/Executor for planned tasks.

Runs every task of a ``TaskPlan`` whose dependencies are committed, either
inline (one worker, deterministic plan order) or on a process/thread pool.
Workers load their inputs from the Artifact Store, run the stage and commit
the output atomically before reporting back. Only the coordinating thread
updates task state.

A task whose artifact is already in the store is marked committed without
computation, which makes a re-run after interruption compute only what is
missing. A failed task never stops unrelated work: its transitive
dependents are skipped and everything else continues.

Usage
-----
    from cohort_method.scheduler import TaskScheduler, create_default_multi_threading_settings

    settings = create_default_multi_threading_settings(max_cores=4)
    report = TaskScheduler(plan, store, backend, connection_details, settings).run()
    print(report.counts())
"""
from __future__ import annotations

import os
import time
from collections import Counter
from concurrent.futures import (
    FIRST_COMPLETED,
    ProcessPoolExecutor,
    ThreadPoolExecutor,
    wait,
)
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Optional

import pandas as pd

from config import EXTRACTION_MAX_WORKERS, PARALLEL_EXECUTOR, PARALLEL_MAX_WORKERS

from .errors import CohortMethodError, ConfigurationError, TaskComputationError
from .planner import TaskPlan
from .store import ArtifactStore
from .tasks import StageKind, Task, TaskState


# =============================================================================
# SETTINGS
# =============================================================================

@dataclass
class MultiThreadingSettings:
    """
    Parallelism settings for one run.

    Attributes
    ----------
    max_workers : int, optional
        Worker count (None: ``PARALLEL_MAX_WORKERS`` from config, else CPU count).
        1 runs every task inline in plan order.
    executor : str
        'process' or 'thread'
    stage_limits : dict
        Stage kind value -> maximum tasks of that kind in flight
    """

    max_workers: Optional[int] = None
    executor: str = PARALLEL_EXECUTOR
    stage_limits: dict = field(default_factory=dict)

    def __post_init__(self):
        if self.max_workers is not None and self.max_workers < 1:
            raise ConfigurationError(f"max_workers must be positive, got {self.max_workers}")
        if self.executor not in ('process', 'thread'):
            raise ConfigurationError(f"executor must be 'process' or 'thread', got {self.executor!r}")
        limits = {}
        for kind, limit in (self.stage_limits or {}).items():
            try:
                kind = StageKind(kind).value
            except ValueError:
                raise ConfigurationError(f"Unknown stage kind in stage_limits: {kind!r}")
            if limit < 1:
                raise ConfigurationError(f"Stage limit for {kind} must be positive, got {limit}")
            limits[kind] = int(limit)
        self.stage_limits = limits

    @property
    def workers(self) -> int:
        """Resolved worker count."""
        if self.max_workers is not None:
            return self.max_workers
        if PARALLEL_MAX_WORKERS is not None:
            return PARALLEL_MAX_WORKERS
        return os.cpu_count() or 1

    def limit_for(self, kind: StageKind) -> Optional[int]:
        return self.stage_limits.get(StageKind(kind).value)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> 'MultiThreadingSettings':
        data = dict(data or {})
        unknown = sorted(set(data) - {'max_workers', 'executor', 'stage_limits'})
        if unknown:
            raise ConfigurationError(f"Unknown multi-threading setting(s): {', '.join(unknown)}")
        return cls(**data)


def create_default_multi_threading_settings(max_cores: Optional[int] = None) -> MultiThreadingSettings:
    """
    Settings that use ``max_cores`` workers but limit concurrent extraction.

    Parameters
    ----------
    max_cores : int, optional
        Worker count (default: CPU count)

    Returns
    -------
    MultiThreadingSettings
    """
    cores = max_cores or os.cpu_count() or 1
    return MultiThreadingSettings(
        max_workers=cores,
        stage_limits={StageKind.EXTRACT.value: min(EXTRACTION_MAX_WORKERS, cores)},
    )


# =============================================================================
# STATUS AND REPORT
# =============================================================================

@dataclass
class TaskStatus:
    """Outcome of one task in one run."""

    fingerprint: str
    kind: StageKind
    target_id: int
    comparator_id: int
    outcome_id: Optional[int] = None
    state: TaskState = TaskState.PLANNED
    cached: bool = False
    error: Optional[str] = None
    elapsed_seconds: float = 0.0

    @property
    def file_name(self) -> str:
        return ArtifactStore.file_name(self.fingerprint, self.kind)

    def to_dict(self) -> dict:
        return {
            'fingerprint': self.fingerprint,
            'kind': self.kind.value,
            'target_id': self.target_id,
            'comparator_id': self.comparator_id,
            'outcome_id': self.outcome_id,
            'state': self.state.value,
            'cached': self.cached,
            'error': self.error,
            'elapsed_seconds': round(self.elapsed_seconds, 3),
            'file_name': self.file_name,
        }


STATUS_COLUMNS = ['fingerprint', 'kind', 'target_id', 'comparator_id', 'outcome_id',
                  'state', 'cached', 'error', 'elapsed_seconds', 'file_name']


@dataclass
class RunReport:
    """Per-task status of one run."""

    statuses: dict = field(default_factory=dict)
    elapsed_seconds: float = 0.0

    def state(self, fingerprint: str) -> TaskState:
        return self.statuses[fingerprint].state

    def task_states(self) -> dict[str, str]:
        """Fingerprint -> final state value of every task."""
        return {fp: s.state.value for fp, s in self.statuses.items()}

    def counts(self) -> dict[str, int]:
        """Number of tasks per final state, plus computed and cached."""
        counts = Counter(s.state.value for s in self.statuses.values())
        result = {state.value: counts.get(state.value, 0) for state in TaskState}
        result['computed'] = len(self.computed)
        result['cached'] = sum(1 for s in self.statuses.values() if s.cached)
        return result

    @property
    def computed(self) -> list[str]:
        """Fingerprints of tasks computed (not served from the store) in this run."""
        return [fp for fp, s in self.statuses.items()
                if s.state == TaskState.COMMITTED and not s.cached]

    @property
    def failed(self) -> list[TaskStatus]:
        return [s for s in self.statuses.values() if s.state == TaskState.FAILED]

    @property
    def skipped(self) -> list[TaskStatus]:
        return [s for s in self.statuses.values() if s.state == TaskState.SKIPPED]

    @property
    def succeeded(self) -> bool:
        return not self.failed and not self.skipped

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame([s.to_dict() for s in self.statuses.values()], columns=STATUS_COLUMNS)


# =============================================================================
# WORKER
# =============================================================================

def execute_task(task: Task, store_folder: Path, backend, connection_details: dict) -> float:
    """
    Load inputs, run one stage and commit its artifact.

    Runs inside a worker, so it takes the store folder rather than a store
    object and returns only the elapsed time.

    Raises
    ------
    TaskComputationError
        If the stage itself fails
    StoreIOError, NotFoundError
        If inputs cannot be loaded or the output cannot be committed
    """
    # Imported here so worker processes resolve the stage registry themselves
    from stages import run_stage

    start = time.perf_counter()
    store = ArtifactStore(store_folder)
    inputs = {
        role: store.load(fingerprint, StageKind(role))
        for role, fingerprint in task.dependencies.items()
    }
    try:
        output = run_stage(task, inputs, backend, connection_details)
    except CohortMethodError:
        raise
    except Exception as e:
        raise TaskComputationError(f"{task.describe()}: {type(e).__name__}: {e}") from e
    store.put(task.fingerprint, task.kind, output)
    return time.perf_counter() - start


# =============================================================================
# SCHEDULER
# =============================================================================

class TaskScheduler:
    """
    Execute a task plan against an Artifact Store.

    Parameters
    ----------
    plan : TaskPlan
        Tasks to run
    store : ArtifactStore
        Store holding committed artifacts
    backend : CohortMethodBackend
        Statistical collaborators (must be picklable for process pools)
    connection_details : dict
        Passed to extraction
    settings : MultiThreadingSettings, optional
        Parallelism settings (default: every CPU core)
    verbose : bool
        Print progress messages
    """

    def __init__(
        self,
        plan: TaskPlan,
        store: ArtifactStore,
        backend,
        connection_details: Optional[dict] = None,
        settings: Optional[MultiThreadingSettings] = None,
        verbose: bool = True,
    ):
        self.plan = plan
        self.store = store
        self.backend = backend
        self.connection_details = connection_details or {}
        self.settings = settings or MultiThreadingSettings()
        self.verbose = verbose
        self.statuses: dict[str, TaskStatus] = {}

    def run(self) -> RunReport:
        """
        Run all planned tasks.

        Returns
        -------
        RunReport
            Final state of every task
        """
        start = time.perf_counter()
        self.statuses = {
            task.fingerprint: TaskStatus(
                fingerprint=task.fingerprint,
                kind=task.kind,
                target_id=task.target_id,
                comparator_id=task.comparator_id,
                outcome_id=task.outcome_id,
            )
            for task in self.plan
        }

        # Committed artifacts count as done whatever the state of their upstream
        for task in self.plan:
            if self.store.has(task.fingerprint, task.kind):
                self.statuses[task.fingerprint].state = TaskState.COMMITTED
                self.statuses[task.fingerprint].cached = True

        workers = self.settings.workers
        if self.verbose:
            n_cached = sum(1 for s in self.statuses.values() if s.cached)
            mode = 'inline' if workers == 1 else f"{workers} {self.settings.executor} workers"
            print(f"\n  Executing {len(self.plan) - n_cached} task(s), "
                  f"{n_cached} already in store ({mode})")

        if workers == 1:
            self._run_inline()
        else:
            self._run_pool(workers)

        for status in self.statuses.values():
            if status.state == TaskState.PLANNED:
                status.state = TaskState.SKIPPED
                status.error = 'Dependencies were never committed'

        report = RunReport(dict(self.statuses), time.perf_counter() - start)
        if self.verbose:
            counts = report.counts()
            print(f"  Done: {counts['computed']} computed, {counts['cached']} cached, "
                  f"{counts['failed']} failed, {counts['skipped']} skipped "
                  f"({report.elapsed_seconds:.1f}s)")
        return report

    # -------------------------------------------------------------------------
    # Execution modes
    # -------------------------------------------------------------------------

    def _run_inline(self) -> None:
        while True:
            ready = self._next_ready()
            if not ready:
                return
            for task in ready:
                if self.statuses[task.fingerprint].state != TaskState.PLANNED:
                    continue
                self.statuses[task.fingerprint].state = TaskState.RUNNING
                try:
                    elapsed = execute_task(task, self.store.folder, self.backend, self.connection_details)
                except CohortMethodError as e:
                    self._fail(task, e)
                else:
                    self._commit(task, elapsed)

    def _run_pool(self, workers: int) -> None:
        executor_cls = ProcessPoolExecutor if self.settings.executor == 'process' else ThreadPoolExecutor
        in_flight = {}
        per_kind = Counter()

        with executor_cls(max_workers=workers) as pool:
            while True:
                for task in self._next_ready():
                    if len(in_flight) >= workers:
                        break
                    limit = self.settings.limit_for(task.kind)
                    if limit is not None and per_kind[task.kind] >= limit:
                        continue
                    future = pool.submit(
                        execute_task, task, self.store.folder, self.backend, self.connection_details)
                    self.statuses[task.fingerprint].state = TaskState.RUNNING
                    in_flight[future] = task
                    per_kind[task.kind] += 1

                if not in_flight:
                    return

                done, _ = wait(in_flight, return_when=FIRST_COMPLETED)
                for future in done:
                    task = in_flight.pop(future)
                    per_kind[task.kind] -= 1
                    try:
                        elapsed = future.result()
                    except CohortMethodError as e:
                        self._fail(task, e)
                    except Exception as e:
                        # Worker crashed or the task could not be sent to it
                        self._fail(task, TaskComputationError(
                            f"{task.describe()}: {type(e).__name__}: {e}"))
                    else:
                        self._commit(task, elapsed)

    # -------------------------------------------------------------------------
    # State transitions (coordinator only)
    # -------------------------------------------------------------------------

    def _next_ready(self) -> list[Task]:
        """Planned tasks with committed dependencies, after resolving cache hits."""
        while True:
            ready = [
                task for task in self.plan
                if self.statuses[task.fingerprint].state == TaskState.PLANNED
                and all(self._is_committed(dep) for dep in task.dependencies.values())
            ]
            cached = [task for task in ready if self.store.has(task.fingerprint, task.kind)]
            if not cached:
                return ready
            for task in cached:
                status = self.statuses[task.fingerprint]
                status.state = TaskState.COMMITTED
                status.cached = True
                if self.verbose:
                    print(f"    [cache hit] {task.describe()}")

    def _is_committed(self, fingerprint: str) -> bool:
        status = self.statuses.get(fingerprint)
        return status is not None and status.state == TaskState.COMMITTED

    def _commit(self, task: Task, elapsed: float) -> None:
        status = self.statuses[task.fingerprint]
        status.state = TaskState.COMMITTED
        status.elapsed_seconds = elapsed
        if self.verbose:
            print(f"    [done] {task.describe()} ({elapsed:.2f}s)")

    def _fail(self, task: Task, error: Exception) -> None:
        status = self.statuses[task.fingerprint]
        status.state = TaskState.FAILED
        status.error = str(error)
        if self.verbose:
            print(f"    [FAILED] {task.describe()}: {error}")
        for fingerprint in self.plan.descendants(task.fingerprint):
            dependent = self.statuses[fingerprint]
            if dependent.state == TaskState.PLANNED:
                dependent.state = TaskState.SKIPPED
                dependent.error = f"Upstream task failed: {task.describe()}"
                if self.verbose:
                    print(f"    [skipped] {self.plan.tasks[fingerprint].describe()}")
