"""
Task dispatch backends.

A dispatcher takes a list of task ids and a picklable ``worker_fn(task_id)``
and returns one outcome per id, in the order the ids were given. A task that
raises yields ``None``; it never aborts the batch.

Backends
--------
SequentialDispatcher
    Runs tasks in the calling process.
PoolDispatcher
    Local ``ProcessPoolExecutor`` with thread-pinned workers.
BatchJobDispatcher
    Splits the batch into jobs executed by ``python -m simcal.jobs``, either
    as local subprocesses or through Slurm ``sbatch``.
"""

from __future__ import annotations

import itertools
import os
import pickle
import re
import shutil
import string
import subprocess
import sys
import time
from abc import ABC, abstractmethod
from collections.abc import Callable, Sequence
from concurrent.futures import ProcessPoolExecutor, as_completed
from concurrent.futures.process import BrokenProcessPool
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from threadpoolctl import threadpool_limits

from simcal.config.schema import ParallelConfig, ResourcesConfig
from simcal.io import atomic_write
from simcal.logging import getLogger
from simcal.progress import ProgressTracker
from simcal.threads import THREAD_ENV_VARS, check_thread_control, limit_threads

log = getLogger(__name__)

WorkerFn = Callable[[int], Any]


def run_one(worker_fn: WorkerFn, task_id: int) -> Any:
    """Run one task, turning any exception into a ``None`` outcome."""
    try:
        return worker_fn(task_id)
    except Exception as exc:
        log.warning("Task %d failed: %s: %s", task_id, type(exc).__name__, exc)
        return None


def run_chunk(worker_fn: WorkerFn, task_ids: Sequence[int]) -> list[Any]:
    """Run a chunk of tasks in order; picklable entry point for pool workers."""
    return [run_one(worker_fn, tid) for tid in task_ids]


def split_tasks(task_ids: Sequence[int], n_chunks: int) -> list[list[int]]:
    """
    Split *task_ids* into at most *n_chunks* contiguous, near-equal chunks.

    Empty chunks are dropped, so fewer tasks than chunks gives one chunk per
    task.
    """
    ids = list(task_ids)
    n = max(1, min(n_chunks, len(ids)))
    size, extra = divmod(len(ids), n)
    chunks, start = [], 0
    for i in range(n):
        stop = start + size + (1 if i < extra else 0)
        if stop > start:
            chunks.append(ids[start:stop])
        start = stop
    return chunks


def _succeeded(outcome: Any) -> bool:
    return outcome is not None and getattr(outcome, "success", True)


class Dispatcher(ABC):
    """
    Common interface of all backends.

    Parameters
    ----------
    progress : bool
        Show a progress bar per batch.
    """

    name = "base"

    def __init__(self, progress: bool = False):
        self.progress = progress

    @abstractmethod
    def execute(self, task_ids: Sequence[int], worker_fn: WorkerFn) -> list[Any]:
        """Run every task and return outcomes ordered like *task_ids*."""

    def close(self) -> None:
        """Release backend resources."""

    def __enter__(self) -> Dispatcher:
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()


class SequentialDispatcher(Dispatcher):
    """Run tasks one after another in this process, numeric pools pinned to 1."""

    name = "sequential"

    def execute(self, task_ids: Sequence[int], worker_fn: WorkerFn) -> list[Any]:
        outcomes = []
        with (
            threadpool_limits(limits=1),
            ProgressTracker(len(task_ids), self.name, self.progress) as tracker,
        ):
            for tid in task_ids:
                outcome = run_one(worker_fn, tid)
                outcomes.append(outcome)
                tracker.update(1, success=_succeeded(outcome))
        return outcomes


class PoolDispatcher(Dispatcher):
    """
    Local process pool.

    Parameters
    ----------
    n_workers : int
        Worker processes.
    scheduling : {"static", "dynamic"}
        ``static`` pre-splits the batch into one chunk per worker;
        ``dynamic`` submits tasks individually so fast workers take more.
    progress : bool
        Show a progress bar per batch.
    """

    name = "pool"

    def __init__(self, n_workers: int, scheduling: str = "static", progress: bool = False):
        super().__init__(progress)
        if scheduling not in ("static", "dynamic"):
            raise ValueError(f"scheduling must be 'static' or 'dynamic', got {scheduling!r}")
        self.n_workers = n_workers
        self.scheduling = scheduling
        self._executor: ProcessPoolExecutor | None = None

    def _pool(self) -> ProcessPoolExecutor:
        if self._executor is None:
            self._executor = ProcessPoolExecutor(
                max_workers=self.n_workers,
                initializer=limit_threads,
                initargs=(1,),
            )
            log.debug("Started process pool with %d workers", self.n_workers)
        return self._executor

    def execute(self, task_ids: Sequence[int], worker_fn: WorkerFn) -> list[Any]:
        results: dict[int, Any] = {}
        pool = self._pool()
        with ProgressTracker(len(task_ids), self.name, self.progress) as tracker:
            if self.scheduling == "static":
                futures = {
                    pool.submit(run_chunk, worker_fn, chunk): chunk
                    for chunk in split_tasks(task_ids, self.n_workers)
                }
            else:
                futures = {pool.submit(run_one, worker_fn, tid): [tid] for tid in task_ids}

            for future in as_completed(futures):
                ids = futures[future]
                try:
                    value = future.result()
                except BrokenProcessPool as exc:
                    log.error("Process pool broke while running tasks %s: %s", ids, exc)
                    outcomes = [None] * len(ids)
                    self._reset()
                except Exception as exc:
                    log.warning("Tasks %s failed: %s", ids, exc)
                    outcomes = [None] * len(ids)
                else:
                    outcomes = value if self.scheduling == "static" else [value]
                for tid, outcome in zip(ids, outcomes, strict=True):
                    results[tid] = outcome
                    tracker.update(1, success=_succeeded(outcome))
        return [results.get(tid) for tid in task_ids]

    def _reset(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=False, cancel_futures=True)
            self._executor = None

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None


# =============================================================================
# Remote batch jobs
# =============================================================================


@dataclass
class JobHandle:
    """A submitted job and the files it reads and writes."""

    job_id: str
    job_file: Path
    result_file: Path
    log_file: Path
    task_ids: list[int]
    process: subprocess.Popen | None = field(default=None, repr=False)


def _job_env() -> dict[str, str]:
    env = dict(os.environ)
    for var in THREAD_ENV_VARS:
        env[var] = "1"
    return env


class LocalSubmitter:
    """Run each job as a local ``python -m simcal.jobs`` subprocess."""

    name = "local"

    def submit(self, job_file: Path, result_file: Path, log_file: Path) -> JobHandle:
        with open(log_file, "w") as log_fh:
            proc = subprocess.Popen(
                [sys.executable, "-m", "simcal.jobs", str(job_file)],
                stdout=log_fh,
                stderr=subprocess.STDOUT,
                env=_job_env(),
            )
        return JobHandle(str(proc.pid), job_file, result_file, log_file, [], proc)

    def is_alive(self, handle: JobHandle) -> bool:
        return handle.process is not None and handle.process.poll() is None

    def cancel(self, handle: JobHandle) -> None:
        if self.is_alive(handle):
            handle.process.terminate()  # type: ignore[union-attr]


DEFAULT_SLURM_TEMPLATE = """\
#!/bin/bash
#SBATCH --job-name=${job_name}
#SBATCH --output=${log_file}
#SBATCH --nodes=${nodes}
#SBATCH --ntasks=1
#SBATCH --cpus-per-task=${cpus}
#SBATCH --mem=${memory}
#SBATCH --time=${walltime}
${extra_directives}
${thread_exports}
${python} -m simcal.jobs ${job_file}
"""

_SLURM_DONE_STATES = {
    "BOOT_FAIL",
    "CANCELLED",
    "COMPLETED",
    "DEADLINE",
    "FAILED",
    "NODE_FAIL",
    "OUT_OF_MEMORY",
    "PREEMPTED",
    "TIMEOUT",
}


class SlurmSubmitter:
    """
    Submit each job with ``sbatch`` and poll it with ``squeue``.

    Parameters
    ----------
    resources : ResourcesConfig
        Requested resources per job.
    template : str or Path, optional
        Job script template in ``string.Template`` syntax. Placeholders:
        job_name, log_file, nodes, cpus, memory, walltime, partition, account,
        extra_directives, thread_exports, python, job_file.

    Raises
    ------
    RuntimeError
        If ``sbatch`` or ``squeue`` is not on PATH.
    """

    name = "slurm"

    def __init__(self, resources: ResourcesConfig, template: str | Path | None = None):
        for cmd in ("sbatch", "squeue"):
            if shutil.which(cmd) is None:
                raise RuntimeError(f"Slurm backend requested but '{cmd}' is not on PATH")
        self.resources = resources
        text = DEFAULT_SLURM_TEMPLATE if template is None else Path(template).read_text()
        self.template = string.Template(text)

    def render(self, job_file: Path, log_file: Path) -> str:
        r = self.resources
        extra = []
        if r.partition:
            extra.append(f"#SBATCH --partition={r.partition}")
        if r.account:
            extra.append(f"#SBATCH --account={r.account}")
        mem_mb = int(parse_memory_gb(r.memory) * 1024)
        return self.template.safe_substitute(
            job_name=f"simcal_{job_file.stem}",
            log_file=log_file,
            nodes=r.nodes,
            cpus=r.cpus,
            memory=f"{mem_mb}M",
            walltime=r.walltime,
            partition=r.partition or "",
            account=r.account or "",
            extra_directives="\n".join(extra),
            thread_exports="\n".join(f"export {v}=1" for v in THREAD_ENV_VARS),
            python=sys.executable,
            job_file=job_file,
        )

    def submit(self, job_file: Path, result_file: Path, log_file: Path) -> JobHandle:
        script = job_file.with_suffix(".sh")
        script.write_text(self.render(job_file, log_file))
        proc = subprocess.run(
            ["sbatch", "--parsable", str(script)],
            capture_output=True,
            text=True,
            check=False,
        )
        if proc.returncode != 0:
            raise RuntimeError(f"sbatch failed ({proc.returncode}): {proc.stderr.strip()}")
        job_id = proc.stdout.strip().split(";")[0]
        return JobHandle(job_id, job_file, result_file, log_file, [])

    def is_alive(self, handle: JobHandle) -> bool:
        proc = subprocess.run(
            ["squeue", "-h", "-j", handle.job_id, "-o", "%T"],
            capture_output=True,
            text=True,
            check=False,
        )
        state = proc.stdout.strip().upper()
        if proc.returncode != 0 or not state:
            return False
        return state not in _SLURM_DONE_STATES

    def cancel(self, handle: JobHandle) -> None:
        subprocess.run(["scancel", handle.job_id], capture_output=True, check=False)


class BatchJobDispatcher(Dispatcher):
    """
    Remote batch-job backend.

    Each batch is split statically into ``n_workers`` jobs. A job is a pickled
    ``{"worker_fn", "task_ids", "result_file"}`` mapping; the job process
    writes a pickled outcome list to ``result_file``. Jobs run until the
    batch system ends them; there is no local timeout. A job that ends
    without a result file yields ``None`` for all of its tasks.

    Parameters
    ----------
    n_workers : int
        Jobs per batch.
    jobs_dir : Path
        Directory for job payloads, scripts, logs and results.
    submitter : LocalSubmitter or SlurmSubmitter
    poll_interval : float
        Seconds between status polls.
    progress : bool
        Show a progress bar per batch.
    keep_files : bool
        Keep job payloads and results after collection.
    """

    name = "batch"

    def __init__(
        self,
        n_workers: int,
        jobs_dir: Path,
        submitter: LocalSubmitter | SlurmSubmitter,
        poll_interval: float = 5.0,
        progress: bool = False,
        keep_files: bool = False,
    ):
        super().__init__(progress)
        self.n_workers = n_workers
        self.jobs_dir = Path(jobs_dir)
        self.submitter = submitter
        self.poll_interval = poll_interval
        self.keep_files = keep_files
        self._counter = itertools.count(1)

    def _write_job(
        self, tag: str, index: int, worker_fn: WorkerFn, chunk: list[int]
    ) -> tuple[Path, Path, Path]:
        stem = f"{tag}_job{index:04d}"
        job_file = self.jobs_dir / f"{stem}.pkl"
        result_file = self.jobs_dir / f"{stem}.result.pkl"
        log_file = self.jobs_dir / f"{stem}.log"
        with atomic_write(job_file) as tmp:
            with open(tmp, "wb") as f:
                pickle.dump(
                    {"worker_fn": worker_fn, "task_ids": chunk, "result_file": str(result_file)},
                    f,
                    protocol=pickle.HIGHEST_PROTOCOL,
                )
        return job_file, result_file, log_file

    @staticmethod
    def _read_result(handle: JobHandle) -> list[Any] | None:
        try:
            with open(handle.result_file, "rb") as f:
                outcomes = pickle.load(f)
        except (OSError, pickle.UnpicklingError, EOFError) as exc:
            log.error("Could not read result of job %s: %s", handle.job_id, exc)
            return None
        if len(outcomes) != len(handle.task_ids):
            log.error(
                "Job %s returned %d outcomes for %d tasks",
                handle.job_id,
                len(outcomes),
                len(handle.task_ids),
            )
            return None
        return outcomes

    def execute(self, task_ids: Sequence[int], worker_fn: WorkerFn) -> list[Any]:
        self.jobs_dir.mkdir(parents=True, exist_ok=True)
        tag = f"{datetime.now():%Y%m%d_%H%M%S}_b{next(self._counter):04d}"
        results: dict[int, Any] = {}
        pending: list[JobHandle] = []

        for i, chunk in enumerate(split_tasks(task_ids, self.n_workers)):
            job_file, result_file, log_file = self._write_job(tag, i, worker_fn, chunk)
            try:
                handle = self.submitter.submit(job_file, result_file, log_file)
            except (OSError, RuntimeError) as exc:
                log.error("Submitting job %s failed: %s", job_file.name, exc)
                results.update(dict.fromkeys(chunk))
                continue
            handle.task_ids = chunk
            pending.append(handle)
            log.debug("Submitted job %s with %d tasks", handle.job_id, len(chunk))

        with ProgressTracker(len(task_ids), self.name, self.progress) as tracker:
            if results:
                tracker.update(len(results), success=False)
            while pending:
                still_running = []
                for handle in pending:
                    if handle.result_file.exists():
                        outcomes = self._read_result(handle)
                    elif self.submitter.is_alive(handle):
                        still_running.append(handle)
                        continue
                    elif handle.result_file.exists():
                        outcomes = self._read_result(handle)
                    else:
                        log.error(
                            "Job %s ended without results; see %s",
                            handle.job_id,
                            handle.log_file,
                        )
                        outcomes = None
                    if outcomes is None:
                        outcomes = [None] * len(handle.task_ids)
                    for tid, outcome in zip(handle.task_ids, outcomes, strict=True):
                        results[tid] = outcome
                        tracker.update(1, success=_succeeded(outcome))
                    self._cleanup(handle)
                pending = still_running
                if pending:
                    time.sleep(self.poll_interval)

        return [results.get(tid) for tid in task_ids]

    def _cleanup(self, handle: JobHandle) -> None:
        if self.keep_files:
            return
        for p in (handle.job_file, handle.result_file, handle.job_file.with_suffix(".sh")):
            p.unlink(missing_ok=True)


# =============================================================================
# Backend validation
# =============================================================================

_MEMORY_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([KMGT]?)I?B?\s*$", re.IGNORECASE)
_MEMORY_TO_GB = {"K": 1 / 1024**2, "M": 1 / 1024, "G": 1.0, "T": 1024.0, "": 1 / 1024}


def parse_memory_gb(memory: str) -> float:
    """
    Parse a memory request like ``"4GB"``, ``"512M"`` or ``"1.5T"`` into GB.

    A bare number is read as megabytes, as Slurm does.

    Raises
    ------
    ValueError
        If the string is not a memory amount.
    """
    m = _MEMORY_RE.match(str(memory))
    if not m:
        raise ValueError(f"Cannot parse memory request {memory!r}")
    return float(m.group(1)) * _MEMORY_TO_GB[m.group(2).upper()]


def parse_walltime_seconds(walltime: str) -> int:
    """
    Parse a Slurm walltime (``MM``, ``MM:SS``, ``HH:MM:SS``, ``D-HH[:MM[:SS]]``).

    Raises
    ------
    ValueError
        If the string is not a walltime.
    """
    text = str(walltime).strip()
    days = 0
    if "-" in text:
        d, text = text.split("-", 1)
        if not d.isdigit():
            raise ValueError(f"Cannot parse walltime {walltime!r}")
        days = int(d)
        parts = text.split(":")
        if not all(p.isdigit() for p in parts) or len(parts) > 3:
            raise ValueError(f"Cannot parse walltime {walltime!r}")
        h, mi, s = ([int(p) for p in parts] + [0, 0])[:3]
    else:
        parts = text.split(":")
        if not all(p.isdigit() for p in parts) or not 1 <= len(parts) <= 3:
            raise ValueError(f"Cannot parse walltime {walltime!r}")
        nums = [int(p) for p in parts]
        if len(nums) == 1:
            h, mi, s = 0, nums[0], 0
        elif len(nums) == 2:
            h, mi, s = 0, nums[0], nums[1]
        else:
            h, mi, s = nums
    return ((days * 24 + h) * 60 + mi) * 60 + s


@dataclass
class BackendCheck:
    """Result of a backend pre-flight check."""

    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    info: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


def preflight_check(parallel: ParallelConfig) -> BackendCheck:
    """
    Check a parallel configuration against sane resource bounds.

    Parameters
    ----------
    parallel : ParallelConfig

    Returns
    -------
    BackendCheck
        Errors make the configuration unusable; warnings and info are
        advisory.
    """
    check = BackendCheck()
    n = parallel.n_workers
    if n < 1:
        check.errors.append(f"n_workers must be >= 1, got {n}")
    elif n > 10000:
        check.errors.append(f"n_workers must be <= 10000, got {n}")
    elif n > 1000:
        check.warnings.append(f"n_workers={n} is very large")

    if not parallel.enable or parallel.type != "batch":
        return check

    r = parallel.resources
    if r.cpus < 1:
        check.errors.append(f"resources.cpus must be >= 1, got {r.cpus}")
    elif r.cpus > 1024:
        check.errors.append(f"resources.cpus must be <= 1024, got {r.cpus}")
    elif r.cpus > 128:
        check.warnings.append(f"resources.cpus={r.cpus} exceeds typical node size")
    if r.nodes < 1:
        check.errors.append(f"resources.nodes must be >= 1, got {r.nodes}")

    try:
        mem = parse_memory_gb(r.memory)
    except ValueError as exc:
        check.errors.append(str(exc))
    else:
        if mem > 4096:
            check.errors.append(f"resources.memory {r.memory} exceeds 4096GB")
        elif mem > 500:
            check.warnings.append(f"resources.memory {r.memory} exceeds 500GB")

    try:
        seconds = parse_walltime_seconds(r.walltime)
    except ValueError as exc:
        check.errors.append(str(exc))
    else:
        if seconds > 30 * 86400:
            check.errors.append(f"resources.walltime {r.walltime} exceeds 30 days")
        elif seconds > 7 * 86400:
            check.warnings.append(f"resources.walltime {r.walltime} exceeds 7 days")

    if parallel.submitter == "slurm" and not r.partition:
        check.info.append("No Slurm partition set; the cluster default will be used")
    if parallel.template is not None and not Path(parallel.template).exists():
        check.errors.append(f"Job template not found: {parallel.template}")
    return check


def validate_backend(parallel: ParallelConfig) -> BackendCheck:
    """
    Run :func:`preflight_check`, log its findings and fail on errors.

    Raises
    ------
    ValueError
        If the configuration has errors.
    """
    check = preflight_check(parallel)
    for msg in check.info:
        log.info(msg)
    for msg in check.warnings:
        log.warning(msg)
    if check.errors:
        raise ValueError("Invalid parallel configuration: " + "; ".join(check.errors))
    return check


def make_dispatcher(parallel: ParallelConfig, jobs_dir: Path | None = None) -> Dispatcher:
    """
    Build the dispatcher selected by *parallel*.

    Parameters
    ----------
    parallel : ParallelConfig
    jobs_dir : Path, optional
        Required for the batch-job backend.

    Raises
    ------
    ValueError
        If the configuration fails pre-flight checks.
    """
    if not parallel.enable:
        return SequentialDispatcher(progress=parallel.progress)

    validate_backend(parallel)
    check_thread_control()

    if parallel.type == "pool":
        return PoolDispatcher(
            parallel.n_workers, scheduling=parallel.scheduling, progress=parallel.progress
        )

    if jobs_dir is None:
        raise ValueError("jobs_dir is required for the batch backend")
    submitter: LocalSubmitter | SlurmSubmitter
    if parallel.submitter == "slurm":
        submitter = SlurmSubmitter(parallel.resources, parallel.template)
    else:
        submitter = LocalSubmitter()
    return BatchJobDispatcher(
        parallel.n_workers,
        jobs_dir,
        submitter,
        poll_interval=parallel.poll_interval,
        progress=parallel.progress,
    )
