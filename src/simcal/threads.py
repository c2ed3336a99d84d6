"""Numeric thread-pool control for worker processes.

Every worker runs one simulation at a time; letting BLAS/OpenMP spawn their
own pools on top of a process pool oversubscribes the machine. Workers call
:func:`limit_threads` before their first task.
"""

from __future__ import annotations

import os

from threadpoolctl import threadpool_info, threadpool_limits

from simcal.logging import getLogger

log = getLogger(__name__)

THREAD_ENV_VARS = (
    "OMP_NUM_THREADS",
    "OPENBLAS_NUM_THREADS",
    "MKL_NUM_THREADS",
    "NUMEXPR_NUM_THREADS",
    "VECLIB_MAXIMUM_THREADS",
    "BLIS_NUM_THREADS",
    "NUMBA_NUM_THREADS",
    "TBB_NUM_THREADS",
)


def limit_threads(n_threads: int = 1) -> None:
    """
    Pin numeric libraries of the current process to *n_threads*.

    Environment variables cover libraries loaded later (and child
    processes); threadpoolctl covers pools that are already initialised.
    Used as the process-pool initializer and at the start of each remote job.
    """
    for var in THREAD_ENV_VARS:
        os.environ[var] = str(n_threads)
    threadpool_limits(limits=n_threads)


def check_thread_control() -> bool:
    """
    Report whether native thread pools can be controlled.

    Returns
    -------
    bool
        False when threadpoolctl finds no controllable library and no thread
        environment variable is set. A warning is logged in that case because
        workers may then oversubscribe the CPU.
    """
    pools = threadpool_info()
    if pools:
        for pool in pools:
            log.debug(
                "Thread pool %s (%s): %s threads",
                pool.get("internal_api"),
                pool.get("prefix"),
                pool.get("num_threads"),
            )
        return True
    if any(var in os.environ for var in THREAD_ENV_VARS):
        return True
    log.warning(
        "No controllable BLAS/OpenMP thread pool detected and no thread "
        "environment variable set; parallel workers may oversubscribe the CPU. "
        "Set OMP_NUM_THREADS=1 before starting Python to be safe."
    )
    return False
