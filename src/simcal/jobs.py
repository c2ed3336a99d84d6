"""
Entry point of a remote batch job.

Usage::

    python -m simcal.jobs path/to/job.pkl

The job file is a pickled mapping with ``worker_fn``, ``task_ids`` and
``result_file``. Each task runs in order; a failing task contributes ``None``.
The outcome list is pickled to ``result_file`` atomically, so the dispatcher
never reads a partial result.
"""

from __future__ import annotations

import argparse
import pickle
import sys
from pathlib import Path

from simcal.dispatch import run_chunk
from simcal.io import atomic_write
from simcal.logging import getLogger
from simcal.threads import limit_threads

log = getLogger(__name__)


def run_job(job_file: Path) -> int:
    """
    Execute one job file.

    Returns
    -------
    int
        Number of tasks that produced an outcome.
    """
    with open(job_file, "rb") as f:
        job = pickle.load(f)

    task_ids = list(job["task_ids"])
    log.info("Job %s: running %d tasks", job_file.name, len(task_ids))
    outcomes = run_chunk(job["worker_fn"], task_ids)

    with atomic_write(Path(job["result_file"])) as tmp:
        with open(tmp, "wb") as f:
            pickle.dump(outcomes, f, protocol=pickle.HIGHEST_PROTOCOL)

    n_ok = sum(o is not None for o in outcomes)
    log.info("Job %s: %d/%d tasks returned", job_file.name, n_ok, len(task_ids))
    return n_ok


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="python -m simcal.jobs", description="Run one simcal batch job."
    )
    parser.add_argument("job_file", type=Path, help="Pickled job payload")
    args = parser.parse_args(argv)

    limit_threads(1)
    run_job(args.job_file)
    return 0


if __name__ == "__main__":
    sys.exit(main())
