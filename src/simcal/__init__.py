"""
simcal - Adaptive Batch Calibration Engine
==========================================

simcal calibrates stochastic simulation models against observed time series
by running large ensembles of independent simulations in batches, scoring
each with a likelihood, and stopping once effective-sample-size targets are
met. Batches run in-process, on a local process pool or as remote batch
jobs; progress is checkpointed after every batch so runs can be resumed.

Quick Start
-----------
>>> import simcal
>>> from simcal import _testing as stubs
>>> summary = simcal.run_calibration(
...     config={},
...     priors=stubs.GROWTH_PRIORS,
...     observed=stubs.growth_observed(),
...     model=stubs.growth_model,
...     likelihood=stubs.gaussian_likelihood,
...     sampler=stubs.uniform_sampler,
...     dir_output="./demo",
...     control={"calibration": {"n_simulations": 100}},
... )
>>> summary.converged

Control objects
---------------
Every component receives an immutable :class:`Control` built by
:func:`load_control` from the package defaults, a YAML file or mapping, and
per-section keyword overrides:

>>> control = simcal.load_control("control.yml", parallel={"enable": True})

Public API
----------
run_calibration
    Full workflow: batches, consolidation, weighting and diagnostics.
load_control, Control
    Validated configuration.
BatchScheduler, decide_next_batch
    Batch loop and its phase rules.
SequentialDispatcher, PoolDispatcher, BatchJobDispatcher, make_dispatcher
    Task dispatch backends.
run_simulation, TaskPayload
    Simulation worker.
consolidate, annotate
    Result aggregation.
calc_ess, akaike_weights, adaptive_gibbs_weights, select_best_subset
    Convergence statistics.
"""

from __future__ import annotations

__version__: str = "0.1.0"

from . import logging  # noqa: E402
from .aggregate import annotate, combine, consolidate  # noqa: E402
from .checkpoint import RunLock, RunState, load_state, save_state  # noqa: E402
from .config import Control, io_preset, load_control  # noqa: E402
from .convergence import (  # noqa: E402
    ConvergenceTier,
    SubsetSelectionResult,
    adaptive_gibbs_weights,
    agreement_index,
    akaike_weights,
    calc_ess,
    compute_weights,
    cv_weights,
    default_subset_tiers,
    grid_search_best_subset,
    parameter_ess,
    select_best_subset,
)
from .dispatch import (  # noqa: E402
    BatchJobDispatcher,
    Dispatcher,
    PoolDispatcher,
    SequentialDispatcher,
    make_dispatcher,
    preflight_check,
)
from .runner import RunSummary, run_calibration  # noqa: E402
from .scheduler import BatchDecision, BatchScheduler, decide_next_batch  # noqa: E402
from .worker import SimulationResult, TaskPayload, run_simulation  # noqa: E402

__all__ = [
    "__version__",
    "logging",
    # Workflow
    "RunSummary",
    "run_calibration",
    # Configuration
    "Control",
    "io_preset",
    "load_control",
    # State
    "RunLock",
    "RunState",
    "load_state",
    "save_state",
    # Scheduling and dispatch
    "BatchDecision",
    "BatchJobDispatcher",
    "BatchScheduler",
    "Dispatcher",
    "PoolDispatcher",
    "SequentialDispatcher",
    "decide_next_batch",
    "make_dispatcher",
    "preflight_check",
    # Worker
    "SimulationResult",
    "TaskPayload",
    "run_simulation",
    # Aggregation
    "annotate",
    "combine",
    "consolidate",
    # Convergence
    "ConvergenceTier",
    "SubsetSelectionResult",
    "adaptive_gibbs_weights",
    "agreement_index",
    "akaike_weights",
    "calc_ess",
    "compute_weights",
    "cv_weights",
    "default_subset_tiers",
    "grid_search_best_subset",
    "parameter_ess",
    "select_best_subset",
]
