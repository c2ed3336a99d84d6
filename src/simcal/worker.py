"""
Simulation worker.

Runs one simulation task end to end: sample a parameter vector once, run the
model ``n_iterations`` times with derived seeds, score each iteration, collapse
the iterations into one row and write it as a result shard.

Everything a worker needs travels in a :class:`TaskPayload`, so the same
function runs in-process, in a process pool or inside a remote job.
"""

from __future__ import annotations

import gc
import math
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import numpy as np
import pandas as pd
from scipy.special import logsumexp

from simcal.config.schema import IOConfig
from simcal.io import shard_name, timeseries_name, write_table
from simcal.logging import getLogger
from simcal.typing import (
    LikelihoodFunction,
    ParameterSampler,
    Releasable,
    Series,
    SimulationModel,
)

log = getLogger(__name__)

RESERVED_COLUMNS = ("sim", "iter", "seed_sim", "seed_iter", "likelihood")
RELEASE_EVERY = 10


@dataclass(slots=True, frozen=True)
class TaskPayload:
    """
    Self-contained inputs of a simulation task.

    Parameters
    ----------
    model, likelihood, sampler
        Injected collaborators; must be picklable for parallel backends.
    config : Mapping
        Base model configuration forwarded to the sampler.
    priors : Mapping
        Prior specification forwarded to the sampler.
    observed : Any
        Observed data forwarded to the likelihood.
    n_iterations : int
        Stochastic replicates per task.
    sampling : Mapping
        Per-parameter sampling flags.
    likelihood_config : Mapping
        Options forwarded to the likelihood.
    shard_dir : Path
        Destination of result shards.
    io : IOConfig
        Shard format.
    timeseries_dir : Path or None
        Destination of time-series shards; None disables them.
    """

    model: SimulationModel
    likelihood: LikelihoodFunction
    sampler: ParameterSampler
    config: Mapping[str, Any]
    priors: Mapping[str, Any]
    observed: Any
    n_iterations: int
    sampling: Mapping[str, bool]
    likelihood_config: Mapping[str, Any]
    shard_dir: Path
    io: IOConfig = field(default_factory=IOConfig)
    timeseries_dir: Path | None = None


@dataclass(slots=True, frozen=True)
class IterationRecord:
    """One scored replicate of a task."""

    sim_id: int
    iteration: int
    seed_iter: int
    likelihood: float
    params: Mapping[str, float]


@dataclass(slots=True)
class SimulationResult:
    """Outcome of one task as reported back to the dispatcher."""

    sim_id: int
    success: bool
    likelihood: float = math.nan
    n_finite: int = 0
    shard_path: Path | None = None
    error: str | None = None


def iteration_seed(sim_id: int, iteration: int, n_iterations: int) -> int:
    """
    Seed of replicate *iteration* (1-based) of task *sim_id*.

    ``(sim_id - 1) * n_iterations + iteration`` maps each (task, replicate)
    pair to a distinct positive integer.

    Raises
    ------
    ValueError
        If *iteration* is outside ``1..n_iterations`` or *sim_id* < 1.
    """
    if sim_id < 1:
        raise ValueError(f"sim_id must be >= 1, got {sim_id}")
    if not 1 <= iteration <= n_iterations:
        raise ValueError(f"iteration must be in 1..{n_iterations}, got {iteration}")
    return (sim_id - 1) * n_iterations + iteration


def log_mean_exp(values: Any) -> float:
    """
    ``log(mean(exp(values)))`` over the finite entries, computed stably.

    Returns NaN when no entry is finite.
    """
    x = np.asarray(values, dtype=np.float64)
    x = x[np.isfinite(x)]
    if x.size == 0:
        return math.nan
    return float(logsumexp(x) - np.log(x.size))


def release_resources(model: Any) -> None:
    """Call the model's ``release()`` hook if it has one, then collect garbage."""
    if isinstance(model, Releasable):
        model.release()
    gc.collect()


def collapse_iterations(records: list[IterationRecord]) -> dict[str, Any]:
    """
    Collapse replicate records into one result row.

    The likelihood is the log-mean-exp of finite replicate likelihoods and
    parameters are averaged over the same replicates. When no replicate is
    finite the first record is kept as-is (NaN likelihood).
    """
    if not records:
        raise ValueError("cannot collapse an empty record list")

    first = records[0]
    row: dict[str, Any] = {
        "sim": first.sim_id,
        "iter": 1,
        "seed_sim": first.sim_id,
        "seed_iter": first.seed_iter,
    }
    finite = [r for r in records if math.isfinite(r.likelihood)]
    if not finite:
        row["likelihood"] = math.nan
        row.update({k: float(v) for k, v in first.params.items()})
        return row

    row["likelihood"] = log_mean_exp([r.likelihood for r in finite])
    for name in first.params:
        row[name] = float(np.mean([float(r.params[name]) for r in finite]))
    return row


def _as_named_series(output: Series) -> dict[str, np.ndarray]:
    if isinstance(output, Mapping):
        items = output.items()
    else:
        items = [("value", output)]
    named = {}
    for name, arr in items:
        a = np.asarray(arr, dtype=np.float64)
        named[name] = a.reshape(1, -1) if a.ndim == 1 else a
    return named


def timeseries_frame(sim_id: int, outputs: list[Series]) -> pd.DataFrame:
    """
    Mean model output across replicates in long format.

    Columns are ``sim, iter, j, t`` followed by one column per series, where
    ``j`` indexes locations and ``t`` time steps.
    """
    named = [_as_named_series(o) for o in outputs]
    names = list(named[0])
    means = {n: np.nanmean(np.stack([d[n] for d in named]), axis=0) for n in names}
    n_loc, n_time = means[names[0]].shape
    jj, tt = np.meshgrid(np.arange(n_loc), np.arange(n_time), indexing="ij")
    frame = {
        "sim": np.full(n_loc * n_time, sim_id, dtype=np.int64),
        "iter": np.ones(n_loc * n_time, dtype=np.int64),
        "j": jj.ravel(),
        "t": tt.ravel(),
    }
    for n in names:
        frame[n] = means[n].ravel()
    return pd.DataFrame(frame)


def run_simulation(sim_id: int, payload: TaskPayload) -> SimulationResult:
    """
    Execute simulation task *sim_id*.

    Parameters
    ----------
    sim_id : int
        Positive task id; also the sampling seed.
    payload : TaskPayload
        Collaborators, data and output settings.

    Returns
    -------
    SimulationResult
        ``success=False`` when parameter sampling failed; no shard is
        written in that case. Iteration failures only mark that iteration.
    """
    k = payload.n_iterations
    try:
        params = dict(
            payload.sampler(payload.config, payload.priors, sim_id, payload.sampling)
        )
        clash = set(params) & set(RESERVED_COLUMNS)
        if clash:
            raise ValueError(f"parameter names clash with result columns: {sorted(clash)}")
    except Exception as exc:
        log.warning("Simulation %d: parameter sampling failed: %s", sim_id, exc)
        return SimulationResult(sim_id=sim_id, success=False, error=f"sampling: {exc}")

    records: list[IterationRecord] = []
    outputs: list[Series] = []
    for j in range(1, k + 1):
        seed = iteration_seed(sim_id, j, k)
        value = math.nan
        try:
            estimated = payload.model(params, seed)
        except Exception as exc:
            log.warning("Simulation %d iteration %d: model failed: %s", sim_id, j, exc)
        else:
            if payload.timeseries_dir is not None:
                outputs.append(estimated)
            try:
                value = float(
                    payload.likelihood(
                        payload.observed, estimated, payload.likelihood_config
                    )
                )
            except Exception as exc:
                log.warning(
                    "Simulation %d iteration %d: likelihood failed: %s", sim_id, j, exc
                )
                value = math.nan
            del estimated
        log.deep("Simulation %d iteration %d seed %d: %.6g", sim_id, j, seed, value)
        records.append(IterationRecord(sim_id, j, seed, value, params))
        if j % RELEASE_EVERY == 0:
            release_resources(payload.model)

    row = collapse_iterations(records)
    n_finite = sum(math.isfinite(r.likelihood) for r in records)

    shard = payload.shard_dir / shard_name(sim_id, payload.io)
    write_table(pd.DataFrame([row]), shard, payload.io)
    if outputs and payload.timeseries_dir is not None:
        write_table(
            timeseries_frame(sim_id, outputs),
            payload.timeseries_dir / timeseries_name(sim_id, payload.io),
            payload.io,
        )
    release_resources(payload.model)

    return SimulationResult(
        sim_id=sim_id,
        success=True,
        likelihood=row["likelihood"],
        n_finite=n_finite,
        shard_path=shard,
    )
