"""
Calibration workflow.

:func:`run_calibration` wires the components together for one run:

1. write setup files (control, priors, base config, run metadata)
2. run the batch scheduler over the selected dispatcher
3. consolidate result shards into one flagged table
4. compute per-parameter ESS, select the best subset and fill weights
5. write diagnostics and the run summary
"""

from __future__ import annotations

import functools
import math
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import numpy as np
import pandas as pd

from simcal import __version__
from simcal.aggregate import consolidate
from simcal.checkpoint import RunLock
from simcal.config import Control, control_to_dict, load_control
from simcal.convergence import (
    SubsetSelectionResult,
    compute_weights,
    convergence_diagnostics,
    default_subset_tiers,
    delta_aic,
    parameter_ess,
    select_best_subset,
)
from simcal.dispatch import Dispatcher, make_dispatcher
from simcal.io import (
    RunDirs,
    check_disk_space,
    cluster_metadata,
    list_shards,
    write_csv,
    write_json,
    write_table,
)
from simcal.logging import configure_logging, getLogger
from simcal.scheduler import BatchScheduler, ESSConvergenceCheck
from simcal.typing import (
    ConvergenceCheck,
    LikelihoodFunction,
    ParameterSampler,
    SimulationModel,
)
from simcal.worker import TaskPayload, run_simulation

log = getLogger(__name__)


@dataclass
class RunSummary:
    """
    Outcome of :func:`run_calibration`.

    Attributes
    ----------
    batches : int
        Batches dispatched (including earlier sessions of a resumed run).
    sims_total : int
        Simulations dispatched.
    sims_success : int
        Simulations with a result row.
    converged : bool
        Auto mode: the ESS targets were met before the ceiling. Fixed mode:
        a best-subset tier was satisfied.
    runtime_min : float
        Wall time of this session in minutes.
    mode : str
    subset_tier : str
        Tier that produced the best subset, or ``"fallback"``.
    subset_size : int
    files : dict
        Output files by name.
    """

    batches: int
    sims_total: int
    sims_success: int
    converged: bool
    runtime_min: float
    mode: str = "auto"
    subset_tier: str = "fallback"
    subset_size: int = 0
    files: dict[str, Path] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "batches": self.batches,
            "sims_total": self.sims_total,
            "sims_success": self.sims_success,
            "converged": self.converged,
            "runtime_min": self.runtime_min,
            "mode": self.mode,
            "subset_tier": self.subset_tier,
            "subset_size": self.subset_size,
            "files": {k: str(v) for k, v in self.files.items()},
        }


def _likelihood_config(control: Control) -> dict[str, Any]:
    lik = control.likelihood
    return {
        **lik.options,
        "floor_likelihood": lik.floor_likelihood,
        "enable_guardrails": lik.enable_guardrails,
    }


def _discover_param_names(
    sampler: ParameterSampler,
    config: Mapping[str, Any],
    priors: Mapping[str, Any],
    control: Control,
) -> list[str]:
    try:
        params = sampler(config, priors, 1, control.sampling.flags)
    except Exception as exc:
        raise RuntimeError(f"Could not determine parameter names from sampler: {exc}") from exc
    return list(params)


def write_setup(
    dirs: RunDirs,
    control: Control,
    config: Mapping[str, Any],
    priors: Mapping[str, Any],
    param_names: Sequence[str],
) -> dict[str, Path]:
    """Record the inputs of a run under ``0_setup``."""
    files = {
        "control": dirs.setup / "control.json",
        "priors": dirs.setup / "priors.json",
        "config_base": dirs.setup / "config_base.json",
        "run_metadata": dirs.setup / "run_metadata.json",
    }
    write_json(control_to_dict(control), files["control"], versioned=True)
    write_json(dict(priors), files["priors"])
    write_json(dict(config), files["config_base"])
    write_json(
        {
            "simcal_version": __version__,
            "mode": control.mode,
            "param_names": list(param_names),
            **cluster_metadata(),
        },
        files["run_metadata"],
        versioned=True,
    )
    return files


def _subset_summary(
    result: SubsetSelectionResult, control: Control, temperature: float
) -> pd.DataFrame:
    m = result.metrics
    return pd.DataFrame(
        [
            {
                "min_search_size": control.targets.min_best_subset,
                "max_search_size": control.targets.max_best_subset,
                "optimal_size": result.size,
                "optimal_percentile": result.percentile,
                "optimization_tier": result.tier_name,
                "optimization_method": "grid_search",
                "n_selected": result.size,
                "ess_best": m.ess,
                "a_best": m.agreement,
                "cvw_best": m.cvw,
                "gibbs_temperature": temperature,
                "meets_all_criteria": result.converged,
                "timestamp": pd.Timestamp.now().isoformat(),
            }
        ]
    )


def _convergence_results(df: pd.DataFrame) -> pd.DataFrame:
    valid = df["is_valid"].to_numpy(dtype=bool)
    lik = df["likelihood"].to_numpy(dtype=np.float64)
    d = np.full(len(df), np.nan)
    if valid.any():
        d[valid] = delta_aic(lik[valid])
    n_best = int(df["is_best_subset"].sum())
    return pd.DataFrame(
        {
            "sim": df["sim"].to_numpy(),
            "seed": df["seed_sim"].to_numpy(),
            "likelihood": lik,
            "aic": -2.0 * lik,
            "delta_aic": d,
            "w": df["weight_best"].to_numpy() * n_best,
            "w_tilde": df["weight_best"].to_numpy(),
            "w_retained": df["weight_retained"].to_numpy(),
            "is_retained": df["is_retained"].to_numpy(),
            "is_best_subset": df["is_best_subset"].to_numpy(),
        }
    )


def run_calibration(
    config: Mapping[str, Any],
    priors: Mapping[str, Any],
    observed: Any,
    model: SimulationModel,
    likelihood: LikelihoodFunction,
    sampler: ParameterSampler,
    dir_output: str | Path,
    control: Control | Mapping[str, Any] | str | Path | None = None,
    resume: bool = False,
    param_names: Sequence[str] | None = None,
    dispatcher: Dispatcher | None = None,
    convergence_check: ConvergenceCheck | None = None,
) -> RunSummary:
    """
    Run a full calibration.

    Parameters
    ----------
    config : Mapping
        Base model configuration, forwarded to the sampler.
    priors : Mapping
        Prior specification, forwarded to the sampler.
    observed : Any
        Observed data, forwarded to the likelihood.
    model, likelihood, sampler : callable
        Injected collaborators (see :mod:`simcal.typing`).
    dir_output : str or Path
        Root of the output tree.
    control : Control, mapping or path, optional
        Run control; merged over the package defaults.
    resume : bool
        Continue from saved state and existing shards.
    param_names : sequence of str, optional
        Parameters to track. Defaults to the keys the sampler returns for
        seed 1.
    dispatcher : Dispatcher, optional
        Overrides the backend selected by ``control.parallel``.
    convergence_check : callable, optional
        Overrides the per-parameter ESS check of auto mode.

    Returns
    -------
    RunSummary

    Raises
    ------
    ValueError
        Invalid control or backend configuration.
    RuntimeError
        Another run holds the output directory, or no simulation succeeded.
        In the latter case ``summary.json`` is still written with zero
        successes.
    """
    t0 = time.time()
    control = control if isinstance(control, Control) else load_control(control)
    configure_logging(control.logging)

    dirs = RunDirs(Path(dir_output))
    if control.paths.clean_output and not resume:
        log.info("Cleaning output directory %s", dirs.root)
        dirs.clean()
    dirs.create()
    check_disk_space(dirs.root, control.paths.min_free_disk_mb)

    with RunLock(dirs.state_file.with_suffix(".lock")):
        names = list(param_names) if param_names is not None else _discover_param_names(
            sampler, config, priors, control
        )
        files = write_setup(dirs, control, config, priors, names)

        log.info(
            "Starting %s calibration in %s (%d parameters, %d iterations per simulation)",
            control.mode,
            dirs.root,
            len(names),
            control.calibration.n_iterations,
        )
        payload = TaskPayload(
            model=model,
            likelihood=likelihood,
            sampler=sampler,
            config=config,
            priors=priors,
            observed=observed,
            n_iterations=control.calibration.n_iterations,
            sampling=control.sampling.flags,
            likelihood_config=_likelihood_config(control),
            shard_dir=dirs.shards,
            io=control.io,
            timeseries_dir=dirs.timeseries if control.io.save_timeseries else None,
        )
        worker_fn = functools.partial(run_simulation, payload=payload)
        consolidated = dirs.consolidated(control.io)

        if convergence_check is None:
            convergence_check = ESSConvergenceCheck(dirs.shards, names, consolidated)

        with dispatcher or make_dispatcher(control.parallel, dirs.jobs) as backend:
            scheduler = BatchScheduler(
                control,
                backend,
                worker_fn,
                state_path=dirs.state_file,
                shard_dir=dirs.shards,
                convergence_check=convergence_check,
                consolidated=consolidated,
            )
            state = scheduler.run(resume=resume)

        if not list_shards(dirs.shards) and not consolidated.exists():
            files["summary"] = dirs.results / "summary.json"
            failed = RunSummary(
                batches=state.batch_number,
                sims_total=state.total_sims_run,
                sims_success=0,
                converged=False,
                runtime_min=(time.time() - t0) / 60.0,
                mode=state.mode,
                files=files,
            )
            write_json(failed.to_dict(), files["summary"], versioned=True)
            log.error(
                "No simulation succeeded in %d batches; summary written to %s",
                state.batch_number,
                files["summary"],
            )
            raise RuntimeError("No simulation produced a result; nothing to consolidate")

        df = consolidate(
            dirs.shards,
            consolidated,
            control.io,
            sentinel=control.likelihood.floor_likelihood,
            iqr_multiplier=control.weights.iqr_multiplier,
        )
        valid = df.loc[df["is_valid"]]

        targets = control.targets
        ess_df = parameter_ess(valid, names, method=targets.ess_method, target=targets.ess_param)
        files["parameter_ess"] = dirs.diagnostics / "parameter_ess.csv"
        write_csv(ess_df, files["parameter_ess"])

        tiers = default_subset_tiers(targets.ess_best, targets.a_best, targets.cvw_best)
        subset = select_best_subset(
            df,
            tiers,
            targets.min_best_subset,
            targets.max_best_subset,
            method=targets.ess_method,
            cap=control.weights.akaike_cap_best,
        )

        df, weight_info = compute_weights(
            df,
            subset.subset,
            target_ess=targets.ess_param,
            floor=control.weights.floor,
            cap_retained=control.weights.akaike_cap_retained,
            cap_best=control.weights.akaike_cap_best,
            method=targets.ess_method,
        )
        write_table(df, consolidated, control.io)
        files["simulations"] = consolidated

        files["subset_selection"] = dirs.diagnostics / "subset_selection_summary.csv"
        write_csv(
            _subset_summary(subset, control, weight_info["temperature"]),
            files["subset_selection"],
        )

        files["convergence_results"] = (
            dirs.diagnostics / f"convergence_results{consolidated.suffix}"
        )
        write_table(_convergence_results(df), files["convergence_results"], control.io)

        diagnostics = convergence_diagnostics(
            ess_df, subset, targets, n_total=len(df), n_valid=len(valid)
        )
        diagnostics["weights"] = weight_info
        diagnostics["scheduler"] = {
            "mode": state.mode,
            "phase": state.phase,
            "converged": state.converged,
            "ess_tracking": state.ess_tracking,
        }
        files["convergence_diagnostics"] = dirs.diagnostics / "convergence_diagnostics.json"
        write_json(diagnostics, files["convergence_diagnostics"], versioned=True)

        converged = state.converged if state.mode == "auto" else subset.converged
        summary = RunSummary(
            batches=state.batch_number,
            sims_total=state.total_sims_run,
            sims_success=int(len(df)),
            converged=bool(converged),
            runtime_min=(time.time() - t0) / 60.0,
            mode=state.mode,
            subset_tier=subset.tier_name,
            subset_size=subset.size,
            files=files,
        )
        files["summary"] = dirs.results / "summary.json"
        write_json(summary.to_dict(), files["summary"], versioned=True)

    best = df.loc[df["is_best_model"]]
    best_lik = float(best["likelihood"].iloc[0]) if len(best) else math.nan
    log.info(
        "Calibration finished: %d batches, %d/%d simulations, converged=%s, "
        "best likelihood %.4g, %.1f min",
        summary.batches,
        summary.sims_success,
        summary.sims_total,
        summary.converged,
        best_lik,
        summary.runtime_min,
    )
    return summary
