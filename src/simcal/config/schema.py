"""
Configuration dataclasses for calibration runs.

This module defines the ``Control`` dataclass and its sections. A Control
instance is built by :func:`simcal.config.load_control` after merging the
package defaults, a user file or mapping, and keyword overrides, and after
the merged mapping passed :class:`ControlValidator`.

Design Notes
------------
- Immutable (frozen=True) so one control object can be shared by the
  scheduler, dispatcher and workers without copies drifting apart
- Memory-efficient (slots=True)
- Every field has a default mirroring ``defaults.yml``
- No validation here; it happens once in ControlValidator

See Also
--------
ControlValidator : Centralized validation for control parameters
simcal.config.load_control : Creates Control from merged parameters
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass(slots=True, frozen=True)
class CalibrationConfig:
    """
    Batch sizing and stopping parameters.

    Parameters
    ----------
    n_simulations : int or None
        Fixed simulation target. ``None`` selects the adaptive (auto) mode.
    n_iterations : int
        Stochastic replicates per simulation (same parameters, new seeds).
    max_simulations : int
        Hard ceiling on simulations in auto mode.
    batch_size : int
        Batch size during the calibration phase and in fixed mode.
    min_batches : int
        Minimum calibration batches before the ESS trend is trusted.
    max_batches : int
        Maximum calibration batches before moving to the predictive phase.
    target_r2 : float
        R-squared of the log-log ESS fit that ends calibration early.
    fine_tuning_reserve : int
        Simulations kept back from the predictive batch for fine tuning.
    """

    n_simulations: int | None = None
    n_iterations: int = 3
    max_simulations: int = 100000
    batch_size: int = 500
    min_batches: int = 5
    max_batches: int = 8
    target_r2: float = 0.90
    fine_tuning_reserve: int = 250


@dataclass(slots=True, frozen=True)
class SamplingConfig:
    """Per-parameter sampling switches forwarded to the parameter sampler."""

    flags: dict[str, bool] = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class LikelihoodConfig:
    """
    Likelihood options.

    Parameters
    ----------
    floor_likelihood : float
        Sentinel value a likelihood returns for a rejected fit. Rows carrying
        it are treated as invalid during aggregation.
    enable_guardrails : bool
        Forwarded to the likelihood function.
    options : dict
        Free-form component toggles and weights forwarded untouched.
    """

    floor_likelihood: float = -999999999.0
    enable_guardrails: bool = True
    options: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class TargetsConfig:
    """
    Convergence targets.

    Parameters
    ----------
    ess_param : float
        Per-parameter ESS target.
    ess_param_prop : float
        Fraction of parameters that must meet ``ess_param``.
    ess_best : float
        ESS target of the best subset.
    a_best : float
        Agreement index target of the best subset.
    cvw_best : float
        Upper bound on the coefficient of variation of best-subset weights.
    min_best_subset, max_best_subset : int
        Search range for the best subset size.
    ess_method : {"kish", "perplexity"}
        ESS estimator.
    """

    ess_param: float = 500.0
    ess_param_prop: float = 0.95
    ess_best: float = 500.0
    a_best: float = 0.95
    cvw_best: float = 0.7
    min_best_subset: int = 30
    max_best_subset: int = 1000
    ess_method: str = "perplexity"


@dataclass(slots=True, frozen=True)
class FineTuningConfig:
    """Batch size of each fine-tuning tier, keyed by tier name."""

    batch_sizes: dict[str, int] = field(
        default_factory=lambda: {
            "massive": 1000,
            "large": 750,
            "standard": 500,
            "precision": 350,
            "final": 250,
        }
    )


@dataclass(slots=True, frozen=True)
class WeightsConfig:
    """
    Weighting parameters.

    Parameters
    ----------
    floor : float
        Minimum weight after adaptive tempering.
    iqr_multiplier : float
        Tukey fence multiplier for outlier detection.
    akaike_cap_retained : float
        Delta-AIC truncation for retained-row weights.
    akaike_cap_best : float
        Delta-AIC truncation for best-subset weights.
    """

    floor: float = 1e-15
    iqr_multiplier: float = 1.5
    akaike_cap_retained: float = 25.0
    akaike_cap_best: float = 4.0


@dataclass(slots=True, frozen=True)
class ResourcesConfig:
    """Per-job resources requested from a batch scheduler."""

    nodes: int = 1
    cpus: int = 1
    memory: str = "4GB"
    walltime: str = "24:00:00"
    partition: str | None = None
    account: str | None = None


@dataclass(slots=True, frozen=True)
class ParallelConfig:
    """
    Dispatcher selection.

    Parameters
    ----------
    enable : bool
        False runs every task in-process.
    n_workers : int
        Pool processes or remote jobs per batch.
    type : {"pool", "batch"}
        Local process pool or remote batch jobs.
    scheduling : {"static", "dynamic"}
        Pre-chunked or on-demand task assignment for the pool.
    progress : bool
        Show a progress bar while a batch runs.
    submitter : {"local", "slurm"}
        Job submission mechanism for ``type="batch"``.
    template : str or None
        Path of a job script template (``string.Template`` syntax).
    poll_interval : float
        Seconds between job status polls.
    resources : ResourcesConfig
        Resources requested per job.
    """

    enable: bool = False
    n_workers: int = 1
    type: str = "pool"
    scheduling: str = "static"
    progress: bool = True
    submitter: str = "local"
    template: str | None = None
    poll_interval: float = 5.0
    resources: ResourcesConfig = field(default_factory=ResourcesConfig)


@dataclass(slots=True, frozen=True)
class IOConfig:
    """Table format and compression of shards and consolidated outputs."""

    format: str = "parquet"
    compression: str | None = "zstd"
    compression_level: int | None = 3
    load_method: str = "streaming"
    save_timeseries: bool = False


@dataclass(slots=True, frozen=True)
class PathsConfig:
    """Output directory handling."""

    clean_output: bool = False
    min_free_disk_mb: int = 100


@dataclass(slots=True, frozen=True)
class LoggingConfig:
    """Log level of the ``simcal`` logger tree, with per-module overrides."""

    level: str = "INFO"
    verbose: bool = True
    modules: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class Control:
    """
    Immutable control object threaded through every component.

    Parameters
    ----------
    calibration : CalibrationConfig
    sampling : SamplingConfig
    likelihood : LikelihoodConfig
    targets : TargetsConfig
    fine_tuning : FineTuningConfig
    weights : WeightsConfig
    parallel : ParallelConfig
    io : IOConfig
    paths : PathsConfig
    logging : LoggingConfig
    """

    calibration: CalibrationConfig = field(default_factory=CalibrationConfig)
    sampling: SamplingConfig = field(default_factory=SamplingConfig)
    likelihood: LikelihoodConfig = field(default_factory=LikelihoodConfig)
    targets: TargetsConfig = field(default_factory=TargetsConfig)
    fine_tuning: FineTuningConfig = field(default_factory=FineTuningConfig)
    weights: WeightsConfig = field(default_factory=WeightsConfig)
    parallel: ParallelConfig = field(default_factory=ParallelConfig)
    io: IOConfig = field(default_factory=IOConfig)
    paths: PathsConfig = field(default_factory=PathsConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @property
    def mode(self) -> str:
        """``"fixed"`` when a simulation target is set, else ``"auto"``."""
        return "auto" if self.calibration.n_simulations is None else "fixed"
