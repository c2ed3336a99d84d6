"""
Convergence and weighting statistics.

Effective sample size, weight diagnostics, Akaike and tempered (Gibbs)
weights, per-parameter ESS and the tiered best-subset search used to decide
whether a calibration has converged.

Conventions
-----------
- Likelihoods are log-likelihoods; higher is better.
- ``AIC = -2 * likelihood`` and ``delta_aic = AIC - min(AIC)``.
- Normalised weights ``w_tilde`` sum to one; scaled weights ``w = n * w_tilde``
  average one.
- Fewer than two usable observations give NaN statistics and a warning.
"""

from __future__ import annotations

import math
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

import numpy as np
import pandas as pd
from scipy.optimize import brentq

from simcal.config.schema import TargetsConfig
from simcal.logging import getLogger

log = getLogger(__name__)

ESS_METHODS = ("kish", "perplexity")


def _clean_weights(w: Any) -> np.ndarray:
    arr = np.asarray(w, dtype=np.float64).ravel()
    return arr[np.isfinite(arr) & (arr >= 0)]


def _degenerate(name: str, n: int) -> float:
    log.warning("%s needs at least 2 observations, got %d; returning NaN", name, n)
    return math.nan


# =============================================================================
# Effective sample size and weight diagnostics
# =============================================================================


def ess_kish(w: Any) -> float:
    """Kish effective sample size ``(sum w)^2 / sum w^2``."""
    w = _clean_weights(w)
    if w.size < 2:
        return _degenerate("ess_kish", w.size)
    s2 = float(np.sum(w**2))
    if s2 == 0:
        return math.nan
    return float(np.sum(w)) ** 2 / s2


def _entropy(w: np.ndarray) -> float:
    p = w / w.sum()
    p = p[p > 0]
    return float(-np.sum(p * np.log(p)))


def ess_perplexity(w: Any) -> float:
    """Perplexity effective sample size ``exp(H(w / sum w))``."""
    w = _clean_weights(w)
    if w.size < 2:
        return _degenerate("ess_perplexity", w.size)
    if w.sum() == 0:
        return math.nan
    return math.exp(_entropy(w))


def calc_ess(w: Any, method: str = "perplexity") -> float:
    """
    Effective sample size of a weight vector.

    Parameters
    ----------
    w : array_like
        Non-negative weights; need not be normalised.
    method : {"kish", "perplexity"}

    Raises
    ------
    ValueError
        If *method* is unknown.
    """
    if method == "kish":
        return ess_kish(w)
    if method == "perplexity":
        return ess_perplexity(w)
    raise ValueError(f"ESS method must be one of {ESS_METHODS}, got {method!r}")


def agreement_index(w: Any) -> float:
    """
    Normalised weight entropy ``H(w_tilde) / log(n)`` in ``[0, 1]``.

    One means uniform weights; values near zero mean a single row dominates.
    """
    w = _clean_weights(w)
    if w.size < 2:
        return _degenerate("agreement_index", w.size)
    if w.sum() == 0:
        return math.nan
    return _entropy(w) / math.log(w.size)


def cv_weights(w: Any) -> float:
    """Coefficient of variation of weights (sample standard deviation / mean)."""
    w = _clean_weights(w)
    if w.size < 2:
        return _degenerate("cv_weights", w.size)
    mean = float(np.mean(w))
    if mean == 0:
        return math.nan
    return float(np.std(w, ddof=1)) / mean


# =============================================================================
# Weights
# =============================================================================


def delta_aic(likelihood: Any) -> np.ndarray:
    """
    ``AIC - min(AIC)`` with ``AIC = -2 * likelihood``.

    Non-finite likelihoods map to ``inf``.
    """
    lik = np.asarray(likelihood, dtype=np.float64)
    aic = np.where(np.isfinite(lik), -2.0 * lik, np.inf)
    finite = np.isfinite(aic)
    if not finite.any():
        return np.full(lik.shape, np.inf)
    return aic - aic[finite].min()


def akaike_weights(delta: Any, cap: float = math.inf) -> np.ndarray:
    """
    Truncated Akaike weights ``w ∝ exp(-0.5 * min(delta, cap))``.

    Parameters
    ----------
    delta : array_like
        Delta-AIC values. NaN is treated as ``inf``.
    cap : float
        Truncation of delta-AIC; bounds the weight ratio by ``exp(cap / 2)``.

    Returns
    -------
    ndarray
        Weights scaled to sum to ``len(delta)``.
    """
    d = np.asarray(delta, dtype=np.float64)
    if d.size == 0:
        return d
    d = np.where(np.isnan(d), np.inf, d)
    d = np.minimum(d, cap)
    raw = np.exp(-0.5 * (d - d.min())) if np.isfinite(d.min()) else np.zeros_like(d)
    total = raw.sum()
    if total == 0:
        return np.ones_like(d)
    return raw / total * d.size


def gibbs_weights(likelihood: Any, temperature: float) -> np.ndarray:
    """
    Tempered weights ``w ∝ exp((L - max L) / temperature)``, summing to one.

    Non-finite likelihoods get weight zero.
    """
    if temperature <= 0:
        raise ValueError(f"temperature must be > 0, got {temperature}")
    lik = np.asarray(likelihood, dtype=np.float64)
    finite = np.isfinite(lik)
    w = np.zeros(lik.shape)
    if not finite.any():
        return w
    if np.isinf(temperature):
        w[finite] = 1.0
    else:
        w[finite] = np.exp((lik[finite] - lik[finite].max()) / temperature)
    return w / w.sum()


@dataclass(slots=True)
class AdaptiveWeights:
    """Output of :func:`adaptive_gibbs_weights`."""

    weights: np.ndarray
    temperature: float
    ess: float
    target_ess: float


def adaptive_gibbs_weights(
    likelihood: Any,
    target_ess: float,
    floor: float = 1e-15,
    method: str = "perplexity",
) -> AdaptiveWeights:
    """
    Gibbs weights whose temperature is tuned to reach a target ESS.

    The ESS of tempered weights grows with temperature, from one (all weight
    on the best row) to ``n`` (uniform). The temperature is found by Brent's
    method on ``log(temperature)``. Weights are then floored at *floor* and
    renormalised.

    Parameters
    ----------
    likelihood : array_like
        Finite log-likelihoods.
    target_ess : float
        Desired ESS; clipped to ``[1, n]``. Reaching ``n`` gives uniform
        weights.
    floor : float
        Minimum weight after tuning.
    method : {"kish", "perplexity"}

    Returns
    -------
    AdaptiveWeights
    """
    lik = np.asarray(likelihood, dtype=np.float64)
    n = lik.size
    if n == 0:
        return AdaptiveWeights(lik.copy(), math.nan, math.nan, target_ess)
    if n == 1:
        log.warning("adaptive_gibbs_weights called with one observation")
        return AdaptiveWeights(np.ones(1), math.nan, math.nan, target_ess)

    target = float(np.clip(target_ess, 1.0, n))
    spread = float(np.ptp(lik))

    if spread == 0 or target >= n * (1 - 1e-9):
        temperature = math.inf
    else:

        def gap(log_t: float) -> float:
            return calc_ess(gibbs_weights(lik, math.exp(log_t)), method) - target

        lo, hi = math.log(spread * 1e-6), math.log(spread * 1e6)
        if gap(lo) >= 0:
            temperature = math.exp(lo)
        elif gap(hi) <= 0:
            temperature = math.exp(hi)
        else:
            temperature = math.exp(brentq(gap, lo, hi, xtol=1e-6))

    w = gibbs_weights(lik, temperature)
    w = np.maximum(w, floor)
    w = w / w.sum()
    return AdaptiveWeights(w, temperature, calc_ess(w, method), target)


# =============================================================================
# Parameter ESS
# =============================================================================


def parameter_ess(
    df: pd.DataFrame,
    param_names: Sequence[str],
    method: str = "perplexity",
    target: float = 500.0,
    weights: Any = None,
) -> pd.DataFrame:
    """
    Effective sample size per parameter.

    For each parameter, the ESS of the importance weights of rows where both
    the parameter value and the likelihood are finite.

    Parameters
    ----------
    df : DataFrame
        Results with a ``likelihood`` column and one column per parameter.
    param_names : sequence of str
    method : {"kish", "perplexity"}
    target : float
        ESS target, used for ``meets_target``.
    weights : array_like, optional
        Row weights. Defaults to untempered importance weights
        ``exp(L - max L)`` computed from the likelihood.

    Returns
    -------
    DataFrame
        Columns ``parameter, ess, n, meets_target``.
    """
    lik = df["likelihood"].to_numpy(dtype=np.float64) if len(df) else np.array([])
    w = gibbs_weights(lik, 1.0) if weights is None else np.asarray(weights, dtype=float)
    rows = []
    for name in param_names:
        values = df[name].to_numpy(dtype=np.float64) if name in df else np.full(len(df), np.nan)
        mask = np.isfinite(values) & np.isfinite(lik) & np.isfinite(w)
        n = int(mask.sum())
        ess = calc_ess(w[mask], method) if n >= 2 else math.nan
        if n < 2:
            log.warning("Parameter '%s' has %d usable rows; ESS is NaN", name, n)
        rows.append(
            {
                "parameter": name,
                "ess": ess,
                "n": n,
                "meets_target": bool(np.isfinite(ess) and ess >= target),
            }
        )
    return pd.DataFrame(rows, columns=["parameter", "ess", "n", "meets_target"])


def ess_summary(ess_df: pd.DataFrame, prop: float) -> dict[str, float]:
    """
    Summarise per-parameter ESS.

    Returns
    -------
    dict
        ``prop_meeting`` (fraction of parameters meeting their target),
        ``ess_min``, ``ess_median`` and ``ess_quantile``, the
        ``1 - prop`` quantile: the ESS reached by a fraction *prop* of
        parameters.
    """
    ess = ess_df["ess"].to_numpy(dtype=np.float64) if len(ess_df) else np.array([])
    finite = ess[np.isfinite(ess)]
    if finite.size == 0:
        return {
            "prop_meeting": 0.0,
            "ess_min": math.nan,
            "ess_median": math.nan,
            "ess_quantile": math.nan,
        }
    return {
        "prop_meeting": float(ess_df["meets_target"].mean()),
        "ess_min": float(finite.min()),
        "ess_median": float(np.median(finite)),
        "ess_quantile": float(np.quantile(finite, 1.0 - prop)),
    }


# =============================================================================
# Best-subset search
# =============================================================================


@dataclass(slots=True, frozen=True)
class ConvergenceTier:
    """Named set of best-subset targets."""

    name: str
    ess: float
    agreement: float
    cvw: float


@dataclass(slots=True)
class SubsetMetrics:
    n: int
    ess: float
    agreement: float
    cvw: float

    def meets(self, tier: ConvergenceTier) -> bool:
        return (
            math.isfinite(self.ess)
            and math.isfinite(self.agreement)
            and math.isfinite(self.cvw)
            and self.ess >= tier.ess
            and self.agreement >= tier.agreement
            and self.cvw <= tier.cvw
        )


@dataclass(slots=True)
class SubsetSelectionResult:
    """
    Outcome of best-subset selection.

    Attributes
    ----------
    subset : ndarray
        ``sim`` ids of the selected rows, best first.
    size : int
    metrics : SubsetMetrics
    converged : bool
        False when no tier was satisfied and the fallback was used.
    tier_name : str
        Name of the first satisfied tier, or ``"fallback"``.
    percentile : float
        Subset size as a percentage of valid rows.
    tried : list of str
        Tier names tried, in order.
    """

    subset: np.ndarray
    size: int
    metrics: SubsetMetrics
    converged: bool
    tier_name: str
    percentile: float = math.nan
    tried: list[str] = field(default_factory=list)


def default_subset_tiers(ess: float, agreement: float, cvw: float) -> list[ConvergenceTier]:
    """
    Tiers from the configured targets down to progressively looser ones.

    Parameters
    ----------
    ess, agreement, cvw : float
        Strict targets (``targets.ess_best``, ``a_best``, ``cvw_best``).
    """
    steps = [
        ("strict", 1.0, 0.0, 1.0),
        ("relaxed", 0.8, 0.05, 1.25),
        ("moderate", 0.6, 0.10, 1.5),
        ("lenient", 0.4, 0.15, 2.0),
        ("minimal", 0.25, 0.20, 3.0),
    ]
    return [
        ConvergenceTier(
            name=name,
            ess=ess * ess_scale,
            agreement=max(0.0, agreement - a_drop),
            cvw=cvw * cvw_scale,
        )
        for name, ess_scale, a_drop, cvw_scale in steps
    ]


def subset_metrics(likelihood: Any, method: str = "perplexity", cap: float = 4.0) -> SubsetMetrics:
    """ESS, agreement and CVw of tight-cap Akaike weights over *likelihood*."""
    lik = np.asarray(likelihood, dtype=np.float64)
    lik = lik[np.isfinite(lik)]
    n = lik.size
    if n < 2:
        log.warning("Subset of %d valid rows; metrics are NaN", n)
        return SubsetMetrics(n, math.nan, math.nan, math.nan)
    w = akaike_weights(delta_aic(lik), cap)
    w_tilde = w / n
    return SubsetMetrics(n, calc_ess(w_tilde, method), agreement_index(w), cv_weights(w))


def _ranked_valid(df: pd.DataFrame) -> pd.DataFrame:
    valid = df["is_valid"] if "is_valid" in df else np.isfinite(df["likelihood"])
    return df.loc[valid].sort_values("likelihood", ascending=False, kind="stable")


def grid_search_best_subset(
    df: pd.DataFrame,
    tier: ConvergenceTier,
    min_size: int,
    max_size: int,
    method: str = "perplexity",
    n_grid: int = 100,
    cap: float = 4.0,
) -> SubsetSelectionResult:
    """
    Smallest top-ranked subset satisfying *tier*.

    Valid rows are ranked by likelihood; candidate sizes are an integer grid
    of at most *n_grid* points between ``min_size`` and ``max_size`` (both
    clipped to the number of valid rows).

    Returns
    -------
    SubsetSelectionResult
        ``converged=False`` with the largest candidate when no size works.
    """
    ranked = _ranked_valid(df)
    n_valid = len(ranked)
    hi = min(max_size, n_valid)
    lo = min(min_size, hi)
    lik = ranked["likelihood"].to_numpy(dtype=np.float64)
    sims = ranked["sim"].to_numpy()

    if hi < 2:
        metrics = subset_metrics(lik[:hi], method, cap)
        return SubsetSelectionResult(sims[:hi], hi, metrics, False, tier.name)

    sizes = np.unique(np.round(np.linspace(max(lo, 2), hi, n_grid)).astype(int))
    metrics = SubsetMetrics(0, math.nan, math.nan, math.nan)
    for size in sizes:
        metrics = subset_metrics(lik[:size], method, cap)
        if metrics.meets(tier):
            return SubsetSelectionResult(
                sims[:size], int(size), metrics, True, tier.name, 100.0 * size / n_valid
            )
    size = int(sizes[-1])
    return SubsetSelectionResult(
        sims[:size], size, metrics, False, tier.name, 100.0 * size / n_valid
    )


def select_best_subset(
    df: pd.DataFrame,
    tiers: Sequence[ConvergenceTier],
    min_size: int,
    max_size: int,
    method: str = "perplexity",
    n_grid: int = 100,
    cap: float = 4.0,
) -> SubsetSelectionResult:
    """
    Search *tiers* in the given order; the first satisfied tier wins.

    When none is satisfied, the top ``max_size`` valid rows are returned with
    ``converged=False`` and ``tier_name="fallback"``.
    """
    tried = []
    for tier in tiers:
        tried.append(tier.name)
        log.info(
            "Testing tier '%s' (ESS=%.0f, A=%.2f, CVw=%.2f)",
            tier.name,
            tier.ess,
            tier.agreement,
            tier.cvw,
        )
        result = grid_search_best_subset(df, tier, min_size, max_size, method, n_grid, cap)
        if result.converged:
            log.info(
                "Tier '%s' converged at n=%d (%.1f%% of valid rows)",
                tier.name,
                result.size,
                result.percentile,
            )
            result.tried = tried
            return result
        log.info("Tier '%s' did not converge", tier.name)

    ranked = _ranked_valid(df)
    size = min(max_size, len(ranked))
    lik = ranked["likelihood"].to_numpy(dtype=np.float64)[:size]
    metrics = subset_metrics(lik, method, cap)
    pct = 100.0 * size / len(ranked) if len(ranked) else math.nan
    log.warning("No tier converged; using fallback subset of the top %d rows", size)
    return SubsetSelectionResult(
        ranked["sim"].to_numpy()[:size], size, metrics, False, "fallback", pct, tried
    )


# =============================================================================
# Final weights and diagnostics
# =============================================================================


def _akaike_column(lik: np.ndarray, mask: np.ndarray, cap: float) -> np.ndarray:
    col = np.zeros(lik.size)
    if mask.any():
        w = akaike_weights(delta_aic(lik[mask]), cap)
        col[mask] = w / w.sum()
    return col


def compute_weights(
    df: pd.DataFrame,
    best_ids: Any,
    target_ess: float,
    floor: float = 1e-15,
    cap_retained: float = 25.0,
    cap_best: float = 4.0,
    method: str = "perplexity",
) -> tuple[pd.DataFrame, dict[str, float]]:
    """
    Fill the weight columns of an annotated result table.

    Columns
    -------
    is_best_subset
        Rows whose ``sim`` is in *best_ids*.
    weight_all
        Adaptive Gibbs weights over valid rows.
    weight_retained
        Akaike weights truncated at *cap_retained* over retained rows.
    weight_best
        Akaike weights truncated at *cap_best* over the best subset.

    Each column sums to one over its rows and is zero elsewhere.

    Returns
    -------
    (DataFrame, dict)
        A copy of *df* with the columns, and the ESS of each column plus the
        tuned temperature.
    """
    out = df.copy()
    lik = out["likelihood"].to_numpy(dtype=np.float64)
    valid = out["is_valid"].to_numpy(dtype=bool)
    retained = out["is_retained"].to_numpy(dtype=bool)
    best = out["sim"].isin(np.asarray(best_ids)).to_numpy() & np.isfinite(lik)
    out["is_best_subset"] = best

    info: dict[str, float] = {"temperature": math.nan}
    weight_all = np.zeros(len(out))
    if valid.any():
        # Target capped at half the valid rows
        effective_target = min(target_ess, valid.sum() / 2)
        adaptive = adaptive_gibbs_weights(lik[valid], effective_target, floor, method)
        weight_all[valid] = adaptive.weights
        info["temperature"] = adaptive.temperature
    out["weight_all"] = weight_all
    out["weight_retained"] = _akaike_column(lik, retained, cap_retained)
    out["weight_best"] = _akaike_column(lik, best, cap_best)

    for col, mask in (("all", valid), ("retained", retained), ("best", best)):
        values = out[f"weight_{col}"].to_numpy()[mask]
        info[f"ess_{col}"] = calc_ess(values, method) if values.size >= 2 else math.nan
        log.info("ESS (%s, n=%d): %.1f", col, int(mask.sum()), info[f"ess_{col}"])
    return out, info


def _status(value: float, target: float, higher_is_better: bool = True) -> str:
    if not math.isfinite(value):
        return "unknown"
    ok = value >= target if higher_is_better else value <= target
    return "pass" if ok else "fail"


def convergence_diagnostics(
    ess_df: pd.DataFrame,
    subset: SubsetSelectionResult,
    targets: TargetsConfig,
    n_total: int,
    n_valid: int,
) -> dict[str, Any]:
    """
    Summary of all convergence criteria.

    Returns
    -------
    dict
        ``metrics``, ``targets``, ``status`` (per criterion: pass, fail or
        unknown) and ``overall`` (pass only when every criterion passes).
    """
    summary = ess_summary(ess_df, targets.ess_param_prop)
    m = subset.metrics
    status = {
        "ess_param_prop": _status(summary["prop_meeting"], targets.ess_param_prop),
        "ess_best": _status(m.ess, targets.ess_best),
        "a_best": _status(m.agreement, targets.a_best),
        "cvw_best": _status(m.cvw, targets.cvw_best, higher_is_better=False),
    }
    return {
        "n_total": n_total,
        "n_valid": n_valid,
        "metrics": {
            **summary,
            "ess_best": m.ess,
            "a_best": m.agreement,
            "cvw_best": m.cvw,
            "n_best": subset.size,
        },
        "targets": {
            "ess_param": targets.ess_param,
            "ess_param_prop": targets.ess_param_prop,
            "ess_best": targets.ess_best,
            "a_best": targets.a_best,
            "cvw_best": targets.cvw_best,
        },
        "subset": {
            "tier": subset.tier_name,
            "converged": subset.converged,
            "size": subset.size,
            "percentile": subset.percentile,
            "tiers_tried": list(subset.tried),
        },
        "status": status,
        "overall": "pass" if all(s == "pass" for s in status.values()) else "fail",
    }
