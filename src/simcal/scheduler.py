"""
Batch scheduler.

Drives a calibration run batch by batch. In fixed mode it works through a
known number of simulations. In auto mode it moves through four phases:

``calibration``
    Fixed-size batches until the ESS trend is predictable (``min_batches`` to
    ``max_batches``, stopping early once the log-log fit reaches
    ``target_r2``).
``predictive``
    One batch sized from the fitted trend to reach the ESS target.
``fine_tuning_tier_1`` .. ``fine_tuning_tier_5``
    Batches whose size shrinks as the tracked ESS approaches its target.
``converged``
    Terminal; no more batches.

The run also stops at ``max_simulations`` without convergence. State is
saved after every batch, so a run can be resumed.
"""

from __future__ import annotations

import math
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import numpy as np
from scipy.stats import linregress

from simcal.aggregate import annotate, combine
from simcal.checkpoint import RunState, init_state, load_state, save_state
from simcal.config.schema import Control
from simcal.convergence import ess_summary, parameter_ess
from simcal.dispatch import Dispatcher, WorkerFn
from simcal.io import check_disk_space, list_shards, parse_sim_ids, read_arrow
from simcal.logging import getLogger
from simcal.typing import ConvergenceCheck

log = getLogger(__name__)

CALIBRATION = "calibration"
PREDICTIVE = "predictive"
CONVERGED = "converged"
FINE_TUNING_TIERS = ("massive", "large", "standard", "precision", "final")
# Upper bounds of the ESS ratio (tracked / target) for tiers 1 to 4
FINE_TUNING_THRESHOLDS = (0.25, 0.5, 0.75, 0.9)


def fine_tuning_phase(tier: int) -> str:
    return f"fine_tuning_tier_{tier}"


PHASES = (CALIBRATION, PREDICTIVE, *(fine_tuning_phase(i) for i in range(1, 6)), CONVERGED)


@dataclass(slots=True, frozen=True)
class BatchDecision:
    phase: str
    batch_size: int


@dataclass(slots=True, frozen=True)
class ESSTrend:
    """Log-log fit of tracked ESS against the number of simulations."""

    slope: float
    intercept: float
    r2: float
    n_points: int

    def simulations_for(self, target_ess: float) -> float | None:
        """Simulations predicted to reach *target_ess*; None if ESS is not growing."""
        if not self.slope > 0:
            return None
        return math.exp((math.log(target_ess) - self.intercept) / self.slope)


def fit_ess_trend(tracking: Sequence[dict[str, Any]]) -> ESSTrend | None:
    """
    Fit ``log(ess_quantile) = intercept + slope * log(n_successful)``.

    Returns None with fewer than two usable points or no spread in ``n``.
    """
    pts = [
        (t["n_successful"], t["ess_quantile"])
        for t in tracking
        if t.get("n_successful", 0) > 0
        and t.get("ess_quantile") is not None
        and math.isfinite(t["ess_quantile"])
        and t["ess_quantile"] > 0
    ]
    if len(pts) < 2:
        return None
    x = np.log([p[0] for p in pts])
    y = np.log([p[1] for p in pts])
    if np.ptp(x) == 0:
        return None
    fit = linregress(x, y)
    r2 = float(fit.rvalue**2) if math.isfinite(fit.rvalue) else 0.0
    return ESSTrend(float(fit.slope), float(fit.intercept), r2, len(pts))


def _succeeded(outcome: Any) -> bool:
    return outcome is not None and getattr(outcome, "success", True)


def _latest_ess_quantile(state: RunState) -> float:
    for entry in reversed(state.ess_tracking):
        value = entry.get("ess_quantile")
        if value is not None and math.isfinite(value):
            return float(value)
    return math.nan


def _fine_tuning_decision(state: RunState, control: Control) -> BatchDecision:
    ratio = _latest_ess_quantile(state) / control.targets.ess_param
    tier = 5
    if math.isnan(ratio):
        tier = 1
    else:
        for i, bound in enumerate(FINE_TUNING_THRESHOLDS, start=1):
            if ratio < bound:
                tier = i
                break
    size = control.fine_tuning.batch_sizes[FINE_TUNING_TIERS[tier - 1]]
    return BatchDecision(fine_tuning_phase(tier), size)


def _predictive_decision(state: RunState, control: Control) -> BatchDecision | None:
    trend = fit_ess_trend(state.ess_tracking)
    if trend is None:
        log.info("No usable ESS trend; skipping predictive batch")
        return None
    needed = trend.simulations_for(control.targets.ess_param)
    if needed is None or not math.isfinite(needed):
        log.info("ESS trend is not increasing (slope %.3f); skipping predictive batch", trend.slope)
        return None
    size = math.ceil(needed) - state.total_sims_run
    if size <= 0:
        log.info("ESS trend predicts target already reached; skipping predictive batch")
        return None
    log.info(
        "ESS trend (R²=%.3f) predicts %d simulations for ESS %.0f",
        trend.r2,
        math.ceil(needed),
        control.targets.ess_param,
    )
    return BatchDecision(PREDICTIVE, size)


def decide_next_batch(state: RunState, control: Control) -> BatchDecision:
    """
    Next phase and batch size for an auto-mode run.

    Parameters
    ----------
    state : RunState
        Current state; ``phase_batch_count`` counts batches already run in
        ``state.phase``.
    control : Control

    Returns
    -------
    BatchDecision
        ``batch_size`` is 0 only in the ``converged`` phase.
    """
    if state.converged or state.phase == CONVERGED:
        return BatchDecision(CONVERGED, 0)

    cal = control.calibration
    if state.phase == CALIBRATION:
        done = state.phase_batch_count
        if done < cal.min_batches:
            return BatchDecision(CALIBRATION, cal.batch_size)
        trend = fit_ess_trend(state.ess_tracking)
        r2 = trend.r2 if trend is not None else 0.0
        if done < cal.max_batches and r2 < cal.target_r2:
            return BatchDecision(CALIBRATION, cal.batch_size)
        log.info("Calibration phase done after %d batches (R²=%.3f)", done, r2)
        return _predictive_decision(state, control) or _fine_tuning_decision(state, control)

    if state.phase == PREDICTIVE and state.phase_batch_count == 0:
        return _predictive_decision(state, control) or _fine_tuning_decision(state, control)

    return _fine_tuning_decision(state, control)


class ESSConvergenceCheck:
    """
    Default convergence check: per-parameter ESS over the results so far.

    Appends one record to ``state.ess_tracking`` and reports convergence when
    the fraction of parameters meeting ``targets.ess_param`` reaches
    ``targets.ess_param_prop``.

    Parameters
    ----------
    shard_dir : Path
        Result shards of the current run.
    param_names : sequence of str
        Parameters to track.
    consolidated : Path, optional
        Earlier consolidated table to include (resumed runs).
    """

    def __init__(
        self,
        shard_dir: Path,
        param_names: Sequence[str],
        consolidated: Path | None = None,
    ):
        self.shard_dir = Path(shard_dir)
        self.param_names = list(param_names)
        self.consolidated = consolidated

    def __call__(self, state: RunState, control: Control) -> bool:
        sources = list_shards(self.shard_dir)
        if self.consolidated is not None and self.consolidated.exists():
            sources = [self.consolidated, *sources]
        df = combine(sources, method=control.io.load_method)
        if df.empty:
            log.warning("No results available for the convergence check")
            return False

        df = annotate(df, control.likelihood.floor_likelihood, control.weights.iqr_multiplier)
        ess_df = parameter_ess(
            df.loc[df["is_valid"]],
            self.param_names,
            method=control.targets.ess_method,
            target=control.targets.ess_param,
        )
        summary = ess_summary(ess_df, control.targets.ess_param_prop)
        converged = summary["prop_meeting"] >= control.targets.ess_param_prop
        state.ess_tracking.append(
            {
                "batch": state.batch_number,
                "n_sims": state.total_sims_run,
                "n_successful": int(len(df)),
                "n_valid": int(df["is_valid"].sum()),
                **summary,
                "converged": bool(converged),
            }
        )
        log.info(
            "ESS check: %.0f%% of parameters meet ESS %.0f (quantile %.1f, min %.1f)",
            100 * summary["prop_meeting"],
            control.targets.ess_param,
            summary["ess_quantile"],
            summary["ess_min"],
        )
        return bool(converged)


class BatchScheduler:
    """
    Run the batch loop of one calibration.

    Parameters
    ----------
    control : Control
    dispatcher : Dispatcher
        Backend that runs each batch.
    worker_fn : callable
        ``worker_fn(sim_id)`` returning an outcome with a ``success``
        attribute, or None on failure.
    state_path : Path
        Checkpoint file.
    shard_dir : Path
        Where the worker writes result shards (used to find completed ids).
    convergence_check : callable, optional
        ``check(state, control) -> bool`` run after each batch in auto mode.
        It may update ``state.ess_tracking``.
    consolidated : Path, optional
        Earlier consolidated table; its ids count as completed in fixed mode.
    """

    def __init__(
        self,
        control: Control,
        dispatcher: Dispatcher,
        worker_fn: WorkerFn,
        state_path: Path,
        shard_dir: Path,
        convergence_check: ConvergenceCheck | None = None,
        consolidated: Path | None = None,
    ):
        self.control = control
        self.dispatcher = dispatcher
        self.worker_fn = worker_fn
        self.state_path = Path(state_path)
        self.shard_dir = Path(shard_dir)
        self.convergence_check = convergence_check
        self.consolidated = consolidated
        self.state: RunState | None = None

    # ------------------------------------------------------------------ state

    def _initial_state(self, resume: bool) -> RunState:
        mode = self.control.mode
        target = self.control.calibration.n_simulations
        if resume:
            state = load_state(self.state_path)
            if state is None:
                log.info("No usable run state at %s; starting fresh", self.state_path)
            elif state.mode != mode:
                log.warning(
                    "Saved run state is in %s mode but control selects %s mode; "
                    "starting fresh",
                    state.mode,
                    mode,
                )
            else:
                log.info(
                    "Resuming %s run: batch %d, %d simulations, phase %s",
                    state.mode,
                    state.batch_number,
                    state.total_sims_run,
                    state.phase,
                )
                if mode == "fixed" and state.fixed_target != target:
                    if state.fixed_target is not None and target < state.fixed_target:
                        log.warning(
                            "Fixed target lowered from %s to %s; results beyond it are kept",
                            state.fixed_target,
                            target,
                        )
                    else:
                        log.info("Fixed target changed from %s to %s", state.fixed_target, target)
                    state.fixed_target = target
                return state
        return init_state(mode, fixed_target=target)

    def _record_batch(self, state: RunState, size: int, outcomes: list[Any]) -> int:
        n_success = sum(1 for o in outcomes if _succeeded(o))
        state.batch_number += 1
        state.batch_sizes_used.append(size)
        state.batch_success_rates.append(100.0 * n_success / size if size else 0.0)
        return n_success

    def _dispatch(self, sim_ids: list[int]) -> list[Any]:
        check_disk_space(self.shard_dir, self.control.paths.min_free_disk_mb)
        return self.dispatcher.execute(sim_ids, self.worker_fn)

    # ------------------------------------------------------------------- run

    def run(self, resume: bool = False) -> RunState:
        """
        Run batches until done and return the final state.

        Parameters
        ----------
        resume : bool
            Continue from the saved state when it is valid.
        """
        state = self._initial_state(resume)
        self.state = state
        if state.mode == "fixed":
            self._run_fixed(state)
        else:
            self._run_auto(state)
        save_state(state, self.state_path)
        return state

    def completed_ids(self) -> set[int]:
        """Ids with a result shard or a row in the consolidated table."""
        done = set(parse_sim_ids(list_shards(self.shard_dir)))
        if self.consolidated is not None and self.consolidated.exists():
            table = read_arrow(self.consolidated)
            done.update(int(s) for s in table.column("sim").to_pylist())
        return done

    def _run_fixed(self, state: RunState) -> None:
        target = int(state.fixed_target or 0)
        size = self.control.calibration.batch_size
        done = self.completed_ids()
        remaining = [i for i in range(1, target + 1) if i not in done]
        log.info(
            "Fixed mode: %d/%d simulations complete, %d remaining",
            target - len(remaining),
            target,
            len(remaining),
        )

        for start in range(0, len(remaining), size):
            sim_ids = remaining[start : start + size]
            log.info(
                "Batch %d: running %d simulations (%d-%d)",
                state.batch_number + 1,
                len(sim_ids),
                sim_ids[0],
                sim_ids[-1],
            )
            outcomes = self._dispatch(sim_ids)
            n_success = self._record_batch(state, len(sim_ids), outcomes)
            done.update(
                s for s, o in zip(sim_ids, outcomes, strict=True) if _succeeded(o)
            )
            self._update_fixed_totals(state, done, target)
            log.info(
                "Batch complete: %d/%d successful (%.1f%%)",
                n_success,
                len(sim_ids),
                state.batch_success_rates[-1],
            )
            save_state(state, self.state_path)

        self._update_fixed_totals(state, done, target)

    @staticmethod
    def _update_fixed_totals(state: RunState, done: set[int], target: int) -> None:
        # A resume with a lower target keeps the counts reached earlier
        completed = len([i for i in done if i <= target])
        state.total_sims_run = max(state.total_sims_run, completed)
        state.total_sims_successful = max(state.total_sims_successful, completed)

    def _run_auto(self, state: RunState) -> None:
        cal = self.control.calibration
        max_sims = cal.max_simulations

        while not state.converged and state.total_sims_run < max_sims:
            decision = decide_next_batch(state, self.control)

            if decision.phase != state.phase:
                log.info("Phase transition: %s -> %s", state.phase.upper(), decision.phase.upper())
                state.phase_last = state.phase
                state.phase = decision.phase
                state.phase_batch_count = 0

            if decision.batch_size <= 0:
                log.info("No additional simulations needed (batch size 0)")
                break

            state.phase_batch_count += 1
            batch_start = state.total_sims_run + 1
            batch_end = state.total_sims_run + decision.batch_size

            if decision.phase == PREDICTIVE:
                limit = max_sims - cal.fine_tuning_reserve
                if batch_end > limit:
                    batch_end = limit
                    log.info(
                        "Capping predictive batch to leave %d simulations for fine tuning",
                        cal.fine_tuning_reserve,
                    )
            batch_end = min(batch_end, max_sims)
            if batch_end < batch_start:
                log.info("Predictive batch capped to nothing; moving on")
                save_state(state, self.state_path)
                continue

            sim_ids = list(range(batch_start, batch_end + 1))
            log.info(
                "[%s] Batch %d: running %d simulations (%d-%d)",
                decision.phase.upper(),
                state.batch_number + 1,
                len(sim_ids),
                batch_start,
                batch_end,
            )
            outcomes = self._dispatch(sim_ids)
            n_success = self._record_batch(state, len(sim_ids), outcomes)
            state.total_sims_successful += n_success
            state.total_sims_run = batch_end
            log.info(
                "Batch complete: %d/%d successful (%.1f%%), %d simulations total",
                n_success,
                len(sim_ids),
                state.batch_success_rates[-1],
                state.total_sims_run,
            )

            if state.total_sims_run < max_sims:
                if self.convergence_check is not None and self.convergence_check(
                    state, self.control
                ):
                    state.converged = True
                    state.phase_last = state.phase
                    state.phase = CONVERGED
                    log.info("Convergence reached after %d simulations", state.total_sims_run)
            else:
                log.info("Skipping ESS check (final batch)")

            save_state(state, self.state_path)

        if not state.converged and state.total_sims_run >= max_sims:
            log.warning(
                "Reached max_simulations (%d) without convergence",
                max_sims,
            )

