"""Tests for batch phase rules and the batch loop."""

import json
import logging
import math
from pathlib import Path
from types import SimpleNamespace

import numpy as np
import pytest

from simcal.checkpoint import init_state, load_state, save_state
from simcal.config.schema import IOConfig
from simcal.dispatch import SequentialDispatcher
from simcal.io import shard_name
from simcal.scheduler import (
    CALIBRATION,
    CONVERGED,
    PREDICTIVE,
    BatchDecision,
    BatchScheduler,
    ESSConvergenceCheck,
    decide_next_batch,
    fine_tuning_phase,
    fit_ess_trend,
)
from tests.helpers.factories import make_control, results_frame, write_shards


def _tracking(n_values, exponent=0.5):
    return [
        {"n_successful": n, "ess_quantile": float(n) ** exponent} for n in n_values
    ]


AUTO = {
    "calibration": {
        "batch_size": 100,
        "min_batches": 3,
        "max_batches": 5,
        "target_r2": 0.9,
        "max_simulations": 10000,
        "fine_tuning_reserve": 100,
    },
    "targets": {"ess_param": 50.0},
    "fine_tuning": {
        "batch_sizes": {
            "massive": 40,
            "large": 30,
            "standard": 20,
            "precision": 10,
            "final": 5,
        }
    },
}


class TestTrend:
    """Log-log ESS fit."""

    def test_power_law(self):
        trend = fit_ess_trend(_tracking([100, 200, 400]))
        assert trend.slope == pytest.approx(0.5)
        assert trend.r2 == pytest.approx(1.0)
        assert trend.simulations_for(50.0) == pytest.approx(2500.0)

    def test_too_few_points(self):
        assert fit_ess_trend(_tracking([100])) is None

    def test_no_spread(self):
        assert fit_ess_trend(_tracking([100, 100, 100])) is None

    def test_unusable_points_skipped(self):
        tracking = _tracking([100, 200]) + [
            {"n_successful": 300, "ess_quantile": math.nan},
            {"n_successful": 0, "ess_quantile": 5.0},
        ]
        assert fit_ess_trend(tracking).n_points == 2

    def test_flat_trend_predicts_nothing(self):
        trend = fit_ess_trend(_tracking([100, 200, 400], exponent=0.0))
        assert trend.simulations_for(50.0) is None


class TestDecideNextBatch:
    """Phase rules of auto mode."""

    @pytest.fixture
    def control(self):
        return make_control(**AUTO)

    def test_fresh_run_calibrates(self, control):
        decision = decide_next_batch(init_state("auto"), control)
        assert decision == BatchDecision(CALIBRATION, 100)

    def test_min_batches_enforced(self, control):
        state = init_state("auto")
        state.phase_batch_count = 2
        state.ess_tracking = _tracking([100, 200])
        assert decide_next_batch(state, control).phase == CALIBRATION

    def test_poor_fit_keeps_calibrating(self, control):
        state = init_state("auto")
        state.phase_batch_count = 3
        state.ess_tracking = [
            {"n_successful": n, "ess_quantile": e}
            for n, e in [(100, 5.0), (200, 2.0), (300, 9.0)]
        ]
        assert decide_next_batch(state, control).phase == CALIBRATION

    def test_good_fit_goes_predictive(self, control):
        state = init_state("auto")
        state.phase_batch_count = 3
        state.total_sims_run = 300
        state.ess_tracking = _tracking([100, 200, 300])
        decision = decide_next_batch(state, control)
        assert decision.phase == PREDICTIVE
        assert abs(decision.batch_size - 2200) <= 1

    def test_max_batches_without_trend(self, control):
        state = init_state("auto")
        state.phase_batch_count = 5
        decision = decide_next_batch(state, control)
        assert decision.phase == fine_tuning_phase(1)
        assert decision.batch_size == 40

    def test_target_already_predicted(self, control):
        state = init_state("auto")
        state.phase_batch_count = 3
        state.total_sims_run = 5000
        state.ess_tracking = _tracking([100, 200, 300])
        assert decide_next_batch(state, control).phase.startswith("fine_tuning")

    def test_predictive_runs_once(self, control):
        state = init_state("auto")
        state.phase = PREDICTIVE
        state.phase_batch_count = 1
        state.ess_tracking = _tracking([100, 200, 2500])
        assert decide_next_batch(state, control).phase.startswith("fine_tuning")

    @pytest.mark.parametrize(
        "ratio, tier, size",
        [
            (0.1, 1, 40),
            (0.3, 2, 30),
            (0.6, 3, 20),
            (0.8, 4, 10),
            (0.95, 5, 5),
            (1.2, 5, 5),
        ],
    )
    def test_fine_tuning_tiers(self, control, ratio, tier, size):
        state = init_state("auto")
        state.phase = fine_tuning_phase(1)
        state.phase_batch_count = 1
        state.ess_tracking = [{"n_successful": 100, "ess_quantile": ratio * 50.0}]
        decision = decide_next_batch(state, control)
        assert decision.phase == fine_tuning_phase(tier)
        assert decision.batch_size == size

    def test_unknown_ess_restarts_at_tier_one(self, control):
        state = init_state("auto")
        state.phase = fine_tuning_phase(4)
        state.ess_tracking = [{"n_successful": 100, "ess_quantile": math.nan}]
        assert decide_next_batch(state, control).phase == fine_tuning_phase(1)

    def test_converged_is_terminal(self, control):
        state = init_state("auto")
        state.converged = True
        decision = decide_next_batch(state, control)
        assert decision.phase == CONVERGED
        assert decision.batch_size == 0


class ShardWorker:
    """Records calls and touches a shard per successful task."""

    def __init__(self, shard_dir: Path, fail_ids=()):
        self.shard_dir = shard_dir
        self.fail_ids = set(fail_ids)
        self.calls: list[int] = []

    def __call__(self, sim_id):
        self.calls.append(sim_id)
        if sim_id in self.fail_ids:
            return None
        self.shard_dir.mkdir(parents=True, exist_ok=True)
        (self.shard_dir / shard_name(sim_id, IOConfig())).touch()
        return SimpleNamespace(success=True)


class CountingCheck:
    """Convergence check that converges after a given number of calls."""

    def __init__(self, converge_after=None):
        self.converge_after = converge_after
        self.calls = 0

    def __call__(self, state, control):
        self.calls += 1
        return self.converge_after is not None and self.calls >= self.converge_after


def _scheduler(tmp_path, control, worker, check=None):
    return BatchScheduler(
        control,
        SequentialDispatcher(),
        worker,
        state_path=tmp_path / "run_state.json",
        shard_dir=tmp_path / "shards",
        convergence_check=check,
    )


class TestFixedMode:
    """Known number of simulations."""

    def test_batches(self, tmp_path: Path):
        control = make_control(calibration={"n_simulations": 25, "batch_size": 10})
        worker = ShardWorker(tmp_path / "shards")
        state = _scheduler(tmp_path, control, worker).run()

        assert worker.calls == list(range(1, 26))
        assert state.batch_number == 3
        assert state.batch_sizes_used == [10, 10, 5]
        assert state.total_sims_run == 25
        assert load_state(tmp_path / "run_state.json").total_sims_run == 25

    def test_resume_is_idempotent(self, tmp_path: Path):
        control = make_control(calibration={"n_simulations": 12, "batch_size": 5})
        _scheduler(tmp_path, control, ShardWorker(tmp_path / "shards")).run()

        again = ShardWorker(tmp_path / "shards")
        state = _scheduler(tmp_path, control, again).run(resume=True)
        assert again.calls == []
        assert state.batch_number == 3
        assert state.total_sims_run == 12

    def test_resume_runs_only_missing(self, tmp_path: Path):
        control = make_control(calibration={"n_simulations": 10, "batch_size": 4})
        first = ShardWorker(tmp_path / "shards", fail_ids={3, 8})
        state = _scheduler(tmp_path, control, first).run()
        assert state.total_sims_run == 8
        assert state.batch_success_rates == [75.0, 75.0, 100.0]

        second = ShardWorker(tmp_path / "shards")
        state = _scheduler(tmp_path, control, second).run(resume=True)
        assert second.calls == [3, 8]
        assert state.total_sims_run == 10

    def test_raised_target_on_resume(self, tmp_path: Path):
        small = make_control(calibration={"n_simulations": 5, "batch_size": 5})
        _scheduler(tmp_path, small, ShardWorker(tmp_path / "shards")).run()

        larger = make_control(calibration={"n_simulations": 8, "batch_size": 5})
        worker = ShardWorker(tmp_path / "shards")
        state = _scheduler(tmp_path, larger, worker).run(resume=True)
        assert worker.calls == [6, 7, 8]
        assert state.fixed_target == 8

    def test_lowered_target_keeps_totals(self, tmp_path: Path, caplog):
        large = make_control(calibration={"n_simulations": 10, "batch_size": 5})
        _scheduler(tmp_path, large, ShardWorker(tmp_path / "shards")).run()

        small = make_control(calibration={"n_simulations": 5, "batch_size": 5})
        worker = ShardWorker(tmp_path / "shards")
        with caplog.at_level(logging.WARNING, logger="simcal"):
            state = _scheduler(tmp_path, small, worker).run(resume=True)
        assert worker.calls == []
        assert state.fixed_target == 5
        assert state.total_sims_run == 10
        assert state.total_sims_successful == 10
        assert load_state(tmp_path / "run_state.json").total_sims_run == 10
        assert "Fixed target lowered from 10 to 5" in caplog.text

    def test_mode_mismatch_starts_fresh(self, tmp_path: Path):
        state = init_state("auto")
        state.batch_number = 7
        save_state(state, tmp_path / "run_state.json")

        control = make_control(calibration={"n_simulations": 3, "batch_size": 5})
        worker = ShardWorker(tmp_path / "shards")
        state = _scheduler(tmp_path, control, worker).run(resume=True)
        assert state.mode == "fixed"
        assert state.batch_number == 1


class TestAutoMode:
    """Adaptive batches."""

    def _control(self, max_sims=50):
        return make_control(
            calibration={
                "batch_size": 10,
                "min_batches": 2,
                "max_batches": 3,
                "max_simulations": max_sims,
                "fine_tuning_reserve": 5,
            },
            fine_tuning={
                "batch_sizes": {
                    "massive": 15,
                    "large": 15,
                    "standard": 15,
                    "precision": 15,
                    "final": 15,
                }
            },
        )

    def test_stops_at_ceiling(self, tmp_path: Path):
        worker = ShardWorker(tmp_path / "shards")
        check = CountingCheck()
        state = _scheduler(tmp_path, self._control(), worker, check).run()

        assert not state.converged
        assert state.total_sims_run == 50
        assert sum(state.batch_sizes_used) == 50
        assert worker.calls == list(range(1, 51))
        assert state.batch_sizes_used == [10, 10, 10, 15, 5]
        assert state.phase == fine_tuning_phase(1)
        assert state.phase_last == CALIBRATION

    def test_no_check_on_final_batch(self, tmp_path: Path):
        check = CountingCheck()
        state = _scheduler(
            tmp_path, self._control(), ShardWorker(tmp_path / "s"), check
        ).run()
        assert check.calls == state.batch_number - 1

    def test_converges(self, tmp_path: Path):
        check = CountingCheck(converge_after=2)
        state = _scheduler(
            tmp_path, self._control(), ShardWorker(tmp_path / "s"), check
        ).run()
        assert state.converged
        assert state.phase == CONVERGED
        assert state.phase_last == CALIBRATION
        assert state.total_sims_run == 20

    def test_failed_tasks_counted(self, tmp_path: Path):
        worker = ShardWorker(tmp_path / "shards", fail_ids={2, 4})
        state = _scheduler(tmp_path, self._control(), worker, CountingCheck(1)).run()
        assert state.total_sims_run == 10
        assert state.total_sims_successful == 8
        assert state.batch_success_rates == [80.0]

    def test_resume_continues_numbering(self, tmp_path: Path):
        control = self._control()
        state = init_state("auto")
        state.batch_number = 2
        state.phase_batch_count = 2
        state.total_sims_run = 20
        state.total_sims_successful = 20
        save_state(state, tmp_path / "run_state.json")

        worker = ShardWorker(tmp_path / "shards")
        state = _scheduler(tmp_path, control, worker, CountingCheck(1)).run(resume=True)
        assert worker.calls[0] == 21
        assert state.batch_number == 3

    def test_malformed_state_starts_fresh(self, tmp_path: Path):
        state = init_state("auto")
        state.batch_number = 2
        state.total_sims_run = 20
        state.total_sims_successful = 20
        path = tmp_path / "run_state.json"
        save_state(state, path)
        data = json.loads(path.read_text())
        data["phase_batch_count"] = "2"
        path.write_text(json.dumps(data))

        worker = ShardWorker(tmp_path / "shards")
        state = _scheduler(tmp_path, self._control(), worker, CountingCheck(1)).run(
            resume=True
        )
        assert worker.calls[0] == 1
        assert state.batch_number == 1
        assert state.batch_sizes_used == [10]

    def test_predictive_capped_by_reserve(self, tmp_path: Path):
        control = make_control(
            calibration={
                "batch_size": 10,
                "min_batches": 2,
                "max_batches": 2,
                "max_simulations": 100,
                "fine_tuning_reserve": 30,
            },
            targets={"ess_param": 1e6},
        )

        class GrowingESS:
            def __call__(self, state, control):
                n = state.total_sims_run
                state.ess_tracking.append({"n_successful": n, "ess_quantile": float(n)})
                return False

        state = _scheduler(
            tmp_path, control, ShardWorker(tmp_path / "s"), GrowingESS()
        ).run()
        assert state.batch_sizes_used[2] == 50
        assert state.total_sims_run == 100


class TestESSConvergenceCheck:
    """Default check over shards on disk."""

    def test_appends_tracking(self, tmp_path: Path):
        write_shards(tmp_path, results_frame(np.zeros(20)))
        control = make_control(targets={"ess_param": 10.0, "ess_param_prop": 0.9})
        state = init_state("auto")
        state.total_sims_run = 20

        check = ESSConvergenceCheck(tmp_path, ["theta"])
        assert check(state, control) is True
        entry = state.ess_tracking[-1]
        assert entry["n_successful"] == 20
        assert entry["n_valid"] == 20
        assert entry["ess_quantile"] == pytest.approx(20.0)
        assert entry["converged"] is True

    def test_not_converged(self, tmp_path: Path):
        write_shards(tmp_path, results_frame(np.zeros(5)))
        control = make_control(targets={"ess_param": 100.0})
        state = init_state("auto")
        assert ESSConvergenceCheck(tmp_path, ["theta"])(state, control) is False
        assert state.ess_tracking[-1]["prop_meeting"] == 0.0

    def test_no_results(self, tmp_path: Path):
        state = init_state("auto")
        assert ESSConvergenceCheck(tmp_path, ["theta"])(state, make_control()) is False
        assert state.ess_tracking == []
