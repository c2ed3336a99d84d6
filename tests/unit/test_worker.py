"""Tests for the simulation worker."""

import logging
import math
from pathlib import Path

import numpy as np
import pytest

from simcal import _testing as stubs
from simcal.io import read_table, shard_name
from simcal.worker import (
    RELEASE_EVERY,
    IterationRecord,
    collapse_iterations,
    iteration_seed,
    log_mean_exp,
    run_simulation,
    timeseries_frame,
)
from tests.helpers.factories import id_payload


class TestIterationSeed:
    """``(sim_id - 1) * K + j``."""

    @pytest.mark.parametrize(
        "sim_id, j, k, expected",
        [(1, 1, 3, 1), (1, 3, 3, 3), (2, 1, 3, 4), (3, 3, 3, 9), (10, 1, 1, 10)],
    )
    def test_values(self, sim_id, j, k, expected):
        assert iteration_seed(sim_id, j, k) == expected

    @pytest.mark.parametrize("j", [0, 4])
    def test_iteration_out_of_range(self, j):
        with pytest.raises(ValueError, match="iteration"):
            iteration_seed(1, j, 3)

    def test_sim_id_must_be_positive(self):
        with pytest.raises(ValueError, match="sim_id"):
            iteration_seed(0, 1, 3)


class TestLogMeanExp:
    """Stable ``log(mean(exp(x)))``."""

    def test_equal_values(self):
        assert log_mean_exp([-4.0, -4.0, -4.0]) == pytest.approx(-4.0)

    def test_known_value(self):
        assert log_mean_exp([0.0, math.log(3.0)]) == pytest.approx(math.log(2.0))

    def test_large_magnitudes(self):
        assert log_mean_exp([-1e5, -1e5]) == pytest.approx(-1e5)

    def test_ignores_non_finite(self):
        assert log_mean_exp([-2.0, np.nan, -np.inf]) == pytest.approx(-2.0)

    def test_all_non_finite(self):
        assert math.isnan(log_mean_exp([np.nan, np.inf]))


class TestCollapse:
    """Replicates collapse into one result row."""

    def _records(self, likelihoods):
        return [
            IterationRecord(5, j, iteration_seed(5, j, len(likelihoods)), lik, {"theta": 5.0})
            for j, lik in enumerate(likelihoods, start=1)
        ]

    def test_collapsed_row(self):
        row = collapse_iterations(self._records([-1.0, np.nan, -3.0]))
        assert row["sim"] == 5
        assert row["iter"] == 1
        assert row["seed_sim"] == 5
        assert row["seed_iter"] == 13
        assert row["theta"] == 5.0
        expected = math.log((math.exp(-1.0) + math.exp(-3.0)) / 2)
        assert row["likelihood"] == pytest.approx(expected)

    def test_no_finite_replicate(self):
        row = collapse_iterations(self._records([np.nan, np.nan]))
        assert math.isnan(row["likelihood"])
        assert row["seed_iter"] == 9
        assert row["theta"] == 5.0

    def test_empty(self):
        with pytest.raises(ValueError):
            collapse_iterations([])


class TestRunSimulation:
    """End-to-end execution of one task."""

    def test_identity_task(self, tmp_path: Path):
        payload = id_payload(tmp_path, n_iterations=2)
        result = run_simulation(7, payload)

        assert result.success
        assert result.sim_id == 7
        assert result.likelihood == pytest.approx(-7.0)
        assert result.n_finite == 2
        assert result.shard_path == tmp_path / shard_name(7, payload.io)

        df = read_table(result.shard_path)
        assert len(df) == 1
        assert df["sim"].iloc[0] == 7
        assert df["seed_iter"].iloc[0] == 13
        assert df["theta"].iloc[0] == 7.0
        assert df["likelihood"].iloc[0] == pytest.approx(-7.0)

    def test_deterministic(self, tmp_path: Path):
        growth = dict(
            n_iterations=3,
            model=stubs.growth_model,
            likelihood=stubs.gaussian_likelihood,
            sampler=stubs.uniform_sampler,
            priors=stubs.GROWTH_PRIORS,
            observed=stubs.growth_observed(),
        )
        ra = run_simulation(4, id_payload(tmp_path / "a", **growth))
        rb = run_simulation(4, id_payload(tmp_path / "b", **growth))
        assert ra.likelihood == rb.likelihood
        assert read_table(ra.shard_path).equals(read_table(rb.shard_path))

    def test_sampling_failure(self, tmp_path: Path, caplog):
        payload = id_payload(tmp_path, sampler=stubs.FailingSampler({4}))
        with caplog.at_level(logging.WARNING, logger="simcal"):
            result = run_simulation(4, payload)
        assert not result.success
        assert "sampling" in result.error
        assert not list(tmp_path.iterdir())
        assert "parameter sampling failed" in caplog.text

    def test_reserved_parameter_name(self, tmp_path: Path):
        def bad_sampler(config, priors, seed, sampling):
            return {"likelihood": 1.0}

        result = run_simulation(1, id_payload(tmp_path, sampler=bad_sampler))
        assert not result.success
        assert "clash" in result.error

    def test_one_iteration_fails(self, tmp_path: Path):
        # Iterations of task 2 with K=2 use seeds 3 and 4
        payload = id_payload(tmp_path, model=stubs.FailingModel({3}))
        result = run_simulation(2, payload)
        assert result.success
        assert result.n_finite == 1
        assert result.likelihood == pytest.approx(-2.0)

    def test_all_iterations_fail(self, tmp_path: Path):
        payload = id_payload(tmp_path, model=stubs.FailingModel({3, 4}))
        result = run_simulation(2, payload)
        assert result.success
        assert result.n_finite == 0
        assert math.isnan(result.likelihood)
        df = read_table(result.shard_path)
        assert math.isnan(df["likelihood"].iloc[0])

    def test_likelihood_failure(self, tmp_path: Path):
        def broken(observed, estimated, config):
            raise ZeroDivisionError("bad fit")

        result = run_simulation(3, id_payload(tmp_path, likelihood=broken))
        assert result.success
        assert result.n_finite == 0

    def test_release_hook(self, tmp_path: Path):
        class Model:
            def __init__(self):
                self.released = 0

            def __call__(self, params, seed):
                return stubs.echo_model(params, seed)

            def release(self):
                self.released += 1

        model = Model()
        run_simulation(1, id_payload(tmp_path, n_iterations=RELEASE_EVERY, model=model))
        # Once after the tenth iteration, once at the end of the task
        assert model.released == 2

    def test_timeseries_shard(self, tmp_path: Path):
        payload = id_payload(tmp_path / "shards", timeseries_dir=tmp_path / "ts")
        run_simulation(6, payload)
        df = read_table(tmp_path / "ts" / "timeseries_0000006.parquet")
        assert list(df.columns) == ["sim", "iter", "j", "t", "value"]
        assert df["t"].tolist() == [0, 1, 2]
        assert (df["j"] == 0).all()
        assert (df["value"] == 6.0).all()


class TestTimeseriesFrame:
    """Long-format mean output."""

    def test_named_series_averaged(self):
        outputs = [
            {"cases": np.array([[1.0, 2.0], [3.0, 4.0]])},
            {"cases": np.array([[3.0, 4.0], [5.0, 6.0]])},
        ]
        df = timeseries_frame(9, outputs)
        assert len(df) == 4
        assert df["sim"].unique().tolist() == [9]
        assert df["j"].tolist() == [0, 0, 1, 1]
        assert df["t"].tolist() == [0, 1, 0, 1]
        assert df["cases"].tolist() == [2.0, 3.0, 4.0, 5.0]
