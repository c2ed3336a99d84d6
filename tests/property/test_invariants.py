"""Property-based tests for simcal invariants using Hypothesis.

These tests use randomized inputs to check the seed scheme, the weighting
helpers and the task splitting over a wide range of shapes and values.
"""

import math

import numpy as np
from hypothesis import given, settings
from hypothesis import strategies as st

from simcal.aggregate import annotate
from simcal.convergence import (
    agreement_index,
    akaike_weights,
    calc_ess,
    delta_aic,
    gibbs_weights,
)
from simcal.dispatch import split_tasks
from simcal.worker import iteration_seed, log_mean_exp
from tests.helpers.factories import results_frame

# Log-likelihoods in a range where exp() neither overflows nor flushes every
# weight to zero
likelihood_strategy = st.lists(
    st.floats(min_value=-500.0, max_value=0.0, allow_nan=False), min_size=2, max_size=200
)
weight_strategy = st.lists(
    st.floats(min_value=1e-6, max_value=1e3, allow_nan=False), min_size=2, max_size=200
)
cap_strategy = st.floats(min_value=0.0, max_value=50.0)


class TestSeedScheme:
    """Iteration seeds of distinct simulations never overlap."""

    @given(n_sims=st.integers(1, 60), n_iterations=st.integers(1, 12))
    @settings(max_examples=50, deadline=None)
    def test_seeds_partition_range(self, n_sims, n_iterations):
        seeds = [
            iteration_seed(s, j, n_iterations)
            for s in range(1, n_sims + 1)
            for j in range(1, n_iterations + 1)
        ]
        assert sorted(seeds) == list(range(1, n_sims * n_iterations + 1))


class TestWeights:
    """Weighting helpers stay within their documented bounds."""

    @given(w=weight_strategy, method=st.sampled_from(["kish", "perplexity"]))
    @settings(max_examples=100, deadline=None)
    def test_ess_bounds(self, w, method):
        ess = calc_ess(w, method)
        assert 1.0 - 1e-9 <= ess <= len(w) * (1.0 + 1e-9)

    @given(w=weight_strategy)
    @settings(max_examples=100, deadline=None)
    def test_agreement_bounds(self, w):
        a = agreement_index(w)
        assert -1e-9 <= a <= 1.0 + 1e-9

    @given(lik=likelihood_strategy, cap=cap_strategy)
    @settings(max_examples=100, deadline=None)
    def test_akaike_sum_and_ratio(self, lik, cap):
        w = akaike_weights(delta_aic(lik), cap)
        assert math.isclose(w.sum(), len(lik), rel_tol=1e-9)
        assert (w > 0).all()
        assert w.max() / w.min() <= math.exp(cap / 2) * (1.0 + 1e-9)

    @given(lik=likelihood_strategy, temperature=st.floats(0.01, 1e4))
    @settings(max_examples=100, deadline=None)
    def test_gibbs_normalised(self, lik, temperature):
        w = gibbs_weights(lik, temperature)
        assert math.isclose(w.sum(), 1.0, rel_tol=1e-9)
        assert w[int(np.argmax(lik))] == w.max()


class TestLogMeanExp:
    """``log(mean(exp(x)))`` lies between the extremes."""

    @given(
        x=st.lists(
            st.floats(min_value=-1e6, max_value=1e3, allow_nan=False),
            min_size=1,
            max_size=50,
        )
    )
    @settings(max_examples=100, deadline=None)
    def test_between_min_and_max(self, x):
        value = log_mean_exp(x)
        tol = 1e-9 * max(1.0, max(abs(v) for v in x))
        assert min(x) - tol <= value <= max(x) + tol


class TestSplitTasks:
    """Chunks partition the tasks in order."""

    @given(n_tasks=st.integers(0, 300), n_chunks=st.integers(1, 64))
    @settings(max_examples=100, deadline=None)
    def test_partition(self, n_tasks, n_chunks):
        tasks = list(range(1, n_tasks + 1))
        chunks = split_tasks(tasks, n_chunks)
        assert [t for chunk in chunks for t in chunk] == tasks
        assert len(chunks) <= n_chunks
        assert all(chunks)
        if chunks:
            sizes = [len(c) for c in chunks]
            assert max(sizes) - min(sizes) <= 1


class TestRowFlags:
    """Flag columns are consistent with each other."""

    @given(
        lik=st.lists(
            st.one_of(
                st.floats(min_value=-1e4, max_value=0.0, allow_nan=False),
                st.just(math.nan),
            ),
            min_size=1,
            max_size=100,
        )
    )
    @settings(max_examples=50, deadline=None)
    def test_flag_implications(self, lik):
        df = annotate(results_frame(lik))
        assert not (df["is_valid"] & ~df["is_finite"]).any()
        assert not (df["is_retained"] & ~df["is_finite"]).any()
        assert not (df["is_retained"] & df["is_outlier"]).any()
        assert df["is_best_model"].sum() == int(df["is_valid"].any())
