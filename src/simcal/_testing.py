"""
Deterministic stub collaborators.

Small module-level model, likelihood and sampler implementations used by the
test suite and for smoke-testing a backend (``simcal --demo``). They live in
the package so process pools and remote jobs can unpickle them by reference.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

import numpy as np

N_TIMES = 12


def uniform_sampler(
    config: Mapping[str, Any],
    priors: Mapping[str, Any],
    seed: int,
    sampling: Mapping[str, bool],
) -> dict[str, float]:
    """
    Draw each prior ``{"low": a, "high": b}`` uniformly from a seeded RNG.

    Parameters whose sampling flag is False take the value in *config*.
    """
    rng = np.random.default_rng(seed)
    params = {}
    for name, bounds in priors.items():
        value = rng.uniform(bounds["low"], bounds["high"])
        if sampling.get(name, True):
            params[name] = float(value)
        else:
            params[name] = float(config[name])
    return params


def growth_model(params: Mapping[str, float], seed: int) -> dict[str, np.ndarray]:
    """Noisy exponential growth ``level * exp(rate * t)`` for one location."""
    rng = np.random.default_rng(seed)
    t = np.arange(N_TIMES)
    mean = params["level"] * np.exp(params["rate"] * t)
    return {"cases": (mean + rng.normal(0.0, 0.1, N_TIMES)).reshape(1, -1)}


def gaussian_likelihood(
    observed: Mapping[str, np.ndarray],
    estimated: Mapping[str, np.ndarray],
    config: Mapping[str, Any],
) -> float:
    """Gaussian log-likelihood (unit variance) summed over all series."""
    total = 0.0
    for name, obs in observed.items():
        diff = np.asarray(estimated[name]) - np.asarray(obs)
        total += -0.5 * float(np.sum(diff**2))
    return total


def growth_observed() -> dict[str, np.ndarray]:
    """Observations generated by ``growth_model`` at level 1, rate 0.1."""
    t = np.arange(N_TIMES)
    return {"cases": np.exp(0.1 * t).reshape(1, -1)}


GROWTH_PRIORS = {"level": {"low": 0.5, "high": 1.5}, "rate": {"low": 0.0, "high": 0.2}}


# Identity collaborators: the likelihood of simulation ``k`` is exactly ``-k``.


def id_sampler(
    config: Mapping[str, Any],
    priors: Mapping[str, Any],
    seed: int,
    sampling: Mapping[str, bool],
) -> dict[str, float]:
    return {"theta": float(seed)}


def echo_model(params: Mapping[str, float], seed: int) -> np.ndarray:
    return np.full(3, params["theta"])


def negative_echo_likelihood(observed: Any, estimated: Any, config: Mapping[str, Any]) -> float:
    return -float(np.asarray(estimated).ravel()[0])


class FailingSampler:
    """``id_sampler`` that raises for the given seeds."""

    def __init__(self, fail_seeds: set[int]):
        self.fail_seeds = set(fail_seeds)

    def __call__(self, config, priors, seed, sampling):
        if seed in self.fail_seeds:
            raise RuntimeError(f"prior draw rejected for seed {seed}")
        return id_sampler(config, priors, seed, sampling)


class FailingModel:
    """``echo_model`` that raises for the given iteration seeds."""

    def __init__(self, fail_seeds: set[int]):
        self.fail_seeds = set(fail_seeds)

    def __call__(self, params, seed):
        if seed in self.fail_seeds:
            raise FloatingPointError(f"model diverged for seed {seed}")
        return echo_model(params, seed)


def square_task(task_id: int) -> int:
    """Dispatcher test task: ``task_id ** 2``, raising for multiples of 7."""
    if task_id % 7 == 0:
        raise ValueError(f"task {task_id} is a multiple of 7")
    return task_id * task_id
