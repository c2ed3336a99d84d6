"""
Type definitions for the collaborators a calibration run is given.

The simulation model, likelihood and parameter sampler are injected by the
caller; simcal only relies on the call signatures below. Collaborators sent
to process pools or remote jobs must be picklable, in practice module-level
functions or instances of module-level classes.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Protocol, TypeAlias, runtime_checkable

import numpy as np
from numpy.typing import NDArray

Float1D: TypeAlias = NDArray[np.float64]

# A model returns one series or several named series (e.g. cases, deaths),
# each shaped (n_locations, n_times) or (n_times,).
Series: TypeAlias = NDArray[np.float64] | Mapping[str, NDArray[np.float64]]
Params: TypeAlias = Mapping[str, float]


@runtime_checkable
class SimulationModel(Protocol):
    """Run one stochastic realisation of the model."""

    def __call__(self, params: Params, seed: int) -> Series: ...


@runtime_checkable
class Releasable(Protocol):
    """Model holding resources that should be freed between iterations."""

    def release(self) -> None: ...


class LikelihoodFunction(Protocol):
    """Score simulated series against observations; higher is better."""

    def __call__(
        self, observed: Any, estimated: Series, config: Mapping[str, Any]
    ) -> float: ...


class ParameterSampler(Protocol):
    """Draw one parameter vector deterministically from *seed*."""

    def __call__(
        self,
        config: Mapping[str, Any],
        priors: Mapping[str, Any],
        seed: int,
        sampling: Mapping[str, bool],
    ) -> Params: ...


class ConvergenceCheck(Protocol):
    """Refresh convergence tracking after a batch; return True when converged."""

    def __call__(self, state: Any, control: Any) -> bool: ...
