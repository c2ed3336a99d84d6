"""
Run State Store
===============

Persists the scheduler's progress so an interrupted run can resume from its
last completed batch. The state is a small JSON document written atomically
after every batch; an advisory lock file keeps two processes from driving the
same output directory at once.
"""

from __future__ import annotations

import dataclasses
import json
import os
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from simcal.io import atomic_write
from simcal.logging import getLogger

try:
    import fcntl
except ImportError:  # Windows
    fcntl = None  # type: ignore[assignment]

log = getLogger(__name__)

STATE_VERSION = "1.0"
VALID_MODES = ("fixed", "auto")

REQUIRED_FIELDS: dict[str, type | tuple[type, ...]] = {
    "total_sims_run": int,
    "total_sims_successful": int,
    "batch_number": int,
    "phase": str,
    "converged": bool,
    "mode": str,
}

# Types accepted for optional fields when a state file carries them.
OPTIONAL_FIELDS: dict[str, type | tuple[type, ...]] = {
    "phase_batch_count": int,
    "phase_last": (str, type(None)),
    "batch_success_rates": list,
    "batch_sizes_used": list,
    "ess_tracking": list,
    "fixed_target": (int, type(None)),
}

# Optional fields and the value used when an older state file lacks them.
OPTIONAL_DEFAULTS: dict[str, Any] = {
    "phase_batch_count": 0,
    "phase_last": None,
    "batch_success_rates": [],
    "batch_sizes_used": [],
    "ess_tracking": [],
    "fixed_target": None,
}


def _now() -> str:
    return datetime.now().isoformat()


@dataclass
class RunState:
    """
    Scheduler progress of one calibration run.

    Attributes
    ----------
    mode : {"fixed", "auto"}
    phase : str
        Current scheduler phase (see :mod:`simcal.scheduler`).
    batch_number : int
        Completed batches.
    total_sims_run : int
        Highest dispatched simulation count; never decreases.
    total_sims_successful : int
        Simulations that produced a result shard.
    batch_success_rates : list of float
        Success percentage of each batch.
    batch_sizes_used : list of int
        Size of each dispatched batch.
    phase_batch_count : int
        Batches run in the current phase.
    phase_last : str or None
        Phase before the most recent transition.
    fixed_target : int or None
        Target count in fixed mode.
    converged : bool
    ess_tracking : list of dict
        One record per convergence check.
    """

    mode: str
    phase: str = "calibration"
    batch_number: int = 0
    total_sims_run: int = 0
    total_sims_successful: int = 0
    batch_success_rates: list[float] = field(default_factory=list)
    batch_sizes_used: list[int] = field(default_factory=list)
    phase_batch_count: int = 0
    phase_last: str | None = None
    fixed_target: int | None = None
    converged: bool = False
    ess_tracking: list[dict[str, Any]] = field(default_factory=list)
    created_at: str = field(default_factory=_now)
    last_updated: str = field(default_factory=_now)

    def to_dict(self) -> dict[str, Any]:
        return {"version": STATE_VERSION, **dataclasses.asdict(self)}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RunState:
        names = {f.name for f in dataclasses.fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in names})


def init_state(mode: str, fixed_target: int | None = None) -> RunState:
    """Fresh state for a new run."""
    if mode not in VALID_MODES:
        raise ValueError(f"mode must be one of {VALID_MODES}, got {mode!r}")
    return RunState(mode=mode, fixed_target=fixed_target)


def _type_name(expected: type | tuple[type, ...]) -> str:
    if isinstance(expected, tuple):
        return " or ".join("None" if t is type(None) else t.__name__ for t in expected)
    return expected.__name__


def _check_type(name: str, value: Any, expected: type | tuple[type, ...]) -> str | None:
    # bool is an int subclass; counts must not be booleans
    counts = expected is int or (isinstance(expected, tuple) and int in expected)
    if counts and isinstance(value, bool):
        return f"field '{name}' must be {_type_name(expected)}, got bool"
    if not isinstance(value, expected):
        return f"field '{name}' must be {_type_name(expected)}, got {type(value).__name__}"
    return None


def validate_state(data: Any) -> list[str]:
    """
    Return the problems found in a decoded state document.

    An empty list means the document can be loaded. Optional fields are
    type-checked when present; :func:`load_state` fills in the missing ones.
    """
    if not isinstance(data, dict):
        return [f"state root must be an object, got {type(data).__name__}"]

    problems = []
    for name, expected in REQUIRED_FIELDS.items():
        if name not in data:
            problems.append(f"missing required field '{name}'")
            continue
        problem = _check_type(name, data[name], expected)
        if problem:
            problems.append(problem)

    for name, expected in OPTIONAL_FIELDS.items():
        if name in data:
            problem = _check_type(name, data[name], expected)
            if problem:
                problems.append(problem)

    for name in ("total_sims_run", "total_sims_successful", "batch_number", "phase_batch_count"):
        value = data.get(name)
        if isinstance(value, int) and not isinstance(value, bool) and value < 0:
            problems.append(f"field '{name}' must be non-negative, got {value}")

    if isinstance(data.get("mode"), str) and data["mode"] not in VALID_MODES:
        problems.append(f"field 'mode' must be one of {VALID_MODES}, got {data['mode']!r}")

    return problems


def save_state(state: RunState, path: str | Path) -> None:
    """
    Persist *state* atomically.

    ``last_updated`` is refreshed before writing. On any failure the
    temporary file is removed and the previous state file is left intact.
    """
    path = Path(path)
    state.last_updated = _now()
    with atomic_write(path) as tmp:
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(state.to_dict(), f, indent=2)
            f.flush()
    log.debug("Saved run state to %s (batch %d)", path, state.batch_number)


def load_state(path: str | Path) -> RunState | None:
    """
    Load and validate a saved state.

    Returns
    -------
    RunState or None
        None when the file is missing, unreadable or invalid. Problems are
        logged as warnings; the caller starts a fresh run.
    """
    path = Path(path)
    if not path.exists():
        return None

    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as exc:
        log.warning("Could not read run state %s: %s", path, exc)
        return None

    problems = validate_state(data)
    if problems:
        log.warning("Invalid run state %s: %s", path, "; ".join(problems))
        return None

    for name, default in OPTIONAL_DEFAULTS.items():
        if name not in data:
            log.info("Run state lacks '%s'; using default %r", name, default)
            data[name] = list(default) if isinstance(default, list) else default

    return RunState.from_dict(data)


class RunLock:
    """
    Advisory exclusive lock guarding a run's output directory.

    Parameters
    ----------
    path : str or Path
        Lock file path, usually ``run_state.json.lock``.

    Raises
    ------
    RuntimeError
        On ``acquire()`` when another process holds the lock.

    Examples
    --------
    >>> with RunLock(dirs.state_file.with_suffix(".lock")):
    ...     scheduler.run()
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self._fh: Any = None

    def acquire(self) -> RunLock:
        if fcntl is None:
            log.warning(
                "File locking unavailable on this platform; make sure only one "
                "process writes to %s",
                self.path.parent,
            )
            return self
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fh = open(self.path, "a+")
        try:
            fcntl.flock(fh.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            fh.close()
            raise RuntimeError(
                f"Another calibration run holds the lock {self.path}; "
                "refusing to write to the same output directory"
            ) from None
        fh.seek(0)
        fh.truncate()
        fh.write(f"{os.getpid()}\n")
        fh.flush()
        self._fh = fh
        return self

    def release(self) -> None:
        if self._fh is None:
            return
        fcntl.flock(self._fh.fileno(), fcntl.LOCK_UN)
        self._fh.close()
        self._fh = None

    @property
    def held(self) -> bool:
        return self._fh is not None

    def __enter__(self) -> RunLock:
        return self.acquire()

    def __exit__(self, *args: Any) -> None:
        self.release()
