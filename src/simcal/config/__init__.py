"""
Configuration module for simcal.

Control objects are built in three layers, later layers winning:

1. package defaults (``simcal/defaults.yml``)
2. a user file path or mapping
3. keyword overrides, one mapping per section

>>> from simcal.config import load_control
>>> control = load_control("control.yml", calibration={"batch_size": 100})
>>> control.calibration.batch_size
100
"""

from __future__ import annotations

import copy
import dataclasses
from collections.abc import Mapping
from importlib import resources
from pathlib import Path
from typing import Any

import yaml

from simcal.config.schema import (
    CalibrationConfig,
    Control,
    FineTuningConfig,
    IOConfig,
    LikelihoodConfig,
    LoggingConfig,
    ParallelConfig,
    PathsConfig,
    ResourcesConfig,
    SamplingConfig,
    TargetsConfig,
    WeightsConfig,
)
from simcal.config.validator import ControlValidator

# Sections whose values are free-form mappings; their keys are not checked.
_OPEN_MAPPINGS = {
    ("sampling", "flags"),
    ("likelihood", "options"),
    ("fine_tuning", "batch_sizes"),
    ("logging", "modules"),
}

IO_PRESETS: dict[str, dict[str, Any]] = {
    "debug": {"format": "csv", "compression": None, "compression_level": None},
    "fast": {"format": "parquet", "compression": "snappy", "compression_level": None},
    "default": {"format": "parquet", "compression": "zstd", "compression_level": 3},
    "archive": {"format": "parquet", "compression": "zstd", "compression_level": 9},
}


def _read_yaml(obj: str | Path | Mapping[str, Any] | None) -> dict[str, Any]:
    """Return a plain dict – {} if *obj* is None."""
    if obj is None:
        return {}
    if isinstance(obj, Control):
        return control_to_dict(obj)
    if isinstance(obj, Mapping):
        return copy.deepcopy(dict(obj))
    p = Path(obj)
    with p.open("rt", encoding="utf-8") as fh:
        data = yaml.safe_load(fh) or {}
    if not isinstance(data, Mapping):
        raise TypeError(f"control root must be mapping, got {type(data)!r}")
    return dict(data)


def _package_defaults() -> dict[str, Any]:
    """Load simcal/defaults.yml"""
    txt = resources.files("simcal").joinpath("defaults.yml").read_text()
    return yaml.safe_load(txt) or {}


def merge_control(
    base: Mapping[str, Any], override: Mapping[str, Any], _path: tuple[str, ...] = ()
) -> dict[str, Any]:
    """
    Deep-merge *override* into a copy of *base*.

    Keys missing from *base* are rejected, except inside free-form mappings
    such as ``sampling.flags``, so a typo in a control file fails loudly
    instead of being ignored.

    Parameters
    ----------
    base : Mapping
        Mapping holding every known key (usually the package defaults).
    override : Mapping
        Partial mapping whose values win.

    Returns
    -------
    dict
        New merged mapping; neither input is modified.

    Raises
    ------
    ValueError
        If *override* contains a key unknown to *base*.
    """
    merged = copy.deepcopy(dict(base))
    open_mapping = _path in _OPEN_MAPPINGS
    for key, value in override.items():
        if key not in merged and not open_mapping:
            where = ".".join((*_path, str(key)))
            raise ValueError(f"Unknown control parameter '{where}'")
        current = merged.get(key)
        if isinstance(current, Mapping) and isinstance(value, Mapping):
            merged[key] = merge_control(current, value, (*_path, str(key)))
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def control_to_dict(control: Control) -> dict[str, Any]:
    """Return the nested plain-dict form of *control*."""
    return dataclasses.asdict(control)


def build_control(cfg: Mapping[str, Any]) -> Control:
    """Instantiate the dataclass tree from an already validated mapping."""
    parallel = dict(cfg.get("parallel", {}))
    resources_cfg = ResourcesConfig(**parallel.pop("resources", {}))
    io_cfg = dict(cfg.get("io", {}))
    if io_cfg.get("compression") == "none":
        io_cfg["compression"] = None
    return Control(
        calibration=CalibrationConfig(**cfg.get("calibration", {})),
        sampling=SamplingConfig(**cfg.get("sampling", {})),
        likelihood=LikelihoodConfig(**cfg.get("likelihood", {})),
        targets=TargetsConfig(**cfg.get("targets", {})),
        fine_tuning=FineTuningConfig(**cfg.get("fine_tuning", {})),
        weights=WeightsConfig(**cfg.get("weights", {})),
        parallel=ParallelConfig(resources=resources_cfg, **parallel),
        io=IOConfig(**io_cfg),
        paths=PathsConfig(**cfg.get("paths", {})),
        logging=LoggingConfig(**cfg.get("logging", {})),
    )


def io_preset(name: str) -> dict[str, Any]:
    """
    Return the ``io`` section overrides of a named preset.

    Parameters
    ----------
    name : {"debug", "fast", "default", "archive"}

    Raises
    ------
    ValueError
        If the preset is unknown.
    """
    try:
        return dict(IO_PRESETS[name])
    except KeyError:
        raise ValueError(
            f"Unknown io preset '{name}'. Must be one of {sorted(IO_PRESETS)}"
        ) from None


def load_control(
    config: str | Path | Mapping[str, Any] | Control | None = None,
    **overrides: Mapping[str, Any],
) -> Control:
    """
    Build a validated control object.

    Parameters
    ----------
    config : path, mapping or Control, optional
        User control. A path is read as YAML.
    **overrides
        Per-section mappings applied last, e.g. ``io={"format": "csv"}``.

    Returns
    -------
    Control

    Raises
    ------
    ValueError
        If the merged control contains unknown keys or invalid values.
    TypeError
        If a control file's root is not a mapping.
    """
    cfg = merge_control(_package_defaults(), _read_yaml(config))
    cfg = merge_control(cfg, overrides)
    ControlValidator.validate_control(cfg)
    return build_control(cfg)


__all__ = [
    "CalibrationConfig",
    "Control",
    "ControlValidator",
    "FineTuningConfig",
    "IOConfig",
    "IO_PRESETS",
    "LikelihoodConfig",
    "LoggingConfig",
    "ParallelConfig",
    "PathsConfig",
    "ResourcesConfig",
    "SamplingConfig",
    "TargetsConfig",
    "WeightsConfig",
    "build_control",
    "control_to_dict",
    "io_preset",
    "load_control",
    "merge_control",
]
