"""Centralized control validation for simcal."""

from __future__ import annotations

import warnings
from typing import Any


class ControlValidator:
    """
    Centralized validation for calibration control mappings.

    All validation happens once in ``load_control()`` to ensure:
    - Type correctness
    - Valid parameter ranges and choices
    - Relationship constraints between parameters
    - Clear error messages with actionable feedback

    The validator works on the merged nested mapping, before it is turned
    into frozen dataclasses.
    """

    VALID_LOG_LEVELS = {"DEEP_DEBUG", "DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}

    CHOICES: dict[tuple[str, str], set[Any]] = {
        ("targets", "ess_method"): {"kish", "perplexity"},
        ("parallel", "type"): {"pool", "batch"},
        ("parallel", "scheduling"): {"static", "dynamic"},
        ("parallel", "submitter"): {"local", "slurm"},
        ("io", "format"): {"parquet", "csv"},
        ("io", "compression"): {None, "none", "zstd", "snappy", "gzip", "brotli", "lz4"},
        ("io", "load_method"): {"streaming", "concat"},
    }

    INT_PARAMS: dict[str, list[str]] = {
        "calibration": [
            "n_iterations",
            "max_simulations",
            "batch_size",
            "min_batches",
            "max_batches",
            "fine_tuning_reserve",
        ],
        "targets": ["min_best_subset", "max_best_subset"],
        "parallel": ["n_workers"],
        "paths": ["min_free_disk_mb"],
    }

    FLOAT_PARAMS: dict[str, list[str]] = {
        "calibration": ["target_r2"],
        "likelihood": ["floor_likelihood"],
        "targets": ["ess_param", "ess_param_prop", "ess_best", "a_best", "cvw_best"],
        "weights": ["floor", "iqr_multiplier", "akaike_cap_retained", "akaike_cap_best"],
        "parallel": ["poll_interval"],
    }

    BOOL_PARAMS: dict[str, list[str]] = {
        "likelihood": ["enable_guardrails"],
        "parallel": ["enable", "progress"],
        "io": ["save_timeseries"],
        "paths": ["clean_output"],
        "logging": ["verbose"],
    }

    @staticmethod
    def validate_control(cfg: dict[str, Any]) -> None:
        """
        Validate all control parameters.

        Parameters
        ----------
        cfg : dict
            Merged control mapping to validate.

        Raises
        ------
        ValueError
            If any validation check fails.
        """
        ControlValidator._validate_types(cfg)
        ControlValidator._validate_ranges(cfg)
        ControlValidator._validate_choices(cfg)
        ControlValidator._validate_relationships(cfg)
        if "logging" in cfg:
            ControlValidator._validate_logging(cfg["logging"])

    @staticmethod
    def _validate_types(cfg: dict[str, Any]) -> None:
        """
        Ensure correct types for control parameters.

        Raises
        ------
        ValueError
            If any parameter has incorrect type.
        """
        for section, names in ControlValidator.INT_PARAMS.items():
            values = cfg.get(section, {})
            for name in names:
                if name in values and (
                    isinstance(values[name], bool) or not isinstance(values[name], int)
                ):
                    raise ValueError(
                        f"Control parameter '{section}.{name}' must be int, "
                        f"got {type(values[name]).__name__}"
                    )

        for section, names in ControlValidator.FLOAT_PARAMS.items():
            values = cfg.get(section, {})
            for name in names:
                if name in values and (
                    isinstance(values[name], bool)
                    or not isinstance(values[name], (int, float))
                ):
                    raise ValueError(
                        f"Control parameter '{section}.{name}' must be float, "
                        f"got {type(values[name]).__name__}"
                    )

        for section, names in ControlValidator.BOOL_PARAMS.items():
            values = cfg.get(section, {})
            for name in names:
                if name in values and not isinstance(values[name], bool):
                    raise ValueError(
                        f"Control parameter '{section}.{name}' must be bool, "
                        f"got {type(values[name]).__name__}"
                    )

        n_sims = cfg.get("calibration", {}).get("n_simulations")
        if n_sims is not None and (isinstance(n_sims, bool) or not isinstance(n_sims, int)):
            raise ValueError(
                "Control parameter 'calibration.n_simulations' must be int or null, "
                f"got {type(n_sims).__name__}"
            )

        batch_sizes = cfg.get("fine_tuning", {}).get("batch_sizes", {})
        if not isinstance(batch_sizes, dict):
            raise ValueError("Control parameter 'fine_tuning.batch_sizes' must be a mapping")
        for tier, size in batch_sizes.items():
            if isinstance(size, bool) or not isinstance(size, int):
                raise ValueError(
                    f"Control parameter 'fine_tuning.batch_sizes.{tier}' must be int, "
                    f"got {type(size).__name__}"
                )

        for section, name in (("sampling", "flags"), ("likelihood", "options")):
            value = cfg.get(section, {}).get(name, {})
            if not isinstance(value, dict):
                raise ValueError(f"Control parameter '{section}.{name}' must be a mapping")

    @staticmethod
    def _validate_ranges(cfg: dict[str, Any]) -> None:
        """
        Ensure parameters are within valid ranges.

        Raises
        ------
        ValueError
            If any parameter is outside its valid range.
        """
        constraints: dict[tuple[str, str], dict[str, float]] = {
            ("calibration", "n_simulations"): {"min": 1},
            ("calibration", "n_iterations"): {"min": 1},
            ("calibration", "max_simulations"): {"min": 1},
            ("calibration", "batch_size"): {"min": 1},
            ("calibration", "min_batches"): {"min": 1},
            ("calibration", "max_batches"): {"min": 1},
            ("calibration", "target_r2"): {"min": 0.0, "max": 1.0},
            ("calibration", "fine_tuning_reserve"): {"min": 0},
            ("targets", "ess_param"): {"min": 1.0},
            ("targets", "ess_param_prop"): {"min": 0.0, "max": 1.0},
            ("targets", "ess_best"): {"min": 1.0},
            ("targets", "a_best"): {"min": 0.0, "max": 1.0},
            ("targets", "cvw_best"): {"min": 0.0},
            ("targets", "min_best_subset"): {"min": 2},
            ("targets", "max_best_subset"): {"min": 2},
            ("weights", "floor"): {"min": 0.0, "max": 1.0},
            ("weights", "iqr_multiplier"): {"min": 0.0},
            ("weights", "akaike_cap_retained"): {"min": 0.0},
            ("weights", "akaike_cap_best"): {"min": 0.0},
            ("parallel", "n_workers"): {"min": 1},
            ("parallel", "poll_interval"): {"min": 0.0},
            ("paths", "min_free_disk_mb"): {"min": 0},
        }

        for (section, name), bounds in constraints.items():
            value = cfg.get(section, {}).get(name)
            if value is None:
                continue
            if "min" in bounds and value < bounds["min"]:
                raise ValueError(
                    f"Control parameter '{section}.{name}' must be >= {bounds['min']}, "
                    f"got {value}"
                )
            if "max" in bounds and value > bounds["max"]:
                raise ValueError(
                    f"Control parameter '{section}.{name}' must be <= {bounds['max']}, "
                    f"got {value}"
                )

        for tier, size in cfg.get("fine_tuning", {}).get("batch_sizes", {}).items():
            if size < 1:
                raise ValueError(
                    f"Control parameter 'fine_tuning.batch_sizes.{tier}' must be >= 1, "
                    f"got {size}"
                )

    @staticmethod
    def _validate_choices(cfg: dict[str, Any]) -> None:
        """
        Ensure enumerated parameters take one of their allowed values.

        Raises
        ------
        ValueError
            If a parameter is not one of its allowed values.
        """
        for (section, name), allowed in ControlValidator.CHOICES.items():
            values = cfg.get(section, {})
            if name in values and values[name] not in allowed:
                shown = sorted(str(a) for a in allowed)
                raise ValueError(
                    f"Control parameter '{section}.{name}' must be one of {shown}, "
                    f"got {values[name]!r}"
                )

    @staticmethod
    def _validate_relationships(cfg: dict[str, Any]) -> None:
        """
        Check cross-parameter constraints.

        Raises
        ------
        ValueError
            If a relationship constraint is violated.
        """
        cal = cfg.get("calibration", {})
        if cal.get("min_batches", 1) > cal.get("max_batches", 1):
            raise ValueError(
                f"calibration.min_batches ({cal['min_batches']}) must be <= "
                f"calibration.max_batches ({cal['max_batches']})"
            )

        targets = cfg.get("targets", {})
        lo = targets.get("min_best_subset", 2)
        hi = targets.get("max_best_subset", 2)
        if lo > hi:
            raise ValueError(
                f"targets.min_best_subset ({lo}) must be <= targets.max_best_subset ({hi})"
            )

        n_sims = cal.get("n_simulations")
        max_sims = cal.get("max_simulations")
        if n_sims is not None and max_sims is not None and n_sims > max_sims:
            warnings.warn(
                f"calibration.n_simulations ({n_sims}) exceeds max_simulations "
                f"({max_sims}); fixed mode ignores the ceiling",
                UserWarning,
                stacklevel=4,
            )

        reserve = cal.get("fine_tuning_reserve", 0)
        if max_sims is not None and reserve >= max_sims:
            raise ValueError(
                f"calibration.fine_tuning_reserve ({reserve}) must be < "
                f"calibration.max_simulations ({max_sims})"
            )

        if targets.get("ess_best", 0) > targets.get("max_best_subset", float("inf")):
            warnings.warn(
                f"targets.ess_best ({targets['ess_best']}) exceeds max_best_subset "
                f"({targets['max_best_subset']}); no subset can converge",
                UserWarning,
                stacklevel=4,
            )

    @staticmethod
    def _validate_logging(log_cfg: dict[str, Any]) -> None:
        """
        Validate logging configuration.

        Raises
        ------
        ValueError
            If a log level is not recognised.
        """
        level = log_cfg.get("level", "INFO")
        if level not in ControlValidator.VALID_LOG_LEVELS:
            raise ValueError(
                f"Invalid log level '{level}'. "
                f"Must be one of {sorted(ControlValidator.VALID_LOG_LEVELS)}"
            )
        modules = log_cfg.get("modules", {})
        if not isinstance(modules, dict):
            raise ValueError("Control parameter 'logging.modules' must be a mapping")
        for module, module_level in modules.items():
            if module_level not in ControlValidator.VALID_LOG_LEVELS:
                raise ValueError(
                    f"Invalid log level '{module_level}' for module '{module}'. "
                    f"Must be one of {sorted(ControlValidator.VALID_LOG_LEVELS)}"
                )
