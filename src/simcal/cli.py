"""
simcal command-line interface.

Usage::

    # Smoke test with the built-in growth model
    python -m simcal --demo -o ./demo_run --n-simulations 200

    # Calibrate your own model
    python -m simcal -o ./run --control control.yml --priors priors.yml \\
        --model mypkg.model:simulate --likelihood mypkg.model:loglik \\
        --sampler mypkg.priors:sample --observed mypkg.data:load_observed

    # Resume an interrupted run
    python -m simcal -o ./run --control control.yml ... --resume
"""

from __future__ import annotations

import argparse
import importlib
import json
import sys
from pathlib import Path
from typing import Any

from simcal import _testing
from simcal.config import _read_yaml, io_preset, load_control
from simcal.runner import run_calibration


def import_object(spec: str) -> Any:
    """
    Resolve ``"package.module:attribute"`` to the named object.

    Raises
    ------
    ValueError
        If *spec* lacks a ``:`` or the attribute does not exist.
    """
    module_name, sep, attr = spec.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"Expected 'module:attribute', got {spec!r}")
    module = importlib.import_module(module_name)
    obj: Any = module
    for part in attr.split("."):
        try:
            obj = getattr(obj, part)
        except AttributeError:
            raise ValueError(f"{module_name!r} has no attribute {attr!r}") from None
    return obj


def build_parser() -> argparse.ArgumentParser:
    """Build CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="simcal",
        description="Adaptive batch calibration of stochastic simulation models",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Demo run, sequential, fixed number of simulations
  simcal --demo -o ./demo --n-simulations 100

  # Demo run on 4 local processes in auto mode
  simcal --demo -o ./demo --workers 4 --max-simulations 5000

  # Remote jobs through Slurm (resources in the control file)
  simcal -o ./run --control hpc.yml --backend batch --submitter slurm ...
""",
    )
    parser.add_argument("-o", "--output", type=Path, required=True, help="Output directory")
    parser.add_argument("--control", type=Path, help="Control YAML file")
    parser.add_argument("--config", type=Path, help="Base model configuration YAML")
    parser.add_argument("--priors", type=Path, help="Priors YAML")
    parser.add_argument("--model", help="Simulation model as module:attribute")
    parser.add_argument("--likelihood", help="Likelihood function as module:attribute")
    parser.add_argument("--sampler", help="Parameter sampler as module:attribute")
    parser.add_argument(
        "--observed",
        help="Observed data as module:attribute (called if callable)",
    )
    parser.add_argument(
        "--demo", action="store_true", help="Use the built-in growth model and priors"
    )
    parser.add_argument("--resume", action="store_true", help="Resume from saved state")

    group = parser.add_argument_group("control overrides")
    group.add_argument("--n-simulations", type=int, help="Fixed mode target")
    group.add_argument("--max-simulations", type=int, help="Auto mode ceiling")
    group.add_argument("--batch-size", type=int, help="Calibration batch size")
    group.add_argument("--iterations", type=int, help="Iterations per simulation")
    group.add_argument("-j", "--workers", type=int, help="Parallel workers or jobs")
    group.add_argument(
        "--backend",
        choices=["sequential", "pool", "batch"],
        help="Dispatcher backend (default: from control)",
    )
    group.add_argument("--submitter", choices=["local", "slurm"], help="Batch job submitter")
    group.add_argument(
        "--io-preset", choices=["debug", "fast", "default", "archive"], help="Output format preset"
    )
    group.add_argument(
        "--log-level",
        choices=["DEEP_DEBUG", "DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Log level",
    )
    group.add_argument("--no-progress", action="store_true", help="Hide progress bars")
    return parser


def overrides_from_args(args: argparse.Namespace) -> dict[str, dict[str, Any]]:
    """Translate CLI flags into per-section control overrides."""
    ov: dict[str, dict[str, Any]] = {}

    def put(section: str, key: str, value: Any) -> None:
        if value is not None:
            ov.setdefault(section, {})[key] = value

    put("calibration", "n_simulations", args.n_simulations)
    put("calibration", "max_simulations", args.max_simulations)
    put("calibration", "batch_size", args.batch_size)
    put("calibration", "n_iterations", args.iterations)
    put("parallel", "n_workers", args.workers)
    put("parallel", "submitter", args.submitter)
    put("logging", "level", args.log_level)
    if args.no_progress:
        put("parallel", "progress", False)

    backend = args.backend
    if backend is None and args.workers is not None and args.workers > 1:
        backend = "pool"
    if backend == "sequential":
        put("parallel", "enable", False)
    elif backend in ("pool", "batch"):
        put("parallel", "enable", True)
        put("parallel", "type", backend)

    if args.io_preset:
        ov["io"] = {**ov.get("io", {}), **io_preset(args.io_preset)}
    return ov


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.demo:
        model, likelihood, sampler = (
            _testing.growth_model,
            _testing.gaussian_likelihood,
            _testing.uniform_sampler,
        )
        priors: dict[str, Any] = dict(_testing.GROWTH_PRIORS)
        observed: Any = _testing.growth_observed()
    else:
        missing = [n for n in ("model", "likelihood", "sampler", "priors") if not getattr(args, n)]
        if missing:
            parser.error("missing " + ", ".join(f"--{n}" for n in missing) + " (or use --demo)")
        model = import_object(args.model)
        likelihood = import_object(args.likelihood)
        sampler = import_object(args.sampler)
        priors = _read_yaml(args.priors)
        observed = None
        if args.observed:
            observed = import_object(args.observed)
            if callable(observed):
                observed = observed()

    config = _read_yaml(args.config)
    control = load_control(args.control, **overrides_from_args(args))

    summary = run_calibration(
        config=config,
        priors=priors,
        observed=observed,
        model=model,
        likelihood=likelihood,
        sampler=sampler,
        dir_output=args.output,
        control=control,
        resume=args.resume,
    )
    print(json.dumps(summary.to_dict(), indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
