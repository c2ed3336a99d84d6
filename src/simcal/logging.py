"""
Custom logging configuration for simcal.

Extends Python's standard logging with a custom DEEP_DEBUG level (5)
for very verbose output (per-iteration worker traces). Provides the
SimcalLogger class and a helper that applies the ``logging`` section of
a control object.

Log Levels
----------
- CRITICAL (50): Critical errors
- ERROR (40): Errors
- WARNING (30): Warnings (failed simulations, degraded statistics)
- INFO (20): Batch progress and phase transitions (default)
- DEBUG (10): Dispatcher and checkpoint details
- DEEP_DEBUG (5): Per-iteration worker output

Examples
--------
>>> from simcal.logging import getLogger
>>> log = getLogger("simcal.scheduler")
>>> log.info("Batch %d dispatched", 3)
>>> log.deep("Iteration %d likelihood %.3f", 1, -12.5)

Configure levels from a control object:

>>> from simcal.config import load_control
>>> from simcal.logging import configure_logging
>>> configure_logging(load_control().logging)

See Also
--------
simcal.config.schema.LoggingConfig : Logging configuration schema
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from simcal.config.schema import LoggingConfig

(CRITICAL, ERROR, WARNING, INFO, DEBUG) = (
    logging.CRITICAL,
    logging.ERROR,
    logging.WARNING,
    logging.INFO,
    logging.DEBUG,
)
DEEP_DEBUG = 5
logging.addLevelName(DEEP_DEBUG, "DEEP")

ROOT_LOGGER = "simcal"


class SimcalLogger(logging.Logger):
    """
    Custom logger with DEEP_DEBUG level support.

    Examples
    --------
    >>> logger = SimcalLogger("test")
    >>> logger.setLevel(5)  # DEEP_DEBUG
    >>> logger.deep("Very verbose message")
    """

    def deep(self, msg: str, *args: Any, **kwargs: Any) -> None:
        """
        Log message at DEEP_DEBUG level (5).

        Parameters
        ----------
        msg : str
            Message format string.
        *args : Any
            Arguments for message formatting.
        **kwargs : Any
            Additional logging kwargs.
        """
        if self.isEnabledFor(DEEP_DEBUG):
            self._log(DEEP_DEBUG, msg, args, **kwargs)


# Make the logging module hand out our subclass from now on
logging.setLoggerClass(SimcalLogger)

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%H:%M:%S",
)


def getLogger(name: str | None = None) -> SimcalLogger:
    """
    Get a SimcalLogger instance.

    Parameters
    ----------
    name : str, optional
        Logger name. If None, returns root logger.

    Returns
    -------
    SimcalLogger
        Logger instance with deep() method.
    """
    return logging.getLogger(name)  # type: ignore[return-value]


def _level_value(level: str | int) -> int:
    if isinstance(level, int):
        return level
    if level.upper() == "DEEP_DEBUG":
        return DEEP_DEBUG
    value = logging.getLevelName(level.upper())
    if not isinstance(value, int):
        raise ValueError(f"Unknown log level: {level!r}")
    return value


def configure_logging(log_config: LoggingConfig) -> None:
    """
    Apply a logging configuration to the ``simcal`` logger tree.

    Parameters
    ----------
    log_config : LoggingConfig
        ``level`` sets the package logger; ``verbose=False`` raises it to
        at least WARNING; ``modules`` maps submodule names (e.g.
        ``"worker"``) to their own level.
    """
    level = _level_value(log_config.level)
    if not log_config.verbose:
        level = max(level, WARNING)
    logging.getLogger(ROOT_LOGGER).setLevel(level)

    for module, module_level in log_config.modules.items():
        name = module if module.startswith(ROOT_LOGGER) else f"{ROOT_LOGGER}.{module}"
        logging.getLogger(name).setLevel(_level_value(module_level))
