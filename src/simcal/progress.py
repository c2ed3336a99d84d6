"""
Progress Tracking
=================

Progress bar and statistics for batches of simulation tasks.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any

from tqdm import tqdm

from simcal.logging import getLogger

log = getLogger(__name__)


@dataclass
class ProgressStats:
    """Statistics for progress tracking."""

    completed: int = 0
    failed: int = 0
    total: int = 0
    start_time: float = 0.0
    stage: str = ""


class ProgressTracker:
    """
    Track and display progress of one batch.

    Parameters
    ----------
    total : int
        Number of tasks in the batch.
    stage : str
        Label shown in front of the bar (e.g. ``"batch 3"``).
    enabled : bool
        Draw a tqdm bar. Statistics are kept either way.
    """

    def __init__(self, total: int, stage: str = "", enabled: bool = True):
        self.stats = ProgressStats(total=total, start_time=time.time(), stage=stage)
        self.enabled = enabled
        self._pbar: Any = None

        if self.enabled:
            self._pbar = tqdm(
                total=total,
                desc=stage,
                unit="sim",
                leave=False,
                bar_format=(
                    "{l_bar}{bar}| {n_fmt}/{total_fmt} "
                    "[{elapsed}<{remaining}, {rate_fmt}] {postfix}"
                ),
            )
            self._pbar.set_postfix_str("failed=0")

    def update(self, n: int = 1, success: bool = True) -> None:
        """
        Record *n* finished tasks.

        Parameters
        ----------
        n : int
            Number of tasks finished in this update.
        success : bool
            Whether they succeeded.
        """
        self.stats.completed += n
        if not success:
            self.stats.failed += n

        if self._pbar is not None:
            self._pbar.update(n)
            if not success:
                self._pbar.set_postfix_str(f"failed={self.stats.failed}")

    @staticmethod
    def _format_time(seconds: float) -> str:
        """Format seconds as human-readable string."""
        if seconds < 60:
            return f"{seconds:.0f}s"
        elif seconds < 3600:
            mins = int(seconds // 60)
            secs = int(seconds % 60)
            return f"{mins}m {secs}s"
        else:
            hours = int(seconds // 3600)
            mins = int((seconds % 3600) // 60)
            return f"{hours}h {mins}m"

    @property
    def elapsed(self) -> float:
        return time.time() - self.stats.start_time

    def close(self) -> None:
        """Close the bar and log a one-line summary."""
        if self._pbar is not None:
            self._pbar.close()
            self._pbar = None

        log.info(
            "%s: %d/%d tasks finished (%d failed) in %s",
            self.stats.stage or "batch",
            self.stats.completed,
            self.stats.total,
            self.stats.failed,
            self._format_time(self.elapsed),
        )

    def __enter__(self) -> ProgressTracker:
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()
