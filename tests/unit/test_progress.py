"""Tests for batch progress tracking."""

import logging

import pytest

from simcal.progress import ProgressTracker


class TestProgressTracker:
    """Counts and summary line."""

    def test_counts(self):
        tracker = ProgressTracker(total=5, stage="batch 1", enabled=False)
        tracker.update()
        tracker.update(2, success=False)
        assert tracker.stats.completed == 3
        assert tracker.stats.failed == 2
        assert tracker.stats.total == 5

    def test_context_manager_logs_summary(self, caplog):
        with caplog.at_level(logging.INFO, logger="simcal"):
            with ProgressTracker(total=2, stage="batch 7", enabled=False) as tracker:
                tracker.update(2)
        assert "batch 7: 2/2 tasks finished (0 failed)" in caplog.text

    def test_bar_closed(self):
        tracker = ProgressTracker(total=1, enabled=True)
        tracker.update(1, success=False)
        tracker.close()
        assert tracker._pbar is None
        tracker.close()

    @pytest.mark.parametrize(
        "seconds, expected",
        [(5, "5s"), (59.4, "59s"), (61, "1m 1s"), (3599, "59m 59s"), (7380, "2h 3m")],
    )
    def test_format_time(self, seconds, expected):
        assert ProgressTracker._format_time(seconds) == expected
