"""Progress notification for pipeline runs.

A progress sink is any callable ``report(message, percent)``. Reporting
is best-effort: safe_report() swallows and logs any failure in the sink
so a broken consumer can never affect classification or storage.

Percent milestones of a run:
  scan 10, activity 20, save 25, analysis 30..90, statistics 90, done 100
"""

from __future__ import annotations

import logging
from typing import Callable, Optional

logger = logging.getLogger(__name__)

ProgressSink = Callable[[str, int], None]

PROGRESS_SCAN = 10
PROGRESS_ACTIVITY = 20
PROGRESS_SAVE = 25
PROGRESS_ANALYSIS_START = 30
PROGRESS_ANALYSIS_SPAN = 60
PROGRESS_STATISTICS = 90
PROGRESS_DONE = 100


def analysis_percent(processed: int, total: int) -> int:
    """Map classification progress onto the 30..90 band."""
    if total <= 0:
        return PROGRESS_STATISTICS
    return PROGRESS_ANALYSIS_START + int(processed / total * PROGRESS_ANALYSIS_SPAN)


class LoggingProgressSink:
    """Default sink: writes progress lines to the log."""

    def __init__(self, name: str = "progress"):
        self._logger = logging.getLogger(f"{__name__}.{name}")
        self.last_percent = 0

    def __call__(self, message: str, percent: int) -> None:
        self.last_percent = percent
        self._logger.info("[%3d%%] %s", percent, message)


class RecordingProgressSink:
    """Keeps every (message, percent) pair; handy for callers that poll."""

    def __init__(self):
        self.events: list[tuple[str, int]] = []

    def __call__(self, message: str, percent: int) -> None:
        self.events.append((message, percent))

    @property
    def percents(self) -> list[int]:
        return [p for _, p in self.events]


def safe_report(sink: Optional[ProgressSink], message: str, percent: int) -> bool:
    """Call the sink, clamping percent to 0..100.

    Returns False when the sink raised; the failure is only logged.
    """
    if sink is None:
        return True
    percent = max(0, min(100, int(percent)))
    try:
        sink(message, percent)
        return True
    except Exception as exc:
        logger.warning("Progress sink failed on %r (%d%%): %s", message, percent, exc)
        return False
