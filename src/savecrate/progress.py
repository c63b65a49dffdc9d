"""Progress events emitted to whatever layer is watching an operation."""

from __future__ import annotations

import time
from enum import Enum
from typing import Callable, Optional

from pydantic import BaseModel

EXTRACT_PROGRESS_MIN_INTERVAL = 0.120

# (start, end) percentage for each install stage
DOWNLOAD_BAND = (0.0, 80.0)
EXTRACT_BAND = (80.0, 98.0)
PATCHERS_BAND = (98.0, 99.0)
RESTORE_BAND = (99.0, 100.0)


class InstallStage(str, Enum):
    """Stages reported by the install pipeline."""

    RESOLVING = "resolving"
    DOWNLOADING = "downloading"
    EXTRACTING = "extracting"
    PATCHERS = "patchers"
    RESTORING = "restoring"
    COMPLETE = "complete"
    FAILED = "failed"


class ProgressEvent(BaseModel):
    """One progress notification.

    ``downloaded``/``total`` are byte counts during download;
    ``current``/``entries_total`` are entry counts during extraction.
    """

    stage: InstallStage
    progress: float
    message: str = ""
    downloaded: Optional[int] = None
    total: Optional[int] = None
    current: Optional[int] = None
    entries_total: Optional[int] = None


ProgressSink = Callable[[ProgressEvent], None]


_BANDS = {
    InstallStage.DOWNLOADING: DOWNLOAD_BAND,
    InstallStage.EXTRACTING: EXTRACT_BAND,
    InstallStage.PATCHERS: PATCHERS_BAND,
    InstallStage.RESTORING: RESTORE_BAND,
}


def map_install_progress(stage: InstallStage, stage_percent: float = 0.0) -> float:
    """Map a stage-local percentage (0..100) onto the overall 0..100 scale.

    Resolving and failed always report 0, complete always 100.
    """
    if stage is InstallStage.COMPLETE:
        return 100.0
    band = _BANDS.get(stage)
    if band is None:
        return 0.0
    start, end = band
    ratio = min(max(stage_percent, 0.0), 100.0) / 100.0
    return start + (end - start) * ratio


def percent(current: int, total: Optional[int]) -> float:
    """``current / total`` as a percentage; 100 when ``total`` is 0."""
    if total is None:
        return 0.0
    if total == 0:
        return 100.0
    return min(max(current / total * 100.0, 0.0), 100.0)


class ProgressThrottle:
    """Decides when a counter has moved far enough to be worth reporting.

    Emits on the first and last step, otherwise when at least one
    percent of ``total`` has passed since the last emission or when
    ``min_interval`` seconds have elapsed. With an unknown ``total``
    only the interval applies.
    """

    def __init__(
        self,
        total: Optional[int],
        min_interval: float = EXTRACT_PROGRESS_MIN_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.total = total
        self.step = max(total // 100, 1) if total is not None else None
        self.min_interval = min_interval
        self._clock = clock
        self._last_reported = 0
        self._last_emitted_at = clock()

    def should_emit(self, current: int) -> bool:
        """Return True (and reset the window) if ``current`` should be reported."""
        now = self._clock()
        if (
            current == self.total
            or (self.step is not None and current - self._last_reported >= self.step)
            or now - self._last_emitted_at >= self.min_interval
        ):
            self._last_reported = current
            self._last_emitted_at = now
            return True
        return False

    @property
    def last_reported(self) -> int:
        return self._last_reported
