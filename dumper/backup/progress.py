"""
Progress throttling shared by the dump and upload stages.

A stage reports raw percentages as often as it likes; the tracker only lets
an event through when the value has grown by at least LOG_STEP points since
the last reported one, or has reached 100. Completion is reported once per
item (collection or key). Reported values are clamped to [0, 100] and never
decrease within a stage.
"""

import time
from typing import Callable, Optional

from dumper.models import ProgressEvent


LOG_STEP = 10

ProgressListener = Callable[[ProgressEvent], None]


class ProgressTracker:
    """Throttles progress of a single stage and forwards it to a listener."""

    def __init__(self, stage: str, listener: Optional[ProgressListener] = None, step: int = LOG_STEP):
        self.stage = stage
        self.listener = listener
        self.step = step
        self.started = time.monotonic()
        self.last_reported = 0
        self._reported_complete = False
        self._last_item = None

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self.started

    def update(
        self,
        percent: float,
        item: Optional[str] = None,
        bytes_done: Optional[int] = None,
        bytes_total: Optional[int] = None,
    ) -> Optional[ProgressEvent]:
        """
        Feed a raw percentage.

        Returns:
            The ProgressEvent that was reported, or None if it was throttled
        """
        pct = max(0, min(100, int(percent)))

        if pct == 100:
            if self._reported_complete and item == self._last_item:
                return None
        elif pct < self.last_reported + self.step:
            return None

        self.last_reported = pct
        self._reported_complete = pct == 100
        self._last_item = item

        event = ProgressEvent(
            stage=self.stage,
            percent=pct,
            elapsed=self.elapsed,
            item=item,
            bytes_done=bytes_done,
            bytes_total=bytes_total,
        )
        if self.listener is not None:
            self.listener(event)
        return event

    def rewind(self):
        """
        Allow 100% to be reported again after the source was re-read.

        The high-water mark is kept so reported values stay non-decreasing.
        """
        self._reported_complete = False
        self._last_item = None
