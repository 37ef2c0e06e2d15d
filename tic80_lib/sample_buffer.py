"""Bounded, time-ordered sample buffer for plot series."""

import logging
from collections import deque
from typing import TYPE_CHECKING, Iterator, List

if TYPE_CHECKING:
    from tic80_lib.models import PlotSample

logger = logging.getLogger(__name__)


class SampleBuffer:
    """Fixed-capacity FIFO of PlotSample, oldest first.

    Capacity is the absolute sample cap: once full, appending discards the
    oldest sample. trim_before() applies the time-window cutoff. Callers
    append in timestamp order, so the buffer stays sorted ascending.
    """

    def __init__(self, maxlen: int = 5000) -> None:
        """Initialize sample buffer.

        Args:
            maxlen: Maximum number of samples to retain. Defaults to 5000.
        """
        if maxlen <= 0:
            raise ValueError(f"maxlen must be positive, got {maxlen}")

        self._samples: deque["PlotSample"] = deque(maxlen=maxlen)
        self._maxlen = maxlen

    def append(self, sample: "PlotSample") -> None:
        """Append a sample; the oldest one is dropped when at capacity."""
        self._samples.append(sample)

    def trim_before(self, cutoff: float) -> int:
        """Drop samples with timestamp strictly older than cutoff.

        Args:
            cutoff: Wall-clock milliseconds; samples with t >= cutoff survive.

        Returns:
            Number of samples removed
        """
        removed = 0
        while self._samples and self._samples[0].t < cutoff:
            self._samples.popleft()
            removed += 1
        return removed

    def snapshot(self) -> List["PlotSample"]:
        """Get a copy of all retained samples, oldest to newest."""
        return list(self._samples)

    def clear(self) -> None:
        """Remove all samples."""
        count = len(self._samples)
        self._samples.clear()
        if count:
            logger.debug(f"Cleared {count} samples from buffer")

    def __len__(self) -> int:
        return len(self._samples)

    def __iter__(self) -> Iterator["PlotSample"]:
        return iter(self._samples)

    @property
    def maxlen(self) -> int:
        """Maximum capacity of buffer."""
        return self._maxlen
