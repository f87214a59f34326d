"""
Aggregate Outcome Index (AOI).

Rolling mean of binary market outcomes (Up = 1, Down = 0) over the last N
resolved markets, for N in AOI_WINDOWS. A window that is not yet full
yields None, never a partial average.
"""

import bisect
import logging
from dataclasses import dataclass
from typing import Iterable, Optional, Protocol, Sequence

from ..config import AOI_WINDOWS

logger = logging.getLogger(__name__)


class OutcomeLike(Protocol):
    start_time: int
    outcome_binary: int


@dataclass(frozen=True)
class AOIPoint:
    """
    AOI values of every window at one market.

    Attributes:
        time: Market start time (epoch ms).
        values: Window size -> rolling mean, None while the window is not full.
    """

    time: int
    values: dict[int, Optional[float]]

    def aoi(self, n: int) -> Optional[float]:
        return self.values.get(n)

    def to_dict(self) -> dict:
        return {"time": self.time, **{f"aoi{n}": v for n, v in self.values.items()}}


def compute_aoi_n(values: Sequence[int], n: int) -> Optional[float]:
    """Mean of the last ``n`` binary values, None if fewer than ``n``."""
    if n <= 0:
        raise ValueError(f"AOI window must be positive, got {n}")
    if len(values) < n:
        return None
    return sum(values[-n:]) / n


def compute_aoi(
    outcomes: Sequence[OutcomeLike],
    windows: Iterable[int] = AOI_WINDOWS,
) -> list[AOIPoint]:
    """
    Bulk AOI over outcomes sorted by ascending start_time.

    Point i holds, for each window N, the mean of outcomes[i-N+1 .. i].
    """
    aggregator = RollingOutcomeAggregator(windows)
    for outcome in outcomes:
        aggregator.append(outcome.start_time, outcome.outcome_binary)
    return aggregator.points()


class RollingOutcomeAggregator:
    """
    Incremental AOI over a growing outcome sequence.

    Keeps prefix sums so each window lookup is O(1) and a new outcome is
    O(1) to add.

    Example:
        >>> agg = RollingOutcomeAggregator()
        >>> agg.append(1_700_000_000_000, 1)
        >>> agg.latest(1)
        1.0
    """

    def __init__(self, windows: Iterable[int] = AOI_WINDOWS) -> None:
        self.windows = tuple(sorted(set(windows)))
        if not self.windows or self.windows[0] <= 0:
            raise ValueError(f"AOI windows must be positive: {windows}")
        self._times: list[int] = []
        self._values: list[int] = []
        self._prefix: list[int] = [0]

    def __len__(self) -> int:
        return len(self._values)

    @property
    def last_time(self) -> Optional[int]:
        """start_time of the newest outcome, None while empty."""
        return self._times[-1] if self._times else None

    def append(self, time: int, outcome_binary: int) -> AOIPoint:
        """Add the next resolved outcome. Times must not go backwards."""
        if outcome_binary not in (0, 1):
            raise ValueError(f"Outcome must be 0 or 1, got {outcome_binary!r}")
        if self._times and time < self._times[-1]:
            raise ValueError(
                f"Outcomes must be appended in start_time order ({time} < {self._times[-1]})"
            )
        self._times.append(time)
        self._values.append(int(outcome_binary))
        self._prefix.append(self._prefix[-1] + int(outcome_binary))
        return self.point(len(self._values) - 1)

    def extend(self, outcomes: Iterable[OutcomeLike]) -> None:
        for outcome in outcomes:
            self.append(outcome.start_time, outcome.outcome_binary)

    def value_at(self, index: int, n: int) -> Optional[float]:
        """Mean of the ``n`` outcomes ending at ``index``, None if i < n-1."""
        if n <= 0:
            raise ValueError(f"AOI window must be positive, got {n}")
        if index < 0 or index >= len(self._values):
            raise IndexError(f"AOI index out of range: {index}")
        if index < n - 1:
            return None
        return (self._prefix[index + 1] - self._prefix[index + 1 - n]) / n

    def point(self, index: int) -> AOIPoint:
        return AOIPoint(
            time=self._times[index],
            values={n: self.value_at(index, n) for n in self.windows},
        )

    def points(self) -> list[AOIPoint]:
        return [self.point(i) for i in range(len(self._values))]

    def latest(self, n: int) -> Optional[float]:
        """AOI-n over the most recent outcomes."""
        if not self._values:
            return None
        return self.value_at(len(self._values) - 1, n)

    def value_before(self, time: int, n: int) -> Optional[float]:
        """
        AOI-n as it was known at ``time``: only outcomes of markets that
        started strictly before ``time`` count.
        """
        count = bisect.bisect_left(self._times, time)
        if count == 0:
            return None
        return self.value_at(count - 1, n)
