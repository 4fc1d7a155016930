# -*- coding: utf-8 -*-
"""Mode schedule (logic rules) and partition schedule.

ModeSchedule
    event times t_1 < ... < t_K and K+1 active subsystem indices. Mode i is
    active on [t_i, t_{i+1}); events are right-continuous.

PartitionSchedule
    boundaries b_0 < b_1 < ... < b_P splitting [b_0, b_P] into P contiguous
    partitions [b_i, b_{i+1}]. Supplied by the caller and immutable.
"""

from __future__ import annotations

import bisect
from typing import List, Sequence, Tuple

import numpy as np

from errors import InvalidConfigurationError


class ModeSchedule:
    def __init__(self, event_times: Sequence[float] = (), mode_sequence: Sequence[int] = (0,)):
        self._event_times = tuple(float(t) for t in event_times)
        self._modes = tuple(int(m) for m in mode_sequence)

        if len(self._modes) != len(self._event_times) + 1:
            raise InvalidConfigurationError(
                f"mode sequence needs {len(self._event_times) + 1} entries, got {len(self._modes)}"
            )
        if not all(np.isfinite(self._event_times)):
            raise InvalidConfigurationError("switching times must be finite")
        if any(b <= a for a, b in zip(self._event_times, self._event_times[1:])):
            raise InvalidConfigurationError(f"switching times not strictly increasing: {self._event_times}")

    @classmethod
    def from_switching_times(cls, event_times: Sequence[float]) -> "ModeSchedule":
        """Subsystems 0, 1, ..., K in order."""
        return cls(event_times, list(range(len(event_times) + 1)))

    @property
    def event_times(self) -> Tuple[float, ...]:
        return self._event_times

    @property
    def mode_sequence(self) -> Tuple[int, ...]:
        return self._modes

    def mode_at(self, t: float) -> int:
        return self._modes[bisect.bisect_right(self._event_times, float(t))]

    def events_between(self, t0: float, t1: float) -> List[float]:
        """Event times strictly inside (t0, t1)."""
        return [t for t in self._event_times if t0 < t < t1]

    def segments(self, t0: float, t1: float) -> List[Tuple[float, float, int]]:
        """Split [t0, t1] at the events inside it: [(start, end, mode), ...]."""
        cuts = [float(t0)] + self.events_between(t0, t1) + [float(t1)]
        return [(a, b, self.mode_at(0.5 * (a + b))) for a, b in zip(cuts[:-1], cuts[1:])]

    def __repr__(self):
        return f"ModeSchedule(event_times={list(self._event_times)}, mode_sequence={list(self._modes)})"


class PartitionSchedule:
    def __init__(self, boundaries: Sequence[float]):
        b = tuple(float(t) for t in boundaries)
        if len(b) < 2:
            raise InvalidConfigurationError("a partition schedule needs at least two boundaries")
        if not all(np.isfinite(b)):
            raise InvalidConfigurationError("partition boundaries must be finite")
        if any(hi <= lo for lo, hi in zip(b, b[1:])):
            raise InvalidConfigurationError(f"partition boundaries not strictly increasing: {b}")
        self._boundaries = b

    @property
    def boundaries(self) -> Tuple[float, ...]:
        return self._boundaries

    @property
    def num_partitions(self) -> int:
        return len(self._boundaries) - 1

    @property
    def start_time(self) -> float:
        return self._boundaries[0]

    @property
    def final_time(self) -> float:
        return self._boundaries[-1]

    def intervals(self) -> List[Tuple[float, float]]:
        return list(zip(self._boundaries[:-1], self._boundaries[1:]))

    def find(self, t: float) -> int:
        """Index of the partition containing t (the last one owns final_time)."""
        if not (self.start_time <= t <= self.final_time):
            raise ValueError(f"t={t} outside [{self.start_time}, {self.final_time}]")
        i = bisect.bisect_right(self._boundaries, float(t)) - 1
        return min(i, self.num_partitions - 1)

    def validate_horizon(self, start_time: float, final_time: float):
        if not start_time < final_time:
            raise InvalidConfigurationError(f"expected start_time < final_time, got {start_time} >= {final_time}")
        if self.start_time != float(start_time) or self.final_time != float(final_time):
            raise InvalidConfigurationError(
                f"partition boundaries {list(self._boundaries)} do not span [{start_time}, {final_time}]"
            )

    def __repr__(self):
        return f"PartitionSchedule({list(self._boundaries)})"
