# Copyright (c) 2025.
# This file is part of sfm-mapper, released under the MIT License.
"""
Timestamp -> robot-state key index.

Odometry arrives densely and keyframes sparsely. Instead of creating a graph
node per keyframe, a keyframe reuses the robot-state node whose timestamp is
closest to its own, so the node count follows odometry density only.

The index is append-only and strictly increasing in time.
"""

from __future__ import annotations

import bisect
from typing import Iterator, List, Optional, Tuple

from sfm_mapper.core.types import Key
from sfm_mapper.errors import SequencingError


class TimeKeyIndex:
    """Monotonic time -> Key table with nearest-in-time lookup."""

    def __init__(self) -> None:
        self._times: List[int] = []
        self._keys: List[Key] = []

    def insert(self, time: int, key: Key) -> None:
        """Append an entry; ``time`` must exceed every existing time."""
        if self._times and time <= self._times[-1]:
            raise SequencingError(
                f"time {time} is not after the latest indexed time {self._times[-1]}"
            )
        self._times.append(time)
        self._keys.append(key)

    def _nearest_position(self, time: int) -> int:
        if not self._times:
            raise LookupError("TimeKeyIndex is empty")
        i = bisect.bisect_left(self._times, time)
        if i == 0:
            return 0
        if i == len(self._times):
            return i - 1
        before = time - self._times[i - 1]
        after = self._times[i] - time
        return i - 1 if before <= after else i

    def nearest(self, time: int) -> Key:
        """
        Key with the minimum |t - time|. On an exact tie between two
        neighbours the earlier entry wins.
        """
        return self._keys[self._nearest_position(time)]

    def nearest_gap(self, time: int) -> int:
        """|t - time| for the entry `nearest` returns."""
        return abs(self._times[self._nearest_position(time)] - time)

    def is_empty(self) -> bool:
        return not self._times

    def latest(self) -> Optional[Tuple[int, Key]]:
        if not self._times:
            return None
        return self._times[-1], self._keys[-1]

    def max_time(self) -> Optional[int]:
        return self._times[-1] if self._times else None

    def time_of(self, key: Key) -> int:
        return self._times[self._keys.index(key)]

    def copy(self) -> "TimeKeyIndex":
        other = TimeKeyIndex()
        other._times = list(self._times)
        other._keys = list(self._keys)
        return other

    def __len__(self) -> int:
        return len(self._times)

    def __iter__(self) -> Iterator[Tuple[int, Key]]:
        return iter(zip(self._times, self._keys))
