# Copyright (c) 2025.
# This file is part of sfm-mapper, released under the MIT License.
"""
Publish/subscribe boundary of the mapper.

The mapper needs two things from the outside world: the keyframes that
arrived since it last asked, and somewhere to broadcast the current tag map.
`MapperTransport` is that contract; `InMemoryTransport` implements it with a
queue and a list, for tests and offline replay.
"""

from __future__ import annotations

import abc
from collections import deque
from typing import Deque, Iterable, List, Tuple

from sfm_mapper.core.types import Pose3

from .types import KeyframeData, TagLayout


class MapperTransport(abc.ABC):
    @abc.abstractmethod
    def new_keyframes(self) -> List[KeyframeData]:
        """Keyframes received since the previous call, oldest first."""

    @abc.abstractmethod
    def publish_layout(self, layout: TagLayout) -> None:
        """Broadcast the current tag map."""


class InMemoryTransport(MapperTransport):
    def __init__(self) -> None:
        self._pending: Deque[KeyframeData] = deque()
        self.published: List[List[Tuple[int, Pose3]]] = []

    def push_keyframes(self, keyframes: Iterable[KeyframeData]) -> None:
        self._pending.extend(keyframes)

    def new_keyframes(self) -> List[KeyframeData]:
        out = list(self._pending)
        self._pending.clear()
        return out

    def publish_layout(self, layout: TagLayout) -> None:
        self.published.append(layout.pose_array())
