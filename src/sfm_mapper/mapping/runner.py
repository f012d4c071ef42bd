# Copyright (c) 2025.
# This file is part of sfm-mapper, released under the MIT License.
"""
Glue between a `MapperTransport` and an `IncrementalOptimizer`.
"""

from __future__ import annotations

import logging
from typing import Iterable

from .optimizer import IncrementalOptimizer
from .transport import MapperTransport
from .types import OdomPoseDelta, OptimizerState

logger = logging.getLogger(__name__)


class MapperRunner:
    def __init__(self, optimizer: IncrementalOptimizer, transport: MapperTransport) -> None:
        self.optimizer = optimizer
        self.transport = transport
        self.steps = 0

    def step(self, odometry: Iterable[OdomPoseDelta] = ()) -> OptimizerState:
        """
        Optimize the given odometry together with every keyframe the
        transport received since the last step, then publish the tag map.

        Errors from `optimize` propagate; the polled keyframes of a failed
        step are not re-queued.
        """
        keyframes = self.transport.new_keyframes()
        result = self.optimizer.optimize(OptimizerState.batch(odometry, keyframes))
        self.transport.publish_layout(self.optimizer.tag_layout())
        self.steps += 1
        logger.debug("step %d: %d keyframes polled", self.steps, len(keyframes))
        return result
