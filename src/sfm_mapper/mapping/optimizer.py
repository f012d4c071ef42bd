# Copyright (c) 2025.
# This file is part of sfm-mapper, released under the MIT License.
"""
Incremental tag-map / trajectory optimizer.

`IncrementalOptimizer` owns the persistent estimation state:

    • the `IncrementalSolver` (graph, linearization points, cached factors)
    • the `TimeKeyIndex` of robot-state nodes
    • the fiducial id -> landmark key table of free tags
    • the key arena and the latest robot-state pointers

`optimize(batch)` is one complete step. It builds the graph additions for
the batch, hands them to the solver and, only if the solver accepted them,
commits the bookkeeping. A `SequencingError` or `SolverError` leaves every
piece of persistent state as it was before the call.

The map is unobservable from odometry alone, so until the first keyframe
has been anchored the odometry factors are committed without running the
nonlinear solve; the dead-reckoned seeds are already the optimum of an
odometry-only chain.

Example
-------
    opt = IncrementalOptimizer(layout, {0: intrinsics}, MapperConfig(fixed_tags={1, 2}))
    snapshot = opt.optimize(OptimizerState.batch(odometry=[...], keyframes=[...]))
    snapshot.latest_pose
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Dict, Mapping, Optional

import numpy as np

from sfm_mapper.core.types import Key, KeyAllocator, Pose3
from sfm_mapper.optimization.incremental import IncrementalSolver
from sfm_mapper.vision.camera import CameraIntrinsics

from .config import MapperConfig
from .graph_builder import FactorGraphBuilder, GraphDelta
from .time_index import TimeKeyIndex
from .types import KeyframeData, OptimizerState, TagLayout

logger = logging.getLogger(__name__)


class MapperState(Enum):
    UNINITIALIZED = "uninitialized"  # no graph nodes yet
    ACTIVE = "active"                # at least one robot-state node


class IncrementalOptimizer:
    def __init__(
        self,
        layout_guess: TagLayout,
        cameras: Mapping[int, CameraIntrinsics],
        config: Optional[MapperConfig] = None,
    ) -> None:
        self.config = config or MapperConfig()
        self.layout_guess = layout_guess
        self.builder = FactorGraphBuilder(layout_guess, cameras, self.config)
        self.solver = IncrementalSolver(self.config.solver)

        self.time_index = TimeKeyIndex()
        self.landmark_keys: Dict[int, Key] = {}
        self._allocator = KeyAllocator()
        self._latest_key: Optional[Key] = None
        self._has_keyframe = False
        self._last_anchors: Dict[Key, KeyframeData] = {}

    # --- State machine ---

    @property
    def state(self) -> MapperState:
        return MapperState.UNINITIALIZED if self.time_index.is_empty() else MapperState.ACTIVE

    @property
    def has_keyframe(self) -> bool:
        return self._has_keyframe

    @property
    def latest_key(self) -> Optional[Key]:
        return self._latest_key

    @property
    def latest_pose(self) -> Optional[Pose3]:
        if self._latest_key is None:
            return None
        return Pose3.from_vector(self.solver.estimate(self._latest_key))

    # --- Main step ---

    def optimize(self, new_things: OptimizerState) -> OptimizerState:
        """
        Ingest one batch and return the updated estimate snapshot.

        Raises:
            SequencingError: odometry times are not strictly increasing.
            SolverError: the incremental solve failed; nothing was committed.
        """
        latest_vec = (
            None if self._latest_key is None else self.solver.estimate(self._latest_key)
        )
        delta = self.builder.build(
            new_things,
            self.time_index,
            self.landmark_keys,
            self._allocator,
            latest_key=self._latest_key,
            latest_pose=latest_vec,
        )

        has_keyframe = self._has_keyframe or delta.anchored_keyframes > 0
        self.solver.update(delta.factors, delta.initial_values, solve=has_keyframe)
        self._commit(delta, has_keyframe)
        return self.snapshot()

    def _commit(self, delta: GraphDelta, has_keyframe: bool) -> None:
        was = self.state
        for time, key in delta.index_entries:
            self.time_index.insert(time, key)
        self.landmark_keys.update(delta.new_landmarks)
        self._allocator = KeyAllocator(delta.next_key_index)
        self._latest_key = delta.latest_key
        self._last_anchors = dict(delta.anchors)

        if was is not self.state:
            logger.info("optimizer state %s -> %s", was.value, self.state.value)
        if has_keyframe and not self._has_keyframe:
            logger.info("first keyframe anchored; map is now observable")
        self._has_keyframe = has_keyframe

    # --- Queries ---

    def robot_poses(self) -> Dict[int, Pose3]:
        return {t: Pose3.from_vector(self.solver.estimate(k)) for t, k in self.time_index}

    def tag_layout(self) -> TagLayout:
        """Layout guess with every mapped free tag replaced by its estimate."""
        return self.layout_guess.with_poses({
            tag_id: Pose3.from_vector(self.solver.estimate(key))
            for tag_id, key in self.landmark_keys.items()
        })

    def anchored_keyframes(self) -> Dict[Key, KeyframeData]:
        """Keyframes of the last accepted batch, keyed by their anchor robot state."""
        return dict(self._last_anchors)

    def estimate(self) -> Dict[Key, np.ndarray]:
        return self.solver.calculate_estimate()

    def snapshot(self) -> OptimizerState:
        return OptimizerState(
            robot_poses=self.robot_poses(),
            tag_poses=dict(self.tag_layout().poses),
            latest_key=self._latest_key,
            latest_pose=self.latest_pose,
        )
