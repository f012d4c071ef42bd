# Copyright (c) 2025.
# This file is part of sfm-mapper, released under the MIT License.
"""
Turns a batch of odometry deltas and keyframes into graph additions.

`FactorGraphBuilder.build` is a pure step: it reads the optimizer's current
bookkeeping (time index, landmark table, key allocator, latest robot state)
and returns a `GraphDelta` describing what to add. Nothing passed in is
mutated; the optimizer commits the delta only after the solver accepted it.

Odometry
    Each delta creates one robot-state node, a between factor from the
    previous node and an initial value ``previous ∘ delta``. The very first
    odometry sample also creates the root node, with a prior, at
    ``config.initial_time`` or one tick before that sample when unset.

Keyframes
    A keyframe never creates a robot-state node. It anchors on the node whose
    time is nearest its own and adds one projection factor per usable
    detection:

    * free tag (not in ``config.fixed_tags``): factor between the anchor and
      the tag's landmark node; the landmark is created on first sight from
      the layout guess.
    * fixed tag: factor against the constant layout pose, constraining the
      anchor only.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Tuple

import jax
import numpy as np

from sfm_mapper.core.frames import tag_corner_offsets
from sfm_mapper.core.math3d import compose_pose_se3, pose_matrix
from sfm_mapper.core.types import FactorSpec, Key, KeyAllocator, KeyKind, Variable
from sfm_mapper.errors import SequencingError
from sfm_mapper.slam.measurements import sigma_to_weight
from sfm_mapper.vision.camera import CameraIntrinsics, undistort_corners

from .config import MapperConfig
from .time_index import TimeKeyIndex
from .types import KeyframeData, OdomPoseDelta, OptimizerState, TagDetection, TagLayout

logger = logging.getLogger(__name__)

_jit_compose = jax.jit(compose_pose_se3)
_jit_pose_matrix = jax.jit(pose_matrix)


@dataclass
class GraphDelta:
    """Additions produced by one `FactorGraphBuilder.build` call."""
    factors: List[FactorSpec] = field(default_factory=list)
    initial_values: Dict[Key, Variable] = field(default_factory=dict)
    index_entries: List[Tuple[int, Key]] = field(default_factory=list)
    new_landmarks: Dict[int, Key] = field(default_factory=dict)
    anchors: Dict[Key, KeyframeData] = field(default_factory=dict)  # later keyframe wins a shared anchor
    latest_key: Optional[Key] = None
    latest_pose: Optional[np.ndarray] = None  # 6-vector seed of latest_key
    next_key_index: int = 0

    anchored_keyframes: int = 0
    dropped_keyframes: int = 0
    skipped_detections: int = 0


def _as_matrix(vec) -> np.ndarray:
    return np.asarray(_jit_pose_matrix(np.asarray(vec, dtype=np.float64)))


def _weight(sigmas) -> np.ndarray:
    return np.asarray(sigma_to_weight(np.asarray(sigmas, dtype=np.float64)))


class FactorGraphBuilder:
    def __init__(
        self,
        layout_guess: TagLayout,
        cameras: Mapping[int, CameraIntrinsics],
        config: MapperConfig,
    ) -> None:
        self.layout = layout_guess
        self.cameras = dict(cameras)
        self.config = config

        noise = config.noise
        self._odom_weight = _weight(noise.odom_sigmas)
        self._root_weight = _weight(noise.root_prior_sigmas)
        self._tag_prior_weight = (
            None if noise.tag_prior_sigmas is None else _weight(noise.tag_prior_sigmas)
        )
        # per-coordinate sqrt-information for the 8 corner pixel residuals
        self._pixel_weight = _weight(np.full(8, float(noise.camera_sigma)))
        self._corner_offsets = np.asarray(tag_corner_offsets(layout_guess.tag_size), dtype=np.float64)
        self._robot_to_camera = {
            idx: _as_matrix(cam.robot_to_camera.to_vector()) for idx, cam in self.cameras.items()
        }

    # --- Entry point ---

    def build(
        self,
        new_things: OptimizerState,
        time_index: TimeKeyIndex,
        landmark_keys: Mapping[int, Key],
        allocator: KeyAllocator,
        latest_key: Optional[Key] = None,
        latest_pose: Optional[np.ndarray] = None,
    ) -> GraphDelta:
        """
        Args:
            new_things: batch with ``odometry`` and ``keyframes``.
            time_index: committed time -> robot-state key table.
            landmark_keys: committed fiducial id -> landmark key table.
            allocator: committed key arena.
            latest_key / latest_pose: newest robot state and its current
                estimate (6-vector); None before the first odometry sample.

        Raises:
            SequencingError: odometry times not strictly increasing, or not
                after the newest indexed time.
        """
        index = time_index.copy()
        keys = allocator.copy()
        delta = GraphDelta(latest_key=latest_key, latest_pose=latest_pose)

        self._check_sequencing(new_things.odometry, index)

        for odom in new_things.odometry:
            self._add_odometry(odom, index, keys, delta)

        for keyframe in new_things.keyframes:
            self._add_keyframe(keyframe, index, landmark_keys, keys, delta)

        delta.next_key_index = keys.next_index
        logger.debug(
            "built %d factors, %d new values (%d odometry, %d keyframes anchored, %d dropped)",
            len(delta.factors), len(delta.initial_values), len(new_things.odometry),
            delta.anchored_keyframes, delta.dropped_keyframes,
        )
        return delta

    # --- Odometry ---

    def _check_sequencing(self, odometry: List[OdomPoseDelta], index: TimeKeyIndex) -> None:
        last = index.max_time()
        if last is None:
            last = self.config.initial_time
        for odom in odometry:
            if last is None:
                last = odom.time
                continue
            if odom.time <= last:
                raise SequencingError(
                    f"odometry time {odom.time} is not after the previous time {last}"
                )
            last = odom.time

    def _root_time(self, first_odometry_time: int) -> int:
        if self.config.initial_time is None:
            return first_odometry_time - 1
        return self.config.initial_time

    def _add_root(self, time: int, index: TimeKeyIndex, keys: KeyAllocator, delta: GraphDelta) -> None:
        root = keys.allocate(KeyKind.ROBOT_STATE)
        value = self.config.initial_pose.to_vector()
        delta.initial_values[root] = Variable(root, "robot_pose", value)
        delta.factors.append(FactorSpec(
            "prior", (root,), {"target": _as_matrix(value), "weight": self._root_weight},
        ))
        index.insert(time, root)
        delta.index_entries.append((time, root))
        delta.latest_key, delta.latest_pose = root, value
        logger.info("created root robot state %s at time %d", root, time)

    def _add_odometry(
        self,
        odom: OdomPoseDelta,
        index: TimeKeyIndex,
        keys: KeyAllocator,
        delta: GraphDelta,
    ) -> None:
        if delta.latest_key is None:
            self._add_root(self._root_time(odom.time), index, keys, delta)

        step = odom.delta.to_vector()
        key = keys.allocate(KeyKind.ROBOT_STATE)
        seed = np.asarray(_jit_compose(delta.latest_pose, step))

        delta.initial_values[key] = Variable(key, "robot_pose", seed)
        delta.factors.append(FactorSpec(
            "between",
            (delta.latest_key, key),
            {"measurement": _as_matrix(step), "weight": self._odom_weight},
        ))
        index.insert(odom.time, key)
        delta.index_entries.append((odom.time, key))
        delta.latest_key, delta.latest_pose = key, seed

    # --- Keyframes ---

    def _add_keyframe(
        self,
        keyframe: KeyframeData,
        index: TimeKeyIndex,
        landmark_keys: Mapping[int, Key],
        keys: KeyAllocator,
        delta: GraphDelta,
    ) -> None:
        if index.is_empty():
            logger.warning("dropping keyframe at time %d: no robot state to anchor on", keyframe.time)
            delta.dropped_keyframes += 1
            return

        intrinsics = self.cameras.get(keyframe.camera_index)
        if intrinsics is None:
            logger.warning(
                "dropping keyframe at time %d: no intrinsics for camera %d",
                keyframe.time, keyframe.camera_index,
            )
            delta.dropped_keyframes += 1
            return

        gap = index.nearest_gap(keyframe.time)
        max_gap = self.config.max_anchor_gap
        if max_gap is not None and gap > max_gap:
            logger.warning(
                "dropping keyframe at time %d: nearest robot state is %d away (limit %d)",
                keyframe.time, gap, max_gap,
            )
            delta.dropped_keyframes += 1
            return

        anchor = index.nearest(keyframe.time)
        delta.anchored_keyframes += 1
        delta.anchors[anchor] = keyframe
        for detection in keyframe.observations:
            spec = self._detection_factor(
                detection, anchor, keyframe.camera_index, intrinsics, landmark_keys, keys, delta,
            )
            if spec is None:
                delta.skipped_detections += 1
            else:
                delta.factors.append(spec)

    def _projection_params(
        self,
        detection: TagDetection,
        camera_index: int,
        intrinsics: CameraIntrinsics,
    ) -> Dict[str, np.ndarray]:
        return {
            "measured": undistort_corners(detection.corners, intrinsics),
            "corner_offsets": self._corner_offsets,
            "robot_to_camera": self._robot_to_camera[camera_index],
            "camera_matrix": np.asarray(intrinsics.camera_matrix, dtype=np.float64),
            "weight": self._pixel_weight,
        }

    def _detection_factor(
        self,
        detection: TagDetection,
        anchor: Key,
        camera_index: int,
        intrinsics: CameraIntrinsics,
        landmark_keys: Mapping[int, Key],
        keys: KeyAllocator,
        delta: GraphDelta,
    ) -> Optional[FactorSpec]:
        tag_id = int(detection.fiducial_id)
        guess = self.layout.get_tag_pose(tag_id)

        if tag_id in self.config.fixed_tags:
            if guess is None:
                logger.debug("ignoring fixed tag %d: not in layout", tag_id)
                return None
            params = self._projection_params(detection, camera_index, intrinsics)
            params["tag_pose"] = _as_matrix(guess.to_vector())
            return FactorSpec("fixed_tag_projection", (anchor,), params)

        landmark = landmark_keys.get(tag_id, delta.new_landmarks.get(tag_id))
        if landmark is None:
            if guess is None:
                logger.warning("skipping detection of tag %d: no initial guess in layout", tag_id)
                return None
            landmark = self._add_landmark(tag_id, guess.to_vector(), keys, delta)

        params = self._projection_params(detection, camera_index, intrinsics)
        return FactorSpec("tag_projection", (anchor, landmark), params)

    def _add_landmark(self, tag_id: int, guess: np.ndarray, keys: KeyAllocator, delta: GraphDelta) -> Key:
        landmark = keys.allocate(KeyKind.LANDMARK)
        delta.initial_values[landmark] = Variable(landmark, "tag_pose", guess)
        delta.new_landmarks[tag_id] = landmark
        if self._tag_prior_weight is not None:
            delta.factors.append(FactorSpec(
                "prior", (landmark,), {"target": _as_matrix(guess), "weight": self._tag_prior_weight},
            ))
        logger.info("tag %d enters the map as %s", tag_id, landmark)
        return landmark
