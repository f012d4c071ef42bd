# Copyright (c) 2025.
# This file is part of sfm-mapper, released under the MIT License.
"""
Measurement and exchange types for the mapping layer.

TagDetection
    One fiducial sighting: id + four corner pixels in the detector's winding
    order (the same order as `core.frames.tag_corner_offsets`).

TagLayout
    The tag map: fiducial id -> world pose (platform convention) plus the
    uniform physical tag side length.

OdomPoseDelta / KeyframeData
    Timestamped inputs. Times are integers on the platform's monotonic clock
    (microseconds in practice); only their ordering and differences matter.

OptimizerState
    Unit of exchange with `IncrementalOptimizer.optimize`: the input batch
    on the way in, the updated estimate snapshot on the way out.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

import numpy as np

from sfm_mapper.core.types import Key, Pose3

# 6 inch tags
DEFAULT_TAG_SIZE = 0.1524


@dataclass(frozen=True, eq=False)
class TagDetection:
    fiducial_id: int
    corners: np.ndarray  # (4, 2) pixels

    def __post_init__(self) -> None:
        corners = np.array(self.corners, dtype=np.float64).reshape(4, 2)
        corners.setflags(write=False)
        object.__setattr__(self, "corners", corners)


@dataclass
class TagLayout:
    """Fiducial id -> world pose, plus the uniform tag side length (m)."""
    poses: Dict[int, Pose3] = field(default_factory=dict)
    tag_size: float = DEFAULT_TAG_SIZE

    def get_tag_pose(self, fiducial_id: int) -> Optional[Pose3]:
        return self.poses.get(int(fiducial_id))

    def __contains__(self, fiducial_id: int) -> bool:
        return int(fiducial_id) in self.poses

    def __len__(self) -> int:
        return len(self.poses)

    def ids(self) -> List[int]:
        return sorted(self.poses)

    def with_poses(self, updates: Mapping[int, Pose3]) -> "TagLayout":
        poses = dict(self.poses)
        poses.update({int(k): v for k, v in updates.items()})
        return TagLayout(poses=poses, tag_size=self.tag_size)

    def pose_array(self) -> List[Tuple[int, Pose3]]:
        """Poses in id order, as published to consumers."""
        return [(i, self.poses[i]) for i in self.ids()]


@dataclass(frozen=True)
class OdomPoseDelta:
    time: int
    delta: Pose3


@dataclass(frozen=True)
class KeyframeData:
    time: int
    camera_index: int
    observations: Tuple[TagDetection, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "observations", tuple(self.observations))


@dataclass
class OptimizerState:
    """
    Input batch and output snapshot of `IncrementalOptimizer.optimize`.

    Inputs:  ``odometry`` (strictly increasing times), ``keyframes``.
    Outputs: ``robot_poses`` (time -> pose of every robot-state node),
             ``tag_poses`` (fiducial id -> pose, fixed and free tags),
             ``latest_key`` / ``latest_pose`` of the newest robot state.
    """
    odometry: List[OdomPoseDelta] = field(default_factory=list)
    keyframes: List[KeyframeData] = field(default_factory=list)

    robot_poses: Dict[int, Pose3] = field(default_factory=dict)
    tag_poses: Dict[int, Pose3] = field(default_factory=dict)
    latest_key: Optional[Key] = None
    latest_pose: Optional[Pose3] = None

    @staticmethod
    def batch(
        odometry: Iterable[OdomPoseDelta] = (),
        keyframes: Iterable[KeyframeData] = (),
    ) -> "OptimizerState":
        return OptimizerState(odometry=list(odometry), keyframes=list(keyframes))
