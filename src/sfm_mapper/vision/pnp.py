# Copyright (c) 2025.
# This file is part of sfm-mapper, released under the MIT License.
"""
Multi-tag perspective-n-point pose estimation.

All corners of every known tag seen in one frame are stacked into a single
correspondence set and solved jointly with OpenCV's SQPnP solver, which is
deterministic and handles several coplanar or non-coplanar squares. The
result is the camera body pose in the world, platform convention
(x forward, y left, z up).

Pipeline:

    1. world corners of each known tag (layout pose ∘ local corner offsets)
    2. platform -> vision axes (`core.frames`)
    3. ``cv2.solvePnP(..., flags=cv2.SOLVEPNP_SQPNP)`` -> world-in-camera
    4. invert to camera-in-world, vision -> platform axes

Too little data is not an error: the functions return ``None``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import cv2
import jax
import numpy as np

from sfm_mapper.core.frames import (
    tag_corner_offsets,
    to_platform_point,
    to_platform_rotation,
    to_vision_point,
)
from sfm_mapper.core.math3d import compose_pose_se3, inverse_pose_se3
from sfm_mapper.core.types import Pose3
from sfm_mapper.mapping.types import TagDetection, TagLayout

from .camera import CameraIntrinsics

logger = logging.getLogger(__name__)

MIN_TAGS = 2

_jit_compose = jax.jit(compose_pose_se3)
_jit_inverse = jax.jit(inverse_pose_se3)


@dataclass(frozen=True)
class PnPResult:
    camera_pose: Pose3
    rms_error: float          # pixels, over all corners used
    tag_ids: Tuple[int, ...]  # in detection order, duplicates kept


def tag_world_corners(pose: Pose3, tag_size: float) -> np.ndarray:
    """World-frame corners (4, 3) of a tag, platform convention."""
    R, _ = cv2.Rodrigues(pose.rotation_vector)
    offsets = np.asarray(tag_corner_offsets(tag_size), dtype=np.float64)
    return offsets @ R.T + pose.translation


def _correspondences(
    detections: Sequence[TagDetection],
    layout: TagLayout,
) -> Tuple[np.ndarray, np.ndarray, List[int]]:
    object_points = []
    image_points = []
    used: List[int] = []
    for det in detections:
        pose = layout.get_tag_pose(det.fiducial_id)
        if pose is None:
            logger.debug("skipping unknown fiducial %d", det.fiducial_id)
            continue
        corners = tag_world_corners(pose, layout.tag_size)
        object_points.append(np.asarray(to_vision_point(corners), dtype=np.float64))
        image_points.append(np.asarray(det.corners, dtype=np.float64))
        used.append(int(det.fiducial_id))

    if not used:
        return np.zeros((0, 3)), np.zeros((0, 2)), used
    return np.concatenate(object_points), np.concatenate(image_points), used


def solve_multi_tag(
    detections: Sequence[TagDetection],
    layout: TagLayout,
    camera_matrix: Optional[np.ndarray],
    dist_coeffs: Optional[np.ndarray],
) -> Optional[PnPResult]:
    """Joint PnP over every known tag; ``None`` if fewer than two are known."""
    if camera_matrix is None or dist_coeffs is None:
        return None

    obj, img, used = _correspondences(detections, layout)
    if len(used) < MIN_TAGS:
        return None

    K = np.asarray(camera_matrix, dtype=np.float64)
    dist = np.asarray(dist_coeffs, dtype=np.float64)
    ok, rvec, tvec = cv2.solvePnP(obj, img, K, dist, flags=cv2.SOLVEPNP_SQPNP)
    if not ok:
        logger.warning("solvePnP failed on %d correspondences", len(obj))
        return None

    projected, _ = cv2.projectPoints(obj, rvec, tvec, K, dist)
    rms = float(np.sqrt(np.mean(np.sum((projected.reshape(-1, 2) - img) ** 2, axis=1))))

    # world-in-camera (vision axes) -> camera-in-world
    R, _ = cv2.Rodrigues(rvec)
    R_wc = R.T
    center = -R_wc @ tvec.reshape(3)

    R_platform = np.asarray(to_platform_rotation(R_wc), dtype=np.float64)
    t_platform = np.asarray(to_platform_point(center), dtype=np.float64)
    rotvec, _ = cv2.Rodrigues(R_platform)

    pose = Pose3.from_vector(np.concatenate([t_platform, rotvec.reshape(3)]))
    return PnPResult(camera_pose=pose, rms_error=rms, tag_ids=tuple(used))


def estimate_pose(
    detections: Sequence[TagDetection],
    layout: TagLayout,
    camera_matrix: Optional[np.ndarray],
    dist_coeffs: Optional[np.ndarray],
) -> Optional[Pose3]:
    """Best-fit camera pose in the world, or ``None`` without enough data."""
    result = solve_multi_tag(detections, layout, camera_matrix, dist_coeffs)
    return None if result is None else result.camera_pose


def estimate_camera_pose(
    detections: Sequence[TagDetection],
    layout: TagLayout,
    intrinsics: CameraIntrinsics,
) -> Optional[Pose3]:
    """Same as `estimate_pose`, taking K and distortion from ``intrinsics``."""
    return estimate_pose(detections, layout, intrinsics.camera_matrix, intrinsics.dist_coeffs)


class MultiTagPoseEstimator:
    """Binds a tag layout; estimates camera or robot poses per frame."""

    def __init__(self, layout: TagLayout) -> None:
        self.layout = layout

    def estimate(
        self,
        detections: Sequence[TagDetection],
        intrinsics: CameraIntrinsics,
    ) -> Optional[PnPResult]:
        """``None`` when the camera is uncalibrated (no K or no distortion vector)."""
        return solve_multi_tag(
            detections, self.layout, intrinsics.camera_matrix, intrinsics.dist_coeffs,
        )

    def estimate_robot_pose(
        self,
        detections: Sequence[TagDetection],
        intrinsics: CameraIntrinsics,
    ) -> Optional[Pose3]:
        """Robot pose from the camera pose and the camera's mounting transform."""
        result = self.estimate(detections, intrinsics)
        if result is None:
            return None
        camera_to_robot = _jit_inverse(intrinsics.robot_to_camera.to_vector())
        return Pose3.from_vector(_jit_compose(result.camera_pose.to_vector(), camera_to_robot))
