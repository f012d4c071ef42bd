# Copyright (c) 2025.
# This file is part of sfm-mapper, released under the MIT License.
"""
Camera calibration container and pinhole helpers.

`CameraIntrinsics` ties a 3×3 calibration matrix and a distortion vector to a
camera index, plus the camera's mounting transform on the robot (platform
convention, identity when the camera sits at the robot origin).

Projection factors use a distortion-free pinhole model, so detections are
undistorted once, when the factor is built (`undistort_corners`).
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Optional

import cv2
import jax.numpy as jnp
import numpy as np

from sfm_mapper.core.types import Pose3


@dataclass(frozen=True, eq=False)
class CameraIntrinsics:
    """Calibration for one camera index."""
    camera_matrix: np.ndarray              # (3, 3)
    dist_coeffs: Optional[np.ndarray] = None   # (k,); None: uncalibrated, PnP refuses
    robot_to_camera: Pose3 = field(default_factory=Pose3)

    @staticmethod
    def from_pinhole(fx: float, fy: float, cx: float, cy: float, **kwargs) -> "CameraIntrinsics":
        K = np.array([[fx, 0.0, cx], [0.0, fy, cy], [0.0, 0.0, 1.0]], dtype=np.float64)
        return CameraIntrinsics(camera_matrix=K, **kwargs)

    @property
    def has_distortion(self) -> bool:
        return self.dist_coeffs is not None and bool(np.any(np.asarray(self.dist_coeffs) != 0.0))


def project_points(camera_matrix: jnp.ndarray, points_vision: jnp.ndarray) -> jnp.ndarray:
    """
    Pinhole projection of (N, 3) vision-convention points to (N, 2) pixels.

    Depth is clamped to a small positive value so points behind the camera
    produce large but finite residuals.
    """
    K = jnp.asarray(camera_matrix)
    z = jnp.maximum(points_vision[:, 2], 1e-6)
    x = points_vision[:, 0] / z
    y = points_vision[:, 1] / z
    u = K[0, 0] * x + K[0, 1] * y + K[0, 2]
    v = K[1, 1] * y + K[1, 2]
    return jnp.stack([u, v], axis=1)


def undistort_corners(corners: np.ndarray, intrinsics: CameraIntrinsics) -> np.ndarray:
    """Remove lens distortion from (N, 2) pixels, keeping pixel units."""
    corners = np.asarray(corners, dtype=np.float64).reshape(-1, 2)
    if not intrinsics.has_distortion:
        return corners
    K = np.asarray(intrinsics.camera_matrix, dtype=np.float64)
    dist = np.asarray(intrinsics.dist_coeffs, dtype=np.float64)
    undistorted = cv2.undistortPoints(corners.reshape(-1, 1, 2), K, dist, P=K)
    return undistorted.reshape(-1, 2)
