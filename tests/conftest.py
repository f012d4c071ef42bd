from __future__ import annotations

from typing import Iterable, List

import cv2
import numpy as np
import pytest

from sfm_mapper.core.types import Pose3
from sfm_mapper.mapping.types import TagDetection, TagLayout
from sfm_mapper.vision.camera import CameraIntrinsics

# vision (x right, y down, z forward) from platform (x forward, y left, z up)
A = np.array([[0.0, -1.0, 0.0], [0.0, 0.0, -1.0], [1.0, 0.0, 0.0]])
SIGNS = [(-1.0, -1.0), (1.0, -1.0), (1.0, 1.0), (-1.0, 1.0)]


def _rot(pose: Pose3) -> np.ndarray:
    R, _ = cv2.Rodrigues(pose.rotation_vector)
    return R


def world_corners(pose: Pose3, tag_size: float) -> np.ndarray:
    h = 0.5 * tag_size
    local = np.array([[0.0, sx * h, sy * h] for sx, sy in SIGNS])
    return local @ _rot(pose).T + pose.translation


def render(camera_pose: Pose3, layout: TagLayout, K: np.ndarray, ids: Iterable[int]) -> List[TagDetection]:
    """Exact pinhole detections of ``ids`` seen from a camera body pose."""
    R_wc = _rot(camera_pose)
    dets = []
    for tag_id in ids:
        p_world = world_corners(layout.poses[tag_id], layout.tag_size)
        p_cam = (p_world - camera_pose.translation) @ R_wc
        v = p_cam @ A.T
        u = K[0, 0] * v[:, 0] / v[:, 2] + K[0, 2]
        w = K[1, 1] * v[:, 1] / v[:, 2] + K[1, 2]
        dets.append(TagDetection(tag_id, np.stack([u, w], axis=1)))
    return dets


@pytest.fixture
def intrinsics() -> CameraIntrinsics:
    return CameraIntrinsics.from_pinhole(500.0, 500.0, 320.0, 240.0, dist_coeffs=np.zeros(5))


@pytest.fixture
def two_tag_layout() -> TagLayout:
    """Tag 1 at the origin, tag 2 two metres along +y, both normal to +x."""
    return TagLayout(poses={1: Pose3(0.0, 0.0, 0.0), 2: Pose3(0.0, 2.0, 0.0)})


@pytest.fixture
def three_tag_layout() -> TagLayout:
    return TagLayout(poses={
        1: Pose3(0.0, 0.0, 0.0),
        2: Pose3(0.0, 2.0, 0.0),
        3: Pose3(0.3, 1.0, 0.6, 0.0, 0.0, 0.2),
    })


@pytest.fixture
def renderer():
    return render
