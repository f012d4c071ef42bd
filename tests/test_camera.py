from __future__ import annotations

import cv2
import jax.numpy as jnp
import numpy as np

from sfm_mapper.core.types import Pose3
from sfm_mapper.mapping.types import TagDetection
from sfm_mapper.vision.camera import CameraIntrinsics, project_points, undistort_corners
from sfm_mapper.vision.pnp import estimate_camera_pose

DIST = np.array([0.12, -0.05, 0.001, -0.002, 0.0])


def test_project_points_pinhole():
    K = jnp.array([[500.0, 0.0, 320.0], [0.0, 400.0, 240.0], [0.0, 0.0, 1.0]])
    pts = jnp.array([[0.0, 0.0, 2.0], [0.2, -0.1, 1.0]])
    uv = project_points(K, pts)
    assert jnp.allclose(uv, jnp.array([[320.0, 240.0], [420.0, 200.0]]))


def test_undistort_is_identity_without_distortion(intrinsics):
    corners = np.array([[10.0, 20.0], [30.0, 20.0], [30.0, 40.0], [10.0, 40.0]])
    assert not intrinsics.has_distortion
    assert np.array_equal(undistort_corners(corners, intrinsics), corners)


def test_undistort_recovers_pinhole_pixels():
    intr = CameraIntrinsics.from_pinhole(500.0, 500.0, 320.0, 240.0, dist_coeffs=DIST)
    pts = np.array([[0.3, -0.2, 2.0], [-0.5, 0.4, 3.0], [0.0, 0.0, 1.5]])
    ideal = np.asarray(project_points(intr.camera_matrix, pts))
    distorted, _ = cv2.projectPoints(pts, np.zeros(3), np.zeros(3), intr.camera_matrix, DIST)

    assert intr.has_distortion
    assert np.allclose(undistort_corners(distorted.reshape(-1, 2), intr), ideal, atol=1e-3)


def test_pnp_with_distortion(two_tag_layout, renderer):
    intr = CameraIntrinsics.from_pinhole(500.0, 500.0, 320.0, 240.0, dist_coeffs=DIST)
    truth = Pose3(-3.0, 1.0, 0.1)
    ideal = renderer(truth, two_tag_layout, intr.camera_matrix, [1, 2])

    # push the ideal pixels through the lens model
    dets = []
    for det in ideal:
        norm = (det.corners - intr.camera_matrix[:2, 2]) / np.diag(intr.camera_matrix)[:2]
        rays = np.hstack([norm, np.ones((4, 1))])
        distorted, _ = cv2.projectPoints(rays, np.zeros(3), np.zeros(3), intr.camera_matrix, DIST)
        dets.append(TagDetection(det.fiducial_id, distorted.reshape(4, 2)))

    est = estimate_camera_pose(dets, two_tag_layout, intr)
    assert est is not None
    assert np.allclose(est.translation, truth.translation, atol=1e-4)
